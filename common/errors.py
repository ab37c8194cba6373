# common/errors.py
from __future__ import annotations


class PipelineError(Exception):
    """Base class for every error raised by the pipeline packages."""


class MalformedMessage(PipelineError):
    """A stream entry could not be decoded into a known message kind."""

    def __init__(self, message_id: str, reason: str) -> None:
        super().__init__(f"{message_id}: {reason}")
        self.message_id = message_id
        self.reason = reason


class StorageUnavailable(PipelineError):
    """The log or document store could not be reached."""


class RuleStoreUnavailable(PipelineError):
    """The ruleset could not be read. Fatal at worker start."""


class RulesetError(PipelineError):
    """A ruleset failed validation (bad shape, duplicate names)."""


class UnknownRun(PipelineError, KeyError):
    pass


class UnknownIncident(PipelineError, KeyError):
    pass
