# common/actions.py
"""
Action descriptors attached to rules ("slack:ot-soc", "email:soc@plant.example").

parse_action() is the only place descriptor strings are interpreted. Each
variant knows which notifier handles it and how to turn the notifier's answer
into a ToolCall for the audit trail.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, ClassVar, List, Mapping, Union

from common.audit import ToolCall, ToolStatus
from common.logging import get_logger

if TYPE_CHECKING:  # pragma: no cover
    from action_worker.notifiers.base import Notifier
    from common.schemas import Incident

log = get_logger(__name__)


def _dispatch(action: "Action", notifiers: Mapping[str, "Notifier"], incident: "Incident") -> ToolCall:
    notifier = notifiers.get(action.tool)
    if notifier is None:
        return ToolCall(
            tool=action.tool,
            action=action.tool_action,
            args_preview=action.preview(),
            status=ToolStatus.ERROR,
            error=f"no notifier configured for '{action.tool}'",
        )
    try:
        result = notifier.notify(action, incident)
    except Exception as e:
        log.warning("%s %s failed for %s: %s", action.tool, action.tool_action, incident.id, e)
        return ToolCall(
            tool=action.tool,
            action=action.tool_action,
            args_preview=action.preview(),
            status=ToolStatus.ERROR,
            error=str(e) or e.__class__.__name__,
        )
    return ToolCall(
        tool=action.tool,
        action=action.tool_action,
        args_preview=action.preview(),
        status=ToolStatus.SUCCESS if result.success else ToolStatus.ERROR,
        token=result.token,
        error=result.error,
    )


@dataclass(frozen=True)
class SlackAction:
    channel: str
    descriptor: str
    tool: ClassVar[str] = "slack"
    tool_action: ClassVar[str] = "postMessage"

    def preview(self) -> str:
        return f"channel=#{self.channel}"

    def execute(self, notifiers: Mapping[str, "Notifier"], incident: "Incident") -> ToolCall:
        return _dispatch(self, notifiers, incident)


@dataclass(frozen=True)
class EmailAction:
    recipient: str
    descriptor: str
    tool: ClassVar[str] = "email"
    tool_action: ClassVar[str] = "sendMail"

    def preview(self) -> str:
        return f"to={self.recipient}"

    def execute(self, notifiers: Mapping[str, "Notifier"], incident: "Incident") -> ToolCall:
        return _dispatch(self, notifiers, incident)


@dataclass(frozen=True)
class UnknownAction:
    """Anything the parser could not place. Executing it never calls out."""
    descriptor: str
    reason: str
    tool: ClassVar[str] = "unknown"
    tool_action: ClassVar[str] = "dispatch"

    def preview(self) -> str:
        return f"descriptor={self.descriptor}"

    def execute(self, notifiers: Mapping[str, "Notifier"], incident: "Incident") -> ToolCall:
        return ToolCall(
            tool=self.tool,
            action=self.tool_action,
            args_preview=self.preview(),
            status=ToolStatus.ERROR,
            error=self.reason,
        )


Action = Union[SlackAction, EmailAction, UnknownAction]

_EMAIL_PREFIXES = ("email", "smtp", "mailto")


def parse_action(descriptor: str) -> Action:
    raw = (descriptor or "").strip()
    prefix, sep, target = raw.partition(":")
    prefix = prefix.strip().lower()
    target = target.strip()

    if not sep:
        return UnknownAction(descriptor=raw, reason=f"unrecognized action descriptor '{raw}'")
    if prefix == "slack":
        channel = target.lstrip("#")
        if not channel:
            return UnknownAction(descriptor=raw, reason="slack action is missing a channel")
        return SlackAction(channel=channel, descriptor=raw)
    if prefix in _EMAIL_PREFIXES:
        if "@" not in target:
            return UnknownAction(descriptor=raw, reason=f"invalid email recipient '{target}'")
        return EmailAction(recipient=target, descriptor=raw)
    return UnknownAction(descriptor=raw, reason=f"unrecognized action prefix '{prefix}'")


def parse_actions(descriptors: List[str]) -> List[Action]:
    return [parse_action(d) for d in descriptors]
