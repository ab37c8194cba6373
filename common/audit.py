# common/audit.py
"""
Agent Run audit model.

An AgentRun is the per-incident trail of automated activity. Steps are only
ever appended; a Step carries the ToolCalls made while producing it.
"""
from __future__ import annotations

import uuid
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from shared.datetime_utils import now_iso

PLANNER = "Planner"
EXECUTOR = "Executor"
DEFAULT_DETECTOR = "Detector"


class Outcome(str, Enum):
    PENDING = "pending"
    NOOP = "noop"
    MITIGATED = "mitigated"
    ESCALATED = "escalated"
    FAILED = "failed"


class ToolStatus(str, Enum):
    SUCCESS = "success"
    ERROR = "error"
    PENDING = "pending"


class StepType(str, Enum):
    DETECT = "detect"
    EVALUATE = "evaluate"
    NOTIFY = "notify"
    ACT = "act"


def _short_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, use_enum_values=True, validate_default=True)


class ToolCall(_CamelModel):
    id: str = Field(default_factory=lambda: _short_id("tc"))
    tool: str
    action: str
    args_preview: str = Field(default="", alias="argsPreview")
    status: ToolStatus = ToolStatus.SUCCESS
    ts: str = Field(default_factory=now_iso)
    token: Optional[str] = None
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status == ToolStatus.SUCCESS.value


class Step(_CamelModel):
    id: str = Field(default_factory=lambda: _short_id("step"))
    agent_id: str = Field(alias="agentId")
    type: StepType
    summary: str
    ts: str = Field(default_factory=now_iso)
    tool_calls: List[ToolCall] = Field(default_factory=list, alias="toolCalls")
    # Stream message id this step was derived from; the run store refuses a
    # second step with the same source.
    source: Optional[str] = None


class AgentRun(_CamelModel):
    id: str
    incident_id: str = Field(alias="incidentId")
    started_at: str = Field(default_factory=now_iso, alias="startedAt")
    ended_at: Optional[str] = Field(default=None, alias="endedAt")
    agents: List[str] = Field(default_factory=list)
    steps: List[Step] = Field(default_factory=list)
    outcome: Outcome = Outcome.PENDING

    def has_source(self, source: Optional[str]) -> bool:
        return self.step_for(source) is not None

    def step_for(self, source: Optional[str]) -> Optional[Step]:
        if not source:
            return None
        return next((s for s in self.steps if s.source == source), None)

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True)


class RunSeed(BaseModel):
    """What a lazily-created run starts with."""
    incident_id: str
    agents: List[str] = Field(default_factory=list)
    outcome: Outcome = Outcome.PENDING

    def build(self, run_id: str) -> AgentRun:
        return AgentRun(
            id=run_id,
            incident_id=self.incident_id,
            agents=list(dict.fromkeys(self.agents)),
            outcome=self.outcome,
        )


def make_run_id(incident_id: str) -> str:
    return f"run-{incident_id}"


def seed_for(incident_id: str, detector: Optional[str]) -> RunSeed:
    return RunSeed(
        incident_id=incident_id,
        agents=[detector or DEFAULT_DETECTOR, PLANNER, EXECUTOR],
    )
