from __future__ import annotations

import json
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    PrivateAttr,
    TypeAdapter,
    ValidationError,
    field_validator,
)

from common.actions import Action, parse_actions
from common.errors import MalformedMessage
from shared.datetime_utils import now_iso, parse_to_utc, to_iso_utc


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


SEVERITY_RANK: Dict[str, int] = {"low": 0, "medium": 1, "high": 2, "critical": 3}


def severity_rank(value: Union[Severity, str]) -> int:
    return SEVERITY_RANK[Severity(value).value]


class IncidentStatus(str, Enum):
    OPEN = "open"
    ACK = "ack"
    CLOSED = "closed"


class _WireModel(BaseModel):
    # camelCase on the wire, snake_case in Python
    model_config = ConfigDict(populate_by_name=True, use_enum_values=True, validate_default=True, extra="ignore")


class AssetRef(_WireModel):
    id: str
    name: str
    zone: str = ""
    role: str = ""
    ip: Optional[str] = None


class Incident(_WireModel):
    id: str = Field(min_length=1)
    severity: Severity
    vector: str
    protocol: Optional[str] = None
    source: str = "sensor"
    asset: AssetRef
    first_seen: str = Field(default_factory=now_iso, alias="firstSeen")
    last_seen: str = Field(default_factory=now_iso, alias="lastSeen")
    count: int = Field(default=1, ge=1)
    details: Dict[str, Any] = Field(default_factory=dict)
    status: IncidentStatus = IncidentStatus.OPEN
    detector: str = "Detector"
    run_id: Optional[str] = Field(default=None, alias="runId")

    @field_validator("first_seen", "last_seen", mode="before")
    @classmethod
    def _canonical_ts(cls, v: Any) -> str:
        return to_iso_utc(parse_to_utc(v))

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True)


class RuleCondition(_WireModel):
    vector: Optional[str] = None
    severity: Optional[Severity] = None


class Rule(_WireModel):
    name: str = Field(min_length=1)
    when: RuleCondition = Field(default_factory=RuleCondition, alias="if")
    actions: List[str] = Field(default_factory=list)
    severity: Optional[Severity] = None

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class Alert(Incident):
    """
    One (incident, matched rule) pair. Carries the rule's actions; the
    descriptors are parsed once, here, and reused by every dispatch.
    """
    rule: str
    actions: List[str] = Field(default_factory=list)
    origin: Optional[str] = None

    _plan: List[Action] = PrivateAttr(default_factory=list)

    def model_post_init(self, __context: Any) -> None:
        self._plan = parse_actions(self.actions)

    @property
    def plan(self) -> List[Action]:
        return self._plan

    def incident(self) -> Incident:
        data = self.model_dump(by_alias=True, exclude={"rule", "actions", "origin"})
        return Incident.model_validate(data)


# ---- Stream messages ---------------------------------------------------------

class IncidentMessage(BaseModel):
    kind: Literal["incident"] = "incident"
    incident: Incident


class AlertMessage(BaseModel):
    kind: Literal["alert"] = "alert"
    alert: Alert


Message = Annotated[Union[IncidentMessage, AlertMessage], Field(discriminator="kind")]
_MESSAGE = TypeAdapter(Message)

# stream field name -> (message kind, attribute holding the payload)
_FIELD_KINDS = {"data": ("incident", "incident"), "alert": ("alert", "alert")}


def encode_message(msg: Union[IncidentMessage, AlertMessage]) -> Dict[str, str]:
    if isinstance(msg, IncidentMessage):
        return {"data": msg.incident.to_json()}
    return {"alert": msg.alert.to_json()}


def decode_message(message_id: str, fields: Dict[str, Any]) -> Union[IncidentMessage, AlertMessage]:
    """
    Validate a raw stream entry into exactly one message kind.
    Raises MalformedMessage for anything that is not a known, valid payload.
    """
    present = [k for k in _FIELD_KINDS if k in fields]
    if len(present) != 1:
        raise MalformedMessage(message_id, f"expected one of {sorted(_FIELD_KINDS)}, got {sorted(fields)}")
    field = present[0]
    kind, attr = _FIELD_KINDS[field]
    raw = fields[field]
    try:
        payload = json.loads(raw) if isinstance(raw, (str, bytes)) else raw
        return _MESSAGE.validate_python({"kind": kind, attr: payload})
    except (ValueError, ValidationError) as e:
        raise MalformedMessage(message_id, f"invalid {kind} payload: {e}") from e
