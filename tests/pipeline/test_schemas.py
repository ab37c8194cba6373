# tests/pipeline/test_schemas.py
from __future__ import annotations

import json

import pytest
from pydantic import ValidationError

from common.errors import MalformedMessage
from common.schemas import (
    Alert,
    AlertMessage,
    Incident,
    IncidentMessage,
    decode_message,
    encode_message,
    severity_rank,
)


def test_severity_ordering():
    assert severity_rank("low") < severity_rank("medium") < severity_rank("high") < severity_rank("critical")
    with pytest.raises(ValueError):
        severity_rank("severe")


def test_incident_wire_names_are_camel_case(make_incident):
    doc = json.loads(make_incident(runId="run-INC-1").to_json())
    assert doc["firstSeen"] == "2025-03-01T10:00:00Z"
    assert doc["runId"] == "run-INC-1"
    assert doc["status"] == "open"
    assert "first_seen" not in doc


def test_incident_timestamps_normalized_to_z(make_incident):
    inc = make_incident(firstSeen="2025-03-01 12:00:00+0200", lastSeen="2025-03-01T10:00:00.250Z")
    assert inc.first_seen == "2025-03-01T10:00:00Z"
    assert inc.last_seen == "2025-03-01T10:00:00Z"


def test_incident_rejects_bad_values(make_incident):
    with pytest.raises(ValidationError):
        make_incident(severity="severe")
    with pytest.raises(ValidationError):
        make_incident(count=0)


def test_incident_message_encodes_under_data(make_incident):
    fields = encode_message(IncidentMessage(incident=make_incident()))
    assert list(fields) == ["data"]
    msg = decode_message("1-0", fields)
    assert isinstance(msg, IncidentMessage)
    assert msg.incident == make_incident()


def test_alert_message_encodes_under_alert(make_incident):
    data = make_incident().model_dump(by_alias=True)
    data.update(rule="tamper", actions=["slack:ot-soc"], origin="1-0")
    fields = encode_message(AlertMessage(alert=Alert.model_validate(data)))
    assert list(fields) == ["alert"]

    msg = decode_message("2-0", fields)
    assert isinstance(msg, AlertMessage)
    assert msg.alert.rule == "tamper"
    assert msg.alert.plan[0].channel == "ot-soc"
    assert isinstance(msg.alert.incident(), Incident)


@pytest.mark.parametrize(
    "fields",
    [
        {},
        {"junk": "1"},
        {"data": "{}", "alert": "{}"},
        {"data": "[1, 2"},
        {"alert": json.dumps({"id": "INC-1"})},
    ],
)
def test_decode_rejects_malformed(fields):
    with pytest.raises(MalformedMessage) as exc:
        decode_message("9-0", fields)
    assert exc.value.message_id == "9-0"
