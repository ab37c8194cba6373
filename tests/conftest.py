# Make the repository root importable during tests
import sys
from pathlib import Path

# tests/ is one level below the repo root
REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

import json

import pytest

from common.connection import memory_backends
from common.schemas import Incident
from shared.settings import Settings


@pytest.fixture
def settings() -> Settings:
    # non-blocking reads, no retry sleep, groups read from the start of the stream
    return Settings(
        backend="memory",
        group_start_id="0",
        block_ms=0,
        retry_delay_secs=0,
        claim_idle_ms=0,
    )


@pytest.fixture
def backends():
    return memory_backends()


@pytest.fixture
def make_incident():
    def _make(**overrides) -> Incident:
        data = {
            "id": "INC-1",
            "severity": "critical",
            "vector": "setpoint_tamper",
            "protocol": "ModbusTCP",
            "asset": {"id": "plc-b220", "name": "PLC B-220", "zone": "bottling", "role": "PLC"},
            "firstSeen": "2025-03-01T10:00:00Z",
            "lastSeen": "2025-03-01T10:00:00Z",
            "detector": "agent-detector-ot",
        }
        data.update(overrides)
        return Incident.model_validate(data)
    return _make


@pytest.fixture
def rules_file(tmp_path):
    """Write a ruleset to a temp file and return its path."""
    def _write(rules) -> str:
        fp = tmp_path / "rules.json"
        fp.write_text(json.dumps(rules), encoding="utf-8")
        return str(fp)
    return _write
