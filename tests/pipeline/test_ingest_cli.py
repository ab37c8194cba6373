# tests/pipeline/test_ingest_cli.py
from __future__ import annotations

import json
import random

from data_ingest.__main__ import main as ingest_main, read_incident_file
from data_ingest.producer import detect_step
from data_ingest.synthetic import TEMPLATES, synthetic_incidents


def _row(i):
    return {
        "id": f"INC-{i}",
        "severity": "high",
        "vector": "unauthorized_write",
        "asset": {"id": "plc-1", "name": "PLC P-401"},
        "firstSeen": "2025-03-01T10:00:00Z",
        "lastSeen": "2025-03-01T10:00:00Z",
    }


def test_read_json_array_and_jsonl(tmp_path):
    arr = tmp_path / "a.json"
    arr.write_text(json.dumps([_row(1), _row(2)]), encoding="utf-8")
    jl = tmp_path / "b.jsonl"
    jl.write_text("\n".join(json.dumps(r) for r in [_row(3), {"id": "bad"}]) + "\n", encoding="utf-8")

    assert [i.id for i in read_incident_file(arr)] == ["INC-1", "INC-2"]
    assert [i.id for i in read_incident_file(jl)] == ["INC-3"]


def test_file_command_publishes_on_memory_backend(tmp_path):
    fp = tmp_path / "a.json"
    fp.write_text(json.dumps([_row(1)]), encoding="utf-8")
    assert ingest_main(["--backend", "memory", "file", str(fp)]) == 0


def test_missing_file_exits_2(tmp_path):
    assert ingest_main(["--backend", "memory", "file", str(tmp_path / "nope.json")]) == 2


def test_synthetic_incidents_are_reproducible():
    a = synthetic_incidents(4, rng=random.Random(3), ts="2025-03-01T10:00:00Z")
    b = synthetic_incidents(4, rng=random.Random(3), ts="2025-03-01T10:00:00Z")
    assert [i.id for i in a] == [i.id for i in b]
    assert len({i.id for i in a}) == 4
    assert {i.vector for i in a} <= {t["vector"] for t in TEMPLATES}
    assert all(i.run_id == f"run-{i.id}" for i in a)


def test_detect_step_shape():
    (inc,) = synthetic_incidents(1, rng=random.Random(0), ts="2025-03-01T10:00:00Z")
    step = detect_step(inc)
    assert step.agent_id == "agent-detector-ot"
    assert step.type == "detect"
    assert step.source == f"detect:{inc.id}"
    assert step.tool_calls[0].tool == "protocol_analyzer"
