# tests/pipeline/test_agent_runs.py
from __future__ import annotations

import json
import threading

import pytest
import redis

from common.audit import Outcome, Step, StepType, ToolCall, make_run_id, seed_for
from common.errors import StorageUnavailable, UnknownRun
from stores.agent_runs import MemoryAgentRunStore, RedisAgentRunStore


def _step(summary, source=None, agent="Planner", type_=StepType.EVALUATE):
    return Step(agent_id=agent, type=type_, summary=summary, source=source,
                tool_calls=[ToolCall(tool="rules_engine", action="evaluate")])


def test_append_creates_run_lazily_with_seed():
    store = MemoryAgentRunStore()
    run_id = make_run_id("INC-1")
    assert store.append_step(run_id, _step("first", "1-0"), seed=seed_for("INC-1", "agent-detector-ot"))

    run = store.get(run_id)
    assert run.id == "run-INC-1"
    assert run.incident_id == "INC-1"
    assert run.agents == ["agent-detector-ot", "Planner", "Executor"]
    assert run.outcome == "pending"


def test_append_without_seed_requires_existing_run():
    with pytest.raises(UnknownRun):
        MemoryAgentRunStore().append_step("run-nope", _step("x"))


def test_steps_keep_insertion_order_and_content():
    store = MemoryAgentRunStore()
    seed = seed_for("INC-1", None)
    steps = [_step(f"s{i}", f"{i}-0") for i in range(4)]
    for s in steps:
        store.append_step("run-INC-1", s, seed=seed)
    store.append_step("run-INC-1", _step("late", "9-0"), seed=seed)

    run = store.get("run-INC-1")
    assert [s.summary for s in run.steps] == ["s0", "s1", "s2", "s3", "late"]
    assert [s.id for s in run.steps[:4]] == [s.id for s in steps]
    assert run.steps[0].model_dump() == steps[0].model_dump()


def test_duplicate_source_is_ignored():
    store = MemoryAgentRunStore()
    seed = seed_for("INC-1", None)
    assert store.append_step("run-INC-1", _step("a", "1-0"), seed=seed) is True
    assert store.append_step("run-INC-1", _step("a again", "1-0"), seed=seed) is False
    assert [s.summary for s in store.get("run-INC-1").steps] == ["a"]


def test_new_agent_is_added_once():
    store = MemoryAgentRunStore()
    seed = seed_for("INC-1", None)
    store.append_step("run-INC-1", _step("x", "1-0", agent="Triage"), seed=seed)
    store.append_step("run-INC-1", _step("y", "2-0", agent="Triage"), seed=seed)
    assert store.get("run-INC-1").agents == ["Detector", "Planner", "Executor", "Triage"]


def test_get_or_create_does_not_reset_existing():
    store = MemoryAgentRunStore()
    seed = seed_for("INC-1", None)
    store.append_step("run-INC-1", _step("x", "1-0"), seed=seed)
    run = store.get_or_create("run-INC-1", seed)
    assert len(run.steps) == 1


def test_mark_outcome_only_moves_pending_runs():
    store = MemoryAgentRunStore()
    store.get_or_create("run-INC-1", seed_for("INC-1", None))
    assert store.mark_outcome("run-INC-1", Outcome.MITIGATED) is True
    assert store.mark_outcome("run-INC-1", Outcome.FAILED) is False
    assert store.get("run-INC-1").outcome == "mitigated"


def test_set_outcome_overwrites_and_can_end():
    store = MemoryAgentRunStore()
    store.get_or_create("run-INC-1", seed_for("INC-1", None))
    store.mark_outcome("run-INC-1", Outcome.MITIGATED)
    run = store.set_outcome("run-INC-1", Outcome.ESCALATED, end=True)
    assert run.outcome == "escalated"
    assert run.ended_at is not None


def test_close_sets_ended_at_once():
    store = MemoryAgentRunStore()
    store.get_or_create("run-INC-1", seed_for("INC-1", None))
    first = store.close("run-INC-1").ended_at
    assert store.close("run-INC-1").ended_at == first


def test_run_json_uses_camel_case():
    store = MemoryAgentRunStore()
    store.append_step("run-INC-1", _step("x", "1-0"), seed=seed_for("INC-1", None))
    doc = json.loads(store.get("run-INC-1").to_json())
    assert set(doc) >= {"id", "incidentId", "startedAt", "agents", "steps", "outcome"}
    assert "endedAt" not in doc
    assert doc["steps"][0]["agentId"] == "Planner"
    assert doc["steps"][0]["toolCalls"][0]["tool"] == "rules_engine"


# ---- redis backend against a stub transaction ---------------------------------------

class StubPipe:
    def __init__(self, kv):
        self.kv = kv

    def get(self, key):
        return self.kv.get(key)

    def multi(self):
        pass

    def set(self, key, value):
        self.kv[key] = value


class StubRedis:
    def __init__(self):
        self.kv = {}
        self.watched = []

    def transaction(self, func, *watches, value_from_callable=False):
        self.watched.extend(watches)
        return func(StubPipe(self.kv))

    def get(self, key):
        return self.kv.get(key)


def test_redis_store_round_trips_through_transaction():
    r = StubRedis()
    store = RedisAgentRunStore(r)
    seed = seed_for("INC-1", None)
    assert store.append_step("run-INC-1", _step("a", "1-0"), seed=seed)
    assert not store.append_step("run-INC-1", _step("a", "1-0"), seed=seed)
    assert r.watched == ["sec:run:run-INC-1", "sec:run:run-INC-1"]
    assert [s.summary for s in store.get("run-INC-1").steps] == ["a"]


def test_concurrent_appends_to_one_run_lose_nothing():
    store = MemoryAgentRunStore()
    seed = seed_for("INC-1", None)
    n = 24
    barrier = threading.Barrier(n)
    results = []

    def writer(i):
        barrier.wait()
        results.append(store.append_step("run-INC-1", _step(f"s{i}", f"{i}-0"), seed=seed))

    threads = [threading.Thread(target=writer, args=(i,)) for i in range(n)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert results == [True] * n
    run = store.get("run-INC-1")
    assert len(run.steps) == n
    assert {s.source for s in run.steps} == {f"{i}-0" for i in range(n)}
    assert run.agents == ["Detector", "Planner", "Executor"]
    assert len(store.list_runs()) == 1


def test_redis_list_runs_connection_error_is_storage_unavailable():
    class Down(StubRedis):
        def scan_iter(self, match=None):
            raise redis.exceptions.ConnectionError("refused")

    with pytest.raises(StorageUnavailable):
        RedisAgentRunStore(Down()).list_runs()
