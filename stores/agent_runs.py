# stores/agent_runs.py
"""
Agent Run Store: one audit document per incident.

Every mutation is a single read-modify-write performed atomically against
the backing store (WATCH/MULTI on redis, a lock in memory), so "create the
run if missing, then push a step" cannot lose an update when the rules
worker and the action worker touch the same run at the same time.
"""
from __future__ import annotations

import threading
from typing import Callable, Dict, List, Optional, Tuple, TypeVar

import redis

from common.audit import AgentRun, Outcome, RunSeed, Step
from common.errors import StorageUnavailable, UnknownRun
from common.logging import get_logger
from shared.datetime_utils import now_iso

log = get_logger(__name__)

T = TypeVar("T")
Mutation = Callable[[Optional[AgentRun]], Tuple[Optional[AgentRun], T]]


class _RunStore:
    """Operations shared by both backends; subclasses supply _mutate/_load."""

    def _mutate(self, run_id: str, fn: Mutation) -> T:  # pragma: no cover (interface)
        raise NotImplementedError

    def get(self, run_id: str) -> Optional[AgentRun]:  # pragma: no cover (interface)
        raise NotImplementedError

    def get_or_create(self, run_id: str, seed: RunSeed) -> AgentRun:
        def fn(current):
            if current is not None:
                return None, current
            run = seed.build(run_id)
            log.info("created agent run %s for incident %s", run_id, seed.incident_id)
            return run, run
        return self._mutate(run_id, fn)

    def append_step(self, run_id: str, step: Step, seed: Optional[RunSeed] = None) -> bool:
        """
        Push one step, creating the run from seed first if it does not exist.
        Returns False (and writes nothing) if a step with the same source is
        already recorded on this run.
        """
        def fn(current):
            if current is None:
                if seed is None:
                    raise UnknownRun(run_id)
                current = seed.build(run_id)
                log.info("created agent run %s for incident %s", run_id, seed.incident_id)
            if current.has_source(step.source):
                return None, False
            if step.agent_id not in current.agents:
                current.agents.append(step.agent_id)
            current.steps.append(step)
            return current, True
        return self._mutate(run_id, fn)

    def mark_outcome(self, run_id: str, outcome: Outcome) -> bool:
        """Move a pending run to outcome. Runs already past pending are left alone."""
        def fn(current):
            if current is None:
                raise UnknownRun(run_id)
            if current.outcome != Outcome.PENDING:
                return None, False
            current.outcome = outcome
            return current, True
        return self._mutate(run_id, fn)

    def set_outcome(self, run_id: str, outcome: Outcome, end: bool = False) -> AgentRun:
        """Explicit overwrite, including out of a terminal state."""
        def fn(current):
            if current is None:
                raise UnknownRun(run_id)
            current.outcome = outcome
            if end and not current.ended_at:
                current.ended_at = now_iso()
            return current, current
        return self._mutate(run_id, fn)

    def close(self, run_id: str) -> AgentRun:
        def fn(current):
            if current is None:
                raise UnknownRun(run_id)
            if not current.ended_at:
                current.ended_at = now_iso()
            return current, current
        return self._mutate(run_id, fn)


class RedisAgentRunStore(_RunStore):
    def __init__(self, client: redis.Redis, prefix: str = "sec:run:") -> None:
        self.r = client
        self.prefix = prefix

    def _key(self, run_id: str) -> str:
        return self.prefix + run_id

    def _mutate(self, run_id, fn):
        key = self._key(run_id)

        def txn(pipe):
            raw = pipe.get(key)
            current = AgentRun.model_validate_json(raw) if raw else None
            updated, result = fn(current)
            pipe.multi()
            if updated is not None:
                pipe.set(key, updated.to_json())
            return result

        try:
            # retried by redis-py on WatchError
            return self.r.transaction(txn, key, value_from_callable=True)
        except redis.exceptions.ConnectionError as e:
            raise StorageUnavailable(f"agent run {run_id}: {e}") from e

    def get(self, run_id):
        try:
            raw = self.r.get(self._key(run_id))
        except redis.exceptions.ConnectionError as e:
            raise StorageUnavailable(f"agent run {run_id}: {e}") from e
        return AgentRun.model_validate_json(raw) if raw else None

    def list_runs(self) -> List[AgentRun]:
        try:
            keys = list(self.r.scan_iter(match=self.prefix + "*"))
            docs = self.r.mget(keys) if keys else []
        except redis.exceptions.ConnectionError as e:
            raise StorageUnavailable(f"list agent runs: {e}") from e
        runs = [AgentRun.model_validate_json(raw) for raw in docs if raw]
        runs.sort(key=lambda r: r.started_at, reverse=True)
        return runs


class MemoryAgentRunStore(_RunStore):
    def __init__(self) -> None:
        self._docs: Dict[str, str] = {}
        self._lock = threading.Lock()

    def _mutate(self, run_id, fn):
        with self._lock:
            raw = self._docs.get(run_id)
            current = AgentRun.model_validate_json(raw) if raw else None
            updated, result = fn(current)
            if updated is not None:
                self._docs[run_id] = updated.to_json()
            return result

    def get(self, run_id):
        with self._lock:
            raw = self._docs.get(run_id)
        return AgentRun.model_validate_json(raw) if raw else None

    def list_runs(self) -> List[AgentRun]:
        with self._lock:
            runs = [AgentRun.model_validate_json(raw) for raw in self._docs.values()]
        runs.sort(key=lambda r: r.started_at, reverse=True)
        return runs
