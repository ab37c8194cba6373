# shared/dedupe.py
# Idempotency ledger for derived writes.
# - Key: "<scope>:<originating message id>:<discriminator>", e.g.
#   "rules:1717171717000-0:setpoint-tamper"
# - Value: small string (a marker, or a serialized ToolCall to replay).
# - Bounded retention: entries expire after ttl_secs (default 7 days).

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

import redis

from common.errors import StorageUnavailable

DEFAULT_TTL_SECS = 7 * 24 * 3600


def ledger_key(scope: str, message_id: str, discriminator: str | int) -> str:
    return f"{scope}:{message_id}:{discriminator}"


class RedisLedger:
    def __init__(self, client: redis.Redis, ttl_secs: int = DEFAULT_TTL_SECS, prefix: str = "sec:seen:") -> None:
        self.r = client
        self.ttl_secs = ttl_secs
        self.prefix = prefix

    def seen(self, key: str) -> bool:
        return self.recall(key) is not None

    def recall(self, key: str) -> Optional[str]:
        try:
            return self.r.get(self.prefix + key)
        except redis.exceptions.ConnectionError as e:
            raise StorageUnavailable(f"ledger get: {e}") from e

    def record(self, key: str, value: str = "1") -> None:
        try:
            self.r.set(self.prefix + key, value, ex=self.ttl_secs)
        except redis.exceptions.ConnectionError as e:
            raise StorageUnavailable(f"ledger set: {e}") from e


@dataclass
class _Record:
    value: str
    expires_at: float


class MemoryLedger:
    """Dict-backed ledger with the same TTL semantics. Expired entries are swept every compact_every writes."""

    def __init__(
        self,
        ttl_secs: int = DEFAULT_TTL_SECS,
        clock: Callable[[], float] = time.monotonic,
        compact_every: int = 1000,
    ) -> None:
        self.ttl_secs = ttl_secs
        self.compact_every = compact_every
        self._clock = clock
        self._writes = 0
        self._active: Dict[str, _Record] = {}
        self._lock = threading.Lock()

    def seen(self, key: str) -> bool:
        return self.recall(key) is not None

    def recall(self, key: str) -> Optional[str]:
        with self._lock:
            rec = self._active.get(key)
            if rec is None:
                return None
            if self._clock() >= rec.expires_at:
                del self._active[key]
                return None
            return rec.value

    def record(self, key: str, value: str = "1") -> None:
        with self._lock:
            self._active[key] = _Record(value=value, expires_at=self._clock() + self.ttl_secs)
            self._writes += 1
            due = self.compact_every > 0 and self._writes % self.compact_every == 0
        if due:
            self.compact()

    def compact(self) -> int:
        """Drop expired entries; returns how many were removed."""
        now = self._clock()
        with self._lock:
            stale = [k for k, rec in self._active.items() if now >= rec.expires_at]
            for k in stale:
                del self._active[k]
        return len(stale)
