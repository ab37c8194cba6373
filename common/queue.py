"""
Event Log / Alert Log.

Two interchangeable StreamLog backends (redis streams, in-process memory)
with consumer groups, plus StreamConsumer, the poll loop both workers run.
Delivery is at-least-once: an entry stays pending for its consumer until
acked, and is handed out again on that consumer's next backlog read or,
once idle long enough, claimed by another consumer in the group.
"""
from __future__ import annotations

import threading
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Protocol, Tuple, Type, Union

import redis

from common.errors import MalformedMessage, PipelineError, StorageUnavailable
from common.logging import get_logger
from common.schemas import AlertMessage, IncidentMessage, decode_message, encode_message

log = get_logger(__name__)

Fields = Dict[str, str]
Entry = Tuple[str, Fields]


class StreamLog(Protocol):
    def append(self, stream: str, fields: Fields) -> str: ...
    def read_group(self, stream: str, group: str, consumer: str, count: int = 50,
                   block_ms: Optional[int] = None, pending: bool = False) -> List[Entry]: ...
    def ack(self, stream: str, group: str, message_id: str) -> None: ...
    def ensure_group(self, stream: str, group: str, start_id: str = "$") -> None: ...
    def claim_stale(self, stream: str, group: str, consumer: str,
                    min_idle_ms: int, count: int = 50) -> List[Entry]: ...
    def pending_count(self, stream: str, group: str) -> int: ...
    def length(self, stream: str) -> int: ...


def publish(stream_log: StreamLog, stream: str, msg: Union[IncidentMessage, AlertMessage]) -> str:
    return stream_log.append(stream, encode_message(msg))


# ---- redis streams -----------------------------------------------------------

class RedisStreamLog:
    def __init__(self, client: redis.Redis) -> None:
        self.r = client

    def append(self, stream: str, fields: Fields) -> str:
        try:
            return self.r.xadd(stream, fields)
        except redis.exceptions.ConnectionError as e:
            raise StorageUnavailable(f"xadd {stream}: {e}") from e

    def read_group(self, stream, group, consumer, count=50, block_ms=None, pending=False):
        # ">" = never-delivered entries; "0" = this consumer's pending list
        try:
            resp = self.r.xreadgroup(
                group, consumer, {stream: "0" if pending else ">"},
                count=count, block=None if pending or not block_ms else block_ms,
            )
        except redis.exceptions.ConnectionError as e:
            raise StorageUnavailable(f"xreadgroup {stream}: {e}") from e
        out: List[Entry] = []
        for _s, msgs in resp or []:
            for msg_id, fields in msgs:
                out.append((msg_id, fields or {}))
        return out

    def ack(self, stream, group, message_id):
        try:
            self.r.xack(stream, group, message_id)
        except redis.exceptions.ConnectionError as e:
            raise StorageUnavailable(f"xack {stream}: {e}") from e

    def ensure_group(self, stream, group, start_id="$"):
        try:
            self.r.xgroup_create(stream, group, id=start_id, mkstream=True)
            log.info("created consumer group %s on %s", group, stream)
        except redis.exceptions.ResponseError as e:
            if "BUSYGROUP" not in str(e):
                raise

    def claim_stale(self, stream, group, consumer, min_idle_ms, count=50):
        try:
            resp = self.r.xautoclaim(stream, group, consumer, min_idle_ms, start_id="0-0", count=count)
        except redis.exceptions.ConnectionError as e:
            raise StorageUnavailable(f"xautoclaim {stream}: {e}") from e
        # [next_start_id, [(id, fields), ...], deleted_ids]
        msgs = resp[1] if resp and len(resp) > 1 else []
        return [(msg_id, fields or {}) for msg_id, fields in msgs]

    def pending_count(self, stream, group):
        try:
            return int(self.r.xpending(stream, group).get("pending", 0))
        except redis.exceptions.ConnectionError as e:
            raise StorageUnavailable(f"xpending {stream}: {e}") from e

    def length(self, stream):
        try:
            return int(self.r.xlen(stream))
        except redis.exceptions.ConnectionError as e:
            raise StorageUnavailable(f"xlen {stream}: {e}") from e


# ---- in-process --------------------------------------------------------------

@dataclass
class _PendingEntry:
    consumer: str
    delivered_at: float
    deliveries: int = 1


@dataclass
class _Group:
    cursor: int
    pending: "OrderedDict[str, _PendingEntry]" = field(default_factory=OrderedDict)


@dataclass
class _Stream:
    entries: List[Entry] = field(default_factory=list)
    index: Dict[str, int] = field(default_factory=dict)
    groups: Dict[str, _Group] = field(default_factory=dict)
    last_ms: int = 0
    seq: int = 0


class MemoryStreamLog:
    """
    Same contract as RedisStreamLog, held in this process. Used by the tests
    and by PIPELINE_BACKEND=memory for single-process runs.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._streams: Dict[str, _Stream] = {}
        self._cond = threading.Condition()
        self._clock = clock

    def _stream(self, name: str) -> _Stream:
        return self._streams.setdefault(name, _Stream())

    def _group(self, stream: str, group: str) -> _Group:
        s = self._streams.get(stream)
        if s is None or group not in s.groups:
            raise PipelineError(f"NOGROUP no consumer group '{group}' on stream '{stream}'")
        return s.groups[group]

    def _next_id(self, s: _Stream) -> str:
        ms = max(int(time.time() * 1000), s.last_ms)
        s.seq = s.seq + 1 if ms == s.last_ms else 0
        s.last_ms = ms
        return f"{ms}-{s.seq}"

    def append(self, stream, fields):
        with self._cond:
            s = self._stream(stream)
            msg_id = self._next_id(s)
            s.index[msg_id] = len(s.entries)
            s.entries.append((msg_id, dict(fields)))
            self._cond.notify_all()
            return msg_id

    def ensure_group(self, stream, group, start_id="$"):
        with self._cond:
            s = self._stream(stream)
            if group in s.groups:
                return
            s.groups[group] = _Group(cursor=len(s.entries) if start_id == "$" else 0)

    def read_group(self, stream, group, consumer, count=50, block_ms=None, pending=False):
        with self._cond:
            g = self._group(stream, group)
            s = self._streams[stream]
            if pending:
                out: List[Entry] = []
                for msg_id, p in g.pending.items():
                    if p.consumer != consumer:
                        continue
                    p.deliveries += 1
                    p.delivered_at = self._clock()
                    out.append(s.entries[s.index[msg_id]])
                    if len(out) >= count:
                        break
                return out

            if g.cursor >= len(s.entries) and block_ms:
                self._cond.wait_for(lambda: g.cursor < len(s.entries), timeout=block_ms / 1000.0)

            batch = s.entries[g.cursor:g.cursor + count]
            g.cursor += len(batch)
            now = self._clock()
            for msg_id, _fields in batch:
                g.pending[msg_id] = _PendingEntry(consumer=consumer, delivered_at=now)
            return list(batch)

    def ack(self, stream, group, message_id):
        with self._cond:
            self._group(stream, group).pending.pop(message_id, None)

    def claim_stale(self, stream, group, consumer, min_idle_ms, count=50):
        with self._cond:
            g = self._group(stream, group)
            s = self._streams[stream]
            now = self._clock()
            out: List[Entry] = []
            for msg_id, p in g.pending.items():
                if p.consumer == consumer or (now - p.delivered_at) * 1000 < min_idle_ms:
                    continue
                p.consumer = consumer
                p.delivered_at = now
                p.deliveries += 1
                out.append(s.entries[s.index[msg_id]])
                if len(out) >= count:
                    break
            return out

    def pending_count(self, stream, group):
        with self._cond:
            return len(self._group(stream, group).pending)

    def length(self, stream):
        with self._cond:
            s = self._streams.get(stream)
            return len(s.entries) if s else 0

    def entries(self, stream: str) -> List[Entry]:
        with self._cond:
            s = self._streams.get(stream)
            return list(s.entries) if s else []


# ---- poll loop ---------------------------------------------------------------

@dataclass(frozen=True)
class Delivery:
    message_id: str
    message: Union[IncidentMessage, AlertMessage]


Handler = Callable[[Delivery], None]


class StreamConsumer:
    """
    One consumer-group member. poll_once() handles a single batch, acking each
    message after its handler returns. A failing handler leaves its message
    (and the rest of the batch) pending; the next poll re-reads this
    consumer's backlog before asking for anything new.
    """

    def __init__(
        self,
        stream_log: StreamLog,
        stream: str,
        group: str,
        consumer: str,
        handler: Handler,
        *,
        expect: Type[Union[IncidentMessage, AlertMessage]],
        count: int = 50,
        block_ms: int = 5000,
        retry_delay_secs: float = 5.0,
        claim_idle_ms: int = 60_000,
        start_id: str = "$",
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.log = stream_log
        self.stream = stream
        self.group = group
        self.consumer = consumer
        self.handler = handler
        self.expect = expect
        self.count = count
        self.block_ms = block_ms
        self.retry_delay_secs = retry_delay_secs
        self.claim_idle_ms = claim_idle_ms
        self.start_id = start_id
        self._sleep = sleep
        self._backlog = True
        self._started = False

    def start(self) -> None:
        if not self._started:
            self.log.ensure_group(self.stream, self.group, self.start_id)
            self._started = True

    def poll_once(self) -> int:
        self.start()
        batch: List[Entry] = []
        if self._backlog:
            batch = self.log.read_group(self.stream, self.group, self.consumer, self.count, pending=True)
            if not batch:
                self._backlog = False
        if not batch:
            batch = self.log.read_group(self.stream, self.group, self.consumer, self.count, self.block_ms)
        if not batch and self.claim_idle_ms:
            batch = self.log.claim_stale(self.stream, self.group, self.consumer, self.claim_idle_ms, self.count)
            if batch:
                log.info("[%s] %s claimed %d stale message(s)", self.stream, self.consumer, len(batch))
        return self._process(batch)

    def _process(self, batch: List[Entry]) -> int:
        handled = 0
        for msg_id, fields in batch:
            try:
                msg = decode_message(msg_id, fields)
                if not isinstance(msg, self.expect):
                    raise MalformedMessage(msg_id, f"unexpected {msg.kind} message on {self.stream}")
            except MalformedMessage as e:
                # poison message: drop it rather than retry forever
                log.warning("[%s] dropping malformed message %s", self.stream, e)
                self.log.ack(self.stream, self.group, msg_id)
                continue

            try:
                self.handler(Delivery(message_id=msg_id, message=msg))
            except Exception:
                log.exception("[%s] handler error on %s; leaving it pending", self.stream, msg_id)
                self._backlog = True
                self._sleep(self.retry_delay_secs)
                break

            self.log.ack(self.stream, self.group, msg_id)
            handled += 1
        return handled

    def run_forever(self, max_polls: Optional[int] = None) -> None:
        polls = 0
        while max_polls is None or polls < max_polls:
            polls += 1
            try:
                self.poll_once()
            except Exception as e:
                log.error("[%s] poll failed: %s; retrying in %.1fs", self.stream, e, self.retry_delay_secs)
                self._backlog = True
                self._sleep(self.retry_delay_secs)
