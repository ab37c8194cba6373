# common/connection.py
"""
Client handle lifecycle. Each process opens one redis client, hands it to
every component at construction time, and closes it on the way out.
"""
from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Iterator, Optional

import redis

from common.errors import StorageUnavailable
from common.logging import get_logger
from shared.settings import Settings

log = get_logger(__name__)


@contextmanager
def open_redis(url: str) -> Iterator[redis.Redis]:
    client = redis.Redis.from_url(url, decode_responses=True)
    try:
        client.ping()
    except redis.exceptions.ConnectionError as e:
        client.close()
        raise StorageUnavailable(f"redis unreachable at {url}: {e}") from e
    log.info("connected to redis %s", url)
    try:
        yield client
    finally:
        client.close()
        log.info("redis connection closed")


@dataclass
class Backends:
    """Everything a worker needs, built against one client (or in memory)."""
    log: Any
    runs: Any
    incidents: Any
    ledger: Any
    client: Optional[redis.Redis] = None


def memory_backends(ledger_ttl_secs: int = 7 * 24 * 3600) -> Backends:
    from common.queue import MemoryStreamLog
    from shared.dedupe import MemoryLedger
    from stores.agent_runs import MemoryAgentRunStore
    from stores.incidents import MemoryIncidentStore

    return Backends(
        log=MemoryStreamLog(),
        runs=MemoryAgentRunStore(),
        incidents=MemoryIncidentStore(),
        ledger=MemoryLedger(ttl_secs=ledger_ttl_secs),
    )


@contextmanager
def connect(settings: Settings) -> Iterator[Backends]:
    """
    Scoped acquisition of the pipeline backends selected by settings.backend.
    The memory backend lives only as long as this process.
    """
    if settings.backend == "memory":
        log.warning("using in-process memory backend; nothing is shared with other processes")
        yield memory_backends(settings.dedupe_ttl_secs)
        return

    from common.queue import RedisStreamLog
    from shared.dedupe import RedisLedger
    from stores.agent_runs import RedisAgentRunStore
    from stores.incidents import RedisIncidentStore

    with open_redis(settings.redis_url) as client:
        yield Backends(
            log=RedisStreamLog(client),
            runs=RedisAgentRunStore(client),
            incidents=RedisIncidentStore(client),
            ledger=RedisLedger(client, ttl_secs=settings.dedupe_ttl_secs),
            client=client,
        )
