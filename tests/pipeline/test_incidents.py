# tests/pipeline/test_incidents.py
from __future__ import annotations

import pytest
import redis

from common.errors import StorageUnavailable, UnknownIncident
from stores.incidents import MemoryIncidentStore, RedisIncidentStore, merge_detection


def test_first_upsert_stores_as_is(make_incident):
    store = MemoryIncidentStore()
    inc = make_incident()
    assert store.upsert(inc) == inc
    assert store.get("INC-1") == inc


def test_repeat_detection_bumps_count_and_last_seen(make_incident):
    store = MemoryIncidentStore()
    store.upsert(make_incident(lastSeen="2025-03-01T10:00:00Z"))
    merged = store.upsert(make_incident(severity="low", lastSeen="2025-03-01T11:30:00Z", count=2))

    assert merged.count == 3
    assert merged.last_seen == "2025-03-01T11:30:00Z"
    assert merged.first_seen == "2025-03-01T10:00:00Z"
    # stored fields are kept
    assert merged.severity == "critical"


def test_out_of_order_detection_keeps_later_last_seen(make_incident):
    existing = make_incident(lastSeen="2025-03-01T12:00:00Z")
    merged = merge_detection(existing, make_incident(lastSeen="2025-03-01T09:00:00Z"))
    assert merged.last_seen == "2025-03-01T12:00:00Z"
    assert merged.count == 2


def test_returned_documents_are_copies(make_incident):
    store = MemoryIncidentStore()
    store.upsert(make_incident())
    got = store.get("INC-1")
    got.count = 99
    assert store.get("INC-1").count == 1


def test_set_status(make_incident):
    store = MemoryIncidentStore()
    store.upsert(make_incident())
    assert store.set_status("INC-1", "ack").status == "ack"
    assert store.get("INC-1").status == "ack"
    with pytest.raises(UnknownIncident):
        store.set_status("INC-404", "closed")


def test_redis_set_status_connection_error_is_storage_unavailable():
    class Down:
        def transaction(self, func, *watches, value_from_callable=False):
            raise redis.exceptions.ConnectionError("refused")

    with pytest.raises(StorageUnavailable):
        RedisIncidentStore(Down()).set_status("INC-1", "closed")
