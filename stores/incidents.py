# stores/incidents.py
from __future__ import annotations

import threading
from typing import Dict, Optional

import redis

from common.errors import StorageUnavailable, UnknownIncident
from common.logging import get_logger
from common.schemas import Incident, IncidentStatus
from shared.datetime_utils import later_iso

log = get_logger(__name__)


def merge_detection(existing: Optional[Incident], incoming: Incident) -> Incident:
    """
    Upsert rule: a repeat detection of a known incident only bumps its count
    and lastSeen. Everything else stays as first recorded.
    """
    if existing is None:
        return incoming
    merged = existing.model_copy(deep=True)
    merged.count = existing.count + incoming.count
    merged.last_seen = later_iso(existing.last_seen, incoming.last_seen)
    return merged


class RedisIncidentStore:
    def __init__(self, client: redis.Redis, prefix: str = "sec:incident:") -> None:
        self.r = client
        self.prefix = prefix

    def upsert(self, incident: Incident) -> Incident:
        key = self.prefix + incident.id

        def txn(pipe):
            raw = pipe.get(key)
            current = Incident.model_validate_json(raw) if raw else None
            merged = merge_detection(current, incident)
            pipe.multi()
            pipe.set(key, merged.to_json())
            return merged

        try:
            return self.r.transaction(txn, key, value_from_callable=True)
        except redis.exceptions.ConnectionError as e:
            raise StorageUnavailable(f"incident {incident.id}: {e}") from e

    def get(self, incident_id: str) -> Optional[Incident]:
        try:
            raw = self.r.get(self.prefix + incident_id)
        except redis.exceptions.ConnectionError as e:
            raise StorageUnavailable(f"incident {incident_id}: {e}") from e
        return Incident.model_validate_json(raw) if raw else None

    def set_status(self, incident_id: str, status: IncidentStatus) -> Incident:
        key = self.prefix + incident_id

        def txn(pipe):
            raw = pipe.get(key)
            if not raw:
                raise UnknownIncident(incident_id)
            inc = Incident.model_validate_json(raw)
            inc.status = IncidentStatus(status).value
            pipe.multi()
            pipe.set(key, inc.to_json())
            return inc

        try:
            return self.r.transaction(txn, key, value_from_callable=True)
        except redis.exceptions.ConnectionError as e:
            raise StorageUnavailable(f"incident {incident_id}: {e}") from e


class MemoryIncidentStore:
    def __init__(self) -> None:
        self._docs: Dict[str, Incident] = {}
        self._lock = threading.Lock()

    def upsert(self, incident: Incident) -> Incident:
        with self._lock:
            merged = merge_detection(self._docs.get(incident.id), incident)
            self._docs[incident.id] = merged.model_copy(deep=True)
            return merged.model_copy(deep=True)

    def get(self, incident_id: str) -> Optional[Incident]:
        with self._lock:
            inc = self._docs.get(incident_id)
            return inc.model_copy(deep=True) if inc else None

    def set_status(self, incident_id: str, status: IncidentStatus) -> Incident:
        with self._lock:
            inc = self._docs.get(incident_id)
            if inc is None:
                raise UnknownIncident(incident_id)
            inc.status = IncidentStatus(status).value
            return inc.model_copy(deep=True)
