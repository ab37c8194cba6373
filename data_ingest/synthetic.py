# data_ingest/synthetic.py
"""
Synthetic OT/ICS incidents for demos and soak runs. Ids are content hashes,
so re-running with the same seed and clock produces the same incidents.
"""
from __future__ import annotations

import random
from hashlib import sha256
from typing import List, Optional

from common.audit import make_run_id
from common.schemas import AssetRef, Incident
from shared.datetime_utils import now_iso

DETECTOR = "agent-detector-ot"

TEMPLATES = [
    {"vector": "unauthorized_write", "severity": "critical", "protocol": "ModbusTCP",
     "zone": "mixing", "role": "PLC", "asset_name": "PLC P-401"},
    {"vector": "mqtt_anomaly", "severity": "medium", "protocol": "MQTT",
     "zone": "packaging", "role": "Gateway", "asset_name": "Gateway PKG-01"},
    {"vector": "setpoint_tamper", "severity": "high", "protocol": "ModbusTCP",
     "zone": "bottling", "role": "PLC", "asset_name": "PLC B-220"},
    {"vector": "p2p_scan", "severity": "high", "protocol": "TCP",
     "zone": "it_network", "role": "Gateway", "asset_name": "Edge Gateway"},
    {"vector": "lateral_movement_it_ot", "severity": "critical", "protocol": "TCP",
     "zone": "dmz", "role": "Gateway", "asset_name": "DMZ Gateway"},
    {"vector": "firmware_change", "severity": "high", "protocol": "S7",
     "zone": "mixing", "role": "PLC", "asset_name": "PLC P-402"},
    {"vector": "cleartext_protocol", "severity": "low", "protocol": "DNP3",
     "zone": "substation", "role": "RTU", "asset_name": "RTU S-11"},
]


def uid(*parts: object) -> str:
    key = "|".join(str(p) for p in parts if p not in (None, ""))
    return sha256(key.encode("utf-8")).hexdigest()[:16]


def synthetic_incident(template: dict, *, salt: object, rng: random.Random, ts: Optional[str] = None) -> Incident:
    ts = ts or now_iso()
    inc_id = f"INC-{uid('synthetic', template['vector'], ts, salt)}"
    return Incident(
        id=inc_id,
        severity=template["severity"],
        vector=template["vector"],
        protocol=template["protocol"],
        source="sensor",
        asset=AssetRef(
            id=f"{template['role']}-{template['zone']}",
            name=template["asset_name"],
            zone=template["zone"],
            role=template["role"],
        ),
        first_seen=ts,
        last_seen=ts,
        details={
            "register": 40000 + rng.randrange(100),
            "value": rng.randrange(1000),
            "previousValue": rng.randrange(1000),
        },
        detector=DETECTOR,
        run_id=make_run_id(inc_id),
    )


def synthetic_incidents(count: int, rng: Optional[random.Random] = None, ts: Optional[str] = None) -> List[Incident]:
    rng = rng or random.Random()
    return [synthetic_incident(rng.choice(TEMPLATES), salt=i, rng=rng, ts=ts) for i in range(count)]
