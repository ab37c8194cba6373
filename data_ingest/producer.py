# data_ingest/producer.py
"""
Incident publisher used by every producer (sensor bridges, feed pollers,
the synthetic generator): store the incident, seed its Agent Run with the
detector's "detect" step, then append it to the Event Log.
"""
from __future__ import annotations

from common.audit import Step, StepType, ToolCall, make_run_id, seed_for
from common.logging import get_logger
from common.queue import StreamLog, publish
from common.schemas import Incident, IncidentMessage

log = get_logger("data_ingest")


def detect_step(incident: Incident) -> Step:
    return Step(
        agent_id=incident.detector,
        type=StepType.DETECT,
        summary=f"Detected {incident.vector} on {incident.asset.name or incident.asset.id}",
        source=f"detect:{incident.id}",
        tool_calls=[
            ToolCall(
                tool="protocol_analyzer",
                action="detect",
                args_preview=f"vector={incident.vector}, severity={incident.severity}",
            )
        ],
    )


class IncidentPublisher:
    def __init__(self, stream_log: StreamLog, incidents, runs, events_stream: str = "sec:events") -> None:
        self.log = stream_log
        self.incidents = incidents
        self.runs = runs
        self.events_stream = events_stream

    def publish(self, incident: Incident, seed_run: bool = True) -> str:
        if not incident.run_id:
            incident = incident.model_copy(update={"run_id": make_run_id(incident.id)})
        stored = self.incidents.upsert(incident)
        if seed_run:
            # keyed by incident id: a repeat detection does not add a second detect step
            self.runs.append_step(incident.run_id, detect_step(incident), seed=seed_for(incident.id, incident.detector))
        msg_id = publish(self.log, self.events_stream, IncidentMessage(incident=stored))
        log.info("published %s %s (%s) [%s] id=%s", incident.id, incident.vector, incident.severity, incident.detector, msg_id)
        return msg_id
