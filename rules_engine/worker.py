# rules_engine/worker.py
"""
Rules worker: Event Log -> (evaluate) -> Alert Log, plus one "evaluate"
step on the incident's Agent Run.

Redelivered messages are safe to reprocess: the evaluate step carries the
event message id as its source (the run store ignores a repeat), and every
Alert append is recorded in the ledger under (message id, rule name).
"""
from __future__ import annotations

from typing import List

from common.audit import PLANNER, Step, StepType, ToolCall, make_run_id, seed_for
from common.logging import get_logger
from common.queue import Delivery, StreamConsumer, StreamLog, publish
from common.schemas import AlertMessage, Incident, IncidentMessage, Rule
from shared.dedupe import ledger_key
from shared.settings import Settings

from .rule_store import RuleStore
from .rules import build_alerts, evaluate

log = get_logger("rules_engine")

LEDGER_SCOPE = "rules"


def evaluate_step(matched: List[Rule], source: str) -> Step:
    names = ",".join(r.name for r in matched)
    return Step(
        agent_id=PLANNER,
        type=StepType.EVALUATE,
        summary=f"Matched {len(matched)} rule(s): {names}",
        source=source,
        tool_calls=[ToolCall(tool="rules_engine", action="evaluate", args_preview=f"rules={names}")],
    )


class RulesWorker:
    def __init__(self, stream_log: StreamLog, rule_store: RuleStore, runs, ledger, settings: Settings) -> None:
        self.log = stream_log
        self.rule_store = rule_store
        self.runs = runs
        self.ledger = ledger
        self.settings = settings
        self.consumer = StreamConsumer(
            stream_log,
            settings.events_stream,
            settings.rules_group,
            settings.consumer_name,
            self.handle,
            expect=IncidentMessage,
            count=settings.read_count,
            block_ms=settings.block_ms,
            retry_delay_secs=settings.retry_delay_secs,
            claim_idle_ms=settings.claim_idle_ms,
            start_id=settings.group_start_id,
        )

    def start(self) -> None:
        # RuleStoreUnavailable propagates: a worker without rules must not run
        if not self.rule_store.loaded:
            self.rule_store.load()
        self.consumer.start()

    def handle(self, delivery: Delivery) -> None:
        incident: Incident = delivery.message.incident
        matched = evaluate(incident, self.rule_store.rules)
        if not matched:
            log.debug("no rule matched %s (%s/%s)", incident.id, incident.vector, incident.severity)
            return

        run_id = incident.run_id or make_run_id(incident.id)
        appended = self.runs.append_step(
            run_id,
            evaluate_step(matched, delivery.message_id),
            seed=seed_for(incident.id, incident.detector),
        )
        if not appended:
            log.info("evaluate step for %s already recorded on %s", delivery.message_id, run_id)

        emitted = 0
        for alert in build_alerts(incident, matched, origin=delivery.message_id):
            key = ledger_key(LEDGER_SCOPE, delivery.message_id, alert.rule)
            if self.ledger.seen(key):
                continue
            alert_id = publish(self.log, self.settings.alerts_stream, AlertMessage(alert=alert))
            self.ledger.record(key, alert_id)
            emitted += 1

        log.info(
            "incident %s matched %d rule(s) [%s]; %d alert(s) emitted",
            incident.id, len(matched), ",".join(r.name for r in matched), emitted,
        )

    def poll_once(self) -> int:
        return self.consumer.poll_once()

    def run_forever(self, max_polls=None) -> None:
        self.start()
        log.info("rules worker %s consuming %s", self.settings.consumer_name, self.settings.events_stream)
        self.consumer.run_forever(max_polls)
