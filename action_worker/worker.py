# action_worker/worker.py
"""
Action worker: Alert Log -> notifiers, plus one "notify"/"act" step on the
incident's Agent Run carrying every ToolCall made for the alert.
"""
from __future__ import annotations

from typing import Callable, Dict, List, Mapping, Optional

from common.actions import SlackAction
from common.audit import EXECUTOR, Outcome, Step, StepType, ToolCall, make_run_id, seed_for
from common.logging import get_logger
from common.queue import Delivery, StreamConsumer, StreamLog
from common.schemas import Alert, AlertMessage
from shared.dedupe import ledger_key
from shared.settings import Settings

from .notifiers import Notifier, SlackNotifier, SMTPNotifier

log = get_logger("action_worker")

LEDGER_SCOPE = "actions"


class ActionExecutor:
    """Runs every action of an alert; one action failing never stops the rest."""

    def __init__(self, notifiers: Mapping[str, Notifier]) -> None:
        self.notifiers = dict(notifiers)

    @classmethod
    def from_settings(cls, settings: Settings) -> "ActionExecutor":
        dry_run = not settings.sinks_live
        return cls({
            "slack": SlackNotifier.from_settings(settings.slack, dry_run=dry_run),
            "email": SMTPNotifier(settings.smtp, dry_run=dry_run),
        })

    def execute(
        self,
        alert: Alert,
        replay: Optional[Dict[int, ToolCall]] = None,
        on_call: Optional[Callable[[int, ToolCall], None]] = None,
    ) -> List[ToolCall]:
        """
        replay maps action index -> ToolCall already made for this alert on an
        earlier delivery; those actions are not sent again. on_call is invoked
        right after each new action runs, before the next one starts.
        """
        replay = replay or {}
        calls: List[ToolCall] = []
        for i, action in enumerate(alert.plan):
            if i in replay:
                calls.append(replay[i])
                continue
            call = action.execute(self.notifiers, alert)
            if on_call is not None:
                on_call(i, call)
            calls.append(call)
        return calls


def notify_step(alert: Alert, calls: List[ToolCall], source: str) -> Step:
    ok = sum(1 for c in calls if c.succeeded)
    has_slack = any(isinstance(a, SlackAction) for a in alert.plan)
    if not calls:
        summary = f"No actions configured for rule {alert.rule}"
    elif ok == len(calls):
        summary = f"{ok} action(s) executed for rule {alert.rule}"
    else:
        summary = f"{ok}/{len(calls)} action(s) succeeded for rule {alert.rule}"
    return Step(
        agent_id=EXECUTOR,
        type=StepType.NOTIFY if has_slack else StepType.ACT,
        summary=summary,
        source=source,
        tool_calls=calls,
    )


class ActionWorker:
    def __init__(self, stream_log: StreamLog, runs, incidents, executor: ActionExecutor, ledger, settings: Settings) -> None:
        self.log = stream_log
        self.runs = runs
        self.incidents = incidents
        self.executor = executor
        self.ledger = ledger
        self.settings = settings
        self.consumer = StreamConsumer(
            stream_log,
            settings.alerts_stream,
            settings.actions_group,
            settings.consumer_name,
            self.handle,
            expect=AlertMessage,
            count=settings.read_count,
            block_ms=settings.block_ms,
            retry_delay_secs=settings.retry_delay_secs,
            claim_idle_ms=settings.claim_idle_ms,
            start_id=settings.group_start_id,
        )

    def _replayed(self, message_id: str, alert: Alert) -> Dict[int, ToolCall]:
        out: Dict[int, ToolCall] = {}
        for i in range(len(alert.plan)):
            raw = self.ledger.recall(ledger_key(LEDGER_SCOPE, message_id, i))
            if raw:
                out[i] = ToolCall.model_validate_json(raw)
        return out

    def handle(self, delivery: Delivery) -> None:
        alert: Alert = delivery.message.alert
        run_id = alert.run_id or make_run_id(alert.id)

        existing = self.runs.get(run_id)
        recorded = existing.step_for(delivery.message_id) if existing is not None else None
        if recorded is not None:
            # step landed on an earlier delivery; only the outcome may still be missing
            log.info("alert %s already recorded on %s", delivery.message_id, run_id)
            if any(c.succeeded for c in recorded.tool_calls):
                self.runs.mark_outcome(run_id, Outcome.MITIGATED)
            return

        if self.incidents.get(alert.id) is None:
            log.warning("alert %s references unknown incident %s", delivery.message_id, alert.id)

        replay = self._replayed(delivery.message_id, alert)

        def remember(i: int, call: ToolCall) -> None:
            self.ledger.record(ledger_key(LEDGER_SCOPE, delivery.message_id, i), call.model_dump_json(by_alias=True))

        calls = self.executor.execute(alert, replay, on_call=remember)

        self.runs.append_step(
            run_id,
            notify_step(alert, calls, delivery.message_id),
            seed=seed_for(alert.id, alert.detector),
        )
        if any(c.succeeded for c in calls):
            self.runs.mark_outcome(run_id, Outcome.MITIGATED)

        log.info(
            "alert for %s (rule %s): %s",
            alert.id, alert.rule, ", ".join(f"{c.tool}={c.status}" for c in calls) or "no actions",
        )

    def poll_once(self) -> int:
        return self.consumer.poll_once()

    def run_forever(self, max_polls=None) -> None:
        self.consumer.start()
        log.info("action worker %s consuming %s", self.settings.consumer_name, self.settings.alerts_stream)
        self.consumer.run_forever(max_polls)
