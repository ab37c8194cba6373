# action_worker/notifiers/slack.py
from __future__ import annotations

import random
import time
from typing import TYPE_CHECKING, Any, Dict, Optional, Tuple

import requests

from common.logging import get_logger
from shared.settings import SlackSettings

from .base import BaseNotifier, NotifyResult

if TYPE_CHECKING:  # pragma: no cover
    from common.actions import SlackAction
    from common.schemas import Incident

log = get_logger(__name__)

SLACK_POST_URL = "https://slack.com/api/chat.postMessage"


class SlackNotifier(BaseNotifier):
    """
    Posts incident notifications to Slack channels.

    The first post for an (incident, channel) pair is a root message with the
    incident summary; later posts for the same incident go into its thread.
    DRY-RUN (the default) logs what would be sent and returns a simulated
    message ts without any network I/O.
    """
    name = "slack"

    def __init__(
        self,
        *,
        token: Optional[str],
        mention: Optional[str] = None,
        timeout_secs: float = 5.0,
        dry_run: bool = True,
        session: Optional[requests.Session] = None,
        attempts: int = 3,
    ) -> None:
        super().__init__(dry_run=dry_run)
        self.token = token
        self.mention = mention
        self.timeout_secs = timeout_secs
        self.attempts = attempts
        self.session = session or requests.Session()
        # (incident id, channel) -> root message ts
        self._threads: Dict[Tuple[str, str], str] = {}

    @staticmethod
    def from_settings(settings: SlackSettings, *, dry_run: bool) -> "SlackNotifier":
        return SlackNotifier(
            token=settings.token,
            mention=settings.mention,
            timeout_secs=settings.timeout_secs,
            dry_run=dry_run,
        )

    # --- Formatting helpers ---

    def _headline(self, incident: "Incident") -> str:
        asset = incident.asset.name or incident.asset.id
        return f"[{str(incident.severity).upper()}] {incident.vector.replace('_', ' ')} on {asset}"

    def _build_root(self, channel: str, incident: "Incident", rule: Optional[str]) -> Dict[str, Any]:
        mention = f"\n{self.mention}" if self.mention else ""
        rule_s = f"\nrule: {rule}" if rule else ""
        blocks = [
            {"type": "header", "text": {"type": "plain_text", "text": self._headline(incident)}},
            {
                "type": "section",
                "fields": [
                    {"type": "mrkdwn", "text": f"*Protocol:*\n{incident.protocol or 'N/A'}"},
                    {"type": "mrkdwn", "text": f"*Count:*\n{incident.count}"},
                    {"type": "mrkdwn", "text": f"*First Seen:*\n{incident.first_seen}"},
                    {"type": "mrkdwn", "text": f"*Last Seen:*\n{incident.last_seen}"},
                ],
            },
            {
                "type": "context",
                "elements": [{"type": "mrkdwn", "text": f"{incident.id} | zone {incident.asset.zone or '?'}{rule_s}"}],
            },
        ]
        return {"channel": f"#{channel}", "text": f"{self._headline(incident)}{mention}", "blocks": blocks}

    def _build_reply(self, channel: str, incident: "Incident", rule: Optional[str], thread_ts: str) -> Dict[str, Any]:
        text = f"Rule matched: {rule}" if rule else f"Update on {incident.id}"
        return {"channel": f"#{channel}", "text": text, "thread_ts": thread_ts}

    # --- HTTP ---

    def _post(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        resp = self.session.post(
            SLACK_POST_URL,
            json=payload,
            headers={"Authorization": f"Bearer {self.token}"},
            timeout=self.timeout_secs,
        )
        if resp.status_code >= 500:
            raise requests.HTTPError(f"HTTP {resp.status_code}", response=resp)
        if resp.status_code == 429:
            raise requests.HTTPError("rate limited", response=resp)
        return resp.json()

    def _post_with_retries(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        base = 0.5
        for i in range(1, self.attempts + 1):
            try:
                return self._post(payload)
            except (requests.ConnectionError, requests.Timeout, requests.HTTPError) as e:
                if i >= self.attempts:
                    raise
                backoff = base * (2 ** (i - 1)) + random.uniform(0, 0.2)
                log.warning("[Slack] %s; retry %d/%d in %.2fs", e, i, self.attempts - 1, backoff)
                time.sleep(backoff)
        raise RuntimeError("unreachable")  # pragma: no cover

    # --- Main ---

    def notify(self, action: "SlackAction", incident: "Incident") -> NotifyResult:
        self.metrics.attempted += 1
        channel = action.channel
        rule = getattr(incident, "rule", None)
        thread_key = (incident.id, channel)
        thread_ts = self._threads.get(thread_key)

        if self.dry_run:
            ts = thread_ts or f"{time.time():.6f}"
            self._threads.setdefault(thread_key, ts)
            kind = "thread reply" if thread_ts else "root message"
            log.info("[Slack][DRY-RUN] would post %s to #%s: %s", kind, channel, self._headline(incident))
            return self._sent(NotifyResult(success=True, token=ts, simulated=True))

        if not self.token:
            log.warning("[Slack] SKIP (no SLACK_BOT_TOKEN configured)")
            return self._skipped("slack token not configured")

        if thread_ts:
            payload = self._build_reply(channel, incident, rule, thread_ts)
        else:
            payload = self._build_root(channel, incident, rule)

        try:
            body = self._post_with_retries(payload)
        except (requests.RequestException, ValueError) as e:
            log.error("[Slack] postMessage to #%s failed: %s", channel, e)
            return self._failed(str(e))
        if not body.get("ok"):
            err = str(body.get("error") or "unknown slack error")
            log.error("[Slack] postMessage to #%s failed: %s", channel, err)
            return self._failed(err)

        ts = str(body.get("ts") or thread_ts or "")
        if not thread_ts and ts:
            self._threads[thread_key] = ts
        return self._sent(NotifyResult(success=True, token=ts))
