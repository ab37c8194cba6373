# action_worker/notifiers/smtp.py
from __future__ import annotations

import smtplib
import ssl
from email.message import EmailMessage
from typing import TYPE_CHECKING, Optional

from common.logging import get_logger
from shared.settings import SMTPSettings

from .base import BaseNotifier, NotifyResult

if TYPE_CHECKING:  # pragma: no cover
    from common.actions import EmailAction
    from common.schemas import Incident

log = get_logger(__name__)


class SMTPNotifier(BaseNotifier):
    """
    Emails an incident summary to the action's recipient.
    DRY-RUN (the default) logs the message instead of sending it.
    """
    name = "email"

    def __init__(self, settings: SMTPSettings, *, dry_run: bool = True) -> None:
        super().__init__(dry_run=dry_run)
        self.settings = settings

    # --- Formatting helpers ---

    def _format_subject(self, incident: "Incident") -> str:
        prefix = (self.settings.subject_prefix + " ").lstrip()
        asset = incident.asset.name or incident.asset.id
        return f"{prefix}{str(incident.severity).upper()} {incident.vector} on {asset} ({incident.id})"

    def _format_body(self, incident: "Incident") -> str:
        rule = getattr(incident, "rule", None)
        parts = [
            f"incident: {incident.id}",
            f"severity: {incident.severity}",
            f"vector: {incident.vector}",
            f"protocol: {incident.protocol or 'N/A'}",
            f"asset: {incident.asset.name} ({incident.asset.id}) zone={incident.asset.zone}",
            f"count: {incident.count}",
            f"first_seen: {incident.first_seen}",
            f"last_seen: {incident.last_seen}",
        ]
        if rule:
            parts.append(f"rule: {rule}")
        return "\n".join(parts)

    def _derive_port(self) -> int:
        if self.settings.port:
            return int(self.settings.port)
        if self.settings.use_ssl:
            return 465
        if self.settings.use_starttls:
            return 587
        return 25

    def _send(self, msg: EmailMessage) -> None:
        s = self.settings
        port = self._derive_port()
        if s.use_ssl:
            server = smtplib.SMTP_SSL(s.host, port, timeout=s.timeout_secs)
        else:
            server = smtplib.SMTP(s.host, port, timeout=s.timeout_secs)
        with server:
            server.ehlo()
            if s.use_starttls and not s.use_ssl:
                server.starttls(context=ssl.create_default_context())
                server.ehlo()
            if s.user and s.password:
                server.login(s.user, s.password)
            server.send_message(msg)

    # --- Main ---

    def notify(self, action: "EmailAction", incident: "Incident") -> NotifyResult:
        self.metrics.attempted += 1

        if not self.settings.from_addr:
            log.warning("[SMTP] SKIP (missing SMTP_FROM)")
            return self._skipped("smtp sender not configured")

        msg = EmailMessage()
        msg["From"] = self.settings.from_addr
        msg["To"] = action.recipient
        msg["Subject"] = self._format_subject(incident)
        msg.set_content(self._format_body(incident))

        if self.dry_run:
            log.info("[SMTP][DRY-RUN] would send to %s: %s", action.recipient, msg["Subject"])
            return self._sent(NotifyResult(success=True, token=None, simulated=True))

        if not self.settings.host:
            return self._failed("SMTP_HOST is required in live mode")

        try:
            self._send(msg)
        except smtplib.SMTPAuthenticationError as e:
            log.error("[SMTP] auth error: %s", e)
            return self._failed(f"auth error: {e}")
        except (smtplib.SMTPException, OSError) as e:
            log.error("[SMTP] send to %s failed: %s", action.recipient, e)
            return self._failed(str(e))
        return self._sent(NotifyResult(success=True, token=msg.get("Message-ID")))
