# action_worker/notifiers/base.py
from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional, Protocol

if TYPE_CHECKING:  # pragma: no cover
    from common.actions import Action
    from common.schemas import Incident


@dataclass(frozen=True)
class NotifyResult:
    success: bool
    token: Optional[str] = None
    error: Optional[str] = None
    simulated: bool = False


@dataclass
class NotifierMetrics:
    """Per-notifier counters for one process run."""
    attempted: int = 0
    sent: int = 0
    skipped: int = 0
    errors: int = 0


class Notifier(Protocol):
    """Delivers one action for one incident. Concrete notifiers update self.metrics."""
    name: str
    dry_run: bool
    metrics: NotifierMetrics

    def notify(self, action: "Action", incident: "Incident") -> NotifyResult: ...


class BaseNotifier:
    name: str = "base"

    def __init__(self, *, dry_run: bool = True) -> None:
        self.dry_run = dry_run
        self.metrics = NotifierMetrics()

    def notify(self, action: "Action", incident: "Incident") -> NotifyResult:  # pragma: no cover (interface)
        raise NotImplementedError

    # Bookkeeping for subclasses; each returns the result it was handed
    def _sent(self, result: NotifyResult) -> NotifyResult:
        self.metrics.sent += 1
        return result

    def _skipped(self, reason: str) -> NotifyResult:
        self.metrics.skipped += 1
        return NotifyResult(success=False, error=reason, simulated=self.dry_run)

    def _failed(self, reason: str) -> NotifyResult:
        self.metrics.errors += 1
        return NotifyResult(success=False, error=reason)

    def summary(self) -> str:
        m = self.metrics
        return f"{self.name}: attempted={m.attempted} sent={m.sent} skipped={m.skipped} errors={m.errors}"
