# action_worker/notifiers/__init__.py
from .base import BaseNotifier, Notifier, NotifierMetrics, NotifyResult  # re-export
from .slack import SlackNotifier
from .smtp import SMTPNotifier

__all__ = [
    "BaseNotifier",
    "Notifier",
    "NotifierMetrics",
    "NotifyResult",
    "SlackNotifier",
    "SMTPNotifier",
]
