# shared/settings.py
# Runtime configuration. Environment variables are read when from_env() is
# called (never at import time); CLI flags override them via with_args().

from __future__ import annotations

import argparse
import os
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Optional


def _env_int(key: str, default: int) -> int:
    raw = os.environ.get(key)
    try:
        return int(raw) if raw not in (None, "") else default
    except ValueError:
        return default


def _env_float(key: str, default: float) -> float:
    raw = os.environ.get(key)
    try:
        return float(raw) if raw not in (None, "") else default
    except ValueError:
        return default


def _env_bool(key: str, default: bool = False) -> bool:
    raw = os.environ.get(key)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class SlackSettings:
    token: Optional[str] = None
    timeout_secs: float = 5.0
    mention: Optional[str] = None


@dataclass(frozen=True)
class SMTPSettings:
    host: Optional[str] = None
    port: Optional[int] = None
    user: Optional[str] = None
    password: Optional[str] = None
    from_addr: Optional[str] = None
    subject_prefix: str = "[OT-SOC]"
    timeout_secs: float = 10.0
    use_ssl: bool = False
    use_starttls: bool = False


@dataclass(frozen=True)
class Settings:
    backend: str = "redis"  # redis | memory
    redis_url: str = "redis://localhost:6379/0"

    events_stream: str = "sec:events"
    alerts_stream: str = "sec:alerts"
    rules_group: str = "cg:rules"
    actions_group: str = "cg:actions"
    consumer_name: str = "worker-1"
    group_start_id: str = "$"

    read_count: int = 50
    block_ms: int = 5000
    retry_delay_secs: float = 5.0
    claim_idle_ms: int = 60_000

    rules_file: str = "ref/rules.json"
    rules_key: str = "sec:rules"
    dedupe_ttl_secs: int = 7 * 24 * 3600

    sinks_live: bool = False
    slack: SlackSettings = field(default_factory=SlackSettings)
    smtp: SMTPSettings = field(default_factory=SMTPSettings)

    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        smtp_port = os.environ.get("SMTP_PORT")
        return cls(
            backend=os.environ.get("PIPELINE_BACKEND", "redis").strip().lower(),
            redis_url=os.environ.get("REDIS_URL", cls.redis_url),
            events_stream=os.environ.get("EVENTS_STREAM", cls.events_stream),
            alerts_stream=os.environ.get("ALERTS_STREAM", cls.alerts_stream),
            rules_group=os.environ.get("RULES_GROUP", cls.rules_group),
            actions_group=os.environ.get("ACTIONS_GROUP", cls.actions_group),
            consumer_name=os.environ.get("CONSUMER_NAME", cls.consumer_name),
            group_start_id=os.environ.get("GROUP_START_ID", cls.group_start_id),
            read_count=_env_int("READ_COUNT", cls.read_count),
            block_ms=_env_int("BLOCK_MS", cls.block_ms),
            retry_delay_secs=_env_float("RETRY_DELAY_SECS", cls.retry_delay_secs),
            claim_idle_ms=_env_int("CLAIM_IDLE_MS", cls.claim_idle_ms),
            rules_file=os.environ.get("RULES_FILE", cls.rules_file),
            rules_key=os.environ.get("RULES_KEY", cls.rules_key),
            dedupe_ttl_secs=_env_int("DEDUPE_TTL_SECS", cls.dedupe_ttl_secs),
            sinks_live=_env_bool("SINKS_LIVE"),
            slack=SlackSettings(
                token=os.environ.get("SLACK_BOT_TOKEN") or None,
                timeout_secs=_env_float("SLACK_TIMEOUT_SECS", 5.0),
                mention=os.environ.get("SLACK_MENTION") or None,
            ),
            smtp=SMTPSettings(
                host=os.environ.get("SMTP_HOST") or None,
                port=int(smtp_port) if smtp_port and smtp_port.isdigit() else None,
                user=os.environ.get("SMTP_USER") or None,
                password=os.environ.get("SMTP_PASS") or None,
                from_addr=os.environ.get("SMTP_FROM") or None,
                subject_prefix=os.environ.get("SMTP_SUBJECT_PREFIX", "[OT-SOC]"),
                timeout_secs=_env_float("SMTP_TIMEOUT_SECS", 10.0),
                use_ssl=_env_bool("SMTP_USE_SSL"),
                use_starttls=_env_bool("SMTP_USE_STARTTLS"),
            ),
            log_level=os.environ.get("LOG_LEVEL", "INFO"),
        )

    def with_args(self, args: Any) -> "Settings":
        """
        Overlay argparse values on top of env-derived settings.
        Only attributes present on args and not None are applied.
        """
        overrides: Dict[str, Any] = {}
        for name in (
            "backend", "redis_url", "consumer_name", "read_count", "block_ms",
            "retry_delay_secs", "claim_idle_ms", "rules_file", "log_level",
        ):
            value = getattr(args, name, None)
            if value is not None:
                overrides[name] = value
        if getattr(args, "sinks_live", False):
            overrides["sinks_live"] = True
        return replace(self, **overrides) if overrides else self


def add_runtime_args(parser: argparse.ArgumentParser) -> None:
    """Flags shared by every service main. Unset flags fall back to the environment."""
    g = parser.add_argument_group("runtime")
    g.add_argument("--backend", choices=("redis", "memory"), help="Storage/transport backend (env PIPELINE_BACKEND)")
    g.add_argument("--redis-url", dest="redis_url", help="Redis URL (env REDIS_URL)")
    g.add_argument("--consumer", dest="consumer_name", help="Consumer name within the group (env CONSUMER_NAME)")
    g.add_argument("--count", dest="read_count", type=int, help="Max messages per read (env READ_COUNT)")
    g.add_argument("--block-ms", dest="block_ms", type=int, help="Blocking read timeout in ms (env BLOCK_MS)")
    g.add_argument("--retry-delay", dest="retry_delay_secs", type=float, help="Fixed delay after a failure (env RETRY_DELAY_SECS)")
    g.add_argument("--claim-idle-ms", dest="claim_idle_ms", type=int, help="Claim other consumers' pending entries idle this long (env CLAIM_IDLE_MS)")
    g.add_argument("--rules-file", dest="rules_file", help="Ruleset JSON file (env RULES_FILE)")
    g.add_argument("--log-level", dest="log_level", help="DEBUG, INFO, WARNING, ERROR (env LOG_LEVEL)")
    g.add_argument(
        "--sinks-live",
        action="store_true",
        help="Enable LIVE notifications (Slack/SMTP). Default is DRY-RUN without this flag.",
    )
