from __future__ import annotations

import argparse
from typing import List

from action_worker.worker import ActionExecutor, ActionWorker
from common.connection import connect
from common.errors import StorageUnavailable
from common.logging import get_logger, setup_logging
from shared.settings import Settings, add_runtime_args

log = get_logger("action_worker")


def _preflight_live_or_die(settings: Settings) -> None:
    """In LIVE mode, fail fast (exit 2) when no notifier could actually deliver."""
    if not settings.sinks_live:
        return
    errs = []
    if not settings.slack.token:
        errs.append("Slack: missing SLACK_BOT_TOKEN.")
    if not settings.smtp.host or not settings.smtp.from_addr:
        log.warning("SMTP not fully configured; email actions will be recorded as errors")
    if errs:
        log.error("LIVE mode preflight failed: %s", " ".join(errs))
        raise SystemExit(2)


def main(argv: List[str] | None = None) -> int:
    p = argparse.ArgumentParser(prog="python -m services.action_worker.main", description="Action worker: alerts -> notifications.")
    add_runtime_args(p)
    settings = Settings.from_env().with_args(p.parse_args(argv))
    setup_logging(settings.log_level)
    _preflight_live_or_die(settings)
    log.info("action worker starting (%s)...", "LIVE" if settings.sinks_live else "DRY-RUN")

    executor = ActionExecutor.from_settings(settings)
    try:
        with connect(settings) as b:
            ActionWorker(b.log, b.runs, b.incidents, executor, b.ledger, settings).run_forever()
    except StorageUnavailable as e:
        log.error("%s", e)
        raise SystemExit(1)
    finally:
        for n in executor.notifiers.values():
            log.info("%s", n.summary())
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
