from __future__ import annotations

import argparse
from typing import List

from common.connection import connect
from common.errors import RuleStoreUnavailable, StorageUnavailable
from common.logging import get_logger, setup_logging
from rules_engine.rule_store import JsonFileRuleSource, RedisRuleSource, RuleStore, seed_redis_rules
from rules_engine.worker import RulesWorker
from shared.settings import Settings, add_runtime_args

log = get_logger("rules_engine")


def parse_args(argv: List[str] | None = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(prog="python -m services.rules_worker.main", description="Rules worker: incidents -> alerts.")
    add_runtime_args(p)
    p.add_argument(
        "--rules-source",
        choices=("file", "redis"),
        default="file",
        help="Read the ruleset from the JSON file or the redis key (seeded from the file when empty).",
    )
    return p.parse_args(argv)


def main(argv: List[str] | None = None) -> int:
    args = parse_args(argv)
    settings = Settings.from_env().with_args(args)
    setup_logging(settings.log_level)
    log.info("rules worker starting...")

    try:
        with connect(settings) as b:
            if args.rules_source == "redis" and b.client is not None:
                seed_redis_rules(b.client, settings.rules_key, settings.rules_file)
                source = RedisRuleSource(b.client, settings.rules_key)
            else:
                source = JsonFileRuleSource(settings.rules_file)
            worker = RulesWorker(b.log, RuleStore(source), b.runs, b.ledger, settings)
            worker.run_forever()
    except RuleStoreUnavailable as e:
        log.error("rule store unavailable: %s", e)
        raise SystemExit(2)
    except StorageUnavailable as e:
        log.error("%s", e)
        raise SystemExit(1)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
