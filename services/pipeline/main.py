"""
Single-process demo: producer, rules worker and action worker sharing one
set of backends, polled round-robin. Prints every Agent Run at the end.
"""
from __future__ import annotations

import argparse
import random
from dataclasses import replace
from typing import List

from action_worker.worker import ActionExecutor, ActionWorker
from common.connection import connect
from common.errors import RuleStoreUnavailable, StorageUnavailable
from common.logging import get_logger, setup_logging
from data_ingest.producer import IncidentPublisher
from data_ingest.synthetic import synthetic_incidents
from rules_engine.rule_store import JsonFileRuleSource, RuleStore
from rules_engine.worker import RulesWorker
from shared.settings import Settings, add_runtime_args

log = get_logger("pipeline")


def main(argv: List[str] | None = None) -> int:
    p = argparse.ArgumentParser(prog="python -m services.pipeline.main", description="Run the whole pipeline in one process.")
    add_runtime_args(p)
    p.add_argument("-n", "--incidents", type=int, default=5)
    p.add_argument("--seed", type=int, default=7)
    args = p.parse_args(argv)
    if args.backend is None:
        args.backend = "memory"

    settings = Settings.from_env().with_args(args)
    # start at the beginning of the streams so nothing published before the groups exist is missed
    settings = replace(settings, group_start_id="0", block_ms=0)
    setup_logging(settings.log_level)

    try:
        with connect(settings) as b:
            rules = RulesWorker(b.log, RuleStore(JsonFileRuleSource(settings.rules_file)), b.runs, b.ledger, settings)
            actions = ActionWorker(b.log, b.runs, b.incidents, ActionExecutor.from_settings(settings), b.ledger, settings)
            rules.start()
            actions.consumer.start()

            publisher = IncidentPublisher(b.log, b.incidents, b.runs, settings.events_stream)
            incidents = synthetic_incidents(args.incidents, rng=random.Random(args.seed))
            for inc in incidents:
                publisher.publish(inc)

            while rules.poll_once() + actions.poll_once():
                pass

            for inc in incidents:
                run = b.runs.get(inc.run_id)
                if run is not None:
                    print(run.to_json())
    except RuleStoreUnavailable as e:
        log.error("rule store unavailable: %s", e)
        raise SystemExit(2)
    except StorageUnavailable as e:
        log.error("%s", e)
        raise SystemExit(1)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
