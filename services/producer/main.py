from __future__ import annotations

import argparse
import random
import time
from typing import List

from common.connection import connect
from common.errors import StorageUnavailable
from common.logging import get_logger, setup_logging
from data_ingest.producer import IncidentPublisher
from data_ingest.synthetic import synthetic_incidents
from shared.settings import Settings, add_runtime_args

log = get_logger("data_ingest")


def main(argv: List[str] | None = None) -> int:
    p = argparse.ArgumentParser(prog="python -m services.producer.main", description="Publish synthetic OT incidents to the event log.")
    add_runtime_args(p)
    p.add_argument("-n", "--incidents", type=int, default=3, help="Incidents per batch")
    p.add_argument("--interval", type=float, default=5.0, help="Seconds between batches")
    p.add_argument("--once", action="store_true", help="Publish a single batch and exit")
    p.add_argument("--seed", type=int, default=None, help="RNG seed for reproducible batches")
    args = p.parse_args(argv)

    settings = Settings.from_env().with_args(args)
    setup_logging(settings.log_level)
    rng = random.Random(args.seed)

    try:
        with connect(settings) as b:
            publisher = IncidentPublisher(b.log, b.incidents, b.runs, settings.events_stream)
            while True:
                for inc in synthetic_incidents(args.incidents, rng=rng):
                    publisher.publish(inc)
                if args.once:
                    break
                time.sleep(args.interval)
    except StorageUnavailable as e:
        log.error("%s", e)
        raise SystemExit(1)
    except KeyboardInterrupt:
        log.info("producer stopped")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
