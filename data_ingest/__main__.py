import argparse
import json
import random
import sys
from pathlib import Path
from typing import List

from pydantic import ValidationError

from common.connection import connect
from common.errors import StorageUnavailable
from common.logging import get_logger, setup_logging
from common.schemas import Incident
from shared.settings import Settings, add_runtime_args

from .producer import IncidentPublisher
from .synthetic import synthetic_incidents

log = get_logger("data_ingest")


def read_incident_file(path: Path) -> List[Incident]:
    """A JSON array of incidents, or one incident per line (JSONL). Invalid rows are skipped."""
    text = path.read_text(encoding="utf-8").strip()
    if text.startswith("["):
        rows = json.loads(text)
    else:
        rows = [json.loads(line) for line in text.splitlines() if line.strip()]
    out: List[Incident] = []
    for i, row in enumerate(rows):
        try:
            out.append(Incident.model_validate(row))
        except ValidationError as e:
            log.warning("skipping row %d of %s: %s", i, path, e.errors()[0].get("msg", e))
    return out


def main(argv=None):
    ap = argparse.ArgumentParser(prog="python -m data_ingest")
    add_runtime_args(ap)
    sub = ap.add_subparsers(dest="cmd", required=True)

    p_syn = sub.add_parser("synthetic", help="Publish a batch of synthetic OT incidents")
    p_syn.add_argument("-n", "--incidents", type=int, default=5)
    p_syn.add_argument("--seed", type=int, default=None)

    p_file = sub.add_parser("file", help="Publish incidents from a JSON/JSONL file")
    p_file.add_argument("path", type=Path)

    args = ap.parse_args(argv)
    settings = Settings.from_env().with_args(args)
    setup_logging(settings.log_level)

    if args.cmd == "synthetic":
        incidents = synthetic_incidents(args.incidents, rng=random.Random(args.seed))
    else:
        try:
            incidents = read_incident_file(args.path)
        except (OSError, ValueError) as e:
            log.error("cannot read %s: %s", args.path, e)
            return 2

    try:
        with connect(settings) as b:
            publisher = IncidentPublisher(b.log, b.incidents, b.runs, settings.events_stream)
            for inc in incidents:
                publisher.publish(inc)
    except StorageUnavailable as e:
        log.error("%s", e)
        return 1
    log.info("published %d incident(s)", len(incidents))
    return 0


if __name__ == "__main__":
    sys.exit(main())
