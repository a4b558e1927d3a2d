from __future__ import annotations

import argparse
import json
import logging
from typing import Sequence

from .cycling import exchange_authorization_code, sync_cycling_weekly
from .db import get_cursor, init_schema
from .jobs import run_daily_rollup
from .main import configure_logging
from .scheduler import run_forever

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="gym_attendance",
        description="Maintenance commands for the gym attendance store.",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init-db", help="Create tables and indexes if missing")
    sub.add_parser("run-job", help="Run the daily rollup job once")

    p_schedule = sub.add_parser("schedule", help="Run the daily rollup job on a schedule")
    p_schedule.add_argument("--poll-seconds", type=int, default=30)

    p_connect = sub.add_parser("strava-connect", help="Exchange a Strava OAuth code for tokens")
    p_connect.add_argument("--code", required=True)

    p_sync = sub.add_parser("strava-sync", help="Sync weekly cycling totals")
    p_sync.add_argument("--weeks-back", type=int, default=4)
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging()

    if args.command == "schedule":
        run_forever(poll_seconds=args.poll_seconds)
        return 0
    if args.command == "run-job":
        print(json.dumps(run_daily_rollup(), indent=2))
        return 0

    with get_cursor() as cursor:
        if args.command == "init-db":
            init_schema(cursor)
            logger.info("Schema ready")
        elif args.command == "strava-connect":
            athlete_id = exchange_authorization_code(cursor, args.code)
            if athlete_id is None:
                return 1
            print(f"Strava connected for athlete {athlete_id}")
        elif args.command == "strava-sync":
            count = sync_cycling_weekly(cursor, weeks_back=args.weeks_back)
            print(f"Synced {count} weeks")
    return 0
