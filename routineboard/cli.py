from __future__ import annotations

import argparse
import json
import sys

from .config import get_settings
from .db import Base, SessionLocal, engine
from .engine import RecurrenceBatchError, run_schedule_pass
from .logging_setup import setup_logging
from .utils.time_utils import now_utc


def _run_recurrence(timeout: float | None) -> int:
    Base.metadata.create_all(bind=engine)
    with SessionLocal() as db:
        try:
            summary = run_schedule_pass(db, now=now_utc(), timeout_seconds=timeout, trigger="cli")
        except RecurrenceBatchError as e:
            print(json.dumps({"error": str(e)}))
            return 1
    print(json.dumps(summary.as_dict()))
    return 0


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(prog="routineboard")
    sub = parser.add_subparsers(dest="command", required=True)

    p_run = sub.add_parser(
        "run-recurrence",
        help="Run one schedule-mode recurrence pass and print a JSON summary.",
    )
    p_run.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="Stop between tasks after this many seconds (default: from settings).",
    )

    sub.add_parser("serve", help="Start the HTTP API server.")
    sub.add_parser("init-db", help="Create database tables.")

    args = parser.parse_args(argv)
    settings = get_settings()

    if args.command == "run-recurrence":
        setup_logging(level=settings.logging.level, log_dir=settings.logging.directory)
        timeout = args.timeout
        if timeout is None and settings.recurrence.batch_timeout_seconds > 0:
            timeout = float(settings.recurrence.batch_timeout_seconds)
        sys.exit(_run_recurrence(timeout))

    if args.command == "serve":
        from .run import main as serve

        serve()
        return

    if args.command == "init-db":
        Base.metadata.create_all(bind=engine)
        print("ok")
        return

    parser.print_help()
    sys.exit(2)


if __name__ == "__main__":
    main()
