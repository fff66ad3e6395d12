"""
Worker process entrypoint.

    python -m dbportal.worker_main run      # claim and execute jobs until SIGTERM/SIGINT
    python -m dbportal.worker_main sweep    # one reconciliation pass, then exit
    python -m dbportal.worker_main health   # readiness probe; exit code 0/1
"""

import argparse
import json
import logging
import signal
import sys
import threading
from collections.abc import Sequence
from types import FrameType

import sentry_sdk

from dbportal.core.audit import configure_logging
from dbportal.core.config import settings
from dbportal.core.db import engine, init_db
from dbportal.core.health import readiness_check
from dbportal.core.redis_client import create_redis
from dbportal.pipeline import ExecutionPipeline

_logger = logging.getLogger(__name__)


def _init_sentry() -> None:
    if settings.SENTRY_DSN and settings.ENVIRONMENT != "local":
        sentry_sdk.init(dsn=str(settings.SENTRY_DSN), enable_tracing=True)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="dbportal-worker", description="Execute approved database requests."
    )
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="run the worker pool until stopped")
    run.add_argument("--concurrency", type=int, default=None, help="worker slots")
    run.add_argument(
        "--no-maintenance", action="store_true", help="do not run the periodic sweep"
    )

    sub.add_parser("sweep", help="run one maintenance sweep and exit")
    sub.add_parser("health", help="check portal database and Redis, exit 0 when ready")
    return parser


def cmd_run(args: argparse.Namespace) -> int:
    init_db()
    pipeline = ExecutionPipeline.from_settings(engine, concurrency=args.concurrency)
    stop = threading.Event()

    def _on_signal(signum: int, _frame: FrameType | None) -> None:
        _logger.info("Received %s, shutting down", signal.Signals(signum).name)
        stop.set()

    signal.signal(signal.SIGTERM, _on_signal)
    signal.signal(signal.SIGINT, _on_signal)

    pipeline.start(maintenance=not args.no_maintenance)
    # Recover anything left behind by a previous process before waiting
    pipeline.run_maintenance()
    while not stop.wait(1.0):
        pass
    drained = pipeline.shutdown()
    return 0 if drained else 1


def cmd_sweep(_args: argparse.Namespace) -> int:
    init_db()
    pipeline = ExecutionPipeline.from_settings(engine)
    report = pipeline.run_maintenance()
    print(
        json.dumps(
            {
                "expired": len(report.expired),
                "reclaimed": len(report.reclaimed),
                "failed": len(report.failed),
                "jobs": pipeline.queue.counts(),
            }
        )
    )
    return 0


def cmd_health(_args: argparse.Namespace) -> int:
    redis_client = create_redis() if settings.lock_enabled_redis else None
    ok, failures = readiness_check(engine, redis_client)
    print(json.dumps({"ok": ok, "failures": failures}))
    return 0 if ok else 1


COMMANDS = {"run": cmd_run, "sweep": cmd_sweep, "health": cmd_health}


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(settings.LOG_LEVEL, json_format=settings.LOG_JSON)
    _init_sentry()
    return COMMANDS[args.command](args)


if __name__ == "__main__":
    sys.exit(main())
