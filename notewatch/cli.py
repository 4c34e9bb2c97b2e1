"""Command-line entry point: ``notewatch worker|scan-now|check|stats|cleanup-checks``."""

from __future__ import annotations

import argparse
import asyncio
import json
import signal
import sys
from typing import List, Optional

import structlog

from notewatch.config import get_settings
from notewatch.db.session import init_schema
from notewatch.observability import configure_logging
from notewatch.payloads import QUEUE_NAMES, SCAN_QUEUE, CheckPayload
from notewatch.service import Services, bootstrap, build_services, request_check, trigger_scan

logger = structlog.get_logger(__name__)


async def _run_worker(services: Services) -> None:
    bootstrap(services)
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:  # pragma: no cover - Windows event loops
            pass
    await services.pool.start()
    try:
        await stop.wait()
    finally:
        await services.pool.stop()


def cmd_worker(services: Services, args: argparse.Namespace) -> int:
    asyncio.run(_run_worker(services))
    return 0


def cmd_scan_now(services: Services, args: argparse.Namespace) -> int:
    job = trigger_scan(services, force=args.force)
    print(json.dumps({"job_id": job.id, "state": job.state}))
    if args.run:
        finished = services.pool.run_next(SCAN_QUEUE)
        print(json.dumps(finished.result if finished else None, default=str))
    return 0


def cmd_check(services: Services, args: argparse.Namespace) -> int:
    if args.run:
        payload = CheckPayload(encounter_id=args.encounter_id, force=args.force, triggered_by="cli")
        result = services.check_job.run(payload)
        print(json.dumps(result, default=str))
        return 0
    job = request_check(services, args.encounter_id, force=args.force)
    print(json.dumps({"job_id": job.id, "state": job.state}))
    return 0


def cmd_stats(services: Services, args: argparse.Namespace) -> int:
    stats = services.runtime.all_stats(QUEUE_NAMES)
    stats["vitals"] = services.records.vitals_stats()
    print(json.dumps(stats, indent=2))
    return 0


def cmd_cleanup_checks(services: Services, args: argparse.Namespace) -> int:
    deleted = services.records.cleanup_note_checks(days_old=args.days)
    logger.info("note_checks_cleaned", deleted=deleted, days_old=args.days)
    print(json.dumps({"deleted": deleted}))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="notewatch", description="Clinical note and vital-signs job runner.")
    sub = parser.add_subparsers(dest="command", required=True)

    worker = sub.add_parser("worker", help="Reset the queues and run the worker pool until interrupted")
    worker.set_defaults(func=cmd_worker)

    scan = sub.add_parser("scan-now", help="Queue an immediate scan for incomplete notes")
    scan.add_argument("--force", action="store_true", help="Re-check notes even when unchanged")
    scan.add_argument("--run", action="store_true", help="Run the scan in this process")
    scan.set_defaults(func=cmd_scan_now)

    check = sub.add_parser("check", help="Queue a note check for one encounter")
    check.add_argument("encounter_id")
    check.add_argument("--force", action="store_true", help="Analyse even if the note is unchanged")
    check.add_argument("--run", action="store_true", help="Run the check in this process instead of queueing it")
    check.set_defaults(func=cmd_check)

    stats = sub.add_parser("stats", help="Print queue and vital-signs counters")
    stats.set_defaults(func=cmd_stats)

    cleanup = sub.add_parser("cleanup-checks", help="Delete note check records older than --days")
    cleanup.add_argument("--days", type=int, default=30, help="Age in days after which records are removed")
    cleanup.set_defaults(func=cmd_cleanup_checks)
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    settings = get_settings()
    configure_logging(settings.log_level)
    services = build_services(settings)
    init_schema(services.engine)
    try:
        return args.func(services, args)
    except Exception:
        logger.exception("command_failed", command=args.command)
        return 1


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
