"""Operator CLI for the lifecycle subsystem.

    game-lifecycle health
    game-lifecycle repair release-stale-locks
    game-lifecycle repair enqueue-orphans --limit 50
    game-lifecycle locks [--release JOB]
    game-lifecycle run sync [--skip-lock]
    game-lifecycle backfill --days 7 [--league NFL]
    game-lifecycle purge-placeholders [--apply]

Output is JSON on stdout. ``health`` exits 2 when the aggregate status is
critical, 1 on warning, so it can gate cron alerts directly.
"""

from __future__ import annotations

import argparse
import json
import sys
from typing import Any, Sequence

from .db import get_session
from .services import health as health_service
from .services.job_locks import JOB_NAMES, JobLockManager
from .services.lifecycle_jobs import purge_placeholder_games
from .services.runner import LIFECYCLE_JOBS, LifecycleRunner

EXIT_CODES = {"healthy": 0, "warning": 1, "critical": 2}


def _emit(payload: Any) -> None:
    print(json.dumps(payload, indent=2, default=str))


def _cmd_health(args: argparse.Namespace) -> int:
    with get_session() as session:
        report = health_service.run_health_checks(session)
    _emit(report.to_dict())
    return EXIT_CODES[report.status]


def _cmd_repair(args: argparse.Namespace) -> int:
    with get_session() as session:
        if args.action == "release-stale-locks":
            result: Any = {"released_stale_locks": health_service.release_stale_processing_locks(session)}
        else:
            result = health_service.enqueue_orphaned_final_games(session, limit=args.limit)
    _emit(result)
    return 0


def _cmd_locks(args: argparse.Namespace) -> int:
    manager = JobLockManager()
    if args.release:
        _emit({"job_name": args.release, "released": manager.force_release(args.release)})
        return 0
    _emit([view.to_dict() for view in manager.list_locks()])
    return 0


def _cmd_run(args: argparse.Namespace) -> int:
    runner = LifecycleRunner()
    try:
        report = runner.run(args.job, skip_lock=args.skip_lock)
    finally:
        runner.close()
    _emit(report)
    return 0 if report["success"] else 1


def _cmd_backfill(args: argparse.Namespace) -> int:
    runner = LifecycleRunner()
    try:
        report = runner.run_backfill(days=args.days, leagues=args.league, skip_lock=args.skip_lock)
    finally:
        runner.close()
    _emit(report)
    return 0 if report["success"] and not report["skipped"] else 1


def _cmd_purge(args: argparse.Namespace) -> int:
    with get_session() as session:
        _emit(purge_placeholder_games(session, dry_run=not args.apply))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="game-lifecycle", description="Game lifecycle operations")
    sub = parser.add_subparsers(dest="command", required=True)

    health = sub.add_parser("health", help="Run the read-only health checks")
    health.set_defaults(func=_cmd_health)

    repair = sub.add_parser("repair", help="Run a repair action")
    repair.add_argument("action", choices=["release-stale-locks", "enqueue-orphans"])
    repair.add_argument("--limit", type=int, default=100, help="Max orphaned finals to enqueue")
    repair.set_defaults(func=_cmd_repair)

    locks = sub.add_parser("locks", help="List job locks, or force-release one")
    locks.add_argument("--release", choices=JOB_NAMES, help="Job lock to delete")
    locks.set_defaults(func=_cmd_locks)

    run = sub.add_parser("run", help="Run a lifecycle job under its lock")
    run.add_argument("job", choices=LIFECYCLE_JOBS)
    run.add_argument("--skip-lock", action="store_true", help="Run without acquiring the job lock")
    run.set_defaults(func=_cmd_run)

    backfill = sub.add_parser("backfill", help="Re-ingest the last N days, then finalize")
    backfill.add_argument("--days", type=int, default=None, help="Days to look back (default from config)")
    backfill.add_argument("--league", action="append", help="League to include; repeatable (default: all enabled)")
    backfill.add_argument("--skip-lock", action="store_true", help="Run without acquiring the backfill lock")
    backfill.set_defaults(func=_cmd_backfill)

    purge = sub.add_parser("purge-placeholders", help="Delete placeholder-team games")
    purge.add_argument("--apply", action="store_true", help="Delete (default is a dry run)")
    purge.set_defaults(func=_cmd_purge)

    return parser


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
