"""Run a named lifecycle job under its job lock.

Shared by the HTTP trigger, the Celery tasks and the CLI so all three
report results in the same JSON shape:

    {"success": bool, "job": str, "skipped": bool, "duration_ms": int,
     "result": {...}, "reason"?: str, "lock_expires"?: str,
     "lock_degraded"?: bool, "error"?: str}

Expired leases are swept before every run. ``full`` runs each stage under
its own lock and skips only the stages that are already running elsewhere.
``backfill`` is operator-triggered only and holds its lock for an hour.
"""

from __future__ import annotations

import time
from datetime import timedelta
from typing import Any, Callable, ContextManager, Iterable

from sqlalchemy.orm import Session

from ..config import settings
from ..db import get_session
from ..exceptions import UnknownJobError
from ..logging import logger
from ..utils.datetime_utils import Clock, now_utc
from .job_locks import DEFAULT_LOCK_TTL, JobLockManager, LockDegraded, LockRejected
from .lifecycle_jobs import (
    ScoreFeed,
    backfill_games,
    discover_games,
    finalize_stuck_games,
    reconcile,
    sync_games,
)

LIFECYCLE_JOBS = ("discover", "sync", "finalize", "reconcile", "full")
FULL_SEQUENCE = ("discover", "sync", "finalize", "reconcile")

SessionFactory = Callable[[], ContextManager[Session]]
JobBody = Callable[[Session], dict[str, Any]]


def _default_feed() -> ScoreFeed:
    from ..providers import ScoreFeedClient

    return ScoreFeedClient()


def _run_stage(job: str, session: Session, feed: ScoreFeed, clock: Clock) -> dict[str, Any]:
    now = clock()
    if job == "discover":
        return discover_games(session, feed, now=now).to_dict()
    if job == "sync":
        return sync_games(session, feed, now=now).to_dict()
    if job == "finalize":
        return finalize_stuck_games(session, feed, now=now).to_dict()
    if job == "reconcile":
        return reconcile(session, now=now)
    raise UnknownJobError(job, LIFECYCLE_JOBS)


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


class LifecycleRunner:
    def __init__(
        self,
        *,
        session_factory: SessionFactory = get_session,
        feed_factory: Callable[[], ScoreFeed] = _default_feed,
        lock_manager: JobLockManager | None = None,
        clock: Clock = now_utc,
    ) -> None:
        self.session_factory = session_factory
        self.feed_factory = feed_factory
        self.locks = lock_manager or JobLockManager(session_factory=session_factory, clock=clock)
        self.clock = clock
        self._feed: ScoreFeed | None = None

    @property
    def feed(self) -> ScoreFeed:
        if self._feed is None:
            self._feed = self.feed_factory()
        return self._feed

    def close(self) -> None:
        """Close the score feed's HTTP client if this runner opened one."""
        feed, self._feed = self._feed, None
        close = getattr(feed, "close", None)
        if close is not None:
            close()

    def __enter__(self) -> LifecycleRunner:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _stage_body(self, job: str) -> JobBody:
        return lambda session: _run_stage(job, session, self.feed, self.clock)

    def _run_locked(
        self,
        job: str,
        body: JobBody,
        skip_lock: bool,
        ttl: timedelta = DEFAULT_LOCK_TTL,
    ) -> dict[str, Any]:
        started = time.monotonic()
        if skip_lock:
            with self.session_factory() as session:
                result = body(session)
            return {
                "success": bool(result.get("success", True)),
                "job": job,
                "skipped": False,
                "duration_ms": _elapsed_ms(started),
                "result": result,
            }

        with self.locks.locked(job, ttl) as lock:
            if isinstance(lock, LockRejected):
                logger.info("lifecycle_job_skipped_locked", job=job, holder=lock.holder)
                return {
                    "success": True,
                    "job": job,
                    "skipped": True,
                    "reason": f"Job already running (locked by {lock.holder})",
                    "lock_expires": lock.expires_at.isoformat() if lock.expires_at else None,
                    "duration_ms": _elapsed_ms(started),
                    "result": None,
                }
            with self.session_factory() as session:
                result = body(session)

        report: dict[str, Any] = {
            "success": bool(result.get("success", True)),
            "job": job,
            "skipped": False,
            "duration_ms": _elapsed_ms(started),
            "result": result,
        }
        if isinstance(lock, LockDegraded):
            report["lock_degraded"] = True
            report["reason"] = f"lock unavailable: {lock.reason}"
        return report

    def _guarded(self, job: str, skip_lock: bool, execute: Callable[[], dict[str, Any]]) -> dict[str, Any]:
        cleaned = self.locks.cleanup_expired()
        logger.info("lifecycle_job_start", job=job, skip_lock=skip_lock, expired_locks_cleaned=cleaned)
        started = time.monotonic()
        try:
            report = execute()
        except Exception as exc:
            logger.exception("lifecycle_job_failed", job=job, error=str(exc))
            return {
                "success": False,
                "job": job,
                "skipped": False,
                "error": str(exc),
                "duration_ms": _elapsed_ms(started),
                "result": None,
            }

        logger.info(
            "lifecycle_job_complete",
            job=job,
            success=report["success"],
            skipped=report["skipped"],
            duration_ms=report["duration_ms"],
        )
        return report

    def run(self, job: str, *, skip_lock: bool = False) -> dict[str, Any]:
        """Run ``job`` and return a JSON-ready report.

        Raises ``UnknownJobError`` for names outside ``LIFECYCLE_JOBS``. Job
        failures are caught and reported with ``success: false``.
        """
        if job not in LIFECYCLE_JOBS:
            raise UnknownJobError(job, LIFECYCLE_JOBS)

        if job != "full":
            return self._guarded(
                job, skip_lock, lambda: self._run_locked(job, self._stage_body(job), skip_lock)
            )

        def run_full() -> dict[str, Any]:
            started = time.monotonic()
            stages = {
                stage: self._run_locked(stage, self._stage_body(stage), skip_lock)
                for stage in FULL_SEQUENCE
            }
            return {
                "success": all(stage["success"] for stage in stages.values()),
                "job": "full",
                "skipped": False,
                "skipped_stages": [name for name, stage in stages.items() if stage["skipped"]],
                "duration_ms": _elapsed_ms(started),
                "result": stages,
            }

        return self._guarded(job, skip_lock, run_full)

    def run_backfill(
        self,
        *,
        days: int | None = None,
        leagues: Iterable[str] | None = None,
        skip_lock: bool = False,
    ) -> dict[str, Any]:
        """Re-ingest the last ``days`` days under the ``backfill`` lock.

        Same report shape as ``run``. A held lock yields ``skipped: true``.
        """
        cfg = settings.lifecycle_config
        days = cfg.backfill_days if days is None else days
        ttl = timedelta(minutes=cfg.backfill_lock_ttl_minutes)
        league_list = list(leagues) if leagues else None

        def body(session: Session) -> dict[str, Any]:
            return backfill_games(session, self.feed, days=days, leagues=league_list, now=self.clock())

        return self._guarded(
            "backfill", skip_lock, lambda: self._run_locked("backfill", body, skip_lock, ttl)
        )
