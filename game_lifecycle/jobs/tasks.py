"""Celery tasks for the scheduled lifecycle jobs.

Every task goes through ``LifecycleRunner`` so the job lock is acquired
before the body runs and released in ``finally``. A rejected lock means
another worker is mid-run and the task returns a skipped report.
"""

from __future__ import annotations

from functools import lru_cache

from celery import shared_task

from ..logging import logger
from ..services.job_locks import JobLockManager
from ..services.runner import LifecycleRunner


@lru_cache(maxsize=1)
def get_runner() -> LifecycleRunner:
    """Return this worker process's runner.

    The runner's score feed client, with its connection pool and response
    cache, is reused by every task the process runs.
    """
    return LifecycleRunner()


def close_runner() -> None:
    """Close the process runner's feed client, if a task ever built one."""
    if get_runner.cache_info().currsize:
        get_runner().close()
    get_runner.cache_clear()


def _run(job: str) -> dict:
    report = get_runner().run(job)
    if report.get("skipped"):
        logger.debug(f"{job}_task_skipped_locked", reason=report.get("reason"))
    return report


@shared_task(name="lifecycle_discover")
def lifecycle_discover_task() -> dict:
    """Ingest the rolling discovery window (hourly)."""
    return _run("discover")


@shared_task(name="lifecycle_sync")
def lifecycle_sync_task() -> dict:
    """Refresh live and same-day games (every 2 min)."""
    return _run("sync")


@shared_task(name="lifecycle_finalize")
def lifecycle_finalize_task() -> dict:
    """Finalize games stuck past the threshold (every 10 min)."""
    return _run("finalize")


@shared_task(name="lifecycle_reconcile")
def lifecycle_reconcile_task() -> dict:
    """Release stale PROCESSING rows and enqueue orphaned finals (every 10 min)."""
    return _run("reconcile")


@shared_task(name="lifecycle_full")
def lifecycle_full_task() -> dict:
    """Run discover, sync, finalize and reconcile in order (on demand)."""
    return _run("full")


@shared_task(name="lifecycle_backfill")
def lifecycle_backfill_task(days: int | None = None) -> dict:
    """Re-ingest the last ``days`` days and finalize what they left (on demand)."""
    return get_runner().run_backfill(days=days)


@shared_task(name="cleanup_expired_job_locks")
def cleanup_expired_job_locks_task() -> dict:
    """Delete expired job leases (every 10 min)."""
    removed = JobLockManager().cleanup_expired()
    return {"removed": removed}
