"""Celery app configuration for the game lifecycle worker."""

from __future__ import annotations

from celery import Celery, signals
from celery.schedules import crontab

from .config import settings
from .logging import logger

celery_config = {
    "task_serializer": "json",
    "accept_content": ["json"],
    "result_serializer": "json",
    "timezone": "UTC",
    "enable_utc": True,
    "task_track_started": True,
    "worker_prefetch_multiplier": 1,
    # Scheduled runs are batch-limited; anything longer is wedged
    "task_time_limit": 600,
    "task_soft_time_limit": 540,
    "task_default_queue": "game-lifecycle",
}

app = Celery(
    "game-lifecycle",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["game_lifecycle.jobs.tasks"],
)
app.conf.update(**celery_config)

_ROUTE = {"queue": "game-lifecycle", "routing_key": "game-lifecycle"}

# Cadence: sync every 2 min; finalize, reconcile and lock cleanup every
# 10 min; discovery hourly at :05 so it never lines up with finalize.
app.conf.beat_schedule = {
    "lifecycle-sync-every-2-min": {
        "task": "lifecycle_sync",
        "schedule": crontab(minute="*/2"),
        "options": _ROUTE,
    },
    "lifecycle-finalize-every-10-min": {
        "task": "lifecycle_finalize",
        "schedule": crontab(minute="*/10"),
        "options": _ROUTE,
    },
    "lifecycle-reconcile-every-10-min": {
        "task": "lifecycle_reconcile",
        "schedule": crontab(minute="5-59/10"),
        "options": _ROUTE,
    },
    "lifecycle-discover-hourly": {
        "task": "lifecycle_discover",
        "schedule": crontab(minute=5),
        "options": _ROUTE,
    },
    "job-lock-cleanup-every-10-min": {
        "task": "cleanup_expired_job_locks",
        "schedule": crontab(minute="*/10"),
        "options": _ROUTE,
    },
}


def release_locks_held_by_worker(worker_id: str) -> int:
    """Drop leases this worker still holds, so a restart doesn't wait out the TTL."""
    from .services.job_locks import JobLockManager

    manager = JobLockManager(worker_id=worker_id)
    released = 0
    try:
        for lock in manager.list_locks():
            if lock.locked_by == worker_id and manager.release(lock.job_name):
                released += 1
    except Exception as exc:
        logger.exception("worker_lock_release_failed", worker=worker_id, error=str(exc))
    return released


@signals.worker_ready.connect
def on_worker_ready(sender=None, **kwargs):
    """Called when the Celery worker is ready. Sweep expired leases."""
    from .services.job_locks import JobLockManager

    worker_name = getattr(sender, "hostname", None) or str(sender) if sender else "unknown"
    logger.info("celery_worker_ready", worker=worker_name, lock_holder=settings.worker_id)
    JobLockManager().cleanup_expired()


@signals.worker_shutting_down.connect
def on_worker_shutting_down(sender=None, **kwargs):
    # sender for this signal is the hostname string
    worker_name = str(sender) if sender else "unknown"
    released = release_locks_held_by_worker(settings.worker_id)
    logger.info("celery_worker_shutting_down", worker=worker_name, locks_released=released)


@signals.worker_process_shutdown.connect
def on_worker_process_shutdown(**kwargs):
    """Close the pool process's score feed client."""
    from .jobs.tasks import close_runner

    close_runner()
