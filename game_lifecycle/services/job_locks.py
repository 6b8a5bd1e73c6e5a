"""Lease-based job locks stored in ``job_locks``.

Prevents two scheduler invocations of the same named job from running at
once. A lock is a row valid only while ``now < expires_at``; anyone may
reclaim it after that.

Acquisition is a single conditional upsert:

    INSERT INTO job_locks ... ON CONFLICT (job_name)
    DO UPDATE SET ... WHERE job_locks.expires_at <= :now
    RETURNING locked_by

A live lease makes the UPDATE branch a no-op, so no row comes back and the
caller is rejected. An expired lease is overwritten in the same statement.
There is no window between "delete expired" and "write" for a second
worker to slip through.

If the lock table itself is unreachable the manager fails open and returns
``LockDegraded``: scheduled work keeps running (job bodies are idempotent
upserts) and the caller can still tell degradation apart from contention.
"""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, ContextManager, Iterator, TypeVar, Union

from sqlalchemy import delete, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..config import settings
from ..db import db_models, get_session
from ..logging import logger
from ..utils.datetime_utils import Clock, ensure_utc, now_utc
from ..utils.db_queries import dialect_insert

JOB_NAMES = ("discover", "sync", "finalize", "settle", "backfill", "reconcile")

DEFAULT_LOCK_TTL = timedelta(minutes=settings.lifecycle_config.lock_ttl_minutes)

T = TypeVar("T")


@dataclass(frozen=True)
class LockAcquired:
    job_name: str
    holder: str
    expires_at: datetime

    acquired = True
    fail_open = False


@dataclass(frozen=True)
class LockRejected:
    """A live lease is held by someone else; skip this run."""

    job_name: str
    holder: str | None
    expires_at: datetime | None

    acquired = False
    fail_open = False


@dataclass(frozen=True)
class LockDegraded:
    """The lock table could not be used; proceed without exclusion."""

    job_name: str
    reason: str

    acquired = True
    fail_open = True


LockResult = Union[LockAcquired, LockRejected, LockDegraded]


@dataclass(frozen=True)
class JobLockView:
    job_name: str
    locked_by: str | None
    locked_at: datetime
    expires_at: datetime
    meta: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_name": self.job_name,
            "locked_by": self.locked_by,
            "locked_at": self.locked_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
            "meta": self.meta,
        }


@dataclass
class LockedRun:
    """Outcome of ``JobLockManager.run``: either skipped or the job's result."""

    job_name: str
    skipped: bool
    lock: LockResult
    result: Any = None

    @property
    def reason(self) -> str | None:
        if isinstance(self.lock, LockRejected):
            return f"Job {self.job_name} is already running (locked by {self.lock.holder})"
        if isinstance(self.lock, LockDegraded):
            return f"lock unavailable, ran without exclusion: {self.lock.reason}"
        return None


class JobLockManager:
    """Acquire, extend and release named leases for this worker."""

    def __init__(
        self,
        session_factory: Callable[[], ContextManager[Session]] = get_session,
        worker_id: str | None = None,
        clock: Clock = now_utc,
    ) -> None:
        self._session_factory = session_factory
        self.worker_id = worker_id or settings.worker_id
        self._clock = clock

    def acquire(
        self,
        job_name: str,
        ttl: timedelta = DEFAULT_LOCK_TTL,
        meta: dict[str, Any] | None = None,
    ) -> LockResult:
        now = self._clock()
        expires_at = now + ttl
        lock_meta = {"started_at": now.isoformat(), **(meta or {})}

        try:
            with self._session_factory() as session:
                insert = dialect_insert(session)
                stmt = insert(db_models.JobLock).values(
                    job_name=job_name,
                    locked_at=now,
                    expires_at=expires_at,
                    locked_by=self.worker_id,
                    meta=lock_meta,
                )
                stmt = stmt.on_conflict_do_update(
                    index_elements=[db_models.JobLock.job_name],
                    set_={
                        "locked_at": stmt.excluded.locked_at,
                        "expires_at": stmt.excluded.expires_at,
                        "locked_by": stmt.excluded.locked_by,
                        "meta": stmt.excluded.meta,
                    },
                    where=db_models.JobLock.expires_at <= now,
                ).returning(db_models.JobLock.locked_by)
                won = session.execute(stmt).first()

                if won is not None and won.locked_by == self.worker_id:
                    logger.info(
                        "job_lock_acquired",
                        job=job_name,
                        holder=self.worker_id,
                        expires_at=expires_at.isoformat(),
                    )
                    return LockAcquired(job_name, self.worker_id, expires_at)

                existing = session.execute(
                    select(
                        db_models.JobLock.locked_by, db_models.JobLock.expires_at
                    ).where(db_models.JobLock.job_name == job_name)
                ).first()
        except SQLAlchemyError as exc:
            logger.error("job_lock_degraded", job=job_name, error=str(exc))
            return LockDegraded(job_name, reason=str(exc).splitlines()[0])

        holder = existing.locked_by if existing else None
        held_until = ensure_utc(existing.expires_at) if existing else None
        logger.info(
            "job_lock_rejected",
            job=job_name,
            holder=holder,
            expires_at=held_until.isoformat() if held_until else None,
        )
        return LockRejected(job_name, holder, held_until)

    def release(self, job_name: str) -> bool:
        """Delete the lock row unconditionally."""
        try:
            with self._session_factory() as session:
                session.execute(
                    delete(db_models.JobLock).where(db_models.JobLock.job_name == job_name)
                )
        except SQLAlchemyError as exc:
            logger.error("job_lock_release_failed", job=job_name, error=str(exc))
            return False
        logger.info("job_lock_released", job=job_name, holder=self.worker_id)
        return True

    def extend(self, job_name: str, extra_ttl: timedelta = DEFAULT_LOCK_TTL) -> bool:
        """Push ``expires_at`` to now + extra_ttl if this worker still holds the lease."""
        new_expires_at = self._clock() + extra_ttl
        try:
            with self._session_factory() as session:
                result = session.execute(
                    update(db_models.JobLock)
                    .where(
                        db_models.JobLock.job_name == job_name,
                        db_models.JobLock.locked_by == self.worker_id,
                    )
                    .values(expires_at=new_expires_at)
                    .execution_options(synchronize_session=False)
                )
                extended = (result.rowcount or 0) > 0
        except SQLAlchemyError as exc:
            logger.error("job_lock_extend_failed", job=job_name, error=str(exc))
            return False

        if extended:
            logger.info("job_lock_extended", job=job_name, expires_at=new_expires_at.isoformat())
        else:
            logger.warning("job_lock_extend_not_holder", job=job_name, worker=self.worker_id)
        return extended

    def list_locks(self) -> list[JobLockView]:
        with self._session_factory() as session:
            rows = session.execute(
                select(db_models.JobLock).order_by(db_models.JobLock.locked_at.desc())
            ).scalars().all()
            return [
                JobLockView(
                    job_name=row.job_name,
                    locked_by=row.locked_by,
                    locked_at=ensure_utc(row.locked_at),
                    expires_at=ensure_utc(row.expires_at),
                    meta=dict(row.meta or {}),
                )
                for row in rows
            ]

    def force_release(self, job_name: str) -> bool:
        """Admin override: drop a lease regardless of holder."""
        try:
            with self._session_factory() as session:
                result = session.execute(
                    delete(db_models.JobLock).where(db_models.JobLock.job_name == job_name)
                )
                removed = (result.rowcount or 0) > 0
        except SQLAlchemyError as exc:
            logger.error("job_lock_force_release_failed", job=job_name, error=str(exc))
            return False
        logger.warning("job_lock_force_released", job=job_name, removed=removed)
        return removed

    def cleanup_expired(self) -> int:
        """Delete every lease whose expiry has passed. Returns rows removed."""
        now = self._clock()
        try:
            with self._session_factory() as session:
                result = session.execute(
                    delete(db_models.JobLock).where(db_models.JobLock.expires_at <= now)
                )
                count = result.rowcount or 0
        except SQLAlchemyError as exc:
            logger.error("job_lock_cleanup_failed", error=str(exc))
            return 0
        if count:
            logger.info("job_locks_expired_cleaned", count=count)
        return count

    @contextmanager
    def locked(
        self, job_name: str, ttl: timedelta = DEFAULT_LOCK_TTL
    ) -> Iterator[LockResult]:
        """Hold ``job_name`` for the duration of the block.

        Yields the acquisition result; the caller checks ``.acquired``. A
        lease this worker actually wrote is always released on exit, on
        both the success and the error path.
        """
        result = self.acquire(job_name, ttl)
        try:
            yield result
        finally:
            if isinstance(result, LockAcquired):
                self.release(job_name)

    def run(
        self,
        job_name: str,
        job_fn: Callable[[], T],
        ttl: timedelta = DEFAULT_LOCK_TTL,
    ) -> LockedRun:
        """Run ``job_fn`` under the lock, or report that it was skipped."""
        with self.locked(job_name, ttl) as lock:
            if not lock.acquired:
                return LockedRun(job_name=job_name, skipped=True, lock=lock)
            return LockedRun(job_name=job_name, skipped=False, lock=lock, result=job_fn())
