"""Settlement queue primitives.

The queue is the contract between the lifecycle jobs (producers) and the
settlement worker (consumer). Rows move ``QUEUED → PROCESSING → DONE`` or
``→ FAILED``; failed rows are retried on a backoff schedule until
``MAX_ATTEMPTS`` is reached, after which they wait for manual intervention.
Cancelled games are written straight to ``SKIPPED``.

Functions taking a ``session`` never commit; the caller owns the
transaction. ``drain_queue`` is the only entry point that manages its own
sessions, one per item.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, ContextManager, Iterable, Sequence

from sqlalchemy import func, or_, select, update
from sqlalchemy.orm import Session

from ..db import db_models, get_session
from ..logging import logger
from ..utils.datetime_utils import Clock, ensure_utc, now_utc
from ..utils.db_queries import dialect_insert

MAX_ATTEMPTS = 5
RETRY_BACKOFF_MINUTES = (1, 5, 30, 120, 720)

SettlementHandler = Callable[[Session, db_models.SettlementQueueEntry], None]


def backoff_for_attempt(attempts: int) -> timedelta:
    """Delay before the next try after ``attempts`` failures (1-based)."""
    index = min(max(attempts, 1), len(RETRY_BACKOFF_MINUTES)) - 1
    return timedelta(minutes=RETRY_BACKOFF_MINUTES[index])


def enqueue_settlement(
    session: Session,
    game: db_models.SportsGame,
    outcome: str,
    *,
    reason: str | None = None,
    now: datetime | None = None,
) -> bool:
    """Insert a queue row for ``game`` unless one already exists.

    Returns True when a row was written. ``CANCELED`` outcomes are stored as
    ``SKIPPED`` so the worker closes the market without paying out.
    """
    now = now or now_utc()
    status = (
        db_models.QueueStatus.skipped.value
        if outcome == db_models.SettlementOutcome.canceled.value
        else db_models.QueueStatus.queued.value
    )
    insert = dialect_insert(session)
    stmt = (
        insert(db_models.SettlementQueueEntry)
        .values(
            game_id=game.id,
            league=game.league,
            external_game_id=game.external_game_id,
            provider=game.provider,
            status=status,
            outcome=outcome,
            reason=reason,
            attempts=0,
            next_attempt_at=now,
            created_at=now,
            updated_at=now,
        )
        .on_conflict_do_nothing(index_elements=[db_models.SettlementQueueEntry.game_id])
        .returning(db_models.SettlementQueueEntry.id)
    )
    inserted_id = session.execute(stmt).scalar_one_or_none()
    if inserted_id is None:
        logger.debug("settlement_enqueue_exists", game_id=game.id)
        return False

    logger.info(
        "settlement_enqueued",
        queue_id=inserted_id,
        game_id=game.id,
        league=game.league,
        external_game_id=game.external_game_id,
        status=status,
        outcome=outcome,
        reason=reason,
    )
    return True


def correct_settlement_outcome(
    session: Session,
    game_id: int,
    outcome: str,
    *,
    now: datetime | None = None,
) -> bool:
    """Rewrite a pending row's outcome after the provider corrected a score.

    Only QUEUED and FAILED rows are rewritten. A PROCESSING or DONE row was
    settled on the old outcome; it is left as is and logged as an error for
    manual review. Returns True when the row now carries ``outcome``.
    """
    now = now or now_utc()
    entry = db_models.SettlementQueueEntry
    item = session.execute(select(entry).where(entry.game_id == game_id)).scalar_one_or_none()
    if item is None:
        return False

    pending = (db_models.QueueStatus.queued.value, db_models.QueueStatus.failed.value)
    if item.status not in pending:
        logger.error(
            "settlement_correction_after_settlement",
            queue_id=item.id,
            game_id=game_id,
            status=item.status,
            settled_outcome=item.outcome,
            corrected_outcome=outcome,
        )
        return False

    if item.outcome != outcome:
        logger.warning(
            "settlement_outcome_corrected",
            queue_id=item.id,
            game_id=game_id,
            previous_outcome=item.outcome,
            outcome=outcome,
        )
        item.outcome = outcome
        item.reason = "correction"
        item.updated_at = now
        session.flush()
    return True


def _eligible_filter(now: datetime):
    queued = db_models.QueueStatus.queued.value
    failed = db_models.QueueStatus.failed.value
    entry = db_models.SettlementQueueEntry
    return (
        entry.locked_by.is_(None),
        or_(
            (entry.status == queued)
            & (entry.next_attempt_at.is_(None) | (entry.next_attempt_at <= now)),
            (entry.status == failed)
            & (entry.attempts < MAX_ATTEMPTS)
            & entry.next_attempt_at.isnot(None)
            & (entry.next_attempt_at <= now),
        ),
    )


def lock_next_item(
    session: Session,
    worker_id: str,
    now: datetime | None = None,
) -> db_models.SettlementQueueEntry | None:
    """Claim the oldest eligible row for ``worker_id``.

    Eligible rows are QUEUED (or FAILED and due for retry) with no holder.
    The claim is a conditional UPDATE on the candidate's id that also
    re-checks "no holder", so when two workers pick the same candidate only
    one sees ``rowcount == 1``.
    """
    now = now or now_utc()
    entry = db_models.SettlementQueueEntry

    candidate = session.execute(
        select(entry.id, entry.status)
        .where(*_eligible_filter(now))
        .order_by(entry.created_at.asc(), entry.id.asc())
        .limit(1)
        .with_for_update(skip_locked=True)
    ).first()
    if candidate is None:
        return None

    result = session.execute(
        update(entry)
        .where(
            entry.id == candidate.id,
            entry.status == candidate.status,
            entry.locked_by.is_(None),
        )
        .values(
            status=db_models.QueueStatus.processing.value,
            locked_by=worker_id,
            locked_at=now,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        logger.info("settlement_lock_lost_race", queue_id=candidate.id, worker=worker_id)
        return None

    item = session.get(entry, candidate.id, populate_existing=True)
    logger.info(
        "settlement_item_locked",
        queue_id=candidate.id,
        game_id=item.game_id if item else None,
        worker=worker_id,
        previous_status=candidate.status,
    )
    return item


def mark_done(session: Session, item_id: int, now: datetime | None = None) -> bool:
    now = now or now_utc()
    entry = db_models.SettlementQueueEntry
    result = session.execute(
        update(entry)
        .where(entry.id == item_id)
        .values(
            status=db_models.QueueStatus.done.value,
            locked_by=None,
            locked_at=None,
            last_error=None,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    done = (result.rowcount or 0) > 0
    if done:
        logger.info("settlement_item_done", queue_id=item_id)
    else:
        logger.warning("settlement_item_missing", queue_id=item_id, action="mark_done")
    return done


def mark_failed(
    session: Session,
    item_id: int,
    error: str,
    now: datetime | None = None,
) -> bool:
    """Record a failed processing pass and schedule the next retry.

    ``attempts`` is incremented; the retry delay follows
    ``RETRY_BACKOFF_MINUTES``. Once ``MAX_ATTEMPTS`` is reached the row is no
    longer picked up by ``lock_next_item``.
    """
    now = now or now_utc()
    item = session.get(db_models.SettlementQueueEntry, item_id)
    if item is None:
        logger.warning("settlement_item_missing", queue_id=item_id, action="mark_failed")
        return False

    item.attempts = (item.attempts or 0) + 1
    item.status = db_models.QueueStatus.failed.value
    item.last_error = error
    item.next_attempt_at = now + backoff_for_attempt(item.attempts)
    item.locked_by = None
    item.locked_at = None
    item.updated_at = now
    session.flush()

    log = logger.error if item.attempts >= MAX_ATTEMPTS else logger.warning
    log(
        "settlement_item_failed",
        queue_id=item_id,
        game_id=item.game_id,
        attempts=item.attempts,
        next_attempt_at=item.next_attempt_at.isoformat(),
        needs_manual=item.attempts >= MAX_ATTEMPTS,
        error=error,
    )
    return True


def mark_game_settled(session: Session, game_id: int, now: datetime | None = None) -> bool:
    """Stamp ``settled_at`` once. Returns False if it was already set."""
    now = now or now_utc()
    game = db_models.SportsGame
    result = session.execute(
        update(game)
        .where(game.id == game_id, game.settled_at.is_(None))
        .values(settled_at=now, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    settled = (result.rowcount or 0) > 0
    if settled:
        logger.info("game_settled", game_id=game_id)
    return settled


def queue_stats(session: Session) -> dict[str, int]:
    rows = session.execute(
        select(db_models.SettlementQueueEntry.status, func.count())
        .group_by(db_models.SettlementQueueEntry.status)
    ).all()
    stats = {status.value.lower(): 0 for status in db_models.QueueStatus}
    for status, count in rows:
        stats[str(status).lower()] = int(count)
    stats["total"] = sum(stats.values())
    return stats


def list_queue(
    session: Session,
    *,
    statuses: Iterable[str] | None = None,
    league: str | None = None,
    limit: int = 100,
) -> Sequence[db_models.SettlementQueueEntry]:
    """Newest-first listing for the admin view."""
    entry = db_models.SettlementQueueEntry
    stmt = select(entry).order_by(entry.created_at.desc(), entry.id.desc()).limit(limit)
    status_list = [s.upper() for s in statuses or []]
    if status_list:
        stmt = stmt.where(entry.status.in_(status_list))
    if league:
        stmt = stmt.where(entry.league == league.lower())
    return session.execute(stmt).scalars().all()


def serialize_entry(item: db_models.SettlementQueueEntry) -> dict[str, Any]:
    def _iso(value: datetime | None) -> str | None:
        value = ensure_utc(value)
        return value.isoformat() if value else None

    return {
        "id": item.id,
        "game_id": item.game_id,
        "league": item.league,
        "external_game_id": item.external_game_id,
        "provider": item.provider,
        "status": item.status,
        "outcome": item.outcome,
        "reason": item.reason,
        "attempts": item.attempts,
        "next_attempt_at": _iso(item.next_attempt_at),
        "locked_by": item.locked_by,
        "locked_at": _iso(item.locked_at),
        "last_error": item.last_error,
        "created_at": _iso(item.created_at),
        "updated_at": _iso(item.updated_at),
    }


@dataclass
class DrainSummary:
    processed: int = 0
    done: int = 0
    failed: int = 0
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "processed": self.processed,
            "done": self.done,
            "failed": self.failed,
            "errors": self.errors,
        }


def drain_queue(
    handler: SettlementHandler,
    *,
    worker_id: str,
    session_factory: Callable[[], ContextManager[Session]] = get_session,
    max_items: int = 25,
    clock: Clock = now_utc,
) -> DrainSummary:
    """Claim and process up to ``max_items`` rows with ``handler``.

    Each row is claimed in its own transaction so the PROCESSING state is
    visible to health checks while the handler runs. A handler exception
    marks the row FAILED and the loop moves on to the next row.
    """
    summary = DrainSummary()
    for _ in range(max_items):
        with session_factory() as session:
            item = lock_next_item(session, worker_id, clock())
            item_id = item.id if item else None
            game_id = item.game_id if item else None
        if item_id is None:
            break

        summary.processed += 1
        try:
            with session_factory() as session:
                claimed = session.get(db_models.SettlementQueueEntry, item_id)
                handler(session, claimed)
                mark_done(session, item_id, clock())
                mark_game_settled(session, game_id, clock())
            summary.done += 1
        except Exception as exc:
            message = f"queue item {item_id}: {exc}"
            logger.exception("settlement_handler_failed", queue_id=item_id, error=str(exc))
            with session_factory() as session:
                mark_failed(session, item_id, str(exc), clock())
            summary.failed += 1
            summary.errors.append(message)

    if summary.processed:
        logger.info("settlement_queue_drained", worker=worker_id, **summary.to_dict())
    return summary
