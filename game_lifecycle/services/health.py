"""Lifecycle health checks and the two repair actions.

Checks are read-only counts compared against fixed ``(warning, critical)``
thresholds. The thresholds are deliberately asymmetric: a single stuck LIVE
game is already worth a warning, while a handful of stale SCHEDULED games is
ordinary off-season noise.

Repairs run separately and never as a side effect of a check:

- ``release_stale_processing_locks`` returns abandoned PROCESSING rows to
  QUEUED so another worker can pick them up.
- ``enqueue_orphaned_final_games`` fills the gap left when a game reached
  FINAL but its queue row was never written.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable

from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..db import db_models
from ..logging import logger
from ..normalization import determine_winner
from ..utils.datetime_utils import now_utc
from ..utils.db_queries import orphaned_final_filter
from .settlement_queue import MAX_ATTEMPTS, enqueue_settlement

STUCK_LIVE_AFTER = timedelta(hours=6)
STUCK_SCHEDULED_AFTER = timedelta(hours=8)
STUCK_QUEUE_AFTER = timedelta(minutes=30)
STALE_PROCESSING_AFTER = timedelta(minutes=10)


@dataclass(frozen=True)
class Threshold:
    warning: int
    critical: int


THRESHOLDS: dict[str, Threshold] = {
    "stuck_live_games": Threshold(warning=1, critical=5),
    "stuck_scheduled_games": Threshold(warning=20, critical=100),
    "orphaned_final_games": Threshold(warning=1, critical=3),
    "stuck_queue_items": Threshold(warning=3, critical=10),
    "failed_queue_items": Threshold(warning=2, critical=5),
    "stale_processing_locks": Threshold(warning=1, critical=3),
}

DESCRIPTIONS = {
    "stuck_live_games": "LIVE games more than 6h past start with no finalization",
    "stuck_scheduled_games": "SCHEDULED games more than 8h past start with no finalization",
    "orphaned_final_games": "FINAL games with no settlement queue row and no settled_at",
    "stuck_queue_items": "QUEUED/PROCESSING queue rows untouched for 30m",
    "failed_queue_items": f"FAILED queue rows with {MAX_ATTEMPTS}+ attempts",
    "stale_processing_locks": "PROCESSING queue rows locked more than 10m ago",
}


def severity_for(name: str, count: int) -> str:
    threshold = THRESHOLDS[name]
    if count >= threshold.critical:
        return "critical"
    if count >= threshold.warning:
        return "warning"
    return "ok"


def aggregate_status(statuses: list[str]) -> str:
    """``critical`` if any check is critical, ``healthy`` if all are ok."""
    if any(status == "critical" for status in statuses):
        return "critical"
    if all(status == "ok" for status in statuses):
        return "healthy"
    return "warning"


@dataclass
class HealthCheck:
    name: str
    status: str
    count: int
    threshold: Threshold
    description: str
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "name": self.name,
            "status": self.status,
            "count": self.count,
            "threshold": {
                "warning": self.threshold.warning,
                "critical": self.threshold.critical,
            },
            "description": self.description,
        }
        if self.error:
            data["error"] = self.error
        return data


@dataclass
class HealthReport:
    status: str
    checked_at: datetime
    checks: list[HealthCheck] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "checked_at": self.checked_at.isoformat(),
            "checks": [check.to_dict() for check in self.checks],
        }


def _count_stuck_live(session: Session, now: datetime) -> int:
    game = db_models.SportsGame
    return session.execute(
        select(func.count()).select_from(game).where(
            game.status_norm == db_models.StatusNorm.live.value,
            game.starts_at < now - STUCK_LIVE_AFTER,
            game.finalized_at.is_(None),
        )
    ).scalar_one()


def _count_stuck_scheduled(session: Session, now: datetime) -> int:
    game = db_models.SportsGame
    return session.execute(
        select(func.count()).select_from(game).where(
            game.status_norm == db_models.StatusNorm.scheduled.value,
            game.starts_at < now - STUCK_SCHEDULED_AFTER,
            game.finalized_at.is_(None),
        )
    ).scalar_one()


def _count_orphaned_finals(session: Session, now: datetime) -> int:
    return session.execute(
        select(func.count())
        .select_from(db_models.SportsGame)
        .where(orphaned_final_filter())
    ).scalar_one()


def _count_stuck_queue(session: Session, now: datetime) -> int:
    entry = db_models.SettlementQueueEntry
    return session.execute(
        select(func.count()).select_from(entry).where(
            entry.status.in_(
                [db_models.QueueStatus.queued.value, db_models.QueueStatus.processing.value]
            ),
            entry.updated_at < now - STUCK_QUEUE_AFTER,
        )
    ).scalar_one()


def _count_failed_queue(session: Session, now: datetime) -> int:
    entry = db_models.SettlementQueueEntry
    return session.execute(
        select(func.count()).select_from(entry).where(
            entry.status == db_models.QueueStatus.failed.value,
            entry.attempts >= MAX_ATTEMPTS,
        )
    ).scalar_one()


def _count_stale_processing(session: Session, now: datetime) -> int:
    entry = db_models.SettlementQueueEntry
    return session.execute(
        select(func.count()).select_from(entry).where(
            entry.status == db_models.QueueStatus.processing.value,
            entry.locked_at < now - STALE_PROCESSING_AFTER,
        )
    ).scalar_one()


CHECKS: dict[str, Callable[[Session, datetime], int]] = {
    "stuck_live_games": _count_stuck_live,
    "stuck_scheduled_games": _count_stuck_scheduled,
    "orphaned_final_games": _count_orphaned_finals,
    "stuck_queue_items": _count_stuck_queue,
    "failed_queue_items": _count_failed_queue,
    "stale_processing_locks": _count_stale_processing,
}


def run_check(session: Session, name: str, now: datetime) -> HealthCheck:
    """Run one check. A failing query degrades to ``warning`` with count 0."""
    threshold = THRESHOLDS[name]
    try:
        count = int(CHECKS[name](session, now))
    except SQLAlchemyError as exc:
        session.rollback()
        logger.error("health_check_failed", check=name, error=str(exc))
        return HealthCheck(
            name=name,
            status="warning",
            count=0,
            threshold=threshold,
            description=DESCRIPTIONS[name],
            error=str(exc).splitlines()[0],
        )
    return HealthCheck(
        name=name,
        status=severity_for(name, count),
        count=count,
        threshold=threshold,
        description=DESCRIPTIONS[name],
    )


def run_health_checks(session: Session, now: datetime | None = None) -> HealthReport:
    now = now or now_utc()
    checks = [run_check(session, name, now) for name in CHECKS]
    report = HealthReport(
        status=aggregate_status([check.status for check in checks]),
        checked_at=now,
        checks=checks,
    )
    log = logger.info if report.status == "healthy" else logger.warning
    log(
        "lifecycle_health_checked",
        status=report.status,
        **{check.name: check.count for check in checks},
    )
    return report


def release_stale_processing_locks(session: Session, now: datetime | None = None) -> int:
    """Reset PROCESSING rows locked before now-10m back to QUEUED."""
    now = now or now_utc()
    entry = db_models.SettlementQueueEntry
    result = session.execute(
        update(entry)
        .where(
            entry.status == db_models.QueueStatus.processing.value,
            entry.locked_at < now - STALE_PROCESSING_AFTER,
        )
        .values(
            status=db_models.QueueStatus.queued.value,
            locked_by=None,
            locked_at=None,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    released = result.rowcount or 0
    if released:
        logger.warning("stale_processing_locks_released", count=released)
    return released


def enqueue_orphaned_final_games(
    session: Session,
    now: datetime | None = None,
    limit: int = 100,
) -> dict[str, Any]:
    """Write a QUEUED row with the computed winner for each orphaned final.

    Games that already have any queue row are excluded by the query itself,
    and the insert is ``ON CONFLICT DO NOTHING`` on ``game_id``, so a FAILED
    row is never duplicated. A game missing either score has no winner and
    is reported instead of enqueued.
    """
    now = now or now_utc()
    games = session.execute(
        select(db_models.SportsGame)
        .where(orphaned_final_filter())
        .order_by(db_models.SportsGame.starts_at.asc(), db_models.SportsGame.id.asc())
        .limit(limit)
    ).scalars().all()

    enqueued = 0
    skipped_missing_scores: list[int] = []
    for game in games:
        winner = determine_winner(game.home_score, game.away_score)
        if winner is None:
            skipped_missing_scores.append(game.id)
            logger.warning(
                "orphaned_final_missing_scores",
                game_id=game.id,
                league=game.league,
                external_game_id=game.external_game_id,
            )
            continue
        if game.winner_side is None:
            game.winner_side = winner
            game.updated_at = now
        if enqueue_settlement(session, game, winner, reason="reconcile_orphan", now=now):
            enqueued += 1

    summary = {
        "candidates": len(games),
        "enqueued": enqueued,
        "skipped_missing_scores": skipped_missing_scores,
    }
    if games:
        logger.info("orphaned_finals_enqueued", **summary)
    return summary
