"""Scheduled lifecycle jobs.

- ``discover_games``: ingest every game in a rolling window around now
- ``sync_games``: refresh live and same-day games (scores, status)
- ``finalize_stuck_games``: re-check games that should have finished by now
- ``backfill_games``: re-ingest the last N days, then finalize (on demand)
- ``reconcile``: the two health repairs
- ``purge_placeholder_games``: drop conference/all-star stand-in games

Each job walks the enabled leagues and commits once per league. A provider
or database failure in one league is recorded in that league's result and
the loop continues with the next one.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, Iterable, Protocol

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..config import settings
from ..db import db_models
from ..exceptions import ScoreFeedError
from ..logging import logger
from ..models import GameUpdate
from ..normalization import determine_winner, is_real_game, is_terminal_status
from ..utils.datetime_utils import ensure_utc, iter_utc_dates, now_utc
from ..utils.db_queries import get_game_by_external_id, has_queue_row
from .game_lifecycle import apply_game_update
from .health import enqueue_orphaned_final_games, release_stale_processing_locks
from .settlement_queue import enqueue_settlement


class ScoreFeed(Protocol):
    def fetch_games(self, league: str, day: date) -> list[GameUpdate]: ...

    def fetch_live_games(self, league: str) -> list[GameUpdate]: ...


@dataclass
class LeagueJobResult:
    league: str
    fetched: int = 0
    upserted: int = 0
    finalized: int = 0
    enqueued: int = 0
    errors: list[str] = field(default_factory=list)
    duration_ms: int = 0

    @property
    def success(self) -> bool:
        return not self.errors

    def to_dict(self) -> dict[str, Any]:
        return {
            "league": self.league,
            "success": self.success,
            "fetched": self.fetched,
            "upserted": self.upserted,
            "finalized": self.finalized,
            "enqueued": self.enqueued,
            "errors": self.errors,
            "duration_ms": self.duration_ms,
        }


@dataclass
class MultiLeagueJobResult:
    job: str
    results: list[LeagueJobResult] = field(default_factory=list)
    duration_ms: int = 0

    @property
    def success(self) -> bool:
        return all(result.success for result in self.results)

    def total(self, attr: str) -> int:
        return sum(getattr(result, attr) for result in self.results)

    @property
    def first_error(self) -> dict[str, str] | None:
        for result in self.results:
            if result.errors:
                return {"league": result.league, "message": result.errors[0]}
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "job": self.job,
            "success": self.success,
            "total_fetched": self.total("fetched"),
            "total_upserted": self.total("upserted"),
            "total_finalized": self.total("finalized"),
            "total_enqueued": self.total("enqueued"),
            "first_error": self.first_error,
            "duration_ms": self.duration_ms,
            "results": [result.to_dict() for result in self.results],
        }


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


def _resolve_leagues(leagues: Iterable[str] | None) -> list[str]:
    return [league.upper() for league in (leagues or settings.lifecycle_config.enabled_leagues)]


def _apply_batch(
    session: Session,
    games: Iterable[GameUpdate],
    result: LeagueJobResult,
    now: datetime,
) -> None:
    for update in games:
        transition = apply_game_update(session, update, now)
        result.upserted += 1
        if transition.finalized:
            result.finalized += 1
        if transition.enqueued:
            result.enqueued += 1


def _cap(games: list[GameUpdate], limit: int, job: str, league: str) -> list[GameUpdate]:
    if len(games) > limit:
        logger.warning(
            f"lifecycle_{job}_batch_truncated",
            league=league,
            available=len(games),
            limit=limit,
            dropped=len(games) - limit,
        )
    return games[:limit]


def _finish_league(
    session: Session,
    job: str,
    result: LeagueJobResult,
    started: float,
) -> LeagueJobResult:
    """Commit the league's work, or roll it back and record why."""
    try:
        session.commit()
    except SQLAlchemyError as exc:
        session.rollback()
        result.errors.append(f"commit failed: {exc}")
        logger.error("lifecycle_league_commit_failed", job=job, league=result.league, error=str(exc))
    result.duration_ms = _elapsed_ms(started)
    log = logger.info if result.success else logger.warning
    log(f"lifecycle_{job}_league_done", **result.to_dict())
    return result


def discover_games(
    session: Session,
    feed: ScoreFeed,
    *,
    leagues: Iterable[str] | None = None,
    now: datetime | None = None,
    hours_back: int | None = None,
    hours_forward: int | None = None,
    max_games_per_league: int | None = None,
) -> MultiLeagueJobResult:
    """Ingest games for every UTC date in ``[now - back, now + forward]``."""
    cfg = settings.lifecycle_config
    now = now or now_utc()
    hours_back = cfg.discover_hours_back if hours_back is None else hours_back
    hours_forward = cfg.discover_hours_forward if hours_forward is None else hours_forward
    limit = max_games_per_league or cfg.max_discover_games_per_league
    days = iter_utc_dates(now - timedelta(hours=hours_back), now + timedelta(hours=hours_forward))

    started = time.monotonic()
    summary = MultiLeagueJobResult(job="discover")
    logger.info(
        "lifecycle_discover_start",
        window_start=days[0].isoformat(),
        window_end=days[-1].isoformat(),
        leagues=_resolve_leagues(leagues),
    )

    for league in _resolve_leagues(leagues):
        league_started = time.monotonic()
        result = LeagueJobResult(league=league)
        games: list[GameUpdate] = []
        for day in days:
            try:
                games.extend(feed.fetch_games(league, day))
            except ScoreFeedError as exc:
                result.errors.append(f"{day.isoformat()}: {exc}")
                logger.warning("lifecycle_discover_fetch_failed", league=league, date=day.isoformat(), error=str(exc))

        result.fetched = len(games)
        placeholders = sum(1 for g in games if not is_real_game(g.home_team, g.away_team))
        if placeholders:
            logger.info("lifecycle_discover_placeholders", league=league, count=placeholders)

        try:
            _apply_batch(session, _cap(games, limit, "discover", league), result, now)
        except SQLAlchemyError as exc:
            session.rollback()
            result.errors.append(f"upsert failed: {exc}")
            logger.error("lifecycle_discover_upsert_failed", league=league, error=str(exc))
        summary.results.append(_finish_league(session, "discover", result, league_started))

    summary.duration_ms = _elapsed_ms(started)
    return summary


def sync_games(
    session: Session,
    feed: ScoreFeed,
    *,
    leagues: Iterable[str] | None = None,
    now: datetime | None = None,
    max_games: int | None = None,
) -> MultiLeagueJobResult:
    """Refresh live games plus everything on today's slate.

    Live results win over the same game from the daily listing. Placeholder
    matchups are skipped.
    """
    now = now or now_utc()
    limit = max_games or settings.lifecycle_config.max_sync_games
    started = time.monotonic()
    summary = MultiLeagueJobResult(job="sync")

    for league in _resolve_leagues(leagues):
        league_started = time.monotonic()
        result = LeagueJobResult(league=league)
        try:
            live = feed.fetch_live_games(league)
            today = feed.fetch_games(league, now.date())
        except ScoreFeedError as exc:
            result.errors.append(str(exc))
            logger.warning("lifecycle_sync_fetch_failed", league=league, error=str(exc))
            summary.results.append(_finish_league(session, "sync", result, league_started))
            continue

        merged: dict[str, GameUpdate] = {}
        for update in [*live, *today]:
            merged.setdefault(update.external_game_id, update)
        result.fetched = len(merged)
        games = [g for g in merged.values() if is_real_game(g.home_team, g.away_team)]

        try:
            _apply_batch(session, _cap(games, limit, "sync", league), result, now)
        except SQLAlchemyError as exc:
            session.rollback()
            result.errors.append(f"upsert failed: {exc}")
            logger.error("lifecycle_sync_upsert_failed", league=league, error=str(exc))
        summary.results.append(_finish_league(session, "sync", result, league_started))

    summary.duration_ms = _elapsed_ms(started)
    return summary


def finalize_stuck_games(
    session: Session,
    feed: ScoreFeed,
    *,
    leagues: Iterable[str] | None = None,
    now: datetime | None = None,
    stuck_threshold_hours: int | None = None,
    max_games: int | None = None,
) -> MultiLeagueJobResult:
    """Re-check unfinalized games that started more than the threshold ago.

    Each candidate is looked up in the provider's listing for its start date;
    games the provider now reports as FINAL or CANCELLED are finalized and
    enqueued. Games still in progress upstream are left alone.
    """
    cfg = settings.lifecycle_config
    now = now or now_utc()
    threshold = cfg.stuck_threshold_hours if stuck_threshold_hours is None else stuck_threshold_hours
    limit = max_games or cfg.max_finalize_games
    cutoff = now - timedelta(hours=threshold)
    started = time.monotonic()
    summary = MultiLeagueJobResult(job="finalize")

    for league in _resolve_leagues(leagues):
        league_started = time.monotonic()
        result = LeagueJobResult(league=league)
        try:
            candidates = session.execute(
                select(db_models.SportsGame)
                .where(
                    db_models.SportsGame.league == league.lower(),
                    db_models.SportsGame.starts_at < cutoff,
                    db_models.SportsGame.finalized_at.is_(None),
                )
                .order_by(db_models.SportsGame.starts_at.asc())
                .limit(limit)
            ).scalars().all()
        except SQLAlchemyError as exc:
            session.rollback()
            result.errors.append(f"query failed: {exc}")
            logger.error("lifecycle_finalize_query_failed", league=league, error=str(exc))
            summary.results.append(_finish_league(session, "finalize", result, league_started))
            continue

        result.fetched = len(candidates)
        for game in candidates:
            day = ensure_utc(game.starts_at).date()
            try:
                listing = feed.fetch_games(league, day)
            except ScoreFeedError as exc:
                result.errors.append(f"{game.external_game_id}: {exc}")
                continue

            match = next(
                (u for u in listing if u.external_game_id == game.external_game_id), None
            )
            if match is None:
                logger.info(
                    "lifecycle_finalize_provider_not_found",
                    league=league,
                    external_game_id=game.external_game_id,
                    date=day.isoformat(),
                )
                continue
            if not is_terminal_status(match.status_norm):
                continue

            # Savepoint per candidate: a failure undoes only this game
            candidate = LeagueJobResult(league=league)
            try:
                with session.begin_nested():
                    _apply_batch(session, [match], candidate, now)
            except SQLAlchemyError as exc:
                result.errors.append(f"{game.external_game_id}: {exc}")
                logger.error(
                    "lifecycle_finalize_update_failed",
                    league=league,
                    external_game_id=game.external_game_id,
                    error=str(exc),
                )
                continue
            result.upserted += candidate.upserted
            result.finalized += candidate.finalized
            result.enqueued += candidate.enqueued

        summary.results.append(_finish_league(session, "finalize", result, league_started))

    summary.duration_ms = _elapsed_ms(started)
    return summary


def _ensure_enqueued(session: Session, update: GameUpdate, now: datetime) -> bool:
    """Write the queue row for a stored FINAL game that never got one."""
    game = get_game_by_external_id(session, update.league, update.external_game_id)
    if game is None or game.settled_at is not None:
        return False
    winner = determine_winner(game.home_score, game.away_score)
    if winner is None:
        return False
    return enqueue_settlement(session, game, winner, reason="backfill", now=now)


def backfill_games(
    session: Session,
    feed: ScoreFeed,
    *,
    days: int | None = None,
    leagues: Iterable[str] | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    """Re-ingest the last ``days`` UTC dates, oldest first, then finalize.

    Placeholder matchups are skipped. Every FINAL game seen is checked for a
    queue row, so games that went final while ingestion was down are
    enqueued too. Each (date, league) pair commits on its own; a failure is
    recorded and the walk continues.
    """
    now = now or now_utc()
    days = settings.lifecycle_config.backfill_days if days is None else days
    league_list = _resolve_leagues(leagues)
    dates = [(now - timedelta(days=offset)).date() for offset in range(days, -1, -1)]

    started = time.monotonic()
    summary = MultiLeagueJobResult(job="backfill")
    per_league = {league: LeagueJobResult(league=league) for league in league_list}
    logger.info(
        "lifecycle_backfill_start",
        days=days,
        first_date=dates[0].isoformat(),
        last_date=dates[-1].isoformat(),
        leagues=league_list,
    )

    for day in dates:
        for league in league_list:
            result = per_league[league]
            try:
                games = feed.fetch_games(league, day)
            except ScoreFeedError as exc:
                result.errors.append(f"{day.isoformat()}: {exc}")
                logger.warning("lifecycle_backfill_fetch_failed", league=league, date=day.isoformat(), error=str(exc))
                continue

            real = [g for g in games if is_real_game(g.home_team, g.away_team)]
            result.fetched += len(real)
            day_result = LeagueJobResult(league=league)
            try:
                _apply_batch(session, real, day_result, now)
                for update in real:
                    if update.status_norm == db_models.StatusNorm.final.value and _ensure_enqueued(
                        session, update, now
                    ):
                        day_result.enqueued += 1
                session.commit()
            except SQLAlchemyError as exc:
                session.rollback()
                result.errors.append(f"{day.isoformat()}: {exc}")
                logger.error("lifecycle_backfill_upsert_failed", league=league, date=day.isoformat(), error=str(exc))
                continue
            result.upserted += day_result.upserted
            result.finalized += day_result.finalized
            result.enqueued += day_result.enqueued

    for result in per_league.values():
        summary.results.append(result)
    summary.duration_ms = _elapsed_ms(started)
    finalize = finalize_stuck_games(session, feed, leagues=league_list, now=now)

    report = {
        **summary.to_dict(),
        "days": days,
        "finalize": finalize.to_dict(),
    }
    report["success"] = summary.success and finalize.success
    log = logger.info if report["success"] else logger.warning
    log(
        "lifecycle_backfill_done",
        days=days,
        total_upserted=report["total_upserted"],
        total_enqueued=report["total_enqueued"],
        finalize_finalized=report["finalize"]["total_finalized"],
    )
    return report


def reconcile(
    session: Session,
    *,
    now: datetime | None = None,
    max_orphans: int | None = None,
) -> dict[str, Any]:
    """Release abandoned PROCESSING rows, then enqueue orphaned finals."""
    now = now or now_utc()
    started = time.monotonic()
    released = release_stale_processing_locks(session, now)
    orphans = enqueue_orphaned_final_games(
        session, now, limit=max_orphans or settings.lifecycle_config.max_orphans_per_run
    )
    session.commit()
    summary = {
        "job": "reconcile",
        "success": True,
        "released_stale_locks": released,
        "orphans": orphans,
        "duration_ms": _elapsed_ms(started),
    }
    logger.info("lifecycle_reconcile_done", **summary)
    return summary


def purge_placeholder_games(session: Session, *, dry_run: bool = False) -> dict[str, Any]:
    """Delete unfinalized placeholder games that were never enqueued."""
    rows = session.execute(
        select(
            db_models.SportsGame.id,
            db_models.SportsGame.home_team,
            db_models.SportsGame.away_team,
        ).where(
            db_models.SportsGame.finalized_at.is_(None),
            ~has_queue_row(),
        )
    ).all()
    ids = [row.id for row in rows if not is_real_game(row.home_team, row.away_team)]

    deleted = 0
    if ids and not dry_run:
        for game in session.execute(
            select(db_models.SportsGame).where(db_models.SportsGame.id.in_(ids))
        ).scalars():
            session.delete(game)
            deleted += 1
        session.commit()

    logger.info("placeholder_games_purged", candidates=len(ids), deleted=deleted, dry_run=dry_run)
    return {"candidates": len(ids), "deleted": deleted, "game_ids": ids, "dry_run": dry_run}
