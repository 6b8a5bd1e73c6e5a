"""Apply provider observations to ``sports_games``.

Each update is upserted by ``(league, external_game_id)`` and its status is
run through ``resolve_status_transition`` so a late or stale payload never
drags a game backwards. The first arrival at a terminal status stamps
``finalized_at`` and writes the settlement queue row:

- FINAL with both scores: winner computed, QUEUED row written
- FINAL with a missing score: no winner, no row (health checks surface it)
- CANCELLED: SKIPPED row with outcome ``CANCELED``

A correction that flips the winner of an already-final game rewrites the
outcome of its pending queue row (see ``correct_settlement_outcome``).
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from sqlalchemy.orm import Session

from ..db import db_models
from ..logging import logger
from ..models import GameUpdate
from ..normalization import determine_winner, resolve_status_transition
from ..utils.datetime_utils import now_utc
from ..utils.db_queries import get_game_by_external_id
from .settlement_queue import correct_settlement_outcome, enqueue_settlement


@dataclass
class TransitionResult:
    game_id: int
    created: bool
    previous_status: str | None
    status: str
    finalized: bool = False
    enqueued: bool = False
    corrected: bool = False

    @property
    def changed_status(self) -> bool:
        return self.previous_status != self.status


def _get_or_create(session: Session, update: GameUpdate, now: datetime):
    game = get_game_by_external_id(session, update.league, update.external_game_id)
    if game is not None:
        return game, False

    game = db_models.SportsGame(
        league=update.league,
        external_game_id=update.external_game_id,
        provider=update.provider,
        status_norm=db_models.StatusNorm.scheduled.value,
        created_at=now,
        updated_at=now,
    )
    session.add(game)
    session.flush()
    logger.info(
        "game_created",
        game_id=game.id,
        league=update.league,
        external_game_id=update.external_game_id,
    )
    return game, True


def apply_game_update(
    session: Session,
    update: GameUpdate,
    now: datetime | None = None,
    *,
    allow_correction: bool = False,
) -> TransitionResult:
    """Upsert one game and apply its status transition.

    Scores and metadata are refreshed on every call (``None`` never erases a
    stored value). The caller commits.
    """
    now = now or now_utc()
    game, created = _get_or_create(session, update, now)
    previous = None if created else game.status_norm

    for attr in ("season", "starts_at", "home_team", "away_team", "status_raw"):
        value = getattr(update, attr)
        if value is not None:
            setattr(game, attr, value)
    if update.home_score is not None:
        game.home_score = update.home_score
    if update.away_score is not None:
        game.away_score = update.away_score
    if update.provider:
        game.provider = update.provider

    new_status = resolve_status_transition(
        game.status_norm, update.status_norm, allow_correction=allow_correction
    )
    if new_status != game.status_norm:
        logger.info(
            "game_status_transition",
            game_id=game.id,
            league=game.league,
            external_game_id=game.external_game_id,
            from_status=game.status_norm,
            to_status=new_status,
            correction=allow_correction,
        )
    elif update.status_norm and update.status_norm != new_status:
        logger.debug(
            "game_status_regression_ignored",
            game_id=game.id,
            current=game.status_norm,
            incoming=update.status_norm,
        )
    game.status_norm = new_status
    game.last_synced_at = now
    game.updated_at = now

    result = TransitionResult(
        game_id=game.id,
        created=created,
        previous_status=previous,
        status=new_status,
    )

    if new_status == db_models.StatusNorm.final.value:
        winner = determine_winner(game.home_score, game.away_score)
        previous_winner = game.winner_side
        newly_decided = winner is not None and (
            previous_winner is None or (allow_correction and previous_winner != winner)
        )
        if newly_decided:
            game.winner_side = winner
        if game.finalized_at is None:
            game.finalized_at = now
            result.finalized = True
            if winner is None:
                logger.warning(
                    "game_final_missing_scores",
                    game_id=game.id,
                    league=game.league,
                    external_game_id=game.external_game_id,
                )
        if winner is not None and (result.finalized or newly_decided):
            session.flush()
            if previous_winner is not None and previous_winner != winner:
                result.corrected = correct_settlement_outcome(
                    session, game.id, winner, now=now
                )
            if not result.corrected:
                result.enqueued = enqueue_settlement(
                    session, game, winner, reason="final", now=now
                )
    elif new_status == db_models.StatusNorm.cancelled.value:
        if game.finalized_at is None:
            game.finalized_at = now
            result.finalized = True
            session.flush()
            result.enqueued = enqueue_settlement(
                session,
                game,
                db_models.SettlementOutcome.canceled.value,
                reason=(game.status_raw or "cancelled").lower(),
                now=now,
            )

    session.flush()
    return result
