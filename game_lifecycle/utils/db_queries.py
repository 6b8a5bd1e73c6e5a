"""Shared database query utilities."""

from __future__ import annotations

from typing import Any, Callable

from sqlalchemy import and_, exists, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session

from ..db import db_models


def dialect_insert(session: Session) -> Callable[..., Any]:
    """Return the ``insert`` construct that supports ON CONFLICT for this bind.

    Production runs on Postgres; the SQLite variant exists for the test
    suite's in-memory database. Both accept ``on_conflict_do_update`` with a
    ``where`` clause and ``returning``.
    """
    dialect = session.get_bind().dialect.name
    if dialect == "sqlite":
        return sqlite.insert
    return postgresql.insert


def has_queue_row():
    """Correlated EXISTS: the game already has a settlement_queue row."""
    return exists().where(
        db_models.SettlementQueueEntry.game_id == db_models.SportsGame.id
    )


def orphaned_final_filter():
    """FINAL, never settled, and never enqueued."""
    return and_(
        db_models.SportsGame.status_norm == db_models.StatusNorm.final.value,
        db_models.SportsGame.settled_at.is_(None),
        ~has_queue_row(),
    )


def get_game_by_external_id(
    session: Session, league: str, external_game_id: str
):
    stmt = select(db_models.SportsGame).where(
        db_models.SportsGame.league == league.lower(),
        db_models.SportsGame.external_game_id == str(external_game_id),
    )
    return session.execute(stmt).scalar_one_or_none()
