"""Game model and its normalized status lifecycle."""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from sqlalchemy import DateTime, Index, Integer, String, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class StatusNorm(str, Enum):
    """Provider-agnostic game status.

    Happy path: SCHEDULED → LIVE → FINAL. CANCELLED is terminal and is
    never settled for a winner.
    """

    scheduled = "SCHEDULED"
    live = "LIVE"
    final = "FINAL"
    cancelled = "CANCELLED"


class WinnerSide(str, Enum):
    home = "HOME"
    away = "AWAY"
    draw = "DRAW"


class SportsGame(Base):
    """One game per (league, external_game_id), refreshed by every sync."""

    __tablename__ = "sports_games"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    league: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    external_game_id: Mapped[str] = mapped_column(String(100), nullable=False)
    provider: Mapped[str] = mapped_column(
        String(50), default="api-sports", nullable=False
    )
    season: Mapped[int | None] = mapped_column(Integer, nullable=True)
    starts_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True, index=True
    )
    home_team: Mapped[str | None] = mapped_column(String(200), nullable=True)
    away_team: Mapped[str | None] = mapped_column(String(200), nullable=True)
    home_score: Mapped[int | None] = mapped_column(Integer, nullable=True)
    away_score: Mapped[int | None] = mapped_column(Integer, nullable=True)
    status_raw: Mapped[str | None] = mapped_column(String(50), nullable=True)
    status_norm: Mapped[str] = mapped_column(
        String(20), default=StatusNorm.scheduled.value, nullable=False, index=True
    )
    winner_side: Mapped[str | None] = mapped_column(String(10), nullable=True)
    finalized_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    settled_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    last_synced_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    __table_args__ = (
        UniqueConstraint(
            "league", "external_game_id", name="uq_sports_games_league_external_id"
        ),
        Index("idx_sports_games_status_starts_at", "status_norm", "starts_at"),
    )
