"""Settlement queue: one row per game that needs a payout decision."""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class QueueStatus(str, Enum):
    """QUEUED → PROCESSING → {DONE | FAILED}; SKIPPED closes cancelled games."""

    queued = "QUEUED"
    processing = "PROCESSING"
    done = "DONE"
    failed = "FAILED"
    skipped = "SKIPPED"


class SettlementOutcome(str, Enum):
    home = "HOME"
    away = "AWAY"
    draw = "DRAW"
    canceled = "CANCELED"


class SettlementQueueEntry(Base):
    """Work item consumed by the settlement worker."""

    __tablename__ = "settlement_queue"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    game_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("sports_games.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    league: Mapped[str] = mapped_column(String(20), nullable=False)
    external_game_id: Mapped[str] = mapped_column(String(100), nullable=False)
    provider: Mapped[str] = mapped_column(
        String(50), default="api-sports", nullable=False
    )
    status: Mapped[str] = mapped_column(
        String(20), default=QueueStatus.queued.value, nullable=False, index=True
    )
    outcome: Mapped[str | None] = mapped_column(String(10), nullable=True)
    reason: Mapped[str | None] = mapped_column(String(50), nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    next_attempt_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    locked_by: Mapped[str | None] = mapped_column(String(200), nullable=True)
    locked_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
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
        Index("idx_settlement_queue_status_locked_at", "status", "locked_at"),
        Index("idx_settlement_queue_status_updated_at", "status", "updated_at"),
    )
