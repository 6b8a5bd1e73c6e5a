"""Pydantic models for provider payloads after normalization."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field, field_validator


class GameUpdate(BaseModel):
    """One provider observation of a game, ready to apply to ``sports_games``."""

    league: str
    external_game_id: str
    provider: str = "api-sports"
    season: int | None = None
    starts_at: datetime | None = None
    home_team: str | None = None
    away_team: str | None = None
    home_score: int | None = None
    away_score: int | None = None
    status_raw: str | None = None
    status_norm: str | None = Field(
        default=None, description="SCHEDULED | LIVE | FINAL | CANCELLED, or None if unknown"
    )

    @field_validator("league", mode="before")
    @classmethod
    def _lowercase_league(cls, v: str) -> str:
        return str(v).strip().lower()

    @field_validator("external_game_id", mode="before")
    @classmethod
    def _stringify_id(cls, v: object) -> str:
        text = str(v).strip() if v is not None else ""
        if not text or text in {"None", "null", "undefined"}:
            raise ValueError("external_game_id is required")
        return text
