"""
Typed settings for the game lifecycle service.

Uses Pydantic Settings to load configuration from environment variables
with validation and type safety. The same settings object backs the Celery
worker, the beat scheduler, the HTTP API and the CLI.
"""

from __future__ import annotations

import os
import socket
from functools import lru_cache
from pathlib import Path

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .validate_env import validate_env


class ScoreFeedConfig(BaseModel):
    # Overrides every league's API-Sports host (proxies, staging mocks)
    base_url: str | None = None
    api_key: str | None = None
    request_timeout_seconds: float = 15.0
    max_attempts: int = 3
    # Exponential backoff window between retries (seconds)
    backoff_min_seconds: float = 1.0
    backoff_max_seconds: float = 8.0
    # Per-process response cache; shorter than the 2-minute sync cadence
    cache_ttl_seconds: int = 90
    cache_max_entries: int = 256


class LifecycleConfig(BaseModel):
    enabled_leagues: list[str] = Field(
        default_factory=lambda: ["NFL", "NBA", "NHL", "MLB", "SOCCER"]
    )
    lock_ttl_minutes: int = 5
    discover_hours_back: int = 36
    discover_hours_forward: int = 36
    stuck_threshold_hours: int = 4
    # Batch limits keep scheduled invocations bounded
    max_discover_games_per_league: int = 500
    max_sync_games: int = 200
    max_finalize_games: int = 100
    max_orphans_per_run: int = 100
    backfill_days: int = 30
    backfill_lock_ttl_minutes: int = 60


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    For local development, values are also read from the repository root
    .env file when it exists.
    """
    model_config = SettingsConfigDict(
        env_file=Path(__file__).resolve().parents[1] / ".env",
        env_file_encoding="utf-8",
        env_ignore_empty=True,
        extra="allow",
    )

    database_url: str = Field(..., alias="DATABASE_URL")

    @field_validator("database_url", mode="before")
    @classmethod
    def convert_async_to_sync(cls, v: str) -> str:
        """Rewrite asyncpg URLs to psycopg; every code path here is synchronous."""
        if isinstance(v, str) and "asyncpg" in v:
            return v.replace("asyncpg", "psycopg")
        return v

    redis_url: str = Field("redis://localhost:6379/2", alias="REDIS_URL")
    environment: str = Field("development", alias="ENVIRONMENT")
    log_level: str | None = Field(None, alias="LOG_LEVEL")
    sql_echo: bool = Field(False, alias="SQL_ECHO")

    api_key: str | None = Field(None, alias="API_KEY")
    job_secret: str | None = Field(None, alias="SPORTS_JOB_SECRET")
    internal_cron_secret: str | None = Field(None, alias="INTERNAL_CRON_SECRET")
    worker_id: str | None = Field(None, alias="ADMIN_WORKER_ID")

    score_feed_api_key: str | None = Field(None, alias="SCORE_FEED_API_KEY")
    score_feed_base_url: str | None = Field(None, alias="SCORE_FEED_BASE_URL")

    lifecycle_config: LifecycleConfig = Field(default_factory=LifecycleConfig)
    score_feed_config: ScoreFeedConfig = Field(default_factory=ScoreFeedConfig)

    @model_validator(mode="after")
    def _apply_overrides(self) -> Settings:
        """Fold flat env vars into the nested config groups."""
        if self.job_secret is None and self.internal_cron_secret:
            self.job_secret = self.internal_cron_secret
        if self.worker_id is None:
            self.worker_id = f"worker-{socket.gethostname()}-{os.getpid()}"
        if self.score_feed_api_key:
            self.score_feed_config.api_key = self.score_feed_api_key
        if self.score_feed_base_url:
            self.score_feed_config.base_url = self.score_feed_base_url
        return self


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """
    Return cached settings instance.

    Environment variables don't change during runtime, so parsing them once
    per process is enough.
    """
    validate_env()
    return Settings()


settings = get_settings()
