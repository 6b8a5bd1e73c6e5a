"""Request and response models for the HTTP API."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field


class LifecycleJobRequest(BaseModel):
    job: str | None = None
    skip_lock: bool = Field(default=False, alias="skipLock")

    model_config = {"populate_by_name": True}


class RepairRequest(BaseModel):
    action: Literal["release-stale-locks", "enqueue-orphans", "all"] = "all"
    limit: int = Field(default=100, ge=1, le=1000)


class JobLockResponse(BaseModel):
    job_name: str
    locked_by: str | None
    locked_at: datetime
    expires_at: datetime
    meta: dict[str, Any] = Field(default_factory=dict)


class QueueResponse(BaseModel):
    stats: dict[str, int]
    items: list[dict[str, Any]]


class BackfillRequest(BaseModel):
    days: int | None = Field(default=None, ge=0, le=365)
    leagues: list[str] | None = None
