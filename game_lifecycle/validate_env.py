"""Fail-fast environment validation for the lifecycle worker and API.

Runs before ``Settings`` is built so a misconfigured container dies at
startup instead of half-running scheduled jobs against the wrong database.
"""

from __future__ import annotations

import os
from functools import lru_cache
from urllib.parse import urlparse

ALLOWED_ENVIRONMENTS = {"development", "staging", "production"}

ALLOWED_LIFECYCLE_ROLES = {"api", "worker", "beat"}


def require_env(name: str) -> str:
    """Fetch an environment variable or raise RuntimeError if missing."""
    value = os.getenv(name)
    if value is None or not value.strip():
        raise RuntimeError(f"{name} is required and must be set before startup.")
    return value.strip()


def validate_environment_value(environment: str) -> None:
    """Ensure ENVIRONMENT is one of the allowed values."""
    if environment not in ALLOWED_ENVIRONMENTS:
        allowed = ", ".join(sorted(ALLOWED_ENVIRONMENTS))
        raise RuntimeError(f"ENVIRONMENT must be one of: {allowed}.")


def validate_non_local_url(name: str, value: str) -> None:
    """Ensure a URL does not point to localhost in production."""
    parsed = urlparse(value)
    host = parsed.hostname
    if not host:
        raise RuntimeError(f"{name} must be a valid URL (missing hostname).")
    if host in {"localhost", "127.0.0.1"}:
        raise RuntimeError(f"{name} must not point to localhost in production.")


def validate_database_credentials(value: str) -> None:
    """Ensure DATABASE_URL does not use default credentials in production."""
    parsed = urlparse(value)
    if parsed.username == "postgres" and parsed.password == "postgres":
        raise RuntimeError(
            "DATABASE_URL must not use default postgres credentials in production."
        )


@lru_cache(maxsize=1)
def validate_env() -> None:
    """Validate required environment variables before the service starts.

    LIFECYCLE_ROLE decides which secrets are demanded:
        api: HTTP surface, needs the job secret and the admin API key.
        worker: Celery worker, needs the score feed key.
        beat: scheduler only, database + broker.
    """
    environment = os.getenv("ENVIRONMENT", "development")
    validate_environment_value(environment)

    database_url = require_env("DATABASE_URL")

    if environment == "production":
        validate_non_local_url("DATABASE_URL", database_url)
        validate_database_credentials(database_url)
        validate_non_local_url("REDIS_URL", require_env("REDIS_URL"))

        role = os.getenv("LIFECYCLE_ROLE", "worker")
        if role not in ALLOWED_LIFECYCLE_ROLES:
            allowed = ", ".join(sorted(ALLOWED_LIFECYCLE_ROLES))
            raise RuntimeError(f"LIFECYCLE_ROLE must be one of: {allowed}.")

        if role == "api":
            if not (os.getenv("SPORTS_JOB_SECRET") or os.getenv("INTERNAL_CRON_SECRET")):
                raise RuntimeError(
                    "SPORTS_JOB_SECRET (or INTERNAL_CRON_SECRET) is required in production."
                )
            require_env("API_KEY")

        if role == "worker":
            require_env("SCORE_FEED_API_KEY")
