"""Authentication and service dependencies for the HTTP API."""

from __future__ import annotations

import secrets
from typing import Iterator

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import APIKeyHeader

from ..config import settings
from ..logging import logger
from ..services.job_locks import JobLockManager
from ..services.runner import LifecycleRunner

API_KEY_HEADER = APIKeyHeader(name="X-API-Key", auto_error=False)
JOB_SECRET_HEADER = APIKeyHeader(name="X-Job-Secret", auto_error=False)
CRON_SECRET_HEADER = APIKeyHeader(name="X-Internal-Cron-Secret", auto_error=False)


def _client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


async def verify_api_key(
    request: Request,
    api_key: str | None = Depends(API_KEY_HEADER),
) -> str:
    """Validate the admin API key from the X-API-Key header.

    Uses constant-time comparison to prevent timing attacks.

    Raises:
        HTTPException: 401 if key is missing or invalid.
    """
    if not settings.api_key:
        # Only reachable outside production; validate_env requires API_KEY there
        logger.warning("api_key_not_configured", path=request.url.path)
        return ""

    if not api_key:
        logger.warning("api_key_missing", client_ip=_client_ip(request), path=request.url.path)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing API key",
            headers={"WWW-Authenticate": "ApiKey"},
        )

    if not secrets.compare_digest(api_key, settings.api_key):
        logger.warning("api_key_invalid", client_ip=_client_ip(request), path=request.url.path)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API key",
            headers={"WWW-Authenticate": "ApiKey"},
        )

    return api_key


async def verify_job_secret(
    request: Request,
    job_secret: str | None = Depends(JOB_SECRET_HEADER),
    cron_secret: str | None = Depends(CRON_SECRET_HEADER),
) -> None:
    """Validate the shared scheduler secret.

    Unlike the admin key there is no dev-mode bypass: with no secret
    configured every trigger is rejected.
    """
    provided = job_secret or cron_secret
    expected = settings.job_secret
    if not expected or not provided or not secrets.compare_digest(provided, expected):
        logger.error("lifecycle_trigger_unauthorized", client_ip=_client_ip(request))
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")


def get_lock_manager() -> JobLockManager:
    return JobLockManager()


def get_lifecycle_runner() -> Iterator[LifecycleRunner]:
    """One runner per request; its feed client is closed when the response is sent."""
    with LifecycleRunner() as runner:
        yield runner
