"""Domain exceptions for the lifecycle service."""

from __future__ import annotations


class LifecycleError(Exception):
    """Base class for errors raised by this package."""


class ScoreFeedError(LifecycleError):
    """The score feed failed after retries or returned an unusable payload."""

    def __init__(self, message: str, *, status_code: int | None = None, url: str | None = None):
        super().__init__(message)
        self.status_code = status_code
        self.url = url


class UnknownJobError(LifecycleError):
    def __init__(self, job: str, valid: tuple[str, ...]):
        super().__init__(f"Invalid job: {job}. Must be one of: {', '.join(valid)}")
        self.job = job
        self.valid = valid
