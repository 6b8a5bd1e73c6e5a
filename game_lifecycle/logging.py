"""
Centralized structlog configuration for the game lifecycle service.

Provides JSON-formatted logs with environment context for filtering in
production. The worker, scheduler, API and CLI all log through ``logger``.
"""

from __future__ import annotations

import logging
import sys

import structlog

from .config import settings


def _normalize_log_level(level: str | None, environment: str) -> int:
    env = environment.lower()
    if level:
        normalized = level.strip().upper()
    else:
        normalized = "INFO" if env == "production" else "DEBUG"
    return logging._nameToLevel.get(normalized, logging.INFO)


def configure_logging() -> None:
    """Configure structlog with JSON output to stdout.

    Events are handed to stdlib loggers so ``add_logger_name`` can read the
    logger's name; the root handler prints the rendered JSON line as is.
    """
    resolved_level = _normalize_log_level(settings.log_level, settings.environment)
    logging.basicConfig(level=resolved_level, format="%(message)s", stream=sys.stdout)
    structlog.configure(
        processors=[
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.EventRenamer("message"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(resolved_level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
    )


configure_logging()

logger = structlog.get_logger("game-lifecycle").bind(
    service="game-lifecycle",
    environment=settings.environment,
)
