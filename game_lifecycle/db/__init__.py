"""
Database models and session management.

Import models from their respective modules:
    from game_lifecycle.db.games import SportsGame, StatusNorm
    from game_lifecycle.db.settlement import SettlementQueueEntry, QueueStatus
    from game_lifecycle.db.locks import JobLock

Session management:
    from game_lifecycle.db import get_session

Every code path in this service is synchronous (Celery tasks, sync FastAPI
endpoints, the CLI), so a single sync engine is shared per process.
"""

from __future__ import annotations

from contextlib import contextmanager
from types import SimpleNamespace
from typing import Iterator

from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import Session, sessionmaker

from ..config import settings
from ..logging import logger
from .base import Base
from .games import SportsGame, StatusNorm, WinnerSide
from .locks import JobLock
from .settlement import QueueStatus, SettlementOutcome, SettlementQueueEntry

# Lazy-loaded engine and session factory so importing models never opens a
# connection (tests import everything without a database).
_engine: Engine | None = None
_SessionLocal: sessionmaker[Session] | None = None


def get_engine() -> Engine:
    """Get or create the database engine (lazy initialization)."""
    global _engine
    if _engine is None:
        _engine = create_engine(
            settings.database_url,
            echo=settings.sql_echo,
            future=True,
            pool_pre_ping=True,
        )
    return _engine


def _get_session_factory() -> sessionmaker[Session]:
    global _SessionLocal
    if _SessionLocal is None:
        _SessionLocal = sessionmaker(
            bind=get_engine(),
            autoflush=False,
            autocommit=False,
            expire_on_commit=False,
            class_=Session,
        )
    return _SessionLocal


@contextmanager
def get_session() -> Iterator[Session]:
    """
    Provide a transactional database session context manager.

    Commits on clean exit, rolls back and re-raises on error, always closes.

    Usage:
        with get_session() as session:
            session.add(obj)
    """
    session = _get_session_factory()()
    try:
        yield session
        session.commit()
    except Exception as exc:
        session.rollback()
        logger.exception("db_session_rollback", error=str(exc))
        raise
    finally:
        session.close()


def get_db() -> Iterator[Session]:
    """FastAPI dependency wrapping ``get_session``."""
    with get_session() as session:
        yield session


def dispose_engine() -> None:
    global _engine, _SessionLocal
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _SessionLocal = None


# Unified namespace exposing ORM models and enums
db_models = SimpleNamespace(
    StatusNorm=StatusNorm,
    WinnerSide=WinnerSide,
    QueueStatus=QueueStatus,
    SettlementOutcome=SettlementOutcome,
    SportsGame=SportsGame,
    SettlementQueueEntry=SettlementQueueEntry,
    JobLock=JobLock,
)


__all__ = [
    "Base",
    "db_models",
    "dispose_engine",
    "get_db",
    "get_engine",
    "get_session",
]
