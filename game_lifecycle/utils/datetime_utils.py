"""
Low-level timezone and timestamp utilities.

Helpers for timezone-aware UTC datetime operations. Domain-agnostic: league
calendars and lifecycle thresholds live elsewhere.
"""

from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from typing import Callable

Clock = Callable[[], datetime]


def now_utc() -> datetime:
    """Return the current timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def today_utc() -> date:
    """Return the current date in UTC timezone."""
    return now_utc().date()


def ensure_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes and convert aware ones to UTC.

    Some drivers hand back naive timestamps for ``timestamptz`` columns;
    everything stored by this service is UTC, so naive means UTC.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def date_to_utc_datetime(day: date) -> datetime:
    """Convert a date to a timezone-aware UTC datetime at midnight."""
    return datetime.combine(day, datetime.min.time()).replace(tzinfo=timezone.utc)


def iter_utc_dates(start: datetime, end: datetime) -> list[date]:
    """Return every UTC calendar date touched by ``[start, end]``, inclusive."""
    first = ensure_utc(start).date()
    last = ensure_utc(end).date()
    days: list[date] = []
    current = first
    while current <= last:
        days.append(current)
        current += timedelta(days=1)
    return days


def parse_iso_datetime(value: str | None) -> datetime | None:
    """Parse an ISO 8601 timestamp (``Z`` suffix allowed) into aware UTC."""
    if not value:
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return ensure_utc(datetime.fromisoformat(text))
    except ValueError:
        return None
