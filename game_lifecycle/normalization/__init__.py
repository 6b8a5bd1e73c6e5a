"""Status and team-name normalization across score providers.

API-Sports reports short codes per sport (``Q3``, ``FT``, ``AOT``, ``PST``),
SportsDataIO uses words (``InProgress``, ``F/OT``), and older payloads carry
long forms ("Match Finished"). Everything is folded into ``StatusNorm``.
"""

from __future__ import annotations

import re

from ..db.games import StatusNorm, WinnerSide

_SCHEDULED_CODES = {
    "ns", "tbd", "not started", "scheduled", "time to be defined", "pre-game",
    "pregame",
}
_LIVE_CODES = {
    "q1", "q2", "q3", "q4", "ot", "ht", "bt", "1h", "2h", "et", "p", "p1", "p2",
    "p3", "live", "inprogress", "in progress", "halftime", "break time",
    "first half", "second half", "extra time", "penalty in progress",
    "delayed", "int",
}
_FINAL_CODES = {
    "ft", "aot", "aet", "pen", "ap", "final", "f/ot", "f/so", "f/sd",
    "game finished", "match finished", "after over time", "after extra time",
    "finished", "closed", "complete", "completed",
}
_CANCELLED_CODES = {
    "canc", "cancelled", "canceled", "pst", "postponed", "abd", "abandoned",
    "awd", "wo", "forfeit", "susp", "suspended", "technical loss", "walkover",
}

# Baseball innings arrive as IN1..IN9 (plus extras)
_INNING_RE = re.compile(r"^in\d{1,2}$")

_STATUS_ORDER = {
    StatusNorm.scheduled.value: 0,
    StatusNorm.live.value: 1,
    StatusNorm.final.value: 2,
}

PLACEHOLDER_TEAM_NAMES = frozenset(
    name.lower()
    for name in (
        "NFC", "AFC", "TBD", "TBA", "All-Stars", "All Stars", "All-Star",
        "All Star", "Conference", "Unknown", "Team", "Team 1", "Team 2",
        "Home", "Away", "East", "West", "North", "South", "National",
        "American", "Pro Bowl", "Pro-Bowl", "Skills Challenge",
    )
)
_TEAM_N_RE = re.compile(r"^team\s*[a-z0-9]$", re.IGNORECASE)


def normalize_status(raw: str | None) -> str | None:
    """Map an upstream status string to a ``StatusNorm`` value.

    Returns None for unrecognised input so callers keep the stored status.
    The provider code tables are disjoint, so one lookup serves all of them.
    """
    if raw is None:
        return None
    value = str(raw).strip().lower()
    if not value:
        return None

    if value in _FINAL_CODES:
        return StatusNorm.final.value
    if value in _CANCELLED_CODES:
        return StatusNorm.cancelled.value
    if value in _LIVE_CODES or _INNING_RE.match(value):
        return StatusNorm.live.value
    if value in _SCHEDULED_CODES:
        return StatusNorm.scheduled.value
    if "half" in value or "quarter" in value or "period" in value or "inning" in value:
        return StatusNorm.live.value
    return None


def determine_winner(home_score: int | None, away_score: int | None) -> str | None:
    """HOME / AWAY / DRAW from final scores; None if either score is missing."""
    if home_score is None or away_score is None:
        return None
    if home_score > away_score:
        return WinnerSide.home.value
    if away_score > home_score:
        return WinnerSide.away.value
    return WinnerSide.draw.value


def is_terminal_status(status: str | None) -> bool:
    return status in (StatusNorm.final.value, StatusNorm.cancelled.value)


def resolve_status_transition(
    current_status: str | None,
    incoming_status: str | None,
    *,
    allow_correction: bool = False,
) -> str:
    """Resolve a safe status transition without regressing games.

    Rules:
    - unknown incoming status keeps the current one
    - terminal states (FINAL, CANCELLED) never change unless the caller
      passes ``allow_correction`` (manual provider corrections)
    - SCHEDULED/LIVE only move forward; CANCELLED is accepted from either
    """
    current = current_status or StatusNorm.scheduled.value
    if incoming_status is None:
        return current
    if allow_correction:
        return incoming_status

    if is_terminal_status(current):
        return current
    if incoming_status == StatusNorm.cancelled.value:
        return incoming_status

    current_order = _STATUS_ORDER.get(current)
    incoming_order = _STATUS_ORDER.get(incoming_status)
    if current_order is not None and incoming_order is not None:
        if incoming_order < current_order:
            return current
    return incoming_status


def is_placeholder_team(name: str | None) -> bool:
    """True for conference/all-star/TBD stand-ins that are not real teams."""
    if not name or not name.strip():
        return True
    trimmed = name.strip()
    if len(trimmed) < 2:
        return True
    if trimmed.lower() in PLACEHOLDER_TEAM_NAMES:
        return True
    return bool(_TEAM_N_RE.match(trimmed))


def is_real_game(home_team: str | None, away_team: str | None) -> bool:
    return not (is_placeholder_team(home_team) or is_placeholder_team(away_team))


__all__ = [
    "PLACEHOLDER_TEAM_NAMES",
    "determine_winner",
    "is_placeholder_team",
    "is_real_game",
    "is_terminal_status",
    "normalize_status",
    "resolve_status_transition",
]
