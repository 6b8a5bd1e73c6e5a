"""API-Sports score feed client.

One JSON-over-HTTP client per process. Requests use a fixed timeout and a
bounded number of attempts with exponential backoff; only transient
failures (timeouts, connection errors, 5xx, 429, unparseable bodies) are
retried. Anything else fails fast with ``ScoreFeedError`` so the calling job
records it against the league and moves on.

Each sport lives on its own API-Sports host and soccer uses the
``/fixtures`` shape instead of ``/games``; ``LEAGUE_FEEDS`` holds those
differences.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any, Callable

import httpx
from pydantic import ValidationError
from tenacity import (
    RetryError,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ..config import ScoreFeedConfig, settings
from ..exceptions import ScoreFeedError
from ..logging import logger
from ..models import GameUpdate
from ..normalization import normalize_status
from ..utils.cache import TTLCache
from ..utils.datetime_utils import Clock, now_utc, parse_iso_datetime

PROVIDER = "api-sports"


@dataclass(frozen=True)
class LeagueFeed:
    code: str
    base_url: str
    league_id: int
    games_path: str = "/games"

    @property
    def is_fixture_shape(self) -> bool:
        return self.games_path == "/fixtures"


LEAGUE_FEEDS: dict[str, LeagueFeed] = {
    "NFL": LeagueFeed("NFL", "https://v1.american-football.api-sports.io", 1),
    "NBA": LeagueFeed("NBA", "https://v1.basketball.api-sports.io", 12),
    "NHL": LeagueFeed("NHL", "https://v1.hockey.api-sports.io", 57),
    "MLB": LeagueFeed("MLB", "https://v1.baseball.api-sports.io", 1),
    "SOCCER": LeagueFeed("SOCCER", "https://v3.football.api-sports.io", 39, "/fixtures"),
}


class _TransientFeedError(Exception):
    """Retryable upstream condition; converted to ScoreFeedError after retries."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


def get_league_feed(league: str) -> LeagueFeed:
    try:
        return LEAGUE_FEEDS[league.upper()]
    except KeyError:
        raise ScoreFeedError(f"Unsupported league: {league}") from None


def season_for_date(league: str, day: date) -> int:
    """Season year a game on ``day`` belongs to.

    NFL runs Sep-Feb and NBA/NHL Oct-Jun, so early-year games count toward
    the previous season. MLB and soccer use the calendar year.
    """
    league = league.upper()
    if league == "NFL":
        return day.year - 1 if day.month <= 2 else day.year
    if league in ("NBA", "NHL"):
        return day.year - 1 if day.month <= 6 else day.year
    return day.year


def _parse_score(value: Any) -> int | None:
    if isinstance(value, dict):
        value = value.get("total")
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return None


def _parse_start(value: Any) -> datetime | None:
    if not value:
        return None
    if isinstance(value, str):
        return parse_iso_datetime(value)
    if isinstance(value, dict):
        timestamp = value.get("timestamp")
        if timestamp is not None:
            try:
                return datetime.fromtimestamp(float(timestamp), tz=timezone.utc)
            except (TypeError, ValueError, OverflowError):
                pass
        day, clock_time = value.get("date"), value.get("time")
        if isinstance(day, str) and isinstance(clock_time, str):
            return parse_iso_datetime(f"{day}T{clock_time}:00Z")
        if isinstance(day, str):
            return parse_iso_datetime(day)
    return None


def parse_game(raw: dict[str, Any], league: str, season: int | None = None) -> GameUpdate | None:
    """Turn one API-Sports game (or soccer fixture) into a ``GameUpdate``.

    Returns None when the payload has no usable id or start time.
    """
    feed = get_league_feed(league)
    teams = raw.get("teams") or {}
    home_team = (teams.get("home") or {}).get("name")
    away_team = (teams.get("away") or {}).get("name")

    if feed.is_fixture_shape:
        fixture = raw.get("fixture") or {}
        game_id = fixture.get("id", raw.get("id"))
        starts_at = _parse_start(fixture)
        goals = raw.get("goals") or {}
        fulltime = (raw.get("score") or {}).get("fulltime") or {}
        home_score = _parse_score(goals.get("home", fulltime.get("home")))
        away_score = _parse_score(goals.get("away", fulltime.get("away")))
        status = fixture.get("status") or {}
        status_raw = status.get("short") or status.get("long")
    else:
        game = raw.get("game") or {}
        game_id = game.get("id", raw.get("id"))
        starts_at = _parse_start(game.get("date") or raw.get("date"))
        scores = raw.get("scores") or {}
        home_score = _parse_score(scores.get("home"))
        away_score = _parse_score(scores.get("away"))
        status = game.get("status") or raw.get("status") or {}
        status_raw = status.get("short") or status.get("long")

    if starts_at is None:
        logger.debug("score_feed_game_skipped", league=league, game_id=game_id, reason="no_start_time")
        return None
    if season is None:
        season = season_for_date(league, starts_at.date())

    try:
        return GameUpdate(
            league=league,
            external_game_id=game_id,
            provider=PROVIDER,
            season=season,
            starts_at=starts_at,
            home_team=home_team,
            away_team=away_team,
            home_score=home_score,
            away_score=away_score,
            status_raw=status_raw,
            status_norm=normalize_status(status_raw),
        )
    except ValidationError as exc:
        logger.debug("score_feed_game_skipped", league=league, reason="invalid", error=str(exc))
        return None


class ScoreFeedClient:
    """Fetches games from API-Sports and caches parsed results briefly."""

    def __init__(
        self,
        config: ScoreFeedConfig | None = None,
        *,
        transport: httpx.BaseTransport | None = None,
        clock: Clock = now_utc,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = config or settings.score_feed_config
        headers = {"Accept": "application/json"}
        if self.config.api_key:
            headers["x-apisports-key"] = self.config.api_key
        self.client = httpx.Client(
            timeout=self.config.request_timeout_seconds,
            headers=headers,
            transport=transport,
        )
        self._sleep = sleep
        self._cache: TTLCache[list[GameUpdate]] = TTLCache(
            self.config.cache_ttl_seconds,
            self.config.cache_max_entries,
            clock=clock,
            name="score_feed",
        )

    def __enter__(self) -> ScoreFeedClient:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def close(self) -> None:
        self.client.close()

    def _url(self, feed: LeagueFeed, path: str) -> str:
        base = (self.config.base_url or feed.base_url).rstrip("/")
        return f"{base}{path}"

    def _request_once(self, url: str, params: dict[str, Any]) -> dict[str, Any]:
        logger.info("score_feed_request", url=url, params=params)
        try:
            response = self.client.get(url, params=params)
        except httpx.TransportError as exc:
            raise _TransientFeedError(f"{type(exc).__name__}: {exc}") from exc

        if response.status_code == 429 or response.status_code >= 500:
            raise _TransientFeedError(
                f"Score feed returned {response.status_code}", response.status_code
            )
        if response.status_code != 200:
            raise ScoreFeedError(
                f"Score feed returned {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
                url=url,
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise _TransientFeedError("Score feed returned malformed JSON") from exc
        if not isinstance(payload, dict):
            raise _TransientFeedError("Score feed returned a non-object JSON body")

        errors = payload.get("errors")
        if errors:
            raise ScoreFeedError(f"Score feed error: {errors}", status_code=200, url=url)
        return payload

    def _get_json(self, url: str, params: dict[str, Any]) -> dict[str, Any]:
        retrying = Retrying(
            stop=stop_after_attempt(self.config.max_attempts),
            wait=wait_exponential(
                multiplier=self.config.backoff_min_seconds,
                min=self.config.backoff_min_seconds,
                max=self.config.backoff_max_seconds,
            ),
            retry=retry_if_exception_type(_TransientFeedError),
            sleep=self._sleep,
            before_sleep=lambda state: logger.warning(
                "score_feed_retry",
                url=url,
                attempt=state.attempt_number,
                error=str(state.outcome.exception()) if state.outcome else None,
            ),
        )
        try:
            return retrying(self._request_once, url, params)
        except RetryError as exc:
            last = exc.last_attempt.exception()
            logger.error("score_feed_exhausted", url=url, attempts=self.config.max_attempts, error=str(last))
            raise ScoreFeedError(
                f"Score feed failed after {self.config.max_attempts} attempts: {last}",
                status_code=getattr(last, "status_code", None),
                url=url,
            ) from last

    def _fetch(self, feed: LeagueFeed, params: dict[str, Any], season: int | None) -> list[GameUpdate]:
        payload = self._get_json(self._url(feed, feed.games_path), params)
        games: list[GameUpdate] = []
        for raw in payload.get("response") or []:
            if not isinstance(raw, dict):
                continue
            parsed = parse_game(raw, feed.code, season)
            if parsed is not None:
                games.append(parsed)
        return games

    def fetch_games(self, league: str, day: date) -> list[GameUpdate]:
        """All games for ``league`` on the UTC calendar date ``day``."""
        feed = get_league_feed(league)
        cache_key = (feed.code, day.isoformat())
        cached = self._cache.get(cache_key)
        if cached is not None:
            return cached

        season = season_for_date(feed.code, day)
        params = {"date": day.isoformat(), "league": feed.league_id, "season": season}
        games = self._fetch(feed, params, season)
        self._cache.set(cache_key, games)
        logger.info("score_feed_games_fetched", league=feed.code, date=day.isoformat(), count=len(games))
        return games

    def fetch_live_games(self, league: str) -> list[GameUpdate]:
        feed = get_league_feed(league)
        cache_key = (feed.code, "live")
        cached = self._cache.get(cache_key)
        if cached is not None:
            return cached

        if feed.is_fixture_shape:
            params: dict[str, Any] = {"live": str(feed.league_id)}
        else:
            params = {"live": "all", "league": feed.league_id}
        games = self._fetch(feed, params, None)
        self._cache.set(cache_key, games)
        logger.info("score_feed_live_fetched", league=feed.code, count=len(games))
        return games
