"""Upstream score providers."""

from .score_feed import LEAGUE_FEEDS, ScoreFeedClient, parse_game, season_for_date

__all__ = ["LEAGUE_FEEDS", "ScoreFeedClient", "parse_game", "season_for_date"]
