"""Tests for the scheduled lifecycle jobs, driven by an in-memory feed."""

from __future__ import annotations

from datetime import date, timedelta
from unittest.mock import patch

from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from game_lifecycle.config import LifecycleConfig
from game_lifecycle.db import db_models
from game_lifecycle.exceptions import ScoreFeedError
from game_lifecycle.models import GameUpdate
from game_lifecycle.services import lifecycle_jobs
from game_lifecycle.services.lifecycle_jobs import (
    backfill_games,
    discover_games,
    finalize_stuck_games,
    purge_placeholder_games,
    reconcile,
    sync_games,
)


class FakeFeed:
    """Serves canned games per (league, date) and per league for live."""

    def __init__(self):
        self.daily: dict[tuple[str, date], list[GameUpdate]] = {}
        self.live: dict[str, list[GameUpdate]] = {}
        self.failing: set[str] = set()
        self.calls: list[tuple[str, str]] = []

    def add(self, league: str, day: date, *games: GameUpdate) -> None:
        self.daily.setdefault((league, day), []).extend(games)

    def fetch_games(self, league, day):
        self.calls.append((league, day.isoformat()))
        if league in self.failing:
            raise ScoreFeedError(f"{league} upstream returned 503", status_code=503)
        return list(self.daily.get((league, day), []))

    def fetch_live_games(self, league):
        self.calls.append((league, "live"))
        if league in self.failing:
            raise ScoreFeedError(f"{league} upstream returned 503", status_code=503)
        return list(self.live.get(league, []))


def _game(external_id, starts_at, *, league="nfl", status="NS", home=None, away=None,
          home_team="Kansas City Chiefs", away_team="Buffalo Bills"):
    from game_lifecycle.normalization import normalize_status

    return GameUpdate(
        league=league,
        external_game_id=external_id,
        starts_at=starts_at,
        home_team=home_team,
        away_team=away_team,
        home_score=home,
        away_score=away,
        status_raw=status,
        status_norm=normalize_status(status),
    )


def _games(session):
    session.expire_all()
    return {
        g.external_game_id: g
        for g in session.execute(select(db_models.SportsGame)).scalars().all()
    }


def _queue(session):
    session.expire_all()
    return session.execute(select(db_models.SettlementQueueEntry)).scalars().all()


class TestDiscover:
    def test_ingests_every_date_in_window(self, session, now):
        feed = FakeFeed()
        feed.add("NFL", now.date() - timedelta(days=1), _game("1", now - timedelta(days=1)))
        feed.add("NFL", now.date(), _game("2", now + timedelta(hours=1)))
        feed.add("NFL", now.date() + timedelta(days=1), _game("3", now + timedelta(days=1)))

        result = discover_games(session, feed, leagues=["NFL"], now=now, hours_back=24, hours_forward=24)

        assert result.success is True
        assert result.total("upserted") == 3
        assert set(_games(session)) == {"1", "2", "3"}
        assert [c[1] for c in feed.calls] == [
            (now.date() + timedelta(days=offset)).isoformat() for offset in (-1, 0, 1)
        ]

    def test_discovered_final_is_enqueued(self, session, now):
        feed = FakeFeed()
        feed.add("NFL", now.date(), _game("1", now - timedelta(hours=4), status="FT", home=24, away=27))

        result = discover_games(session, feed, leagues=["NFL"], now=now, hours_back=0, hours_forward=0)

        assert result.total("finalized") == 1
        assert result.total("enqueued") == 1
        [row] = _queue(session)
        assert row.outcome == "AWAY"

    def test_one_league_failing_does_not_stop_others(self, session, now):
        feed = FakeFeed()
        feed.failing.add("NBA")
        feed.add("NFL", now.date(), _game("1", now))

        result = discover_games(session, feed, leagues=["NBA", "NFL"], now=now, hours_back=0, hours_forward=0)

        assert result.success is False
        by_league = {r.league: r for r in result.results}
        assert by_league["NBA"].errors
        assert by_league["NFL"].success
        assert result.first_error["league"] == "NBA"
        assert "503" in result.first_error["message"]
        assert "1" in _games(session)

    def test_respects_per_league_limit(self, session, now):
        feed = FakeFeed()
        feed.add("NFL", now.date(), *[_game(str(i), now) for i in range(5)])

        result = discover_games(
            session, feed, leagues=["NFL"], now=now, hours_back=0, hours_forward=0, max_games_per_league=2
        )

        assert result.total("fetched") == 5
        assert result.total("upserted") == 2

    def test_truncated_batch_is_logged(self, session, now):
        feed = FakeFeed()
        feed.add("NFL", now.date(), *[_game(str(i), now) for i in range(5)])

        with patch("game_lifecycle.services.lifecycle_jobs.logger") as log:
            discover_games(
                session, feed, leagues=["NFL"], now=now, hours_back=0, hours_forward=0, max_games_per_league=2
            )

        log.warning.assert_any_call(
            "lifecycle_discover_batch_truncated", league="NFL", available=5, limit=2, dropped=3
        )

    def test_default_batch_limits(self):
        cfg = LifecycleConfig()

        assert cfg.max_discover_games_per_league == 500
        assert cfg.max_sync_games == 200
        assert cfg.max_finalize_games == 100

    def test_result_serializes_totals(self, session, now):
        feed = FakeFeed()
        feed.add("NFL", now.date(), _game("1", now))

        data = discover_games(session, feed, leagues=["NFL"], now=now, hours_back=0, hours_forward=0).to_dict()

        assert data["job"] == "discover"
        assert data["total_upserted"] == 1
        assert data["first_error"] is None
        assert data["results"][0]["league"] == "NFL"


class TestSync:
    def test_live_update_wins_over_daily_listing(self, session, make_game, now):
        make_game(external_game_id="1", status_norm="SCHEDULED")
        feed = FakeFeed()
        feed.live["NFL"] = [_game("1", now - timedelta(hours=1), status="Q3", home=10, away=7)]
        feed.add("NFL", now.date(), _game("1", now - timedelta(hours=1), status="NS"))

        result = sync_games(session, feed, leagues=["NFL"], now=now)

        assert result.total("fetched") == 1
        game = _games(session)["1"]
        assert game.status_norm == "LIVE"
        assert game.home_score == 10

    def test_skips_placeholder_matchups(self, session, now):
        feed = FakeFeed()
        feed.add(
            "NFL",
            now.date(),
            _game("pro-bowl", now, home_team="AFC", away_team="NFC"),
            _game("real", now),
        )

        result = sync_games(session, feed, leagues=["NFL"], now=now)

        assert result.total("upserted") == 1
        assert set(_games(session)) == {"real"}

    def test_final_during_sync_enqueues(self, session, make_game, now):
        make_game(external_game_id="1", status_norm="LIVE")
        feed = FakeFeed()
        feed.live["NFL"] = [_game("1", now - timedelta(hours=3), status="FT", home=30, away=20)]

        result = sync_games(session, feed, leagues=["NFL"], now=now)

        assert result.total("enqueued") == 1
        assert [(r.outcome, r.status) for r in _queue(session)] == [("HOME", "QUEUED")]

    def test_feed_error_is_recorded(self, session, now):
        feed = FakeFeed()
        feed.failing.add("NFL")

        result = sync_games(session, feed, leagues=["NFL"], now=now)

        assert result.success is False
        assert "503" in result.results[0].errors[0]


class TestFinalizeStuck:
    def test_finalizes_games_reported_final(self, session, make_game, now):
        starts = now - timedelta(hours=6)
        game = make_game(external_game_id="1", status_norm="LIVE", starts_at=starts)
        feed = FakeFeed()
        feed.add("NFL", starts.date(), _game("1", starts, status="FT", home=3, away=1))

        result = finalize_stuck_games(session, feed, leagues=["NFL"], now=now)

        assert result.total("fetched") == 1
        assert result.total("finalized") == 1
        session.expire_all()
        refreshed = session.get(db_models.SportsGame, game.id)
        assert refreshed.status_norm == "FINAL"
        assert refreshed.winner_side == "HOME"
        assert len(_queue(session)) == 1

    def test_still_live_upstream_is_left_alone(self, session, make_game, now):
        starts = now - timedelta(hours=6)
        make_game(external_game_id="1", status_norm="LIVE", starts_at=starts)
        feed = FakeFeed()
        feed.add("NFL", starts.date(), _game("1", starts, status="Q4", home=3, away=1))

        result = finalize_stuck_games(session, feed, leagues=["NFL"], now=now)

        assert result.total("upserted") == 0
        assert _games(session)["1"].status_norm == "LIVE"

    def test_recent_and_finalized_games_are_not_candidates(self, session, make_game, now):
        make_game(external_game_id="recent", status_norm="LIVE", starts_at=now - timedelta(hours=1))
        make_game(
            external_game_id="done",
            status_norm="FINAL",
            starts_at=now - timedelta(hours=10),
            finalized_at=now - timedelta(hours=7),
        )
        feed = FakeFeed()

        result = finalize_stuck_games(session, feed, leagues=["NFL"], now=now)

        assert result.total("fetched") == 0
        assert feed.calls == []

    def test_cancelled_upstream_is_closed(self, session, make_game, now):
        starts = now - timedelta(hours=6)
        make_game(external_game_id="1", status_norm="SCHEDULED", starts_at=starts)
        feed = FakeFeed()
        feed.add("NFL", starts.date(), _game("1", starts, status="PST"))

        finalize_stuck_games(session, feed, leagues=["NFL"], now=now)

        assert [(r.status, r.outcome) for r in _queue(session)] == [("SKIPPED", "CANCELED")]

    def test_failed_candidate_keeps_earlier_ones(self, session, make_game, now):
        starts = now - timedelta(hours=6)
        feed = FakeFeed()
        for offset, external_id in enumerate(("1", "2", "3")):
            kickoff = starts + timedelta(minutes=30 * offset)
            make_game(external_game_id=external_id, status_norm="LIVE", starts_at=kickoff)
            feed.add("NFL", starts.date(), _game(external_id, kickoff, status="FT", home=3, away=1))
        real_apply = lifecycle_jobs.apply_game_update

        def flaky_apply(session, update, now, **kwargs):
            if update.external_game_id == "2":
                raise OperationalError("UPDATE sports_games", {}, Exception("deadlock detected"))
            return real_apply(session, update, now, **kwargs)

        with patch("game_lifecycle.services.lifecycle_jobs.apply_game_update", side_effect=flaky_apply):
            result = finalize_stuck_games(session, feed, leagues=["NFL"], now=now)

        assert result.total("finalized") == 2
        assert result.total("enqueued") == 2
        [errors] = [r.errors for r in result.results]
        assert len(errors) == 1
        assert errors[0].startswith("2: ")
        games = _games(session)
        assert {key: games[key].status_norm for key in ("1", "2", "3")} == {
            "1": "FINAL",
            "2": "LIVE",
            "3": "FINAL",
        }
        assert sorted(row.external_game_id for row in _queue(session)) == ["1", "3"]

    def test_missing_from_provider_is_skipped(self, session, make_game, now):
        make_game(external_game_id="1", status_norm="LIVE", starts_at=now - timedelta(hours=6))

        result = finalize_stuck_games(session, FakeFeed(), leagues=["NFL"], now=now)

        assert result.success is True
        assert result.total("finalized") == 0


class TestBackfill:
    def test_walks_days_oldest_first_then_finalizes(self, session, now):
        feed = FakeFeed()

        result = backfill_games(session, feed, days=2, leagues=["NFL"], now=now)

        assert [c[1] for c in feed.calls] == [
            (now.date() - timedelta(days=offset)).isoformat() for offset in (2, 1, 0)
        ]
        assert result["job"] == "backfill"
        assert result["days"] == 2
        assert result["success"] is True
        assert result["finalize"]["job"] == "finalize"

    def test_ingests_and_enqueues_finals(self, session, make_game, now):
        kickoff = now - timedelta(days=1)
        make_game(
            external_game_id="10",
            status_norm="FINAL",
            home_score=2,
            away_score=1,
            winner_side="HOME",
            starts_at=kickoff,
            finalized_at=kickoff + timedelta(hours=3),
        )
        feed = FakeFeed()
        feed.add(
            "NFL",
            kickoff.date(),
            _game("10", kickoff, status="FT", home=2, away=1),
            _game("11", kickoff, status="FT", home=0, away=3),
            _game("12", kickoff, home_team="AFC", away_team="NFC"),
        )

        result = backfill_games(session, feed, days=1, leagues=["NFL"], now=now)

        assert result["total_fetched"] == 2
        assert result["total_upserted"] == 2
        assert result["total_enqueued"] == 2
        assert "12" not in _games(session)
        rows = sorted((row.external_game_id, row.outcome, row.reason) for row in _queue(session))
        assert rows == [("10", "HOME", "backfill"), ("11", "AWAY", "final")]

    def test_settled_game_is_not_enqueued(self, session, make_game, now):
        kickoff = now - timedelta(days=1)
        make_game(
            external_game_id="10",
            status_norm="FINAL",
            home_score=2,
            away_score=1,
            winner_side="HOME",
            starts_at=kickoff,
            finalized_at=kickoff + timedelta(hours=3),
            settled_at=kickoff + timedelta(hours=4),
        )
        feed = FakeFeed()
        feed.add("NFL", kickoff.date(), _game("10", kickoff, status="FT", home=2, away=1))

        result = backfill_games(session, feed, days=1, leagues=["NFL"], now=now)

        assert result["total_enqueued"] == 0
        assert _queue(session) == []

    def test_failing_league_is_recorded(self, session, now):
        feed = FakeFeed()
        feed.failing.add("NBA")
        feed.add("NFL", now.date(), _game("1", now))

        result = backfill_games(session, feed, days=0, leagues=["NBA", "NFL"], now=now)

        assert result["success"] is False
        assert result["first_error"]["league"] == "NBA"
        assert "1" in _games(session)


class TestReconcile:
    def test_runs_both_repairs(self, session, make_game, make_queue_item, now):
        make_queue_item(status="PROCESSING", locked_by="dead-worker", locked_at=now - timedelta(minutes=30))
        make_game(status_norm="FINAL", home_score=2, away_score=2)

        summary = reconcile(session, now=now)

        assert summary["success"] is True
        assert summary["released_stale_locks"] == 1
        assert summary["orphans"]["enqueued"] == 1
        statuses = sorted(r.status for r in _queue(session))
        assert statuses == ["QUEUED", "QUEUED"]


class TestPurgePlaceholders:
    def test_dry_run_reports_only(self, session, make_game):
        game = make_game(home_team="AFC", away_team="NFC")
        make_game()

        summary = purge_placeholder_games(session, dry_run=True)

        assert summary == {"candidates": 1, "deleted": 0, "game_ids": [game.id], "dry_run": True}
        assert len(_games(session)) == 2

    def test_deletes_unfinalized_placeholders(self, session, make_game, now):
        make_game(external_game_id="pb", home_team="AFC", away_team="NFC")
        make_game(external_game_id="pb-final", home_team="AFC", away_team="NFC", finalized_at=now)
        make_game(external_game_id="real")

        summary = purge_placeholder_games(session)

        assert summary["deleted"] == 1
        assert set(_games(session)) == {"pb-final", "real"}
