"""Tests for the lifecycle health checks and repair actions."""

from __future__ import annotations

from datetime import timedelta
from unittest.mock import MagicMock

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from game_lifecycle.db import db_models
from game_lifecycle.services import health
from game_lifecycle.services.settlement_queue import MAX_ATTEMPTS
from game_lifecycle.utils.datetime_utils import ensure_utc


def _check(report, name):
    return next(check for check in report.checks if check.name == name)


class TestSeverity:
    @pytest.mark.parametrize(
        "name,count,expected",
        [
            ("stuck_live_games", 0, "ok"),
            ("stuck_live_games", 1, "warning"),
            ("stuck_live_games", 4, "warning"),
            ("stuck_live_games", 5, "critical"),
            ("stuck_scheduled_games", 19, "ok"),
            ("stuck_scheduled_games", 20, "warning"),
            ("stuck_scheduled_games", 100, "critical"),
            ("stale_processing_locks", 3, "critical"),
            ("failed_queue_items", 1, "ok"),
            ("failed_queue_items", 2, "warning"),
            ("failed_queue_items", 5, "critical"),
            ("orphaned_final_games", 1, "warning"),
            ("orphaned_final_games", 3, "critical"),
            ("stuck_queue_items", 2, "ok"),
            ("stuck_queue_items", 3, "warning"),
            ("stuck_queue_items", 10, "critical"),
        ],
    )
    def test_thresholds(self, name, count, expected):
        assert health.severity_for(name, count) == expected

    def test_aggregate(self):
        assert health.aggregate_status(["ok", "ok"]) == "healthy"
        assert health.aggregate_status(["ok", "warning"]) == "warning"
        assert health.aggregate_status(["warning", "critical", "ok"]) == "critical"


class TestHealthChecks:
    def test_empty_database_is_healthy(self, session, now):
        report = health.run_health_checks(session, now)

        assert report.status == "healthy"
        assert len(report.checks) == 6
        assert all(check.count == 0 for check in report.checks)

    def test_stuck_live_game_warns(self, session, make_game, now):
        make_game(status_norm="LIVE", starts_at=now - timedelta(hours=7))
        make_game(status_norm="LIVE", starts_at=now - timedelta(hours=2))

        report = health.run_health_checks(session, now)

        check = _check(report, "stuck_live_games")
        assert check.count == 1
        assert check.status == "warning"
        assert report.status == "warning"

    def test_stuck_scheduled_games_counted(self, session, make_game, now):
        make_game(status_norm="SCHEDULED", starts_at=now - timedelta(hours=9))
        make_game(status_norm="SCHEDULED", starts_at=now + timedelta(hours=9))

        check = _check(health.run_health_checks(session, now), "stuck_scheduled_games")

        assert check.count == 1
        assert check.status == "ok"

    def test_orphaned_final_is_counted_until_enqueued(self, session, make_game, make_queue_item, now):
        make_game(status_norm="FINAL", home_score=3, away_score=1)
        queued = make_game(status_norm="FINAL", home_score=2, away_score=0)
        make_queue_item(game=queued)
        make_game(status_norm="FINAL", home_score=1, away_score=0, settled_at=now)

        check = _check(health.run_health_checks(session, now), "orphaned_final_games")

        assert check.count == 1
        assert check.status == "warning"

    def test_queue_checks(self, session, make_queue_item, now):
        make_queue_item(updated_at=now - timedelta(minutes=45))
        make_queue_item(status="FAILED", attempts=MAX_ATTEMPTS)
        make_queue_item(status="FAILED", attempts=2)
        make_queue_item(
            status="PROCESSING",
            locked_by="settler-1",
            locked_at=now - timedelta(minutes=15),
            updated_at=now - timedelta(minutes=15),
        )

        report = health.run_health_checks(session, now)

        assert _check(report, "stuck_queue_items").count == 1
        assert _check(report, "failed_queue_items").count == 1
        assert _check(report, "stale_processing_locks").count == 1
        assert _check(report, "stuck_queue_items").status == "ok"
        assert _check(report, "failed_queue_items").status == "ok"
        assert _check(report, "stale_processing_locks").status == "warning"

    def test_three_orphaned_finals_are_critical(self, session, make_game, make_queue_item, now):
        for _ in range(3):
            make_game(status_norm="FINAL", home_score=2, away_score=1)
        make_queue_item(updated_at=now - timedelta(minutes=45))

        report = health.run_health_checks(session, now)

        assert _check(report, "orphaned_final_games").status == "critical"
        assert _check(report, "stuck_queue_items").status == "ok"
        assert report.status == "critical"

    def test_critical_dominates(self, session, make_game, now):
        for _ in range(5):
            make_game(status_norm="LIVE", starts_at=now - timedelta(hours=12))

        assert health.run_health_checks(session, now).status == "critical"

    def test_failing_query_degrades_to_warning(self, now):
        session = MagicMock()
        session.execute.side_effect = OperationalError("SELECT", {}, Exception("connection reset"))

        report = health.run_health_checks(session, now)

        assert report.status == "warning"
        assert all(check.status == "warning" for check in report.checks)
        assert all(check.count == 0 for check in report.checks)
        assert "connection reset" in report.checks[0].error
        assert session.rollback.called

    def test_report_serializes(self, session, now):
        data = health.run_health_checks(session, now).to_dict()

        assert data["status"] == "healthy"
        assert data["checked_at"] == now.isoformat()
        first = data["checks"][0]
        assert set(first) == {"name", "status", "count", "threshold", "description"}
        assert first["threshold"] == {"warning": 1, "critical": 5}


class TestReleaseStaleLocks:
    def test_only_old_locks_are_released(self, session, make_queue_item, now):
        stale = make_queue_item(status="PROCESSING", locked_by="w1", locked_at=now - timedelta(minutes=11))
        fresh = make_queue_item(status="PROCESSING", locked_by="w2", locked_at=now - timedelta(minutes=5))

        assert health.release_stale_processing_locks(session, now) == 1
        session.commit()
        session.expire_all()

        stale_row = session.get(db_models.SettlementQueueEntry, stale.id)
        assert stale_row.status == "QUEUED"
        assert stale_row.locked_by is None
        assert stale_row.locked_at is None
        fresh_row = session.get(db_models.SettlementQueueEntry, fresh.id)
        assert fresh_row.status == "PROCESSING"
        assert fresh_row.locked_by == "w2"

    def test_nothing_to_release(self, session, now):
        assert health.release_stale_processing_locks(session, now) == 0


class TestEnqueueOrphans:
    def _rows(self, session, game_id):
        session.expire_all()
        return session.execute(
            select(db_models.SettlementQueueEntry).where(
                db_models.SettlementQueueEntry.game_id == game_id
            )
        ).scalars().all()

    def test_enqueues_with_computed_winner(self, session, make_game, now):
        game = make_game(status_norm="FINAL", home_score=3, away_score=1)

        summary = health.enqueue_orphaned_final_games(session, now)
        session.commit()

        assert summary == {"candidates": 1, "enqueued": 1, "skipped_missing_scores": []}
        [row] = self._rows(session, game.id)
        assert row.status == "QUEUED"
        assert row.outcome == "HOME"
        assert row.reason == "reconcile_orphan"
        assert session.get(db_models.SportsGame, game.id).winner_side == "HOME"

    def test_rerun_is_idempotent(self, session, make_game, now):
        game = make_game(status_norm="FINAL", home_score=1, away_score=3)
        health.enqueue_orphaned_final_games(session, now)
        session.commit()

        again = health.enqueue_orphaned_final_games(session, now + timedelta(minutes=10))
        session.commit()

        assert again["candidates"] == 0
        rows = self._rows(session, game.id)
        assert len(rows) == 1
        assert rows[0].outcome == "AWAY"

    def test_existing_failed_row_is_left_alone(self, session, make_game, make_queue_item, now):
        game = make_game(status_norm="FINAL", home_score=2, away_score=2)
        make_queue_item(game=game, status="FAILED", attempts=MAX_ATTEMPTS, outcome="DRAW")

        summary = health.enqueue_orphaned_final_games(session, now)

        assert summary["candidates"] == 0
        assert [r.status for r in self._rows(session, game.id)] == ["FAILED"]

    def test_missing_scores_are_reported(self, session, make_game, now):
        game = make_game(status_norm="FINAL", home_score=None, away_score=2)

        summary = health.enqueue_orphaned_final_games(session, now)

        assert summary["enqueued"] == 0
        assert summary["skipped_missing_scores"] == [game.id]
        assert self._rows(session, game.id) == []

    def test_respects_limit(self, session, make_game, now):
        for offset in range(3):
            make_game(status_norm="FINAL", home_score=1, away_score=0, starts_at=now - timedelta(hours=offset + 1))

        summary = health.enqueue_orphaned_final_games(session, now, limit=2)

        assert summary["candidates"] == 2
        assert summary["enqueued"] == 2

    def test_stored_winner_is_kept(self, session, make_game, now):
        game = make_game(status_norm="FINAL", home_score=3, away_score=1, winner_side="HOME")

        health.enqueue_orphaned_final_games(session, now)
        session.commit()

        assert ensure_utc(session.get(db_models.SportsGame, game.id).updated_at) == now - timedelta(days=1)
