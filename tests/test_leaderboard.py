"""Tests for leaderboard.py: windowed ranking, tie-breaks and the TTL cache."""

from __future__ import annotations

from datetime import timedelta

import pytest

from cache_backend import InMemoryCache
from conftest import FIXED_NOW
from database import get_db
from db_stores import LearnerStoreDB, PointsLedgerDB
from errors import InvalidInput, InvalidPeriod
from leaderboard import LeaderboardAggregator, get_leaderboard, get_user_rank
from progress import to_iso


def _give(learner_id, amount, when):
    p = LearnerStoreDB.load(learner_id)
    PointsLedgerDB(learner_id).award(p, "complete_quiz", amount, None, when)
    get_db().commit()


class TestRanking:
    def test_weekly_rank_null_without_recent_activity(self, app, clock):
        with app.app_context():
            _give(1, 500, FIXED_NOW - timedelta(days=10))
            _give(2, 15, FIXED_NOW - timedelta(hours=3))
            board = LeaderboardAggregator(clock=clock)
            assert board.rank_of(1, "weekly") is None
            assert board.rank_of(1, "alltime") == 1
            assert board.rank_of(1, "monthly") == 1
            assert board.rank_of(2, "weekly") == 1

    def test_windowed_points_are_period_sums(self, app, clock):
        with app.app_context():
            _give(1, 500, FIXED_NOW - timedelta(days=10))
            _give(1, 5, FIXED_NOW - timedelta(days=1))
            _give(2, 40, FIXED_NOW - timedelta(days=2))
            weekly = LeaderboardAggregator(clock=clock).rank("weekly")
            assert [(e["learner_id"], e["points"]) for e in weekly["entries"]] == [(2, 40), (1, 5)]
            alltime = LeaderboardAggregator(clock=clock).rank("alltime")
            assert [(e["learner_id"], e["points"]) for e in alltime["entries"]] == [(1, 505), (2, 40)]

    def test_ties_broken_by_learner_id(self, app, clock):
        with app.app_context():
            _give(2, 30, FIXED_NOW - timedelta(days=1))
            _give(1, 30, FIXED_NOW - timedelta(days=1))
            board = LeaderboardAggregator(clock=clock)
            entries = board.rank("weekly")["entries"]
            assert [(e["rank"], e["learner_id"]) for e in entries] == [(1, 1), (2, 2)]
            assert board.rank_of(1, "weekly") == 1
            assert board.rank_of(2, "weekly") == 2

    def test_limit_applied_and_capped(self, app, clock):
        with app.app_context():
            for i in range(3):
                learner_id = LearnerStoreDB.create(f"L{i}", now=FIXED_NOW)
                _give(learner_id, 10 * (i + 1), FIXED_NOW)
            board = LeaderboardAggregator(clock=clock, max_limit=2)
            assert len(board.rank("alltime", limit=1)["entries"]) == 1
            assert len(board.rank("alltime", limit=50)["entries"]) == 2

    def test_invalid_arguments(self, app, clock):
        with app.app_context():
            board = LeaderboardAggregator(clock=clock)
            with pytest.raises(InvalidPeriod):
                board.rank("yearly")
            with pytest.raises(InvalidPeriod):
                board.rank_of(1, "daily")
            with pytest.raises(InvalidInput):
                board.rank("weekly", limit=0)
            with pytest.raises(InvalidInput):
                board.rank("weekly", limit="ten")

    def test_unknown_learner_rank(self, app, clock):
        with app.app_context():
            assert LeaderboardAggregator(clock=clock).rank_of(999, "alltime") is None


class TestCaching:
    def test_payload_labelled_and_cached_until_ttl(self, app, clock, monotonic):
        with app.app_context():
            board = LeaderboardAggregator(cache=InMemoryCache(clock=monotonic), ttl=60, clock=clock)
            _give(1, 10, FIXED_NOW)

            first = board.rank("weekly")
            assert first["period"] == "weekly"
            assert first["cached"] is False
            assert first["generated_at"] == to_iso(FIXED_NOW)

            _give(2, 50, FIXED_NOW)
            monotonic.advance(30)
            second = board.rank("weekly")
            assert second["cached"] is True
            assert [e["learner_id"] for e in second["entries"]] == [1]

            monotonic.advance(31)
            third = board.rank("weekly")
            assert third["cached"] is False
            assert [e["learner_id"] for e in third["entries"]] == [2, 1]

    def test_periods_cached_separately(self, app, clock, monotonic):
        with app.app_context():
            board = LeaderboardAggregator(cache=InMemoryCache(clock=monotonic), clock=clock)
            _give(1, 10, FIXED_NOW - timedelta(days=20))
            assert board.rank("weekly")["entries"] == []
            monthly = board.rank("monthly")
            assert monthly["period"] == "monthly"
            assert monthly["cached"] is False
            assert len(monthly["entries"]) == 1

    def test_mismatched_cached_period_discarded(self, app, clock, monotonic):
        with app.app_context():
            cache = InMemoryCache(clock=monotonic)
            cache.set("leaderboard:weekly:100", {"period": "monthly", "generated_at": "", "entries": []})
            _give(1, 10, FIXED_NOW)
            result = LeaderboardAggregator(cache=cache, clock=clock).rank("weekly")
            assert result["period"] == "weekly"
            assert result["cached"] is False
            assert len(result["entries"]) == 1


class TestAppWiring:
    def test_module_helpers_use_app_aggregator(self, app):
        with app.app_context():
            _give(1, 10, FIXED_NOW)
            board = get_leaderboard("alltime", 10)
            assert board["period"] == "alltime"
            assert board["entries"][0]["learner_id"] == 1
            assert get_user_rank(1, "alltime") == 1
            assert app.extensions["leaderboard"].ttl == 60
