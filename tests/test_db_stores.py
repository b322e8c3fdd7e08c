"""Tests for db_stores.py: learner, ledger, flashcard, achievement and leaderboard stores."""

from __future__ import annotations

from datetime import timedelta

import pytest

from conftest import FIXED_NOW, set_learner_state
from database import get_db, seed_achievements
from db_stores import (
    AchievementStoreDB,
    ActivityCountersDB,
    FlashcardReviewDB,
    LeaderboardStoreDB,
    LearnerStoreDB,
    NotificationStoreDB,
    PointsLedgerDB,
)
from errors import Conflict, InvalidInput, StaleWrite
from progress import ReviewState, schedule_review


class TestLearnerStoreDB:
    def test_new_learner_defaults(self, app):
        with app.app_context():
            learner_id = LearnerStoreDB.create("Linus", now=FIXED_NOW)
            p = LearnerStoreDB.load(learner_id)
            assert p.name == "Linus"
            assert (p.points, p.level, p.streak) == (0, 1, 0)
            assert p.last_active_at is None
            assert p.version == 0

    def test_exists(self, app):
        with app.app_context():
            assert LearnerStoreDB.exists(1)
            assert not LearnerStoreDB.exists(999)
            assert LearnerStoreDB.load(999) is None

    def test_save_streak_bumps_version_and_longest(self, app):
        with app.app_context():
            p = LearnerStoreDB.load(1)
            LearnerStoreDB.save_streak(p, 3, FIXED_NOW)
            get_db().commit()
            reloaded = LearnerStoreDB.load(1)
            assert reloaded.streak == 3
            assert reloaded.longest_streak == 3
            assert reloaded.last_active_at == FIXED_NOW
            assert reloaded.version == 1

    def test_save_streak_stale_version(self, app):
        with app.app_context():
            p = LearnerStoreDB.load(1)
            set_learner_state(get_db(), 1, version=5)
            with pytest.raises(StaleWrite):
                LearnerStoreDB.save_streak(p, 2, FIXED_NOW)


class TestPointsLedgerDB:
    def test_award_appends_history_and_total(self, app):
        with app.app_context():
            p = LearnerStoreDB.load(1)
            ledger = PointsLedgerDB(1)
            result = ledger.award(p, "upload_document", 10, {"document_id": "d1"}, FIXED_NOW)
            get_db().commit()
            assert result.new_total == 10
            assert result.new_level == 1
            assert result.leveled_up is False
            assert LearnerStoreDB.load(1).points == 10
            history = ledger.history()
            assert len(history) == 1
            assert history[0].metadata == {"document_id": "d1"}

    def test_level_up_crossing_boundary(self, app):
        with app.app_context():
            p = LearnerStoreDB.load(1)
            ledger = PointsLedgerDB(1)
            ledger.award(p, "complete_quiz", 95, None, FIXED_NOW)
            result = ledger.award(p, "complete_quiz", 10, None, FIXED_NOW)
            assert result.leveled_up is True
            assert result.new_level == 2

    def test_zero_amount_still_recorded(self, app):
        with app.app_context():
            p = LearnerStoreDB.load(1)
            ledger = PointsLedgerDB(1)
            ledger.award(p, "ask_question", 0, None, FIXED_NOW)
            assert ledger.count("ask_question") == 1
            assert p.points == 0

    def test_negative_amount_rejected(self, app):
        with app.app_context():
            p = LearnerStoreDB.load(1)
            with pytest.raises(InvalidInput):
                PointsLedgerDB(1).award(p, "ask_question", -5, None, FIXED_NOW)
            assert PointsLedgerDB(1).count() == 0

    def test_stale_profile_rejected(self, app):
        with app.app_context():
            p = LearnerStoreDB.load(1)
            set_learner_state(get_db(), 1, version=9)
            with pytest.raises(StaleWrite):
                PointsLedgerDB(1).award(p, "ask_question", 2, None, FIXED_NOW)

    def test_history_pagination(self, app):
        with app.app_context():
            p = LearnerStoreDB.load(1)
            ledger = PointsLedgerDB(1)
            for i in range(5):
                ledger.award(p, "ask_question", i, None, FIXED_NOW)
            get_db().commit()
            page = ledger.history(limit=2, offset=2)
            assert [e.points_delta for e in page] == [2, 1]
            assert ledger.count() == 5


class TestActivityCountersDB:
    def test_increment_known_action(self, app):
        with app.app_context():
            counters = ActivityCountersDB(1)
            assert counters.increment("upload_document") == "documents_uploaded"
            assert counters.increment("create_note") == "notes_created"
            assert counters.increment("ask_question") is None
            agg = counters.aggregates(LearnerStoreDB.load(1))
            assert agg.documents == 1
            assert agg.notes_created == 1
            assert agg.flashcards_reviewed == 0


class TestFlashcardReviewDB:
    def test_new_card_review_state_defaults(self, app):
        with app.app_context():
            card = FlashcardReviewDB(1).add("Q", "A", FIXED_NOW)
            loaded = FlashcardReviewDB.get(card.id)
            assert loaded.learner_id == 1
            assert loaded.state.repetitions == 0
            assert loaded.state.easiness_factor == 2.5
            assert loaded.state.interval_days == 1
            assert loaded.state.next_review_at == FIXED_NOW
            assert loaded.last_reviewed_at is None

    def test_due_ordering_and_count(self, app):
        with app.app_context():
            store = FlashcardReviewDB(1)
            first = store.add("Q1", "A1", FIXED_NOW - timedelta(days=2))
            second = store.add("Q2", "A2", FIXED_NOW - timedelta(days=1))
            store.add("Q3", "A3", FIXED_NOW + timedelta(days=1))
            FlashcardReviewDB(2).add("other", "card", FIXED_NOW - timedelta(days=3))
            due = store.due(FIXED_NOW)
            assert [c.id for c in due] == [first.id, second.id]
            assert store.due_count(FIXED_NOW) == 2

    def test_save_state_cas(self, app):
        with app.app_context():
            card = FlashcardReviewDB(1).add("Q", "A", FIXED_NOW)
            stale = FlashcardReviewDB.get(card.id)
            FlashcardReviewDB.save_state(card, schedule_review(5, card.state, FIXED_NOW), FIXED_NOW)
            with pytest.raises(StaleWrite):
                FlashcardReviewDB.save_state(stale, ReviewState(), FIXED_NOW)
            assert FlashcardReviewDB.get(card.id).state.repetitions == 1


class TestAchievementStoreDB:
    def test_catalog_seeded_in_order(self, app):
        with app.app_context():
            catalog = AchievementStoreDB.catalog()
            assert len(catalog) == 19
            assert catalog[0].key == "first_upload"
            assert seed_achievements() == 0

    def test_unlock_is_create_once(self, app):
        with app.app_context():
            store = AchievementStoreDB(1)
            store.unlock("first_upload", FIXED_NOW)
            with pytest.raises(Conflict):
                store.unlock("first_upload", FIXED_NOW)
            assert list(store.unlocked()) == ["first_upload"]
            assert AchievementStoreDB(2).unlocked() == {}


class TestLeaderboardStoreDB:
    def _give(self, learner_id, amount, when):
        p = LearnerStoreDB.load(learner_id)
        PointsLedgerDB(learner_id).award(p, "complete_quiz", amount, None, when)
        get_db().commit()

    def test_alltime_tie_break_by_id(self, app):
        with app.app_context():
            self._give(2, 50, FIXED_NOW)
            self._give(1, 50, FIXED_NOW)
            board = LeaderboardStoreDB.alltime(10)
            assert [(e["rank"], e["learner_id"]) for e in board] == [(1, 1), (2, 2)]
            assert LeaderboardStoreDB.alltime_rank(1) == 1
            assert LeaderboardStoreDB.alltime_rank(2) == 2
            assert LeaderboardStoreDB.alltime_rank(999) is None

    def test_windowed_sums_only_recent_deltas(self, app):
        with app.app_context():
            self._give(1, 500, FIXED_NOW - timedelta(days=10))
            self._give(2, 20, FIXED_NOW - timedelta(days=1))
            since = FIXED_NOW - timedelta(days=7)
            board = LeaderboardStoreDB.windowed(since, 10)
            assert [(e["learner_id"], e["points"]) for e in board] == [(2, 20)]
            assert LeaderboardStoreDB.windowed_rank(1, since) is None
            assert LeaderboardStoreDB.windowed_rank(2, since) == 1
            assert LeaderboardStoreDB.alltime_rank(1) == 1


class TestNotificationStoreDB:
    def test_add_and_recent(self, app):
        with app.app_context():
            store = NotificationStoreDB(1)
            store.add("level_up", "Level Up!", "You reached level 2", "/progress", now=FIXED_NOW)
            recent = store.recent()
            assert len(recent) == 1
            assert recent[0].type == "level_up"
            assert store.unread_count() == 1
            assert NotificationStoreDB(2).unread_count() == 0
