"""Tests for notifications.py: post-commit sink and streak-risk sweep."""

from __future__ import annotations

from datetime import timedelta

from conftest import FIXED_NOW, set_learner_state
from database import get_db
from db_stores import NotificationStoreDB
from notifications import (
    deliver_notification,
    notify_achievement,
    send_streak_risk_notifications,
)
from progress import ACHIEVEMENT_CATALOG, to_iso


class TestDelivery:
    def test_deliver_persists(self, app):
        with app.app_context():
            notif_id = deliver_notification(1, "level_up", "Level Up!", "Level 2", "/progress",
                                            to_iso(FIXED_NOW))
            recent = NotificationStoreDB(1).recent()
            assert [n.id for n in recent] == [notif_id]
            assert recent[0].created_at == to_iso(FIXED_NOW)

    def test_achievement_message(self, app):
        with app.app_context():
            notify_achievement(1, ACHIEVEMENT_CATALOG[0], FIXED_NOW)
            n = NotificationStoreDB(1).recent()[0]
            assert n.type == "achievement_unlocked"
            assert '"First Upload"' in n.message
            assert "10 points" in n.message

    def test_sink_failure_is_logged_not_raised(self, app, monkeypatch, caplog):
        import tasks

        def broken(*args, **kwargs):
            raise RuntimeError("sink down")

        monkeypatch.setattr(tasks, "enqueue", broken)
        with app.app_context():
            notify_achievement(1, ACHIEVEMENT_CATALOG[0], FIXED_NOW)
        assert "Failed to deliver achievement_unlocked notification" in caplog.text


class TestStreakRiskSweep:
    def test_warns_once_per_day(self, app):
        with app.app_context():
            db = get_db()
            yesterday_morning = FIXED_NOW.replace(hour=9) - timedelta(days=1)
            set_learner_state(db, 1, streak=4, last_active_at=to_iso(yesterday_morning))
            set_learner_state(db, 2, streak=2, last_active_at=to_iso(FIXED_NOW.replace(hour=8)))

            now = FIXED_NOW.replace(hour=10)
            assert send_streak_risk_notifications(now) == 1
            assert send_streak_risk_notifications(now) == 0
            warned = NotificationStoreDB(1).recent()
            assert [n.type for n in warned] == ["streak_risk"]
            assert "4-day streak" in warned[0].message
            assert NotificationStoreDB(2).recent() == []
