"""
Notification sink for progress events.

Level-ups, achievement unlocks and streak milestones are announced after the
action that caused them has committed. Delivery is best-effort: failures are
logged and swallowed so a notification can never undo points, streaks or
review state.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime

from flask import has_app_context

from progress import (
    AchievementDefinition,
    is_streak_at_risk,
    parse_iso,
    streak_milestone_bonus,
    to_iso,
    utcnow,
)

logger = logging.getLogger(__name__)

LEVEL_UP = "level_up"
ACHIEVEMENT_UNLOCKED = "achievement_unlocked"
STREAK_MILESTONE = "streak_milestone"
STREAK_RISK = "streak_risk"


@contextmanager
def _app_context():
    """Reuse the caller's app context, or build one when running in an RQ worker."""
    if has_app_context():
        yield
        return
    from app import create_app
    with create_app().app_context():
        yield


def deliver_notification(learner_id: int, notif_type: str, title: str, message: str,
                         link: str = "", created_at: str = "") -> str:
    """Persist one notification. Runs inline or inside an RQ worker."""
    from db_stores import NotificationStoreDB

    with _app_context():
        notif = NotificationStoreDB(learner_id).add(
            notif_type, title, message, link, now=parse_iso(created_at),
        )
    logger.info("Notification %s for learner %s (%s)", notif.id, learner_id, notif_type)
    return notif.id


def _dispatch(learner_id: int, notif_type: str, title: str, message: str,
              link: str, now: datetime) -> None:
    from tasks import enqueue

    try:
        enqueue(deliver_notification, learner_id, notif_type, title, message, link, to_iso(now))
    except Exception:
        logger.exception("Failed to deliver %s notification to learner %s", notif_type, learner_id)


def notify_level_up(learner_id: int, new_level: int, now: datetime) -> None:
    _dispatch(
        learner_id, LEVEL_UP, "Level Up!",
        f"Congratulations! You've reached level {new_level}!",
        "/progress", now,
    )


def notify_achievement(learner_id: int, achievement: AchievementDefinition, now: datetime) -> None:
    _dispatch(
        learner_id, ACHIEVEMENT_UNLOCKED, "Achievement Unlocked!",
        f'You\'ve unlocked "{achievement.name}" and earned {achievement.points_reward} points!',
        "/achievements", now,
    )


def notify_streak_milestone(learner_id: int, streak: int, bonus: int, now: datetime) -> None:
    _dispatch(
        learner_id, STREAK_MILESTONE, f"{streak}-Day Streak!",
        f"Amazing! You've maintained a {streak}-day streak and earned {bonus} bonus points!",
        "/progress", now,
    )


def publish_action_events(learner_id: int, result, now: datetime) -> None:
    """Announce everything a committed ActionResult earned."""
    if result.streak_milestone:
        notify_streak_milestone(learner_id, result.streak_milestone,
                                streak_milestone_bonus(result.streak_milestone), now)
    for achievement in result.unlocked_achievements:
        notify_achievement(learner_id, achievement, now)
    if result.leveled_up:
        notify_level_up(learner_id, result.new_level, now)


def send_streak_risk_notifications(now: datetime | None = None) -> int:
    """Warn every learner whose streak lapses tonight. At most one warning per UTC day.

    Returns the number of warnings sent. Must run inside an app context.
    """
    from database import get_db
    from db_stores import LearnerStoreDB

    now = now or utcnow()
    day_start = now.replace(hour=0, minute=0, second=0, microsecond=0)
    db = get_db()
    rows = db.execute("SELECT id FROM learners WHERE streak > 0").fetchall()
    already_warned = {
        r["learner_id"] for r in db.execute(
            "SELECT DISTINCT learner_id FROM notifications WHERE type = ? AND created_at >= ?",
            (STREAK_RISK, to_iso(day_start)),
        ).fetchall()
    }

    sent = 0
    for r in rows:
        if r["id"] in already_warned:
            continue
        profile = LearnerStoreDB.load(r["id"])
        if profile is None or not is_streak_at_risk(profile, now):
            continue
        _dispatch(
            profile.learner_id, STREAK_RISK, "Streak at Risk!",
            f"Your {profile.streak}-day streak is at risk! Log in today to keep it going.",
            "/", now,
        )
        sent += 1
    if sent:
        logger.info("Sent %d streak-risk notifications", sent)
    return sent
