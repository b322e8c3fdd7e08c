"""Gamification orchestrator.

The single write path for learner progress. Every qualifying action runs the
same sequence inside one unit of work:

    award base points -> touch streak (+ milestone bonus) -> bump activity
    counter -> snapshot aggregates -> evaluate achievements -> unlock and
    award each reward

Flashcard reviews additionally write the card's new SM-2 state in that same
unit of work. Optimistic writes that lose a race raise StaleWrite; the whole
unit is rolled back and retried. Notifications go out only after commit.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from database import transaction
from db_stores import (
    AchievementStoreDB,
    ActivityCountersDB,
    Flashcard,
    FlashcardReviewDB,
    LearnerStoreDB,
    PointsLedgerDB,
)
from errors import Conflict, Forbidden, InvalidInput, NotFound, StaleWrite, Unavailable
from progress import (
    ACHIEVEMENT_ACTION,
    POINTS,
    AchievementDefinition,
    achievement_progress,
    evaluate_achievements,
    is_streak_at_risk,
    level_progress,
    points_for_next_level,
    review_points,
    schedule_review,
    streak_milestone_bonus,
    study_session_points,
    to_iso,
    touch_streak,
    utcnow,
    validate_quality,
)

logger = logging.getLogger(__name__)

REVIEW_ACTION = "review_flashcard"

_ACTION_NAME = re.compile(r"^[a-z][a-z0-9_]{0,63}$")
_RESERVED_PREFIXES = (ACHIEVEMENT_ACTION, "streak_bonus_")


@dataclass
class ActionResult:
    action: str
    points_awarded: int
    bonus_points: int = 0
    total_points: int = 0
    new_level: int = 1
    leveled_up: bool = False
    new_streak: int = 0
    streak_milestone: Optional[int] = None
    unlocked_achievements: list[AchievementDefinition] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "action": self.action,
            "points_awarded": self.points_awarded,
            "bonus_points": self.bonus_points,
            "total_points": self.total_points,
            "new_level": self.new_level,
            "leveled_up": self.leveled_up,
            "new_streak": self.new_streak,
            "streak_milestone": self.streak_milestone,
            "unlocked_achievements": [
                {"key": a.key, "name": a.name, "tier": a.tier,
                 "icon": a.icon, "points": a.points_reward}
                for a in self.unlocked_achievements
            ],
        }


@dataclass
class ReviewResult:
    flashcard: Flashcard
    action: ActionResult

    def to_dict(self) -> dict:
        return {
            "flashcard": self.flashcard.to_dict(),
            **self.action.to_dict(),
        }


def _write_retry(attempts: int):
    return retry(
        retry=retry_if_exception_type(StaleWrite),
        wait=wait_exponential(multiplier=0.01, max=0.5),
        stop=stop_after_attempt(attempts),
        reraise=True,
    )


class GamificationOrchestrator:
    """Turns learner actions into points, streaks and achievement unlocks."""

    def __init__(self, clock: Callable[[], datetime] = utcnow,
                 catalog: list[AchievementDefinition] | None = None,
                 max_attempts: int = 5, notify: bool = True) -> None:
        self.clock = clock
        # None means read the seeded catalog from the achievements table.
        self.catalog = catalog
        self.max_attempts = max_attempts
        self.notify = notify

    @classmethod
    def from_app(cls, app, **kwargs) -> GamificationOrchestrator:
        kwargs.setdefault("max_attempts", app.config.get("WRITE_RETRY_ATTEMPTS", 5))
        return cls(**kwargs)

    # ── Public operations ──────────────────────────────────────────

    def record_action(self, learner_id: int, action: str, base_amount: int | None = None,
                      metadata: dict | None = None) -> ActionResult:
        """Award points for ``action`` and apply streak and achievement effects.

        ``base_amount`` defaults to the standard award for the action. For
        ``complete_study_session`` the default is derived from
        ``metadata["duration_minutes"]``.
        """
        amount = self._resolve_amount(action, base_amount, metadata)
        metadata = dict(metadata or {})
        now = self.clock()

        def once() -> ActionResult:
            with transaction():
                return self._apply_action(learner_id, action, amount, metadata, now)

        result = self._run(once)
        logger.info(
            "Learner %s %s: +%d (+%d bonus) total=%d level=%d streak=%d",
            learner_id, action, result.points_awarded, result.bonus_points,
            result.total_points, result.new_level, result.new_streak,
        )
        self._publish(learner_id, result, now)
        return result

    def submit_review(self, flashcard_id: str, learner_id: int, quality) -> ReviewResult:
        """Reschedule one flashcard and award review points in one unit of work."""
        q = validate_quality(quality)
        now = self.clock()

        def once() -> ReviewResult:
            with transaction():
                if not LearnerStoreDB.exists(learner_id):
                    raise NotFound(f"learner {learner_id} not found")
                card = FlashcardReviewDB.get(flashcard_id)
                if card is None:
                    raise NotFound(f"flashcard {flashcard_id} not found")
                if card.learner_id != learner_id:
                    raise Forbidden("flashcard belongs to another learner")

                FlashcardReviewDB.save_state(card, schedule_review(q, card.state, now), now)
                action = self._apply_action(
                    learner_id, REVIEW_ACTION, review_points(q),
                    {"flashcard_id": flashcard_id, "quality": q}, now,
                )
                return ReviewResult(flashcard=card, action=action)

        result = self._run(once)
        logger.info(
            "Learner %s reviewed %s q=%d: interval=%dd reps=%d ef=%.2f",
            learner_id, flashcard_id, q, result.flashcard.state.interval_days,
            result.flashcard.state.repetitions, result.flashcard.state.easiness_factor,
        )
        self._publish(learner_id, result.action, now)
        return result

    def create_flashcard(self, learner_id: int, front: str, back: str,
                         document_id: str = "") -> Flashcard:
        if not isinstance(front, str) or not front.strip():
            raise InvalidInput("front is required")
        if not isinstance(back, str) or not back.strip():
            raise InvalidInput("back is required")
        if not LearnerStoreDB.exists(learner_id):
            raise NotFound(f"learner {learner_id} not found")
        return FlashcardReviewDB(learner_id).add(front.strip(), back.strip(), self.clock(),
                                                 document_id=document_id or "")

    def due_flashcards(self, learner_id: int, limit: int = 50) -> list[Flashcard]:
        return FlashcardReviewDB(learner_id).due(self.clock(), limit)

    def get_stats(self, learner_id: int) -> dict:
        profile = LearnerStoreDB.load(learner_id)
        if profile is None:
            raise NotFound(f"learner {learner_id} not found")
        now = self.clock()
        unlocked = AchievementStoreDB(learner_id).unlocked()
        return {
            "learner_id": profile.learner_id,
            "name": profile.name,
            "points": profile.points,
            "level": profile.level,
            "streak": profile.streak,
            "longest_streak": profile.longest_streak,
            "last_active_at": to_iso(profile.last_active_at) or None,
            "points_for_next_level": points_for_next_level(profile.points),
            "level_progress": level_progress(profile.points),
            "streak_at_risk": is_streak_at_risk(profile, now),
            "achievements_unlocked": len(unlocked),
            "flashcards_due": FlashcardReviewDB(learner_id).due_count(now),
        }

    def get_achievement_progress(self, learner_id: int) -> list[dict]:
        profile = LearnerStoreDB.load(learner_id)
        if profile is None:
            raise NotFound(f"learner {learner_id} not found")
        aggregates = ActivityCountersDB(learner_id).aggregates(profile)
        return achievement_progress(
            aggregates, self._catalog(), AchievementStoreDB(learner_id).unlocked(),
        )

    # ── Unit of work ───────────────────────────────────────────────

    def _apply_action(self, learner_id: int, action: str, amount: int,
                      metadata: dict, now: datetime) -> ActionResult:
        """Run the award sequence. Caller owns the transaction."""
        profile = LearnerStoreDB.load(learner_id)
        if profile is None:
            raise NotFound(f"learner {learner_id} not found")
        start_level = profile.level

        ledger = PointsLedgerDB(learner_id)
        ledger.award(profile, action, amount, metadata, now)

        prior_streak = profile.streak
        new_streak = touch_streak(profile.last_active_at, prior_streak, now)
        LearnerStoreDB.save_streak(profile, new_streak, now)

        bonus = 0
        milestone = None
        if new_streak != prior_streak:
            streak_bonus = streak_milestone_bonus(new_streak)
            if streak_bonus:
                ledger.award(profile, f"streak_bonus_{new_streak}", streak_bonus,
                             {"streak": new_streak, "milestone": new_streak}, now)
                milestone = new_streak
                bonus += streak_bonus

        counters = ActivityCountersDB(learner_id)
        counters.increment(action)
        aggregates = counters.aggregates(profile)

        store = AchievementStoreDB(learner_id)
        unlocked: list[AchievementDefinition] = []
        for achievement in evaluate_achievements(aggregates, self._catalog(), set(store.unlocked())):
            try:
                store.unlock(achievement.key, now)
            except Conflict:
                logger.info("Achievement %s already unlocked for learner %s", achievement.key, learner_id)
                continue
            ledger.award(profile, ACHIEVEMENT_ACTION, achievement.points_reward,
                         {"achievement_key": achievement.key, "achievement_name": achievement.name}, now)
            unlocked.append(achievement)
            bonus += achievement.points_reward

        return ActionResult(
            action=action,
            points_awarded=amount,
            bonus_points=bonus,
            total_points=profile.points,
            new_level=profile.level,
            leveled_up=profile.level > start_level,
            new_streak=profile.streak,
            streak_milestone=milestone,
            unlocked_achievements=unlocked,
        )

    # ── Helpers ────────────────────────────────────────────────────

    def _run(self, unit_of_work):
        try:
            return _write_retry(self.max_attempts)(unit_of_work)()
        except StaleWrite as e:
            logger.warning("Giving up after %d contended attempts: %s", self.max_attempts, e)
            raise Unavailable("too much concurrent activity, try again") from e

    def _catalog(self) -> list[AchievementDefinition]:
        if self.catalog is not None:
            return self.catalog
        return AchievementStoreDB.catalog()

    def _publish(self, learner_id: int, result: ActionResult, now: datetime) -> None:
        if not self.notify:
            return
        from notifications import publish_action_events
        try:
            publish_action_events(learner_id, result, now)
        except Exception:
            logger.exception("Notification dispatch failed for learner %s", learner_id)

    @staticmethod
    def _resolve_amount(action, base_amount, metadata) -> int:
        if not isinstance(action, str) or not _ACTION_NAME.match(action):
            raise InvalidInput("action must be a lowercase identifier")
        if action.startswith(_RESERVED_PREFIXES):
            raise InvalidInput(f"action {action!r} is reserved")
        if metadata is not None and not isinstance(metadata, dict):
            raise InvalidInput("metadata must be an object")

        if base_amount is not None:
            if isinstance(base_amount, bool) or not isinstance(base_amount, int):
                raise InvalidInput("amount must be an integer")
            if base_amount < 0:
                raise InvalidInput("amount must not be negative")
            return base_amount

        if action == "complete_study_session":
            minutes = (metadata or {}).get("duration_minutes", 0)
            if isinstance(minutes, bool) or not isinstance(minutes, int):
                raise InvalidInput("duration_minutes must be an integer")
            return study_session_points(minutes)
        if action in POINTS:
            return POINTS[action]
        raise InvalidInput(f"unknown action {action!r} requires an explicit amount")
