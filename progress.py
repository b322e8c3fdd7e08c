"""
Learning progress domain model.

Dataclasses for review state, learner profiles and the achievement catalog,
plus the pure rules the orchestrator composes: SM-2 scheduling, level math,
streak transitions and achievement evaluation. Nothing in this module touches
the database or the clock; callers pass ``now`` in.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from errors import InvalidQuality

logger = logging.getLogger(__name__)


# ── Time helpers ───────────────────────────────────────────────────────

def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(dt: datetime | None) -> str:
    """Fixed-width UTC ISO string so stored timestamps sort lexically."""
    if dt is None:
        return ""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_iso(value: str | None) -> Optional[datetime]:
    if not value:
        return None
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


# ── Points & Levels ────────────────────────────────────────────────────

POINTS_PER_LEVEL = 100

POINTS = {
    "upload_document": 10,
    "complete_summary": 5,
    "ask_question": 2,
    "create_note": 5,
    "complete_quiz": 10,
    "generate_quiz": 10,
    "daily_login": 5,
    "complete_study_session": 20,  # per hour studied
    "review_flashcard_again": 1,
    "review_flashcard_hard": 2,
    "review_flashcard_good": 3,
    "review_flashcard_easy": 5,
}

# Action -> learner_activity counter column it increments.
ACTION_COUNTERS = {
    "upload_document": "documents_uploaded",
    "review_flashcard": "flashcards_reviewed",
    "complete_study_session": "study_sessions_completed",
    "complete_quiz": "quizzes_completed",
    "create_note": "notes_created",
}

ACHIEVEMENT_ACTION = "achievement_unlocked"

STREAK_MILESTONES = {7: 50, 30: 200, 100: 1000}


def calculate_level(points: int) -> int:
    return max(0, points) // POINTS_PER_LEVEL + 1


def points_for_next_level(points: int) -> int:
    """Points still needed to reach the next level."""
    return calculate_level(points) * POINTS_PER_LEVEL - points


def level_progress(points: int) -> int:
    """Percentage progress through the current level (0-100)."""
    in_level = points - (calculate_level(points) - 1) * POINTS_PER_LEVEL
    return min(100, max(0, int(in_level / POINTS_PER_LEVEL * 100)))


def study_session_points(duration_minutes: int) -> int:
    return max(0, duration_minutes) * POINTS["complete_study_session"] // 60


# ── Spaced Repetition (SM-2) ───────────────────────────────────────────

MIN_EASINESS = 1.3
DEFAULT_EASINESS = 2.5

QUALITY_HARD = 3
QUALITY_GOOD = 4
QUALITY_EASY = 5


@dataclass(frozen=True)
class ReviewState:
    repetitions: int = 0
    easiness_factor: float = DEFAULT_EASINESS
    interval_days: int = 1
    next_review_at: Optional[datetime] = None

    @classmethod
    def initial(cls, now: datetime) -> ReviewState:
        return cls(next_review_at=now)


def validate_quality(quality) -> int:
    if isinstance(quality, bool) or not isinstance(quality, int):
        raise InvalidQuality("quality must be an integer between 0 and 5")
    if quality < 0 or quality > 5:
        raise InvalidQuality("quality must be between 0 and 5")
    return quality


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def schedule_review(quality: int, prior: ReviewState, now: datetime) -> ReviewState:
    """Apply one SM-2 step to ``prior`` and return the next review state."""
    q = validate_quality(quality)

    ef = prior.easiness_factor + (0.1 - (5 - q) * (0.08 + (5 - q) * 0.02))
    ef = max(MIN_EASINESS, ef)

    if q < 3:
        repetitions = 0
        interval = 1
    else:
        repetitions = prior.repetitions + 1
        if repetitions == 1:
            interval = 1
        elif repetitions == 2:
            interval = 6
        else:
            interval = max(1, _round_half_up(prior.interval_days * ef))

    return ReviewState(
        repetitions=repetitions,
        easiness_factor=ef,
        interval_days=interval,
        next_review_at=now + timedelta(days=interval),
    )


def review_points(quality: int) -> int:
    q = validate_quality(quality)
    if q == QUALITY_EASY:
        return POINTS["review_flashcard_easy"]
    if q == QUALITY_GOOD:
        return POINTS["review_flashcard_good"]
    if q == QUALITY_HARD:
        return POINTS["review_flashcard_hard"]
    # 0, 1 and 2 all earn the consolation point
    return POINTS["review_flashcard_again"]


def is_due(state: ReviewState, now: datetime) -> bool:
    return state.next_review_at is None or state.next_review_at <= now


def difficulty_label(interval_days: int) -> str:
    if interval_days <= 1:
        return "New"
    if interval_days <= 7:
        return "Learning"
    if interval_days <= 30:
        return "Young"
    return "Mature"


def estimate_retention(easiness_factor: float) -> int:
    """Map EF 1.3-2.5 linearly onto an estimated 50-95% retention."""
    ef = min(max(easiness_factor, MIN_EASINESS), DEFAULT_EASINESS)
    return _round_half_up(50 + (ef - MIN_EASINESS) / (DEFAULT_EASINESS - MIN_EASINESS) * 45)


# ── Learner Profile & Streaks ──────────────────────────────────────────

@dataclass
class LearnerProfile:
    learner_id: int
    name: str = ""
    points: int = 0
    level: int = 1
    streak: int = 0
    longest_streak: int = 0
    last_active_at: Optional[datetime] = None
    version: int = 0


def is_same_utc_day(a: datetime, b: datetime) -> bool:
    return a.astimezone(timezone.utc).date() == b.astimezone(timezone.utc).date()


def is_previous_utc_day(earlier: datetime, now: datetime) -> bool:
    """True when ``earlier`` falls on the calendar day before ``now`` (UTC)."""
    delta = now.astimezone(timezone.utc).date() - earlier.astimezone(timezone.utc).date()
    return delta.days == 1


def touch_streak(last_active_at: Optional[datetime], current_streak: int, now: datetime) -> int:
    if last_active_at is None:
        return 1
    if is_same_utc_day(last_active_at, now):
        return current_streak
    if is_previous_utc_day(last_active_at, now):
        return current_streak + 1
    return 1


def streak_milestone_bonus(new_streak: int) -> int:
    return STREAK_MILESTONES.get(new_streak, 0)


def is_streak_at_risk(profile: LearnerProfile, now: datetime) -> bool:
    """Read-only: has the learner not been active today with the streak about to lapse?"""
    if profile.streak == 0 or profile.last_active_at is None:
        return False
    last = profile.last_active_at
    if is_same_utc_day(last, now):
        return False
    if is_previous_utc_day(last, now):
        return (now - last) >= timedelta(hours=20)
    # Already broken; the next action resets it.
    return True


# ── Achievements ───────────────────────────────────────────────────────

TIER_ORDER = {"bronze": 0, "silver": 1, "gold": 2, "platinum": 3}


@dataclass
class ActivityAggregates:
    """Snapshot of the statistics achievement conditions are tested against."""
    streak: int = 0
    documents: int = 0
    flashcards_reviewed: int = 0
    study_sessions: int = 0
    quizzes_completed: int = 0
    notes_created: int = 0
    points: int = 0
    level: int = 1

    def value_for(self, condition_type: str) -> Optional[int]:
        attr = CONDITION_FIELDS.get(condition_type)
        if attr is None:
            return None
        return getattr(self, attr)


CONDITION_FIELDS = {
    "streak": "streak",
    "documents": "documents",
    "flashcards_reviewed": "flashcards_reviewed",
    "study_sessions": "study_sessions",
    "quizzes_completed": "quizzes_completed",
    "notes_created": "notes_created",
    "points": "points",
    "level": "level",
}


@dataclass(frozen=True)
class AchievementDefinition:
    key: str
    name: str
    description: str
    condition_type: str
    threshold: int
    points_reward: int
    tier: str = "bronze"
    icon: str = ""

    def is_satisfied(self, aggregates: ActivityAggregates) -> bool:
        value = aggregates.value_for(self.condition_type)
        if value is None:
            logger.warning("Unknown achievement condition type %r (key=%s)",
                           self.condition_type, self.key)
            return False
        return value >= self.threshold


ACHIEVEMENT_CATALOG: list[AchievementDefinition] = [
    AchievementDefinition("first_upload", "First Upload", "Upload your first document",
                          "documents", 1, 10, "bronze", "📄"),
    AchievementDefinition("week_warrior", "Week Warrior", "Maintain a 7-day streak",
                          "streak", 7, 50, "silver", "🔥"),
    AchievementDefinition("month_master", "Month Master", "Maintain a 30-day streak",
                          "streak", 30, 200, "gold", "🌟"),
    AchievementDefinition("century_streak", "Century Streak", "Maintain a 100-day streak",
                          "streak", 100, 1000, "platinum", "💯"),
    AchievementDefinition("bookworm", "Bookworm", "Upload 10 documents",
                          "documents", 10, 50, "silver", "📚"),
    AchievementDefinition("knowledge_seeker", "Knowledge Seeker", "Upload 25 documents",
                          "documents", 25, 100, "gold", "🎓"),
    AchievementDefinition("library_builder", "Library Builder", "Upload 50 documents",
                          "documents", 50, 250, "platinum", "🏛️"),
    AchievementDefinition("flash_beginner", "Flash Beginner", "Review 10 flashcards",
                          "flashcards_reviewed", 10, 20, "bronze", "⚡"),
    AchievementDefinition("flash_master", "Flash Master", "Review 100 flashcards",
                          "flashcards_reviewed", 100, 50, "silver", "🃏"),
    AchievementDefinition("flash_legend", "Flash Legend", "Review 500 flashcards",
                          "flashcards_reviewed", 500, 200, "gold", "🏅"),
    AchievementDefinition("study_champion", "Study Champion", "Complete 10 study sessions",
                          "study_sessions", 10, 150, "gold", "⏱️"),
    AchievementDefinition("study_legend", "Study Legend", "Complete 50 study sessions",
                          "study_sessions", 50, 500, "platinum", "🧠"),
    AchievementDefinition("quiz_master", "Quiz Master", "Complete 10 quizzes",
                          "quizzes_completed", 10, 100, "gold", "✅"),
    AchievementDefinition("note_taker", "Note Taker", "Create 50 notes",
                          "notes_created", 50, 50, "silver", "📝"),
    AchievementDefinition("point_collector", "Point Collector", "Earn 1000 points",
                          "points", 1000, 100, "gold", "💰"),
    AchievementDefinition("point_master", "Point Master", "Earn 5000 points",
                          "points", 5000, 500, "platinum", "💎"),
    AchievementDefinition("level_10", "Rising Star", "Reach level 10",
                          "level", 10, 100, "silver", "⭐"),
    AchievementDefinition("level_25", "Expert Learner", "Reach level 25",
                          "level", 25, 250, "gold", "🌠"),
    AchievementDefinition("level_50", "Master Scholar", "Reach level 50",
                          "level", 50, 500, "platinum", "👑"),
]


def evaluate_achievements(aggregates: ActivityAggregates,
                          catalog: list[AchievementDefinition],
                          unlocked_keys: set[str] | frozenset[str]) -> list[AchievementDefinition]:
    """Return catalog entries newly satisfied by ``aggregates``, in catalog order."""
    return [
        a for a in catalog
        if a.key not in unlocked_keys and a.is_satisfied(aggregates)
    ]


def achievement_progress(aggregates: ActivityAggregates,
                         catalog: list[AchievementDefinition],
                         unlocked: dict[str, Optional[datetime]]) -> list[dict]:
    """Per-achievement unlock state and progress fraction, ordered by tier then reward."""
    ordered = sorted(
        catalog,
        key=lambda a: (TIER_ORDER.get(a.tier, len(TIER_ORDER)), a.points_reward),
    )
    result = []
    for a in ordered:
        current = aggregates.value_for(a.condition_type) or 0
        is_unlocked = a.key in unlocked
        if is_unlocked:
            progress = 1.0
        elif a.threshold <= 0:
            progress = 1.0
        else:
            progress = min(1.0, current / a.threshold)
        result.append({
            "key": a.key,
            "name": a.name,
            "description": a.description,
            "icon": a.icon,
            "tier": a.tier,
            "points": a.points_reward,
            "condition": {"type": a.condition_type, "value": a.threshold},
            "unlocked": is_unlocked,
            "unlocked_at": to_iso(unlocked.get(a.key)) or None,
            "current_value": current,
            "target_value": a.threshold,
            "progress": round(progress, 4),
        })
    return result
