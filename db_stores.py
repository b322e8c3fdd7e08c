"""
DB-backed store classes for the learning progress engine.

Read methods open no transaction of their own. Write methods never commit:
they are called inside ``database.transaction()`` so that everything one
learner action changes lands together or not at all. Rows that have a single
writer discipline (learners, flashcards) are updated with a compare-and-swap
on their ``version`` column and raise StaleWrite when they lose the race.
"""

from __future__ import annotations

import json
import secrets
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from database import get_db
from errors import Conflict, InvalidInput, StaleWrite
from progress import (
    ACTION_COUNTERS,
    AchievementDefinition,
    ActivityAggregates,
    LearnerProfile,
    ReviewState,
    calculate_level,
    parse_iso,
    to_iso,
    utcnow,
)


# ── Learners ─────────────────────────────────────────────────────────


class LearnerStoreDB:
    """LearnerProfile rows plus their activity counters."""

    @staticmethod
    def create(name: str = "", now: datetime | None = None) -> int:
        db = get_db()
        cur = db.execute(
            "INSERT INTO learners (name, points, level, streak, created_at) VALUES (?, 0, 1, 0, ?)",
            (name, to_iso(now or utcnow())),
        )
        learner_id = cur.lastrowid
        db.execute("INSERT INTO learner_activity (learner_id) VALUES (?)", (learner_id,))
        db.commit()
        return learner_id

    @staticmethod
    def load(learner_id: int) -> Optional[LearnerProfile]:
        db = get_db()
        r = db.execute("SELECT * FROM learners WHERE id = ?", (learner_id,)).fetchone()
        if not r:
            return None
        return LearnerProfile(
            learner_id=r["id"],
            name=r["name"],
            points=r["points"],
            level=r["level"],
            streak=r["streak"],
            longest_streak=r["longest_streak"],
            last_active_at=parse_iso(r["last_active_at"]),
            version=r["version"],
        )

    @staticmethod
    def exists(learner_id: int) -> bool:
        db = get_db()
        return db.execute("SELECT 1 FROM learners WHERE id = ?", (learner_id,)).fetchone() is not None

    @staticmethod
    def save_streak(profile: LearnerProfile, new_streak: int, now: datetime) -> LearnerProfile:
        """CAS-write streak and last_active_at. Returns the profile at its new version."""
        longest = max(profile.longest_streak, new_streak)
        db = get_db()
        cur = db.execute(
            "UPDATE learners SET streak = ?, longest_streak = ?, last_active_at = ?, "
            "version = version + 1 WHERE id = ? AND version = ?",
            (new_streak, longest, to_iso(now), profile.learner_id, profile.version),
        )
        if cur.rowcount != 1:
            raise StaleWrite(f"learner {profile.learner_id} changed concurrently")
        profile.streak = new_streak
        profile.longest_streak = longest
        profile.last_active_at = now
        profile.version += 1
        return profile


class ActivityCountersDB:
    """Per-learner counters that make up the achievement aggregate snapshot."""

    def __init__(self, learner_id: int):
        self.learner_id = learner_id

    def increment(self, action: str) -> Optional[str]:
        """Bump the counter ``action`` feeds, if any. Returns the column touched."""
        column = ACTION_COUNTERS.get(action)
        if column is None:
            return None
        db = get_db()
        db.execute("INSERT OR IGNORE INTO learner_activity (learner_id) VALUES (?)", (self.learner_id,))
        db.execute(
            f"UPDATE learner_activity SET {column} = {column} + 1 WHERE learner_id = ?",
            (self.learner_id,),
        )
        return column

    def aggregates(self, profile: LearnerProfile) -> ActivityAggregates:
        db = get_db()
        r = db.execute(
            "SELECT * FROM learner_activity WHERE learner_id = ?", (self.learner_id,)
        ).fetchone()
        return ActivityAggregates(
            streak=profile.streak,
            documents=r["documents_uploaded"] if r else 0,
            flashcards_reviewed=r["flashcards_reviewed"] if r else 0,
            study_sessions=r["study_sessions_completed"] if r else 0,
            quizzes_completed=r["quizzes_completed"] if r else 0,
            notes_created=r["notes_created"] if r else 0,
            points=profile.points,
            level=profile.level,
        )


# ── Points Ledger ────────────────────────────────────────────────────


@dataclass
class AwardResult:
    new_total: int
    new_level: int
    leveled_up: bool
    points_awarded: int


@dataclass
class PointsHistoryEntry:
    learner_id: int
    action: str
    points_delta: int
    metadata: dict = field(default_factory=dict)
    created_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "action": self.action,
            "points": self.points_delta,
            "metadata": self.metadata,
            "created_at": to_iso(self.created_at),
        }


class PointsLedgerDB:
    """Append-only points history plus the learner's running total."""

    def __init__(self, learner_id: int):
        self.learner_id = learner_id

    def award(self, profile: LearnerProfile, action: str, amount: int,
              metadata: dict | None, now: datetime) -> AwardResult:
        if amount < 0:
            raise InvalidInput("points amount must not be negative")
        old_level = profile.level
        new_total = profile.points + amount
        new_level = calculate_level(new_total)

        db = get_db()
        cur = db.execute(
            "UPDATE learners SET points = ?, level = ?, version = version + 1 "
            "WHERE id = ? AND version = ?",
            (new_total, new_level, profile.learner_id, profile.version),
        )
        if cur.rowcount != 1:
            raise StaleWrite(f"learner {profile.learner_id} changed concurrently")
        db.execute(
            "INSERT INTO points_history (learner_id, action, points_delta, metadata, created_at) "
            "VALUES (?, ?, ?, ?, ?)",
            (profile.learner_id, action, amount, json.dumps(metadata or {}, default=str), to_iso(now)),
        )

        profile.points = new_total
        profile.level = new_level
        profile.version += 1
        return AwardResult(
            new_total=new_total,
            new_level=new_level,
            leveled_up=new_level > old_level,
            points_awarded=amount,
        )

    def history(self, limit: int = 50, offset: int = 0) -> list[PointsHistoryEntry]:
        db = get_db()
        rows = db.execute(
            "SELECT * FROM points_history WHERE learner_id = ? ORDER BY id DESC LIMIT ? OFFSET ?",
            (self.learner_id, limit, offset),
        ).fetchall()
        return [PointsHistoryEntry(
            learner_id=r["learner_id"], action=r["action"], points_delta=r["points_delta"],
            metadata=json.loads(r["metadata"] or "{}"), created_at=parse_iso(r["created_at"]),
        ) for r in rows]

    def count(self, action: str | None = None) -> int:
        db = get_db()
        if action is None:
            row = db.execute(
                "SELECT COUNT(*) AS cnt FROM points_history WHERE learner_id = ?",
                (self.learner_id,),
            ).fetchone()
        else:
            row = db.execute(
                "SELECT COUNT(*) AS cnt FROM points_history WHERE learner_id = ? AND action = ?",
                (self.learner_id, action),
            ).fetchone()
        return row["cnt"] if row else 0


# ── Flashcards (SM-2 review state) ───────────────────────────────────


@dataclass
class Flashcard:
    id: str
    learner_id: int
    front: str
    back: str
    document_id: str = ""
    state: ReviewState = field(default_factory=ReviewState)
    last_reviewed_at: Optional[datetime] = None
    version: int = 0

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "front": self.front,
            "back": self.back,
            "document_id": self.document_id,
            "repetitions": self.state.repetitions,
            "easiness_factor": round(self.state.easiness_factor, 4),
            "interval_days": self.state.interval_days,
            "next_review_at": to_iso(self.state.next_review_at),
            "last_reviewed_at": to_iso(self.last_reviewed_at) or None,
        }


class FlashcardReviewDB:
    """Flashcard rows and their review state."""

    def __init__(self, learner_id: int):
        self.learner_id = learner_id

    def add(self, front: str, back: str, now: datetime, document_id: str = "") -> Flashcard:
        card_id = f"fc_{now.strftime('%Y%m%d%H%M%S')}_{secrets.token_hex(4)}"
        state = ReviewState.initial(now)
        db = get_db()
        db.execute(
            "INSERT INTO flashcards (id, learner_id, front, back, document_id, repetitions, "
            "easiness_factor, interval_days, next_review_at, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (card_id, self.learner_id, front, back, document_id, state.repetitions,
             state.easiness_factor, state.interval_days, to_iso(state.next_review_at), to_iso(now)),
        )
        db.commit()
        return Flashcard(id=card_id, learner_id=self.learner_id, front=front, back=back,
                         document_id=document_id, state=state)

    @staticmethod
    def get(card_id: str) -> Optional[Flashcard]:
        """Look a card up regardless of owner; ownership is checked by the caller."""
        db = get_db()
        r = db.execute("SELECT * FROM flashcards WHERE id = ?", (card_id,)).fetchone()
        return FlashcardReviewDB._row_to_card(r) if r else None

    def due(self, now: datetime, limit: int = 50) -> list[Flashcard]:
        db = get_db()
        rows = db.execute(
            "SELECT * FROM flashcards WHERE learner_id = ? AND next_review_at <= ? "
            "ORDER BY next_review_at, id LIMIT ?",
            (self.learner_id, to_iso(now), limit),
        ).fetchall()
        return [self._row_to_card(r) for r in rows]

    def due_count(self, now: datetime) -> int:
        db = get_db()
        row = db.execute(
            "SELECT COUNT(*) AS cnt FROM flashcards WHERE learner_id = ? AND next_review_at <= ?",
            (self.learner_id, to_iso(now)),
        ).fetchone()
        return row["cnt"] if row else 0

    @staticmethod
    def save_state(card: Flashcard, state: ReviewState, now: datetime) -> Flashcard:
        """CAS-write a new review state for ``card``."""
        db = get_db()
        cur = db.execute(
            "UPDATE flashcards SET repetitions = ?, easiness_factor = ?, interval_days = ?, "
            "next_review_at = ?, last_reviewed_at = ?, version = version + 1 "
            "WHERE id = ? AND version = ?",
            (state.repetitions, state.easiness_factor, state.interval_days,
             to_iso(state.next_review_at), to_iso(now), card.id, card.version),
        )
        if cur.rowcount != 1:
            raise StaleWrite(f"flashcard {card.id} changed concurrently")
        card.state = state
        card.last_reviewed_at = now
        card.version += 1
        return card

    @staticmethod
    def _row_to_card(r) -> Flashcard:
        return Flashcard(
            id=r["id"],
            learner_id=r["learner_id"],
            front=r["front"],
            back=r["back"],
            document_id=r["document_id"],
            state=ReviewState(
                repetitions=r["repetitions"],
                easiness_factor=r["easiness_factor"],
                interval_days=r["interval_days"],
                next_review_at=parse_iso(r["next_review_at"]),
            ),
            last_reviewed_at=parse_iso(r["last_reviewed_at"]),
            version=r["version"],
        )


# ── Achievements ─────────────────────────────────────────────────────


class AchievementStoreDB:
    """Achievement catalog and per-learner unlocks."""

    def __init__(self, learner_id: int):
        self.learner_id = learner_id

    @staticmethod
    def catalog() -> list[AchievementDefinition]:
        db = get_db()
        rows = db.execute("SELECT * FROM achievements ORDER BY position, key").fetchall()
        return [AchievementDefinition(
            key=r["key"], name=r["name"], description=r["description"],
            condition_type=r["condition_type"], threshold=r["threshold"],
            points_reward=r["points_reward"], tier=r["tier"], icon=r["icon"],
        ) for r in rows]

    def unlocked(self) -> dict[str, Optional[datetime]]:
        db = get_db()
        rows = db.execute(
            "SELECT achievement_key, unlocked_at FROM unlocked_achievements "
            "WHERE learner_id = ? ORDER BY unlocked_at DESC",
            (self.learner_id,),
        ).fetchall()
        return {r["achievement_key"]: parse_iso(r["unlocked_at"]) for r in rows}

    def unlock(self, key: str, now: datetime) -> None:
        """Create the unlock row. Raises Conflict when it already exists."""
        db = get_db()
        cur = db.execute(
            "INSERT OR IGNORE INTO unlocked_achievements (learner_id, achievement_key, unlocked_at) "
            "VALUES (?, ?, ?)",
            (self.learner_id, key, to_iso(now)),
        )
        if cur.rowcount != 1:
            raise Conflict(f"achievement {key} already unlocked for learner {self.learner_id}")


# ── Leaderboard ──────────────────────────────────────────────────────


class LeaderboardStoreDB:
    """Ranked point totals. Order is points descending, then learner id ascending."""

    @staticmethod
    def alltime(limit: int) -> list[dict]:
        db = get_db()
        rows = db.execute(
            "SELECT id AS learner_id, name, points, level, streak FROM learners "
            "ORDER BY points DESC, id ASC LIMIT ?",
            (limit,),
        ).fetchall()
        return _ranked(rows)

    @staticmethod
    def windowed(since: datetime, limit: int) -> list[dict]:
        db = get_db()
        rows = db.execute(
            "SELECT h.learner_id AS learner_id, l.name AS name, SUM(h.points_delta) AS points, "
            "l.level AS level, l.streak AS streak "
            "FROM points_history h JOIN learners l ON l.id = h.learner_id "
            "WHERE h.created_at >= ? "
            "GROUP BY h.learner_id, l.name, l.level, l.streak "
            "ORDER BY points DESC, h.learner_id ASC LIMIT ?",
            (to_iso(since), limit),
        ).fetchall()
        return _ranked(rows)

    @staticmethod
    def alltime_rank(learner_id: int) -> Optional[int]:
        db = get_db()
        me = db.execute("SELECT points FROM learners WHERE id = ?", (learner_id,)).fetchone()
        if not me:
            return None
        row = db.execute(
            "SELECT COUNT(*) AS ahead FROM learners WHERE points > ? OR (points = ? AND id < ?)",
            (me["points"], me["points"], learner_id),
        ).fetchone()
        return row["ahead"] + 1

    @staticmethod
    def windowed_rank(learner_id: int, since: datetime) -> Optional[int]:
        db = get_db()
        cutoff = to_iso(since)
        me = db.execute(
            "SELECT SUM(points_delta) AS points FROM points_history "
            "WHERE learner_id = ? AND created_at >= ? GROUP BY learner_id",
            (learner_id, cutoff),
        ).fetchone()
        if not me:
            return None
        mine = me["points"]
        row = db.execute(
            "SELECT COUNT(*) AS ahead FROM ("
            "  SELECT learner_id, SUM(points_delta) AS points FROM points_history "
            "  WHERE created_at >= ? GROUP BY learner_id"
            ") totals WHERE points > ? OR (points = ? AND learner_id < ?)",
            (cutoff, mine, mine, learner_id),
        ).fetchone()
        return row["ahead"] + 1


def _ranked(rows) -> list[dict]:
    result = []
    for i, r in enumerate(rows, 1):
        result.append({
            "rank": i,
            "learner_id": r["learner_id"],
            "name": r["name"],
            "points": r["points"],
            "level": r["level"],
            "streak": r["streak"],
        })
    return result


# ── Notifications ────────────────────────────────────────────────────


@dataclass
class Notification:
    id: str
    type: str
    title: str
    message: str
    link: str = ""
    read: bool = False
    created_at: str = ""


class NotificationStoreDB:
    """In-app notifications written by the notification sink."""

    def __init__(self, learner_id: int):
        self.learner_id = learner_id

    def add(self, notif_type: str, title: str, message: str, link: str = "",
            now: datetime | None = None) -> Notification:
        created = now or utcnow()
        notif = Notification(
            id=f"n_{created.strftime('%Y%m%d%H%M%S')}_{secrets.token_hex(4)}",
            type=notif_type, title=title, message=message, link=link,
            created_at=to_iso(created),
        )
        db = get_db()
        db.execute(
            "INSERT INTO notifications (id, learner_id, type, title, message, link, read, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?, 0, ?)",
            (notif.id, self.learner_id, notif.type, notif.title, notif.message, notif.link,
             notif.created_at),
        )
        db.commit()
        return notif

    def recent(self, n: int = 20) -> list[Notification]:
        db = get_db()
        rows = db.execute(
            "SELECT * FROM notifications WHERE learner_id = ? ORDER BY created_at DESC LIMIT ?",
            (self.learner_id, n),
        ).fetchall()
        return [Notification(
            id=r["id"], type=r["type"], title=r["title"], message=r["message"],
            link=r["link"], read=bool(r["read"]), created_at=r["created_at"],
        ) for r in rows]

    def unread_count(self) -> int:
        db = get_db()
        row = db.execute(
            "SELECT COUNT(*) AS cnt FROM notifications WHERE learner_id = ? AND read = 0",
            (self.learner_id,),
        ).fetchone()
        return row["cnt"] if row else 0
