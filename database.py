"""
SQLite database layer for the learning progress engine.

Uses raw sqlite3 with WAL mode and parameterized queries.
A schema_version table handles migrations. PostgreSQL is supported through
pg_compat when DATABASE is a postgres:// URL.
"""

from __future__ import annotations

import fcntl
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path

from flask import current_app, g

from errors import StaleWrite, Unavailable

logger = logging.getLogger(__name__)

DEFAULT_DB_PATH = Path(__file__).parent / "progress.db"


SCHEMA = """
-- Migration tracking
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER NOT NULL,
    applied_at TEXT NOT NULL
);

-- Learner profiles (points / level / streak)
CREATE TABLE IF NOT EXISTS learners (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL DEFAULT '',
    points INTEGER NOT NULL DEFAULT 0 CHECK (points >= 0),
    level INTEGER NOT NULL DEFAULT 1 CHECK (level >= 1),
    streak INTEGER NOT NULL DEFAULT 0 CHECK (streak >= 0),
    longest_streak INTEGER NOT NULL DEFAULT 0,
    last_active_at TEXT NOT NULL DEFAULT '',
    version INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL DEFAULT ''
);

-- Aggregate counters consumed by achievement conditions
CREATE TABLE IF NOT EXISTS learner_activity (
    learner_id INTEGER PRIMARY KEY REFERENCES learners(id) ON DELETE CASCADE,
    documents_uploaded INTEGER NOT NULL DEFAULT 0,
    flashcards_reviewed INTEGER NOT NULL DEFAULT 0,
    study_sessions_completed INTEGER NOT NULL DEFAULT 0,
    quizzes_completed INTEGER NOT NULL DEFAULT 0,
    notes_created INTEGER NOT NULL DEFAULT 0
);

-- Flashcards with SM-2 review state
CREATE TABLE IF NOT EXISTS flashcards (
    id TEXT PRIMARY KEY,
    learner_id INTEGER NOT NULL REFERENCES learners(id) ON DELETE CASCADE,
    front TEXT NOT NULL DEFAULT '',
    back TEXT NOT NULL DEFAULT '',
    document_id TEXT NOT NULL DEFAULT '',
    repetitions INTEGER NOT NULL DEFAULT 0,
    easiness_factor REAL NOT NULL DEFAULT 2.5,
    interval_days INTEGER NOT NULL DEFAULT 1,
    next_review_at TEXT NOT NULL DEFAULT '',
    last_reviewed_at TEXT NOT NULL DEFAULT '',
    version INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL DEFAULT ''
);
CREATE INDEX IF NOT EXISTS idx_flashcards_learner_next ON flashcards(learner_id, next_review_at);

-- Append-only points ledger
CREATE TABLE IF NOT EXISTS points_history (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    learner_id INTEGER NOT NULL REFERENCES learners(id) ON DELETE CASCADE,
    action TEXT NOT NULL,
    points_delta INTEGER NOT NULL CHECK (points_delta >= 0),
    metadata TEXT NOT NULL DEFAULT '{}',
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_points_history_learner ON points_history(learner_id, created_at);

-- Achievement catalog
CREATE TABLE IF NOT EXISTS achievements (
    key TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    description TEXT NOT NULL DEFAULT '',
    icon TEXT NOT NULL DEFAULT '',
    condition_type TEXT NOT NULL,
    threshold INTEGER NOT NULL,
    points_reward INTEGER NOT NULL DEFAULT 0,
    tier TEXT NOT NULL DEFAULT 'bronze',
    position INTEGER NOT NULL DEFAULT 0
);

-- Unlocks are create-once per (learner, achievement)
CREATE TABLE IF NOT EXISTS unlocked_achievements (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    learner_id INTEGER NOT NULL REFERENCES learners(id) ON DELETE CASCADE,
    achievement_key TEXT NOT NULL REFERENCES achievements(key),
    unlocked_at TEXT NOT NULL,
    UNIQUE(learner_id, achievement_key)
);

-- Notification sink
CREATE TABLE IF NOT EXISTS notifications (
    id TEXT PRIMARY KEY,
    learner_id INTEGER NOT NULL REFERENCES learners(id) ON DELETE CASCADE,
    type TEXT NOT NULL,
    title TEXT NOT NULL DEFAULT '',
    message TEXT NOT NULL DEFAULT '',
    link TEXT NOT NULL DEFAULT '',
    read INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL DEFAULT ''
);
CREATE INDEX IF NOT EXISTS idx_notifications_learner ON notifications(learner_id, created_at);
"""


# Versioned migrations applied after SCHEMA. Version 1 is the baseline above.
MIGRATIONS: list[tuple[int, str]] = [
    # Migration 2: windowed leaderboard scans filter on created_at first
    (2, """
        CREATE INDEX IF NOT EXISTS idx_points_history_created ON points_history(created_at, learner_id);
    """),
]


def _database_url() -> str:
    return current_app.config.get("DATABASE", str(DEFAULT_DB_PATH))


def get_db():
    """Return a DB connection from Flask g, creating if needed.

    Supports both SQLite (default) and PostgreSQL (when DATABASE starts
    with postgresql:// or postgres://).
    """
    if "db" not in g:
        db_url = _database_url()

        from pg_compat import is_postgres_url, connect_pg
        if is_postgres_url(db_url):
            g.db = connect_pg(db_url)
            return g.db

        # Default: SQLite
        timeout = current_app.config.get("DATABASE_TIMEOUT", 10.0)
        g.db = sqlite3.connect(db_url, timeout=timeout)
        g.db.row_factory = sqlite3.Row
        g.db.execute("PRAGMA journal_mode=WAL")
        g.db.execute("PRAGMA foreign_keys=ON")
    return g.db


def close_db(e=None) -> None:
    """Teardown handler: close DB connection."""
    db = g.pop("db", None)
    if db is not None:
        db.close()


_BUSY_MESSAGES = ("database is locked", "database table is locked")


def _is_busy(e: sqlite3.DatabaseError) -> bool:
    """SQLITE_BUSY / SQLITE_LOCKED: another connection holds the write lock."""
    return isinstance(e, sqlite3.OperationalError) and str(e).lower().startswith(_BUSY_MESSAGES)


@contextmanager
def transaction():
    """One atomic unit of work.

    Commits when the block exits cleanly and rolls back on any exception.
    The transaction is deferred: isolation between writers comes from the
    version compare-and-swap in the stores, not from locking up front. A busy
    SQLite database is re-raised as StaleWrite so the caller retries the whole
    unit; other database errors become Unavailable. Anything else propagates
    unchanged after the rollback.
    """
    db = get_db()
    if isinstance(db, sqlite3.Connection) and db.in_transaction:
        db.rollback()
        raise RuntimeError("transaction() entered with uncommitted writes pending")
    try:
        if isinstance(db, sqlite3.Connection):
            db.execute("BEGIN")
        else:
            db.begin()
        yield db
        db.commit()
    except sqlite3.DatabaseError as e:
        db.rollback()
        if _is_busy(e):
            logger.info("Unit of work rolled back, database busy: %s", e)
            raise StaleWrite(str(e)) from e
        logger.error("Unit of work rolled back: %s", e)
        raise Unavailable("storage temporarily unavailable") from e
    except Exception as e:
        db.rollback()
        from pg_compat import is_database_error
        if is_database_error(e):
            logger.error("Unit of work rolled back: %s", e)
            raise Unavailable("storage temporarily unavailable") from e
        raise


def init_db() -> None:
    """Execute schema DDL to create all tables and seed the achievement catalog."""
    db = get_db()
    db.executescript(SCHEMA)
    db.commit()
    seed_achievements()


def seed_achievements(catalog=None) -> int:
    """Insert catalog definitions that are not present yet. Returns count inserted."""
    from progress import ACHIEVEMENT_CATALOG

    catalog = ACHIEVEMENT_CATALOG if catalog is None else catalog
    db = get_db()
    inserted = 0
    for position, a in enumerate(catalog):
        cur = db.execute(
            "INSERT OR IGNORE INTO achievements (key, name, description, icon, condition_type, "
            "threshold, points_reward, tier, position) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (a.key, a.name, a.description, a.icon, a.condition_type,
             a.threshold, a.points_reward, a.tier, position),
        )
        inserted += max(cur.rowcount, 0)
    db.commit()
    if inserted:
        logger.info("Seeded %d achievement definitions", inserted)
    return inserted


def run_migrations() -> None:
    """Apply any unapplied versioned migrations.

    Uses file-based locking to prevent race conditions when multiple
    Gunicorn workers start simultaneously.
    """
    db_url = _database_url()
    lock_file = None

    # File-based locking only for SQLite (PostgreSQL has its own locking)
    from pg_compat import is_postgres_url
    if not is_postgres_url(db_url):
        lock_path = Path(db_url).with_suffix(".migration.lock")
        try:
            lock_file = open(lock_path, "w")
            fcntl.flock(lock_file, fcntl.LOCK_EX)
        except OSError:
            lock_file = None

    try:
        db = get_db()
        applied = {
            row["version"]
            for row in db.execute("SELECT version FROM schema_version").fetchall()
        }
        for version, sql in MIGRATIONS:
            if version in applied:
                continue
            try:
                db.executescript(sql)
            except sqlite3.OperationalError as e:
                err_msg = str(e).lower()
                if "duplicate column" not in err_msg and "already exists" not in err_msg:
                    raise
            db.execute(
                "INSERT INTO schema_version (version, applied_at) VALUES (?, ?)",
                (version, datetime.now().isoformat()),
            )
            db.commit()
            logger.info("Applied migration %d", version)
    finally:
        if lock_file:
            fcntl.flock(lock_file, fcntl.LOCK_UN)
            lock_file.close()


def init_app(app) -> None:
    """Register teardown and auto-init on first request."""
    app.teardown_appcontext(close_db)

    @app.before_request
    def _ensure_db():
        if not getattr(app, "_db_initialized", False):
            init_db()
            run_migrations()
            app._db_initialized = True
