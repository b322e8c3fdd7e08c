"""
Test fixtures for the learning progress engine.

Provides app, client, learner_client, db, clock and fake_redis fixtures with
file-based SQLite. Two learners are seeded: 1 ("Ada") and 2 ("Grace").
"""

from __future__ import annotations

import sqlite3
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

FIXED_NOW = datetime(2026, 3, 10, 12, 0, 0, tzinfo=timezone.utc)


class FixedClock:
    """Callable clock that only moves when a test moves it."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class MonotonicClock:
    """Stand-in for time.monotonic in cache expiry tests."""

    def __init__(self, start: float = 1000.0):
        self.value = start

    def __call__(self) -> float:
        return self.value

    def advance(self, seconds: float) -> None:
        self.value += seconds


@pytest.fixture
def app(tmp_path):
    """Create app with file-based SQLite for testing."""
    from app import create_app

    db_file = str(tmp_path / "test.db")
    app = create_app({
        "TESTING": True,
        "DATABASE": db_file,
        "SECRET_KEY": "test-secret-key",
        "REDIS_URL": "",
        "LOG_LEVEL": "WARNING",
    })

    with app.app_context():
        from database import init_db, run_migrations
        from db_stores import LearnerStoreDB

        init_db()
        run_migrations()
        LearnerStoreDB.create("Ada", now=FIXED_NOW)
        LearnerStoreDB.create("Grace", now=FIXED_NOW)

    # Outside the context: each request pushes its own g.
    yield app


@pytest.fixture
def client(app):
    """Test client without a learner header."""
    return app.test_client()


@pytest.fixture
def learner_client(app):
    """Test client acting as learner 1 via the gateway header."""
    client = app.test_client()
    client.environ_base["HTTP_X_LEARNER_ID"] = "1"
    return client


@pytest.fixture
def other_client(app):
    """Test client acting as learner 2."""
    client = app.test_client()
    client.environ_base["HTTP_X_LEARNER_ID"] = "2"
    return client


@pytest.fixture
def db(app):
    """Direct database access for store tests."""
    with app.app_context():
        from database import get_db
        yield get_db()


@pytest.fixture
def clock():
    return FixedClock(FIXED_NOW)


@pytest.fixture
def monotonic():
    return MonotonicClock()


@pytest.fixture
def fake_redis():
    import fakeredis
    return fakeredis.FakeRedis()


def set_learner_state(db, learner_id: int, **columns) -> None:
    """Overwrite learner columns directly, e.g. to stage a streak."""
    assignments = ", ".join(f"{name} = ?" for name in columns)
    db.execute(
        f"UPDATE learners SET {assignments} WHERE id = ?",
        (*columns.values(), learner_id),
    )
    db.commit()


def hold_write_lock(app, learner_id: int = 2) -> sqlite3.Connection:
    """Open a second connection with an uncommitted write on ``learner_id``.

    The caller commits or rolls back the returned connection; it may do so
    from another thread.
    """
    conn = sqlite3.connect(app.config["DATABASE"], isolation_level=None, check_same_thread=False)
    conn.execute("BEGIN IMMEDIATE")
    conn.execute("UPDATE learners SET name = 'Grace H.' WHERE id = ?", (learner_id,))
    return conn
