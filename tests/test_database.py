"""Tests for database.py: schema, migrations and the unit-of-work transaction."""

from __future__ import annotations

import sqlite3

import pytest

from database import MIGRATIONS, get_db, run_migrations, seed_achievements, transaction
from errors import NotFound, StaleWrite, Unavailable


def _points(db, learner_id=1):
    return db.execute("SELECT points FROM learners WHERE id = ?", (learner_id,)).fetchone()["points"]


class TestSchema:
    def test_migrations_recorded_once(self, db):
        run_migrations()
        versions = [r["version"] for r in db.execute("SELECT version FROM schema_version").fetchall()]
        assert sorted(versions) == [v for v, _ in MIGRATIONS]

    def test_catalog_seeded_idempotently(self, db):
        assert seed_achievements() == 0
        count = db.execute("SELECT COUNT(*) AS cnt FROM achievements").fetchone()["cnt"]
        assert count == 19

    def test_wal_mode(self, db):
        assert db.execute("PRAGMA journal_mode").fetchone()[0] == "wal"


class TestTransaction:
    def test_commits_on_success(self, app):
        with app.app_context():
            with transaction() as db:
                db.execute("UPDATE learners SET points = 40 WHERE id = 1")
            assert _points(get_db()) == 40

    def test_rolls_back_domain_errors(self, app):
        with app.app_context():
            with pytest.raises(NotFound):
                with transaction() as db:
                    db.execute("UPDATE learners SET points = 40 WHERE id = 1")
                    raise NotFound("gone")
            assert _points(get_db()) == 0

    def test_database_errors_become_unavailable(self, app):
        with app.app_context():
            with pytest.raises(Unavailable) as exc:
                with transaction() as db:
                    db.execute("UPDATE learners SET points = 40 WHERE id = 1")
                    db.execute("INSERT INTO no_such_table VALUES (1)")
            assert isinstance(exc.value.__cause__, sqlite3.OperationalError)
            assert _points(get_db()) == 0

    def test_busy_database_becomes_stale_write(self, app):
        from conftest import hold_write_lock

        app.config["DATABASE_TIMEOUT"] = 0.05
        blocker = hold_write_lock(app)
        try:
            with app.app_context():
                with pytest.raises(StaleWrite):
                    with transaction() as db:
                        db.execute("UPDATE learners SET points = 40 WHERE id = 1")
        finally:
            blocker.rollback()
            blocker.close()

    def test_refuses_pending_writes(self, app):
        with app.app_context():
            db = get_db()
            db.execute("UPDATE learners SET points = 40 WHERE id = 1")
            with pytest.raises(RuntimeError):
                with transaction():
                    pass
            assert _points(db) == 0
