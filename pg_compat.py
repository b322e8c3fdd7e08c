"""PostgreSQL compatibility layer: wraps psycopg2 to match the sqlite3 API.

When DATABASE starts with postgresql://, stores keep writing SQLite-flavoured
SQL and this module translates it:
  - ? placeholders → %s
  - INSERT OR IGNORE → INSERT ... ON CONFLICT DO NOTHING
  - AUTOINCREMENT keys → SERIAL
  - executescript() → statement-by-statement execution
  - rows → dict-like objects supporting row["column"]
"""

from __future__ import annotations

import logging
import re
from typing import Any

logger = logging.getLogger(__name__)

_INSERT_OR_IGNORE = re.compile(r"INSERT\s+OR\s+IGNORE\s+INTO", re.IGNORECASE)
_AUTOINCREMENT = re.compile(r"(\w+)\s+INTEGER\s+PRIMARY\s+KEY\s+AUTOINCREMENT", re.IGNORECASE)
_PRAGMA = re.compile(r"PRAGMA\s+\w+\s*=\s*\w+\s*;?", re.IGNORECASE)


class PgRow:
    """Dict-like row that mimics sqlite3.Row."""

    def __init__(self, columns: list[str], values: tuple):
        self._data = dict(zip(columns, values))

    def __getitem__(self, key: str | int) -> Any:
        if isinstance(key, int):
            return list(self._data.values())[key]
        return self._data[key]

    def __contains__(self, key: str) -> bool:
        return key in self._data

    def keys(self) -> list[str]:
        return list(self._data.keys())

    def __repr__(self) -> str:
        return f"PgRow({self._data})"


def translate_sql(sql: str) -> str:
    """Translate one SQLite statement to PostgreSQL."""
    ignore = bool(_INSERT_OR_IGNORE.search(sql))
    translated = _INSERT_OR_IGNORE.sub("INSERT INTO", sql).replace("?", "%s")
    if ignore and "ON CONFLICT" not in translated.upper():
        translated = translated.rstrip().rstrip(";") + " ON CONFLICT DO NOTHING"
    return translated


def translate_schema(sql: str) -> str:
    """Translate SQLite DDL to PostgreSQL DDL."""
    translated = _AUTOINCREMENT.sub(r"\1 SERIAL PRIMARY KEY", sql)
    return _PRAGMA.sub("", translated)


class PgCursorWrapper:
    """Wraps a psycopg2 cursor to match the sqlite3.Cursor interface."""

    def __init__(self, cursor):
        self._cursor = cursor

    @property
    def rowcount(self) -> int:
        return self._cursor.rowcount

    @property
    def lastrowid(self) -> int | None:
        """Id generated by the last INSERT into a SERIAL table on this session."""
        with self._cursor.connection.cursor() as cur:
            cur.execute("SELECT lastval()")
            row = cur.fetchone()
        return row[0] if row else None

    def execute(self, sql: str, params: tuple = ()) -> PgCursorWrapper:
        self._cursor.execute(translate_sql(sql), params)
        return self

    def _columns(self) -> list[str]:
        return [desc[0] for desc in self._cursor.description or ()]

    def fetchone(self) -> PgRow | None:
        row = self._cursor.fetchone()
        if row is None:
            return None
        return PgRow(self._columns(), row)

    def fetchall(self) -> list[PgRow]:
        if not self._cursor.description:
            return []
        columns = self._columns()
        return [PgRow(columns, row) for row in self._cursor.fetchall()]

    def close(self) -> None:
        self._cursor.close()


class PgConnectionWrapper:
    """Wraps a psycopg2 connection to match the sqlite3.Connection interface."""

    def __init__(self, conn):
        self._conn = conn
        self._conn.autocommit = False

    def execute(self, sql: str, params: tuple = ()) -> PgCursorWrapper:
        return PgCursorWrapper(self._conn.cursor()).execute(sql, params)

    def executescript(self, sql: str) -> None:
        statements = [s.strip() for s in translate_schema(sql).split(";") if s.strip()]
        cursor = self._conn.cursor()
        try:
            for stmt in statements:
                cursor.execute(stmt)
        finally:
            cursor.close()
        self._conn.commit()

    def begin(self) -> None:
        # psycopg2 opens a transaction on the first statement; make sure no
        # earlier statement's transaction is still open.
        self._conn.rollback()

    def commit(self) -> None:
        self._conn.commit()

    def rollback(self) -> None:
        self._conn.rollback()

    def close(self) -> None:
        self._conn.close()


def connect_pg(database_url: str) -> PgConnectionWrapper:
    """Create a PostgreSQL connection with a sqlite3-compatible interface."""
    import psycopg2

    return PgConnectionWrapper(psycopg2.connect(database_url))


def is_postgres_url(url: str) -> bool:
    return url.startswith("postgresql://") or url.startswith("postgres://")


def is_database_error(exc: BaseException) -> bool:
    """True when ``exc`` is a psycopg2 database error (psycopg2 need not be installed)."""
    try:
        import psycopg2
    except ImportError:
        return False
    return isinstance(exc, psycopg2.Error)
