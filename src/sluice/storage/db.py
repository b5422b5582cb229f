"""
Sluice database connection.

One wrapper over sqlite3 and psycopg, chosen by URL:
``postgresql://`` / ``postgres://`` selects PostgreSQL, anything else
(a file path or ``:memory:``) is opened with sqlite3.

Usage::

    from sluice.storage.db import connect

    conn = connect("sluice.db")
    with conn.transaction():
        conn.execute("UPDATE tokens SET revoked = 1 WHERE id = ?", (token_id,))

SQL is written with ``?`` placeholders and rewritten to ``%s`` for
psycopg. Driver exceptions are raised as ``StorageError``.
"""

from __future__ import annotations

import sqlite3
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from sluice.exceptions import StorageError

POSTGRES_SCHEMES = ("postgresql://", "postgres://")


class DbConnection:
    """Process-wide connection with lock-scoped transactions.

    Worker threads (``asyncio.to_thread``) share this object. Every
    statement and every ``transaction()`` block runs under one re-entrant
    lock, so a unit of work is never interleaved with another thread's.
    Waiting for that lock is bounded by ``lock_timeout``; a caller that
    cannot get it within that time gets ``StorageError``.
    """

    def __init__(self, conn: Any, *, is_postgres: bool = False, lock_timeout: float | None = None) -> None:
        self._conn = conn
        self._lock_timeout = lock_timeout
        self._cursor: Any = None
        self._lock = threading.RLock()
        self._depth = 0
        self.is_postgres = is_postgres
        self._errors: tuple[type[BaseException], ...] = (sqlite3.Error,)
        if is_postgres:
            import psycopg

            self._errors = (psycopg.Error,)

    @contextmanager
    def _locked(self) -> Iterator[None]:
        timeout = -1 if self._lock_timeout is None else self._lock_timeout
        if not self._lock.acquire(timeout=timeout):
            raise StorageError("lock", f"connection busy for more than {self._lock_timeout}s")
        try:
            yield
        finally:
            self._lock.release()

    def execute(self, sql: str, params: tuple = ()) -> DbConnection:
        """Run one statement and keep its cursor. Returns self."""
        if self.is_postgres:
            sql = sql.replace("?", "%s")
        try:
            if self.is_postgres:
                cursor = self._conn.cursor()
                cursor.execute(sql, params or None)
            else:
                cursor = self._conn.execute(sql, params)
        except self._errors as e:
            raise StorageError("execute", str(e)) from e
        self._cursor = cursor
        return self

    def executescript(self, script: str) -> None:
        """Run semicolon-separated DDL."""
        try:
            if not self.is_postgres:
                self._conn.executescript(script)
                return
            cursor = self._conn.cursor()
            for statement in filter(None, (s.strip() for s in script.split(";"))):
                cursor.execute(statement)
            self._conn.commit()
        except self._errors as e:
            raise StorageError("executescript", str(e)) from e

    def query(self, sql: str, params: tuple = ()) -> list[dict[str, Any]]:
        with self._locked():
            self.execute(sql, params)
            return [dict(row) for row in self._cursor.fetchall()]

    def query_one(self, sql: str, params: tuple = ()) -> dict[str, Any] | None:
        with self._locked():
            row = self.execute(sql, params)._cursor.fetchone()
            return dict(row) if row is not None else None

    def run(self, sql: str, params: tuple = ()) -> int:
        """Execute a write and return the affected row count."""
        with self._locked():
            return self.execute(sql, params).rowcount

    @property
    def rowcount(self) -> int:
        return self._cursor.rowcount if self._cursor is not None else 0

    def commit(self) -> None:
        try:
            self._conn.commit()
        except self._errors as e:
            raise StorageError("commit", str(e)) from e

    def rollback(self) -> None:
        self._conn.rollback()

    @contextmanager
    def transaction(self) -> Iterator[DbConnection]:
        """Run a unit of work atomically.

        Nested blocks join the outer one and only the outermost commits.
        Any exception rolls everything back and propagates.
        """
        with self._locked():
            self._depth += 1
            try:
                yield self
            except BaseException:
                self._depth -= 1
                if self._depth == 0:
                    self.rollback()
                raise
            self._depth -= 1
            if self._depth == 0:
                self.commit()

    def close(self) -> None:
        self._conn.close()

    def upsert(self, table: str, pk: str, columns: list[str], values: tuple) -> None:
        """Insert a row, replacing any existing row with the same ``pk``."""
        names = ", ".join(columns)
        marks = ", ".join("?" for _ in columns)
        if self.is_postgres:
            assignments = ", ".join(f"{c} = EXCLUDED.{c}" for c in columns if c != pk)
            sql = f"INSERT INTO {table} ({names}) VALUES ({marks}) ON CONFLICT ({pk}) DO UPDATE SET {assignments}"
        else:
            sql = f"INSERT OR REPLACE INTO {table} ({names}) VALUES ({marks})"
        self.execute(sql, values)


def connect(db_url: str, lock_timeout: float | None = None) -> DbConnection:
    """Open a connection for a PostgreSQL URL or a SQLite path.

    Raises:
        ImportError: A PostgreSQL URL was given but psycopg is not installed.
        StorageError: The driver could not open the database.
    """
    if db_url.startswith(POSTGRES_SCHEMES):
        try:
            import psycopg
            from psycopg.rows import dict_row
        except ImportError:
            raise ImportError(
                "PostgreSQL support requires psycopg. Install with: pip install 'sluice[postgres]'"
            ) from None

        try:
            conn = psycopg.connect(db_url, row_factory=dict_row, autocommit=False)
        except psycopg.Error as e:
            raise StorageError("connect", str(e)) from e
        return DbConnection(conn, is_postgres=True, lock_timeout=lock_timeout)

    try:
        conn = sqlite3.connect(db_url, check_same_thread=False)
        conn.execute("PRAGMA foreign_keys = ON")
    except sqlite3.Error as e:
        raise StorageError("connect", str(e)) from e
    conn.row_factory = sqlite3.Row
    return DbConnection(conn, lock_timeout=lock_timeout)
