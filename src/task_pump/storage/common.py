"""Common helpers for storage repositories."""

from __future__ import annotations

import sqlite3
from datetime import UTC, datetime
from pathlib import Path

from sqlalchemy import event
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.pool import NullPool
from sqlmodel import create_engine


def utc_now() -> datetime:
    """Current UTC timestamp."""

    return datetime.now(tz=UTC)


def to_db_datetime(value: datetime) -> datetime:
    """Naive UTC value as stored in SQLite columns."""

    if value.tzinfo is None:
        return value
    return value.astimezone(UTC).replace(tzinfo=None)


def to_utc_aware_datetime(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def build_sqlite_engine(
    *,
    db_path: Path,
    busy_timeout_ms: int,
    begin_immediate: bool = False,
) -> Engine:
    """Build SQLAlchemy engine with consistent SQLite policy.

    pysqlite's implicit transaction handling is disabled so that every
    transaction starts with an explicit BEGIN. With ``begin_immediate`` the
    engine takes the database writer lock when the transaction starts, which
    serializes read-then-write sequences across processes.
    """

    db_url = f"sqlite:///{db_path}"
    engine = create_engine(
        db_url,
        connect_args={
            "check_same_thread": False,
            "timeout": max(1.0, busy_timeout_ms / 1000.0),
        },
        poolclass=NullPool,
    )
    event.listen(
        engine,
        "connect",
        lambda dbapi_connection, _: _apply_sqlite_pragmas(
            dbapi_connection,
            busy_timeout_ms=busy_timeout_ms,
        ),
    )
    begin_statement = "BEGIN IMMEDIATE" if begin_immediate else "BEGIN"
    event.listen(engine, "begin", lambda conn: _begin(conn, begin_statement))
    return engine


def connect_sqlite_with_policy(*, db_path: Path, busy_timeout_ms: int) -> sqlite3.Connection:
    """Create sqlite3 connection with the same policy as SQLAlchemy engine."""

    connection = sqlite3.connect(db_path)
    _apply_sqlite_pragmas(connection, busy_timeout_ms=busy_timeout_ms)
    connection.row_factory = sqlite3.Row
    return connection


def _begin(conn: Connection, statement: str) -> None:
    conn.exec_driver_sql(statement)


def _apply_sqlite_pragmas(dbapi_connection: sqlite3.Connection, *, busy_timeout_ms: int) -> None:
    dbapi_connection.isolation_level = None
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode = WAL")
    cursor.execute(f"PRAGMA busy_timeout = {max(1, busy_timeout_ms)}")
    cursor.close()
