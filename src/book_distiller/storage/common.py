"""SQLite engine construction shared by the settings store and migrations."""

from __future__ import annotations

import sqlite3
from datetime import UTC, datetime
from pathlib import Path

from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlalchemy.pool import NullPool
from sqlmodel import create_engine

MEMORY_DB = Path(":memory:")


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


def sqlite_url(db_path: Path) -> str:
    """SQLAlchemy URL for ``db_path``; creates the parent directory of file databases."""

    if db_path != MEMORY_DB:
        db_path.parent.mkdir(parents=True, exist_ok=True)
    return f"sqlite:///{db_path}"


def build_sqlite_engine(*, db_path: Path, busy_timeout_ms: int) -> Engine:
    """Engine applying the SQLite pragmas on every new connection."""

    engine = create_engine(
        sqlite_url(db_path),
        connect_args={
            "check_same_thread": False,
            "timeout": max(1.0, busy_timeout_ms / 1000.0),
        },
        poolclass=NullPool,
    )

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection: sqlite3.Connection, _record: object) -> None:
        _apply_sqlite_pragmas(
            dbapi_connection,
            busy_timeout_ms=busy_timeout_ms,
            wal=db_path != MEMORY_DB,
        )

    return engine


def _apply_sqlite_pragmas(
    dbapi_connection: sqlite3.Connection,
    *,
    busy_timeout_ms: int,
    wal: bool,
) -> None:
    cursor = dbapi_connection.cursor()
    if wal:
        cursor.execute("PRAGMA journal_mode = WAL")
    cursor.execute(f"PRAGMA busy_timeout = {max(1, busy_timeout_ms)}")
    cursor.close()
