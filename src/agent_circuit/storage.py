"""SQLite engine policy, ORM tables and the cross-process snapshot lock."""

from __future__ import annotations

import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path

from sqlalchemy import Column, DateTime, Text, event
from sqlalchemy.engine import Engine
from sqlalchemy.pool import NullPool
from sqlmodel import Field, SQLModel, create_engine


class SnapshotLockTimeoutError(RuntimeError):
    """Another process held the snapshot lock longer than the allowed wait."""


class BreakerSnapshotRow(SQLModel, table=True):
    __tablename__ = "breaker_snapshots"  # type: ignore[bad-override]

    name: str = Field(primary_key=True)
    state: str = Field(index=True)
    trip_time: float | None = None
    failure_times_json: str = Field(default="[]", sa_column=Column(Text, nullable=False))
    failure_threshold: int
    window_seconds: float
    cooldown_seconds: float
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class CachedResponseRow(SQLModel, table=True):
    __tablename__ = "cached_responses"  # type: ignore[bad-override]

    key: str = Field(primary_key=True)
    stored_at: float = Field(index=True)
    response_json: str = Field(sa_column=Column(Text, nullable=False))


def utc_now() -> datetime:
    """Current UTC timestamp."""

    return datetime.now(tz=UTC)


def build_sqlite_engine(*, db_path: Path, busy_timeout_ms: int) -> Engine:
    """Build SQLAlchemy engine with consistent SQLite policy."""

    engine = create_engine(
        f"sqlite:///{db_path}",
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
    return engine


def init_schema(engine: Engine) -> None:
    """Create snapshot tables when missing."""

    SQLModel.metadata.create_all(engine)


def _apply_sqlite_pragmas(dbapi_connection: sqlite3.Connection, *, busy_timeout_ms: int) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode = WAL")
    cursor.execute(f"PRAGMA busy_timeout = {max(1, busy_timeout_ms)}")
    cursor.close()


def lock_path_for(db_path: Path) -> Path:
    """Sibling file used as the cross-process snapshot lock."""

    return db_path.with_name(f"{db_path.name}.lock")


@contextmanager
def exclusive_sqlite_lock(lock_path: Path, *, timeout_seconds: float) -> Iterator[None]:
    """Hold an SQLite write lock on `lock_path` for the duration of the block.

    `BEGIN IMMEDIATE` takes the RESERVED lock, so a second holder waits up to
    `timeout_seconds` on the busy handler. The lock lives in its own file and
    never contends with the snapshot database's own connections.
    """

    connection = sqlite3.connect(lock_path, timeout=timeout_seconds, isolation_level=None)
    try:
        try:
            connection.execute("BEGIN IMMEDIATE")
        except sqlite3.OperationalError as error:
            raise SnapshotLockTimeoutError(
                f"Could not lock {lock_path} within {timeout_seconds:g}s: {error}",
            ) from error
        try:
            yield
        finally:
            connection.execute("ROLLBACK")
    finally:
        connection.close()
