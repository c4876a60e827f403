"""Snapshot stores used at startup and shutdown checkpoints.

Stores are never touched on the per-call path; `BreakerRegistry.load_from()`
and `BreakerRegistry.save_to()` are the only callers.
"""

from __future__ import annotations

import json
import threading
from contextlib import AbstractContextManager
from pathlib import Path
from typing import Protocol

from sqlmodel import Session, select

from agent_circuit.breaker.models import BreakerConfig, BreakerSnapshot, CircuitState
from agent_circuit.storage import (
    BreakerSnapshotRow,
    build_sqlite_engine,
    exclusive_sqlite_lock,
    init_schema,
    lock_path_for,
    utc_now,
)


class PersistenceAdapter(Protocol):
    """Load/save breaker snapshots across process restarts."""

    def load(self, name: str) -> BreakerSnapshot | None:
        """Return the stored snapshot for `name`, or None."""

    def save(self, name: str, snapshot: BreakerSnapshot) -> None:
        """Store `snapshot` under `name`, replacing any previous one."""

    def names(self) -> list[str]:
        """List breaker names with a stored snapshot."""


class InMemorySnapshotStore:
    """Process-local store, handy for tests and embedding."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._rows: dict[str, BreakerSnapshot] = {}

    def load(self, name: str) -> BreakerSnapshot | None:
        with self._lock:
            return self._rows.get(name)

    def save(self, name: str, snapshot: BreakerSnapshot) -> None:
        with self._lock:
            self._rows[name] = snapshot

    def names(self) -> list[str]:
        with self._lock:
            return sorted(self._rows)


class SqliteSnapshotStore:
    """Snapshot persistence facade backed by SQLModel + SQLite."""

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        init_schema(self.engine)

    def exclusive(self, *, timeout_seconds: float = 60.0) -> AbstractContextManager[None]:
        """Serialize load/save cycles of every process sharing this database.

        `save()` overwrites rows, so hold this from `load_from()` through
        `save_to()` whenever another process may checkpoint the same breakers.
        """

        return exclusive_sqlite_lock(lock_path_for(self.db_path), timeout_seconds=timeout_seconds)

    def load(self, name: str) -> BreakerSnapshot | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(BreakerSnapshotRow).where(BreakerSnapshotRow.name == name),
            ).one_or_none()
            if row is None:
                return None
            return _to_snapshot(row)

    def save(self, name: str, snapshot: BreakerSnapshot) -> None:
        with Session(self.engine) as session:
            row = session.get(BreakerSnapshotRow, name)
            if row is None:
                row = BreakerSnapshotRow(
                    name=name,
                    state=snapshot.state.value,
                    failure_threshold=snapshot.config.failure_threshold,
                    window_seconds=snapshot.config.window_seconds,
                    cooldown_seconds=snapshot.config.cooldown_seconds,
                    updated_at=utc_now(),
                )
            row.state = snapshot.state.value
            row.trip_time = snapshot.trip_time
            row.failure_times_json = json.dumps(list(snapshot.failure_times))
            row.failure_threshold = snapshot.config.failure_threshold
            row.window_seconds = snapshot.config.window_seconds
            row.cooldown_seconds = snapshot.config.cooldown_seconds
            row.updated_at = utc_now()
            session.add(row)
            session.commit()

    def names(self) -> list[str]:
        with Session(self.engine) as session:
            rows = session.exec(select(BreakerSnapshotRow.name)).all()
            return sorted(rows)

    def delete(self, name: str) -> bool:
        with Session(self.engine) as session:
            row = session.get(BreakerSnapshotRow, name)
            if row is None:
                return False
            session.delete(row)
            session.commit()
            return True


def _to_snapshot(row: BreakerSnapshotRow) -> BreakerSnapshot:
    raw_times = json.loads(row.failure_times_json or "[]")
    return BreakerSnapshot(
        name=row.name,
        state=CircuitState(row.state),
        trip_time=row.trip_time,
        failure_times=tuple(float(value) for value in raw_times),
        config=BreakerConfig(
            failure_threshold=row.failure_threshold,
            window_seconds=row.window_seconds,
            cooldown_seconds=row.cooldown_seconds,
        ),
    )
