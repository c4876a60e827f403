"""SQLite backing for the agent response cache."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from sqlalchemy import delete as sa_delete
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlmodel import Session, col

from agent_circuit.storage import CachedResponseRow, build_sqlite_engine, init_schema


class SqliteResponseStore:
    """Cached agent replies shared by every CLI process using one database.

    Entries are upserted one key at a time, so concurrent writers never lose
    each other's replies. Responses must be JSON-serializable.
    """

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        self.engine.dispose()

    def init_schema(self) -> None:
        init_schema(self.engine)

    def get(self, key: str) -> tuple[float, Any] | None:
        with Session(self.engine) as session:
            row = session.get(CachedResponseRow, key)
            if row is None:
                return None
            return row.stored_at, json.loads(row.response_json)

    def put(self, key: str, stored_at: float, response: Any) -> None:
        insert = sqlite_insert(CachedResponseRow).values(
            key=key,
            stored_at=stored_at,
            response_json=json.dumps(response, ensure_ascii=False, sort_keys=True),
        )
        upsert = insert.on_conflict_do_update(
            index_elements=["key"],
            set_={
                "stored_at": insert.excluded.stored_at,
                "response_json": insert.excluded.response_json,
            },
        )
        with Session(self.engine) as session:
            session.exec(upsert)
            session.commit()

    def purge(self, cutoff: float) -> int:
        with Session(self.engine) as session:
            result = session.exec(
                sa_delete(CachedResponseRow).where(col(CachedResponseRow.stored_at) <= cutoff),
            )
            session.commit()
            return result.rowcount
