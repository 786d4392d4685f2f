"""Revisioned record storage — in-memory and SQLite backends.

WHY
───
Entity records and process instances are both updated with optimistic
concurrency: a write succeeds only if the stored revision still equals
the revision the writer read. Both backends implement the same
compare-and-swap contract, so the Entity Store and the Process Engine
never care where rows live.

ARCHITECTURE
────────────
::

    RecordRepository (Protocol)
      ├── .get(tenant, collection, key)                    ─ StoredRow | None
      ├── .insert(tenant, collection, key, group, body)     ─ revision 1
      ├── .compare_and_swap(tenant, collection, key,
      │                     expected_revision, body)        ─ revision + 1
      └── .list(tenant, collection, group, offset, limit)   ─ insertion order

    InMemoryRecordRepository  ── dict + threading.Lock
    SQLiteRecordRepository    ── procspine_records table, UPDATE … WHERE revision = ?

    collection: "entities" | "events"
    group:      type_id for entities, process_id for events

Example::

    repo = SQLiteRecordRepository("data/procspine.db")
    repo.insert("t1", "entities", "e-1", group="type-1", body={...})
    repo.compare_and_swap("t1", "entities", "e-1", expected_revision=1, body={...})
"""

from __future__ import annotations

import json
import sqlite3
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from procspine.core.errors import ConfigError, ConflictError, NotFoundError
from procspine.core.settings import ProcSpineSettings, StorageBackend


@dataclass(frozen=True)
class StoredRow:
    """One stored body with its revision marker."""

    key: str
    group: str
    revision: int
    body: dict[str, Any]

    __hash__ = None


@runtime_checkable
class RecordRepository(Protocol):
    """Revisioned key/value storage scoped by tenant and collection."""

    def get(self, tenant_id: str, collection: str, key: str) -> StoredRow | None:
        ...

    def insert(
        self,
        tenant_id: str,
        collection: str,
        key: str,
        group: str,
        body: dict[str, Any],
    ) -> StoredRow:
        ...

    def compare_and_swap(
        self,
        tenant_id: str,
        collection: str,
        key: str,
        expected_revision: int,
        body: dict[str, Any],
    ) -> StoredRow:
        ...

    def list(
        self,
        tenant_id: str,
        collection: str,
        group: str | None = None,
        offset: int = 0,
        limit: int | None = None,
    ) -> list[StoredRow]:
        ...


class InMemoryRecordRepository:
    """Process-local repository. Bodies are JSON round-tripped on write so
    callers can never mutate stored state through a shared reference."""

    def __init__(self):
        self._rows: dict[tuple[str, str, str], StoredRow] = {}
        self._lock = threading.Lock()

    def get(self, tenant_id: str, collection: str, key: str) -> StoredRow | None:
        with self._lock:
            return self._rows.get((tenant_id, collection, key))

    def insert(
        self,
        tenant_id: str,
        collection: str,
        key: str,
        group: str,
        body: dict[str, Any],
    ) -> StoredRow:
        row = StoredRow(key=key, group=group, revision=1, body=_copy(body))
        with self._lock:
            if (tenant_id, collection, key) in self._rows:
                raise ConflictError(collection, key, message=f"{collection} {key} already exists")
            self._rows[(tenant_id, collection, key)] = row
        return row

    def compare_and_swap(
        self,
        tenant_id: str,
        collection: str,
        key: str,
        expected_revision: int,
        body: dict[str, Any],
    ) -> StoredRow:
        with self._lock:
            current = self._rows.get((tenant_id, collection, key))
            if current is None:
                raise NotFoundError(collection, key).with_context(tenant_id=tenant_id)
            if current.revision != expected_revision:
                raise ConflictError(
                    collection, key, expected=expected_revision, actual=current.revision
                ).with_context(tenant_id=tenant_id)
            row = StoredRow(
                key=key,
                group=current.group,
                revision=expected_revision + 1,
                body=_copy(body),
            )
            self._rows[(tenant_id, collection, key)] = row
            return row

    def list(
        self,
        tenant_id: str,
        collection: str,
        group: str | None = None,
        offset: int = 0,
        limit: int | None = None,
    ) -> list[StoredRow]:
        with self._lock:
            rows = [
                row
                for (tenant, coll, _), row in self._rows.items()
                if tenant == tenant_id
                and coll == collection
                and (group is None or row.group == group)
            ]
        end = None if limit is None else offset + limit
        return rows[offset:end]


_SCHEMA = """
CREATE TABLE IF NOT EXISTS procspine_records (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    tenant_id TEXT NOT NULL,
    collection TEXT NOT NULL,
    record_key TEXT NOT NULL,
    grp TEXT NOT NULL,
    revision INTEGER NOT NULL,
    body TEXT NOT NULL,
    UNIQUE (tenant_id, collection, record_key)
)
"""


class SQLiteRecordRepository:
    """SQLite-backed repository.

    Thread-safety:
        One connection opened with ``check_same_thread=False``; writes are
        serialized by a lock because SQLite does not support concurrent
        writers. The revision check happens inside the UPDATE statement, so
        the compare-and-swap holds across processes sharing the file too.
    """

    def __init__(self, db_path: str | Path = ":memory:", conn: sqlite3.Connection | None = None):
        if conn is not None:
            self._conn = conn
        else:
            if str(db_path) != ":memory:":
                Path(db_path).parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(str(db_path), check_same_thread=False)
        self._db_lock = threading.Lock()
        with self._db_lock:
            self._conn.execute(_SCHEMA)
            self._conn.commit()

    def close(self) -> None:
        self._conn.close()

    def get(self, tenant_id: str, collection: str, key: str) -> StoredRow | None:
        with self._db_lock:
            cursor = self._conn.execute(
                """
                SELECT record_key, grp, revision, body FROM procspine_records
                WHERE tenant_id = ? AND collection = ? AND record_key = ?
                """,
                (tenant_id, collection, key),
            )
            row = cursor.fetchone()
        return _to_row(row) if row else None

    def insert(
        self,
        tenant_id: str,
        collection: str,
        key: str,
        group: str,
        body: dict[str, Any],
    ) -> StoredRow:
        with self._db_lock:
            try:
                self._conn.execute(
                    """
                    INSERT INTO procspine_records (tenant_id, collection, record_key, grp, revision, body)
                    VALUES (?, ?, ?, ?, 1, ?)
                    """,
                    (tenant_id, collection, key, group, json.dumps(body)),
                )
                self._conn.commit()
            except sqlite3.IntegrityError as exc:
                self._conn.rollback()
                raise ConflictError(
                    collection, key, message=f"{collection} {key} already exists", cause=exc
                ) from exc
        return StoredRow(key=key, group=group, revision=1, body=_copy(body))

    def compare_and_swap(
        self,
        tenant_id: str,
        collection: str,
        key: str,
        expected_revision: int,
        body: dict[str, Any],
    ) -> StoredRow:
        with self._db_lock:
            cursor = self._conn.execute(
                """
                UPDATE procspine_records
                SET body = ?, revision = revision + 1
                WHERE tenant_id = ? AND collection = ? AND record_key = ? AND revision = ?
                """,
                (json.dumps(body), tenant_id, collection, key, expected_revision),
            )
            self._conn.commit()
            if cursor.rowcount == 0:
                current = self._conn.execute(
                    """
                    SELECT revision, grp FROM procspine_records
                    WHERE tenant_id = ? AND collection = ? AND record_key = ?
                    """,
                    (tenant_id, collection, key),
                ).fetchone()
                if current is None:
                    raise NotFoundError(collection, key).with_context(tenant_id=tenant_id)
                raise ConflictError(
                    collection, key, expected=expected_revision, actual=current[0]
                ).with_context(tenant_id=tenant_id)
            group = self._conn.execute(
                """
                SELECT grp FROM procspine_records
                WHERE tenant_id = ? AND collection = ? AND record_key = ?
                """,
                (tenant_id, collection, key),
            ).fetchone()[0]
        return StoredRow(key=key, group=group, revision=expected_revision + 1, body=_copy(body))

    def list(
        self,
        tenant_id: str,
        collection: str,
        group: str | None = None,
        offset: int = 0,
        limit: int | None = None,
    ) -> list[StoredRow]:
        sql = """
            SELECT record_key, grp, revision, body FROM procspine_records
            WHERE tenant_id = ? AND collection = ?
        """
        params: list[Any] = [tenant_id, collection]
        if group is not None:
            sql += " AND grp = ?"
            params.append(group)
        sql += " ORDER BY seq LIMIT ? OFFSET ?"
        params.extend([-1 if limit is None else limit, offset])
        with self._db_lock:
            rows = self._conn.execute(sql, params).fetchall()
        return [_to_row(row) for row in rows]


def _to_row(row: tuple) -> StoredRow:
    return StoredRow(key=row[0], group=row[1], revision=row[2], body=json.loads(row[3]))


def _copy(body: dict[str, Any]) -> dict[str, Any]:
    return json.loads(json.dumps(body))


def create_repository(settings: ProcSpineSettings) -> RecordRepository:
    """Build the repository selected by ``settings.storage_backend``.

    Raises:
        ConfigError: The configured database path cannot be opened
    """
    if settings.storage_backend == StorageBackend.SQLITE:
        try:
            return SQLiteRecordRepository(settings.database_path)
        except (OSError, sqlite3.Error) as exc:
            raise ConfigError(
                f"Cannot open SQLite database at {settings.database_path}: {exc}",
                cause=exc,
            ) from exc
    return InMemoryRecordRepository()


__all__ = [
    "StoredRow",
    "RecordRepository",
    "InMemoryRecordRepository",
    "SQLiteRecordRepository",
    "create_repository",
]
