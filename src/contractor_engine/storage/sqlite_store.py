"""SQLite-backed record store.

Documents live as JSON in a single ``records`` table keyed by
(collection, id). Every write bumps an integer ``version`` column and every
conditional update carries ``AND version = ?`` so a stale writer touches
zero rows.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence
from uuid import uuid4

from contractor_engine.exceptions import RecordNotFoundError, StorageError, WriteConflictError
from contractor_engine.storage.record_store import (
    QueryFilter,
    RecordListener,
    RecordStore,
    StoredRecord,
    Unsubscribe,
    WriteBatch,
    WriteOp,
    validate_filters,
)
from contractor_engine.storage.sqlite_client import resolve_db_path, sqlite_connection

logger = logging.getLogger(__name__)

RECORDS_SCHEMA = """
CREATE TABLE IF NOT EXISTS records (
    collection TEXT NOT NULL,
    id TEXT NOT NULL,
    data TEXT NOT NULL,
    version INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    PRIMARY KEY (collection, id)
);
"""


def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _json_default(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def _dumps(data: Dict[str, Any]) -> str:
    return json.dumps(data, default=_json_default)


def _sql_param(value: Any) -> Any:
    """Bind value matching what json_extract returns for the stored form."""
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, bool):
        return int(value)
    return value


def _field_path(field_name: str) -> str:
    if not field_name.replace("_", "").isalnum():
        raise ValueError(f"Invalid field name for query: {field_name!r}")
    return f"$.{field_name}"


def _matches_where(data: Dict[str, Any], where: Optional[Dict[str, Any]]) -> bool:
    if not where:
        return True
    for key, expected in where.items():
        actual = data.get(key)
        if isinstance(expected, Enum):
            expected = expected.value
        if actual != expected:
            return False
    return True


class SQLiteRecordStore(RecordStore):
    """Record store over a local SQLite database file."""

    def __init__(self, db_path: Optional[str] = None):
        self.db_path = str(resolve_db_path(db_path, create=True))
        self._listeners: Dict[str, List[RecordListener]] = {}
        self._listeners_lock = threading.Lock()
        self._ensure_schema()

    def _ensure_schema(self) -> None:
        """Idempotent migration guard; safe to run on every process start."""
        with sqlite_connection(self.db_path, create=True) as conn:
            conn.execute(RECORDS_SCHEMA)
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_records_collection ON records(collection);"
            )

    # ------------------------------------------------------------------ #
    # Reads
    # ------------------------------------------------------------------ #

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> StoredRecord:
        return StoredRecord(id=row["id"], data=json.loads(row["data"]), version=row["version"])

    def get(self, collection: str, record_id: str) -> Optional[StoredRecord]:
        with sqlite_connection(self.db_path) as conn:
            row = conn.execute(
                "SELECT id, data, version FROM records WHERE collection = ? AND id = ?",
                (collection, record_id),
            ).fetchone()
        return self._row_to_record(row) if row else None

    def query(
        self,
        collection: str,
        filters: Sequence[QueryFilter] = (),
        limit: Optional[int] = None,
    ) -> List[StoredRecord]:
        clauses = ["collection = ?"]
        params: List[Any] = [collection]
        for field_name, op, value in validate_filters(filters):
            if value is None and op == "==":
                clauses.append("json_extract(data, ?) IS NULL")
                params.append(_field_path(field_name))
                continue
            clauses.append(f"json_extract(data, ?) {'=' if op == '==' else op} ?")
            params.extend([_field_path(field_name), _sql_param(value)])

        sql = f"SELECT id, data, version FROM records WHERE {' AND '.join(clauses)} ORDER BY id"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(int(limit))

        try:
            with sqlite_connection(self.db_path) as conn:
                rows = conn.execute(sql, tuple(params)).fetchall()
        except sqlite3.Error as exc:
            raise StorageError(f"Query on {collection} failed: {exc}") from exc
        return [self._row_to_record(row) for row in rows]

    # ------------------------------------------------------------------ #
    # Writes
    # ------------------------------------------------------------------ #

    def create(
        self, collection: str, data: Dict[str, Any], record_id: Optional[str] = None
    ) -> str:
        batch = WriteBatch()
        new_id = batch.create(collection, data, record_id or uuid4().hex)
        self.commit(batch)
        return new_id

    def _apply_create(self, conn: sqlite3.Connection, op: WriteOp) -> StoredRecord:
        now = _utcnow_iso()
        try:
            conn.execute(
                """
                INSERT INTO records (collection, id, data, version, created_at, updated_at)
                VALUES (?, ?, ?, 1, ?, ?)
                """,
                (op.collection, op.record_id, _dumps(op.data), now, now),
            )
        except sqlite3.IntegrityError as exc:
            raise WriteConflictError(f"{op.collection}/{op.record_id} already exists") from exc
        return StoredRecord(id=op.record_id, data=json.loads(_dumps(op.data)), version=1)

    def _apply_update(self, conn: sqlite3.Connection, op: WriteOp) -> None:
        row = conn.execute(
            "SELECT data, version FROM records WHERE collection = ? AND id = ?",
            (op.collection, op.record_id),
        ).fetchone()
        if not row:
            raise RecordNotFoundError(op.collection, op.record_id)

        current_version = row["version"]
        if op.expected_version is not None and current_version != op.expected_version:
            raise WriteConflictError(
                f"{op.collection}/{op.record_id} changed "
                f"(expected version {op.expected_version}, found {current_version})"
            )

        data = json.loads(row["data"])
        if not _matches_where(data, op.where):
            raise WriteConflictError(
                f"{op.collection}/{op.record_id} no longer matches {op.where}"
            )

        data.update(op.data)
        for field_name, values in (op.array_union or {}).items():
            existing = list(data.get(field_name) or [])
            for value in json.loads(_dumps({"v": values}))["v"]:
                if value not in existing:
                    existing.append(value)
            data[field_name] = existing

        cursor = conn.execute(
            """
            UPDATE records
            SET data = ?, version = version + 1, updated_at = ?
            WHERE collection = ? AND id = ? AND version = ?
            """,
            (_dumps(data), _utcnow_iso(), op.collection, op.record_id, current_version),
        )
        if cursor.rowcount == 0:
            raise WriteConflictError(f"{op.collection}/{op.record_id} changed during update")

    def commit(self, batch: WriteBatch) -> None:
        if not batch.ops:
            return

        created: List[tuple] = []
        with sqlite_connection(self.db_path) as conn:
            # Take the write lock up front so the read-check-write is serialized
            conn.execute("BEGIN IMMEDIATE")
            for op in batch.ops:
                if op.kind == "create":
                    created.append((op.collection, self._apply_create(conn, op)))
                elif op.kind == "update":
                    self._apply_update(conn, op)
                else:
                    raise StorageError(f"Unknown write op: {op.kind}")

        for collection, record in created:
            self._notify(collection, record)

    def array_remove(
        self, collection: str, record_id: str, field_name: str, values: List[Any]
    ) -> bool:
        with sqlite_connection(self.db_path) as conn:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute(
                "SELECT data FROM records WHERE collection = ? AND id = ?",
                (collection, record_id),
            ).fetchone()
            if not row:
                return False
            data = json.loads(row["data"])
            current = data.get(field_name)
            if isinstance(current, list):
                data[field_name] = [v for v in current if v not in values]
            elif current in values:
                data[field_name] = None
            else:
                return True
            conn.execute(
                """
                UPDATE records SET data = ?, version = version + 1, updated_at = ?
                WHERE collection = ? AND id = ?
                """,
                (_dumps(data), _utcnow_iso(), collection, record_id),
            )
        return True

    # ------------------------------------------------------------------ #
    # Change listening
    # ------------------------------------------------------------------ #

    def subscribe(self, collection: str, listener: RecordListener) -> Unsubscribe:
        with self._listeners_lock:
            self._listeners.setdefault(collection, []).append(listener)

        def unsubscribe() -> None:
            with self._listeners_lock:
                listeners = self._listeners.get(collection, [])
                if listener in listeners:
                    listeners.remove(listener)

        return unsubscribe

    def _notify(self, collection: str, record: StoredRecord) -> None:
        with self._listeners_lock:
            listeners = list(self._listeners.get(collection, []))
        for listener in listeners:
            try:
                listener(record)
            except Exception as exc:
                # The write already committed; a listener cannot undo it
                logger.error(
                    "Listener for %s failed on %s: %s", collection, record.id, exc, exc_info=True
                )
