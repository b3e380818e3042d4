"""Storage interface shared by the grade engine and the escalation scheduler.

Records are schemaless documents grouped into named collections. Every
record carries an opaque ``version`` token that changes on each write;
passing it back as ``expected_version`` turns an update into a
compare-and-swap. ``where`` preconditions check field values at write time.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple
from uuid import uuid4

# (field, operator, value); operators: ==, <, <=, >, >=
QueryFilter = Tuple[str, str, Any]
SUPPORTED_OPERATORS = ("==", "<", "<=", ">", ">=")

RecordListener = Callable[["StoredRecord"], None]
Unsubscribe = Callable[[], None]


@dataclass
class StoredRecord:
    """A record as read from the store, with the version it was read at."""

    id: str
    data: Dict[str, Any]
    version: Any = None

    def get(self, key: str, default: Any = None) -> Any:
        return self.data.get(key, default)


@dataclass
class WriteOp:
    """One create or update inside a WriteBatch."""

    kind: str
    collection: str
    record_id: str
    data: Dict[str, Any] = field(default_factory=dict)
    expected_version: Any = None
    where: Optional[Dict[str, Any]] = None
    array_union: Optional[Dict[str, List[Any]]] = None


class WriteBatch:
    """Writes that commit together or not at all."""

    def __init__(self):
        self.ops: List[WriteOp] = []

    def create(
        self, collection: str, data: Dict[str, Any], record_id: Optional[str] = None
    ) -> str:
        record_id = record_id or uuid4().hex
        self.ops.append(WriteOp("create", collection, record_id, dict(data)))
        return record_id

    def update(
        self,
        collection: str,
        record_id: str,
        changes: Dict[str, Any],
        expected_version: Any = None,
        where: Optional[Dict[str, Any]] = None,
        array_union: Optional[Dict[str, List[Any]]] = None,
    ) -> None:
        self.ops.append(
            WriteOp(
                "update",
                collection,
                record_id,
                dict(changes),
                expected_version=expected_version,
                where=dict(where) if where else None,
                array_union=array_union,
            )
        )

    def __len__(self) -> int:
        return len(self.ops)


def validate_filters(filters: Iterable[QueryFilter]) -> List[QueryFilter]:
    checked = []
    for field_name, op, value in filters:
        if op not in SUPPORTED_OPERATORS:
            raise ValueError(f"Unsupported query operator '{op}' on field '{field_name}'")
        checked.append((field_name, op, value))
    return checked


class RecordStore(ABC):
    """Keyed document store with conditional writes and change listening."""

    @abstractmethod
    def get(self, collection: str, record_id: str) -> Optional[StoredRecord]:
        """Fetch one record by id, or None."""

    @abstractmethod
    def query(
        self,
        collection: str,
        filters: Sequence[QueryFilter] = (),
        limit: Optional[int] = None,
    ) -> List[StoredRecord]:
        """Fetch all records matching every filter."""

    @abstractmethod
    def create(
        self, collection: str, data: Dict[str, Any], record_id: Optional[str] = None
    ) -> str:
        """Insert a new record and return its id."""

    @abstractmethod
    def commit(self, batch: WriteBatch) -> None:
        """
        Apply every op in the batch atomically.

        Raises:
            WriteConflictError: If any precondition fails; nothing is written
            RecordNotFoundError: If an update targets a missing record
        """

    @abstractmethod
    def array_remove(
        self, collection: str, record_id: str, field_name: str, values: List[Any]
    ) -> bool:
        """Remove values from an array field; False when the record is gone."""

    @abstractmethod
    def subscribe(self, collection: str, listener: RecordListener) -> Unsubscribe:
        """Call ``listener`` for every record created in ``collection``."""

    def update(
        self,
        collection: str,
        record_id: str,
        changes: Dict[str, Any],
        expected_version: Any = None,
        where: Optional[Dict[str, Any]] = None,
        array_union: Optional[Dict[str, List[Any]]] = None,
    ) -> None:
        """Single conditional update; same failure modes as ``commit``."""
        batch = WriteBatch()
        batch.update(
            collection,
            record_id,
            changes,
            expected_version=expected_version,
            where=where,
            array_union=array_union,
        )
        self.commit(batch)
