"""Firestore-backed record store.

The record version is the document ``update_time``. Batches run inside a
Firestore transaction that re-reads every precondition document, so a
version or field mismatch aborts the whole batch.
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Dict, List, Optional, Sequence
from uuid import uuid4

from google.api_core import exceptions as gcloud_exceptions
from google.cloud import firestore as gcloud_firestore
from google.cloud.firestore_v1.base_query import FieldFilter

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

logger = logging.getLogger(__name__)


def _snapshot_to_record(snapshot) -> StoredRecord:
    return StoredRecord(
        id=snapshot.id, data=snapshot.to_dict() or {}, version=snapshot.update_time
    )


class FirestoreRecordStore(RecordStore):
    """Record store over a google-cloud-firestore client."""

    def __init__(self, client: gcloud_firestore.Client):
        self.db = client

    def get(self, collection: str, record_id: str) -> Optional[StoredRecord]:
        try:
            snapshot = self.db.collection(collection).document(record_id).get()
        except gcloud_exceptions.GoogleAPICallError as e:
            raise StorageError(f"Failed to read {collection}/{record_id}: {e}") from e
        if not snapshot.exists:
            return None
        return _snapshot_to_record(snapshot)

    def query(
        self,
        collection: str,
        filters: Sequence[QueryFilter] = (),
        limit: Optional[int] = None,
    ) -> List[StoredRecord]:
        query = self.db.collection(collection)
        for field_name, op, value in validate_filters(filters):
            query = query.where(filter=FieldFilter(field_name, op, value))
        if limit is not None:
            query = query.limit(limit)

        try:
            return [_snapshot_to_record(doc) for doc in query.stream()]
        except gcloud_exceptions.GoogleAPICallError as e:
            raise StorageError(f"Query on {collection} failed: {e}") from e

    def create(
        self, collection: str, data: Dict[str, Any], record_id: Optional[str] = None
    ) -> str:
        record_id = record_id or uuid4().hex
        try:
            self.db.collection(collection).document(record_id).create(data)
        except gcloud_exceptions.AlreadyExists as e:
            raise WriteConflictError(f"{collection}/{record_id} already exists") from e
        except gcloud_exceptions.GoogleAPICallError as e:
            raise StorageError(f"Failed to create {collection}/{record_id}: {e}") from e
        return record_id

    def _check_preconditions(self, transaction, op: WriteOp) -> None:
        ref = self.db.collection(op.collection).document(op.record_id)
        snapshot = ref.get(transaction=transaction)
        if not snapshot.exists:
            raise RecordNotFoundError(op.collection, op.record_id)
        if op.expected_version is not None and snapshot.update_time != op.expected_version:
            raise WriteConflictError(f"{op.collection}/{op.record_id} changed since read")
        data = snapshot.to_dict() or {}
        for key, expected in (op.where or {}).items():
            if data.get(key) != expected:
                raise WriteConflictError(
                    f"{op.collection}/{op.record_id} no longer matches {key}={expected!r}"
                )

    def commit(self, batch: WriteBatch) -> None:
        if not batch.ops:
            return

        @gcloud_firestore.transactional
        def _run(transaction):
            # All reads must happen before the first write in a transaction
            for op in batch.ops:
                if op.kind == "update":
                    self._check_preconditions(transaction, op)

            for op in batch.ops:
                ref = self.db.collection(op.collection).document(op.record_id)
                if op.kind == "create":
                    transaction.create(ref, op.data)
                elif op.kind == "update":
                    changes = dict(op.data)
                    for field_name, values in (op.array_union or {}).items():
                        changes[field_name] = gcloud_firestore.ArrayUnion(values)
                    transaction.update(ref, changes)
                else:
                    raise StorageError(f"Unknown write op: {op.kind}")

        try:
            _run(self.db.transaction())
        except (gcloud_exceptions.Aborted, gcloud_exceptions.FailedPrecondition) as e:
            raise WriteConflictError(f"Transaction lost a concurrent write: {e}") from e
        except gcloud_exceptions.AlreadyExists as e:
            raise WriteConflictError(f"Batch create collided with an existing record: {e}") from e
        except gcloud_exceptions.GoogleAPICallError as e:
            raise StorageError(f"Batch commit failed: {e}") from e

    def array_remove(
        self, collection: str, record_id: str, field_name: str, values: List[Any]
    ) -> bool:
        ref = self.db.collection(collection).document(record_id)
        try:
            snapshot = ref.get()
            if not snapshot.exists:
                return False
            current = (snapshot.to_dict() or {}).get(field_name)
            if isinstance(current, list):
                ref.update({field_name: gcloud_firestore.ArrayRemove(values)})
            elif current in values:
                ref.update({field_name: gcloud_firestore.DELETE_FIELD})
        except gcloud_exceptions.NotFound:
            return False
        except gcloud_exceptions.GoogleAPICallError as e:
            raise StorageError(f"Failed to prune {collection}/{record_id}.{field_name}: {e}") from e
        return True

    def subscribe(self, collection: str, listener: RecordListener) -> Unsubscribe:
        initial_snapshot = threading.Event()

        def on_snapshot(col_snapshot, changes, read_time):
            # The first snapshot replays every existing document as ADDED
            if not initial_snapshot.is_set():
                initial_snapshot.set()
                return
            for change in changes:
                if change.type.name != "ADDED":
                    continue
                try:
                    listener(_snapshot_to_record(change.document))
                except Exception as exc:
                    logger.error(
                        "Listener for %s failed on %s: %s",
                        collection,
                        change.document.id,
                        exc,
                        exc_info=True,
                    )

        watch = self.db.collection(collection).on_snapshot(on_snapshot)
        return watch.unsubscribe
