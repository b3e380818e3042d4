"""Tests for the Firestore record store against a mocked client."""

from unittest.mock import MagicMock, Mock, patch

import pytest
from google.api_core import exceptions as gcloud_exceptions

from contractor_engine.exceptions import RecordNotFoundError, StorageError, WriteConflictError
from contractor_engine.storage.firestore_store import FirestoreRecordStore
from contractor_engine.storage.record_store import WriteBatch


def _snapshot(doc_id, data, update_time="v1", exists=True):
    snapshot = Mock()
    snapshot.id = doc_id
    snapshot.exists = exists
    snapshot.update_time = update_time
    snapshot.to_dict.return_value = data
    return snapshot


@pytest.fixture
def mock_db():
    return MagicMock()


@pytest.fixture
def firestore_store(mock_db):
    return FirestoreRecordStore(mock_db)


@pytest.fixture
def mock_firestore_module():
    """Run transactional functions inline instead of through a real transaction."""
    with patch("contractor_engine.storage.firestore_store.gcloud_firestore") as mock_module:
        mock_module.transactional.side_effect = lambda fn: fn
        yield mock_module


def test_get_returns_record_with_update_time_version(firestore_store, mock_db):
    doc = mock_db.collection.return_value.document.return_value
    doc.get.return_value = _snapshot("c1", {"tier": "gold"}, update_time="t-123")

    record = firestore_store.get("contractors", "c1")

    assert record.id == "c1"
    assert record.data == {"tier": "gold"}
    assert record.version == "t-123"
    mock_db.collection.assert_called_with("contractors")
    mock_db.collection.return_value.document.assert_called_with("c1")


def test_get_missing_returns_none(firestore_store, mock_db):
    mock_db.collection.return_value.document.return_value.get.return_value = _snapshot(
        "c1", None, exists=False
    )

    assert firestore_store.get("contractors", "c1") is None


def test_query_builds_field_filters(firestore_store, mock_db):
    query = mock_db.collection.return_value
    query.where.return_value = query
    query.limit.return_value = query
    query.stream.return_value = [_snapshot("t1", {"status": "open"})]

    records = firestore_store.query("tasks", [("status", "==", "open")], limit=10)

    assert [r.id for r in records] == ["t1"]
    field_filter = query.where.call_args.kwargs["filter"]
    assert (field_filter.field_path, field_filter.op_string, field_filter.value) == (
        "status",
        "==",
        "open",
    )
    query.limit.assert_called_once_with(10)


def test_query_api_error_becomes_storage_error(firestore_store, mock_db):
    mock_db.collection.return_value.stream.side_effect = gcloud_exceptions.ServiceUnavailable(
        "down"
    )

    with pytest.raises(StorageError):
        firestore_store.query("tasks")


def test_create_existing_document_conflicts(firestore_store, mock_db):
    mock_db.collection.return_value.document.return_value.create.side_effect = (
        gcloud_exceptions.AlreadyExists("exists")
    )

    with pytest.raises(WriteConflictError):
        firestore_store.create("tasks", {"a": 1}, record_id="t1")


def test_commit_applies_batch_when_preconditions_hold(
    firestore_store, mock_db, mock_firestore_module
):
    doc = mock_db.collection.return_value.document.return_value
    doc.get.return_value = _snapshot("c1", {"status": "open"}, update_time="v1")
    transaction = mock_db.transaction.return_value

    batch = WriteBatch()
    batch.update(
        "contractors",
        "c1",
        {"tier": "gold"},
        expected_version="v1",
        where={"status": "open"},
        array_union={"tierHistory": [{"toTier": "gold"}]},
    )
    batch.create("grade-change-logs", {"toTier": "gold"}, record_id="log-1")

    firestore_store.commit(batch)

    doc.get.assert_called_with(transaction=transaction)
    transaction.update.assert_called_once_with(
        doc,
        {
            "tier": "gold",
            "tierHistory": mock_firestore_module.ArrayUnion.return_value,
        },
    )
    mock_firestore_module.ArrayUnion.assert_called_once_with([{"toTier": "gold"}])
    transaction.create.assert_called_once_with(doc, {"toTier": "gold"})


def test_commit_rejects_stale_version(firestore_store, mock_db, mock_firestore_module):
    doc = mock_db.collection.return_value.document.return_value
    doc.get.return_value = _snapshot("c1", {}, update_time="v2")
    transaction = mock_db.transaction.return_value

    batch = WriteBatch()
    batch.update("contractors", "c1", {"tier": "gold"}, expected_version="v1")

    with pytest.raises(WriteConflictError):
        firestore_store.commit(batch)

    transaction.update.assert_not_called()


def test_commit_rejects_failed_where(firestore_store, mock_db, mock_firestore_module):
    doc = mock_db.collection.return_value.document.return_value
    doc.get.return_value = _snapshot("t1", {"status": "assigned"})

    with pytest.raises(WriteConflictError):
        firestore_store.update("tasks", "t1", {"fee": 20}, where={"status": "open"})


def test_commit_missing_document(firestore_store, mock_db, mock_firestore_module):
    doc = mock_db.collection.return_value.document.return_value
    doc.get.return_value = _snapshot("t1", None, exists=False)

    with pytest.raises(RecordNotFoundError):
        firestore_store.update("tasks", "t1", {"fee": 20})


def test_aborted_transaction_is_conflict(firestore_store, mock_db, mock_firestore_module):
    doc = mock_db.collection.return_value.document.return_value
    doc.get.side_effect = gcloud_exceptions.Aborted("contention")

    with pytest.raises(WriteConflictError):
        firestore_store.update("tasks", "t1", {"fee": 20})


def test_array_remove_on_list_field(firestore_store, mock_db, mock_firestore_module):
    doc = mock_db.collection.return_value.document.return_value
    doc.get.return_value = _snapshot("u1", {"notificationTokens": ["a", "b"]})

    assert firestore_store.array_remove("users", "u1", "notificationTokens", ["a"]) is True

    mock_firestore_module.ArrayRemove.assert_called_once_with(["a"])
    doc.update.assert_called_once_with(
        {"notificationTokens": mock_firestore_module.ArrayRemove.return_value}
    )


def test_array_remove_on_legacy_scalar(firestore_store, mock_db, mock_firestore_module):
    doc = mock_db.collection.return_value.document.return_value
    doc.get.return_value = _snapshot("u1", {"fcmToken": "a"})

    firestore_store.array_remove("users", "u1", "fcmToken", ["a"])

    doc.update.assert_called_once_with({"fcmToken": mock_firestore_module.DELETE_FIELD})


def test_array_remove_missing_recipient(firestore_store, mock_db):
    doc = mock_db.collection.return_value.document.return_value
    doc.get.return_value = _snapshot("u1", None, exists=False)

    assert firestore_store.array_remove("users", "u1", "notificationTokens", ["a"]) is False
    doc.update.assert_not_called()


def test_subscribe_skips_initial_snapshot(firestore_store, mock_db):
    collection = mock_db.collection.return_value
    seen = []

    unsubscribe = firestore_store.subscribe("evaluations", lambda record: seen.append(record.id))
    callback = collection.on_snapshot.call_args.args[0]

    def change(kind, doc_id):
        item = Mock()
        item.type.name = kind
        item.document = _snapshot(doc_id, {"contractorId": "c1"})
        return item

    callback([], [change("ADDED", "old")], None)
    callback([], [change("ADDED", "e1"), change("MODIFIED", "e0")], None)

    assert seen == ["e1"]
    assert unsubscribe is collection.on_snapshot.return_value.unsubscribe
