"""Record storage backends."""

from typing import Optional

from contractor_engine.exceptions import ConfigurationError
from contractor_engine.settings import EngineSettings
from contractor_engine.storage.record_store import RecordStore, StoredRecord, WriteBatch
from contractor_engine.storage.sqlite_store import SQLiteRecordStore


def build_store(settings: EngineSettings, firebase_context: Optional[object] = None) -> RecordStore:
    """Construct the record store the settings select."""
    if settings.store_backend == "sqlite":
        return SQLiteRecordStore(settings.sqlite_path)

    if settings.store_backend == "firestore":
        from contractor_engine.storage.firestore_store import FirestoreRecordStore

        if firebase_context is None:
            raise ConfigurationError("Firestore backend requires a FirebaseContext")
        return FirestoreRecordStore(firebase_context.client)

    raise ConfigurationError(f"Unknown store backend: {settings.store_backend}")


__all__ = ["RecordStore", "StoredRecord", "WriteBatch", "SQLiteRecordStore", "build_store"]
