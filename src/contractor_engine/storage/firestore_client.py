"""Explicit Firebase wiring for the Firestore store and push transport.

A ``FirebaseContext`` owns one named firebase_admin app and one Firestore
client. Callers construct it once at startup and pass it to the pieces that
need it; nothing here is process-global.

Example:
    >>> context = FirebaseContext.from_credentials("/secrets/sa.json", "marketplace")
    >>> store = FirestoreRecordStore(context.client)
    >>> transport = FirebasePushTransport(context.app)
"""

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

import firebase_admin
from firebase_admin import credentials
from google.cloud import firestore as gcloud_firestore

from contractor_engine.exceptions import ConfigurationError, InitializationError

logger = logging.getLogger(__name__)

DEFAULT_APP_NAME = "contractor-engine"


@dataclass
class FirebaseContext:
    """A firebase_admin app and the Firestore client bound to it."""

    app: Any
    client: gcloud_firestore.Client
    database_name: str

    @classmethod
    def from_credentials(
        cls,
        credentials_path: Optional[str] = None,
        database_name: str = "(default)",
        app_name: str = DEFAULT_APP_NAME,
    ) -> "FirebaseContext":
        """
        Build an app and client from a service account file.

        Args:
            credentials_path: Path to service account JSON. Falls back to
                GOOGLE_APPLICATION_CREDENTIALS.
            database_name: Firestore database name. "(default)" for the default database.
            app_name: Name of the firebase_admin app to create or reuse.

        Raises:
            ConfigurationError: If no credentials file is available.
            InitializationError: If the SDK rejects the credentials.
        """
        creds_path = credentials_path or os.getenv("GOOGLE_APPLICATION_CREDENTIALS")

        if not creds_path:
            raise ConfigurationError(
                "Firebase credentials not found. Set GOOGLE_APPLICATION_CREDENTIALS "
                "environment variable or pass credentials_path parameter."
            )

        if not Path(creds_path).exists():
            raise ConfigurationError(f"Credentials file not found: {creds_path}")

        try:
            cred = credentials.Certificate(creds_path)
            project_id = cred.project_id

            try:
                app = firebase_admin.get_app(app_name)
                logger.info("Reusing Firebase app %s", app_name)
            except ValueError:
                app = firebase_admin.initialize_app(cred, name=app_name)
                logger.info("Initialized Firebase app %s", app_name)

            if database_name == "(default)":
                client = gcloud_firestore.Client(
                    project=project_id, credentials=cred.get_credential()
                )
            else:
                client = gcloud_firestore.Client(
                    project=project_id,
                    credentials=cred.get_credential(),
                    database=database_name,
                )
        except (ValueError, OSError) as e:
            raise InitializationError(f"Failed to initialize Firebase: {e}") from e

        logger.info("Connected to Firestore database: %s in project %s", database_name, project_id)
        return cls(app=app, client=client, database_name=database_name)

    def close(self) -> None:
        """Release the app so a new context can be built under the same name."""
        try:
            firebase_admin.delete_app(self.app)
        except ValueError:
            logger.debug("Firebase app already deleted")
