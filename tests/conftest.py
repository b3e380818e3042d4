"""Shared pytest fixtures for all tests."""

from datetime import datetime, timezone

import pytest

from contractor_engine.storage.sqlite_store import SQLiteRecordStore
from helpers import FakeTransport


@pytest.fixture(autouse=True)
def set_test_environment(monkeypatch):
    """
    Automatically set ENVIRONMENT variable for all tests.

    This prevents ValueError from being raised when initializing
    StructuredLogger or calling setup_logging() in tests.
    """
    monkeypatch.setenv("ENVIRONMENT", "development")


@pytest.fixture
def store(tmp_path):
    """Fresh SQLite record store per test."""
    return SQLiteRecordStore(str(tmp_path / "engine.db"))


@pytest.fixture
def now():
    return datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def transport():
    return FakeTransport()
