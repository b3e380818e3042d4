"""SQLite connection utilities for the engine."""

from __future__ import annotations

import os
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

from contractor_engine.exceptions import ConfigurationError


PROJECT_ROOT = Path(__file__).resolve().parents[3]
DEFAULT_DB_PATH = PROJECT_ROOT / "data" / "contractor_engine.db"


def resolve_db_path(db_path: Optional[str] = None, create: bool = False) -> Path:
    """
    Resolve the SQLite database path using env vars with sane defaults.

    Order of precedence:
        1. Explicit db_path argument
        2. CONTRACTOR_ENGINE_SQLITE_PATH env var
        3. data/contractor_engine.db inside the project

    Args:
        db_path: Optional explicit path
        create: Allow a database file that does not exist yet (its parent
            directory is created)
    """
    path = db_path or os.getenv("CONTRACTOR_ENGINE_SQLITE_PATH") or str(DEFAULT_DB_PATH)

    resolved = Path(path).expanduser().resolve()

    if not resolved.exists():
        if not create:
            raise ConfigurationError(
                f"SQLite database not found at {resolved}. "
                "Set CONTRACTOR_ENGINE_SQLITE_PATH or create the record store first."
            )
        resolved.parent.mkdir(parents=True, exist_ok=True)

    return resolved


def _create_connection(resolved_path: Path) -> sqlite3.Connection:
    """Create a configured sqlite3 connection."""
    conn = sqlite3.connect(resolved_path, check_same_thread=False, timeout=5.0)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON;")
    conn.execute("PRAGMA busy_timeout = 5000;")
    return conn


@contextmanager
def sqlite_connection(
    db_path: Optional[str] = None, create: bool = False
) -> Iterator[sqlite3.Connection]:
    """
    Context manager that yields a configured sqlite3 connection.

    Each call opens a fresh connection to avoid cross-thread issues. The
    transaction commits on clean exit and rolls back on any exception.
    With ``create`` a missing database file is created by the connect.
    """
    resolved_path = resolve_db_path(db_path, create=create)
    conn = _create_connection(resolved_path)
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()
