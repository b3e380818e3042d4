"""Runtime settings loaded from the environment.

Process-level knobs (which store backend, where the database lives, worker
cadences) come from environment variables, optionally seeded from a .env
file. Policy values that operators tune at runtime live in the record store
and are read through ``ConfigLoader`` instead.

Usage:
    from contractor_engine.settings import get_engine_settings

    settings = get_engine_settings()
    store = build_store(settings)
"""

from __future__ import annotations

import logging
import os
from functools import lru_cache
from typing import Literal, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError

from contractor_engine.constants import (
    LONG_CADENCE_INTERVAL_SECONDS,
    SHORT_CADENCE_INTERVAL_SECONDS,
)
from contractor_engine.exceptions import ConfigurationError

logger = logging.getLogger(__name__)


class EngineSettings(BaseModel):
    """Typed view over the environment variables the engine reads."""

    environment: str = Field(default="development")
    store_backend: Literal["sqlite", "firestore"] = Field(default="sqlite")
    sqlite_path: Optional[str] = Field(default=None)
    firestore_database: str = Field(default="(default)")
    credentials_path: Optional[str] = Field(default=None)
    admin_api_token: Optional[str] = Field(default=None)
    worker_host: str = Field(default="0.0.0.0")
    worker_port: int = Field(default=5556)
    short_cadence_seconds: int = Field(default=SHORT_CADENCE_INTERVAL_SECONDS, gt=0)
    long_cadence_seconds: int = Field(default=LONG_CADENCE_INTERVAL_SECONDS, gt=0)
    enabled_cadences: list[str] = Field(default_factory=lambda: ["short", "long"])


def _split_list(raw: Optional[str]) -> Optional[list[str]]:
    if raw is None:
        return None
    return [part.strip() for part in raw.split(",") if part.strip()]


@lru_cache(maxsize=1)
def get_engine_settings() -> EngineSettings:
    """
    Build settings from environment variables.

    Results are cached for the lifetime of the process; call
    ``clear_settings_cache`` after changing the environment.

    Raises:
        ConfigurationError: If a variable holds an invalid value
    """
    load_dotenv()

    raw = {
        "environment": os.getenv("ENVIRONMENT"),
        "store_backend": os.getenv("CONTRACTOR_ENGINE_STORE"),
        "sqlite_path": os.getenv("CONTRACTOR_ENGINE_SQLITE_PATH"),
        "firestore_database": os.getenv("FIRESTORE_DATABASE"),
        "credentials_path": os.getenv("GOOGLE_APPLICATION_CREDENTIALS"),
        "admin_api_token": os.getenv("ADMIN_API_TOKEN"),
        "worker_host": os.getenv("WORKER_HOST"),
        "worker_port": os.getenv("WORKER_PORT"),
        "short_cadence_seconds": os.getenv("SHORT_CADENCE_SECONDS"),
        "long_cadence_seconds": os.getenv("LONG_CADENCE_SECONDS"),
        "enabled_cadences": _split_list(os.getenv("ENABLED_CADENCES")),
    }
    # Unset variables fall through to model defaults
    values = {key: value for key, value in raw.items() if value is not None}

    try:
        settings = EngineSettings(**values)
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid engine settings: {exc}") from exc

    unknown = [c for c in settings.enabled_cadences if c not in ("short", "long")]
    if unknown:
        raise ConfigurationError(f"Unknown cadences in ENABLED_CADENCES: {unknown}")

    logger.debug("Loaded engine settings (store=%s)", settings.store_backend)
    return settings


def clear_settings_cache() -> None:
    """Clear cached settings (useful for testing or config reload)."""
    get_engine_settings.cache_clear()
