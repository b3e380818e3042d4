"""Tests for environment-driven engine settings."""

import pytest

from contractor_engine.exceptions import ConfigurationError
from contractor_engine.settings import clear_settings_cache, get_engine_settings

ENV_VARS = [
    "CONTRACTOR_ENGINE_STORE",
    "CONTRACTOR_ENGINE_SQLITE_PATH",
    "FIRESTORE_DATABASE",
    "GOOGLE_APPLICATION_CREDENTIALS",
    "ADMIN_API_TOKEN",
    "WORKER_HOST",
    "WORKER_PORT",
    "SHORT_CADENCE_SECONDS",
    "LONG_CADENCE_SECONDS",
    "ENABLED_CADENCES",
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    # A developer's .env must not leak into these tests
    monkeypatch.setattr("contractor_engine.settings.load_dotenv", lambda: None)
    clear_settings_cache()
    yield
    clear_settings_cache()


def test_defaults():
    settings = get_engine_settings()

    assert settings.environment == "development"
    assert settings.store_backend == "sqlite"
    assert settings.short_cadence_seconds == 600
    assert settings.long_cadence_seconds == 3600
    assert settings.enabled_cadences == ["short", "long"]
    assert settings.admin_api_token is None


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("CONTRACTOR_ENGINE_STORE", "firestore")
    monkeypatch.setenv("FIRESTORE_DATABASE", "marketplace")
    monkeypatch.setenv("WORKER_PORT", "8080")
    monkeypatch.setenv("SHORT_CADENCE_SECONDS", "30")
    monkeypatch.setenv("ENABLED_CADENCES", "short, ")

    settings = get_engine_settings()

    assert settings.store_backend == "firestore"
    assert settings.firestore_database == "marketplace"
    assert settings.worker_port == 8080
    assert settings.short_cadence_seconds == 30
    assert settings.enabled_cadences == ["short"]


def test_results_are_cached_until_cleared(monkeypatch):
    first = get_engine_settings()
    monkeypatch.setenv("WORKER_PORT", "9000")

    assert get_engine_settings() is first

    clear_settings_cache()
    assert get_engine_settings().worker_port == 9000


@pytest.mark.parametrize(
    "name,value",
    [
        ("CONTRACTOR_ENGINE_STORE", "postgres"),
        ("WORKER_PORT", "not-a-port"),
        ("LONG_CADENCE_SECONDS", "0"),
        ("ENABLED_CADENCES", "short,hourly"),
    ],
)
def test_invalid_values_fail_loudly(monkeypatch, name, value):
    monkeypatch.setenv(name, value)

    with pytest.raises(ConfigurationError):
        get_engine_settings()
