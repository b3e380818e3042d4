"""Tests for the worker's HTTP endpoints."""

import threading

import pytest

from contractor_engine.constants import TASKS_COLLECTION
from contractor_engine.services import build_services
from contractor_engine.settings import EngineSettings
from helpers import FakeTransport, seed_contractor, seed_evaluations, seed_short_task

TOKEN = "test-admin-token"
AUTH = {"Authorization": f"Bearer {TOKEN}", "X-Admin-Id": "admin-7"}


@pytest.fixture
def worker(monkeypatch, store):
    try:
        from contractor_engine import flask_worker
    except ModuleNotFoundError as exc:  # flask not installed in lightweight envs
        pytest.skip(f"flask not available: {exc}")

    engine_settings = EngineSettings(
        admin_api_token=TOKEN,
        sqlite_path=store.db_path,
        short_cadence_seconds=3600,
        long_cadence_seconds=3600,
    )
    monkeypatch.setattr(flask_worker, "settings", engine_settings)
    monkeypatch.setattr(flask_worker, "services", None)
    monkeypatch.setattr(
        flask_worker,
        "worker_state",
        {
            "running": False,
            "shutdown_requested": False,
            "start_time": None,
            "ticks": {},
            "last_error": None,
        },
    )
    monkeypatch.setattr(flask_worker, "worker_threads", {})
    monkeypatch.setattr(flask_worker, "shutdown_event", threading.Event())
    return flask_worker


@pytest.fixture
def engine(worker, monkeypatch, store):
    services = build_services(worker.settings, store=store, transport=FakeTransport(), listen=False)
    monkeypatch.setattr(worker, "services", services)
    yield services
    services.close()


@pytest.fixture
def client(worker):
    worker.app.config["TESTING"] = True
    return worker.app.test_client()


def test_health_reports_stopped(client):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.get_json()["status"] == "stopped"


def test_status_reports_store_and_notifications(client, engine):
    body = client.get("/status").get_json()

    assert body["store"] == "sqlite"
    assert body["notifications_enabled"] is True


class TestAdminAuth:
    @pytest.mark.parametrize(
        "headers", [{}, {"Authorization": "Bearer wrong"}, {"Authorization": TOKEN}]
    )
    def test_rejected_without_valid_token(self, worker, client, headers):
        response = client.post("/admin/recompute", json={"contractorIds": ["c1"]}, headers=headers)

        assert response.status_code == 403
        # Rejection happens before any component is built
        assert worker.services is None

    def test_stats_rejected_without_token(self, client):
        assert client.get("/admin/escalation-stats").status_code == 403


def test_recompute_by_ids(client, engine, store):
    seed_contractor(store, "c1")
    seed_evaluations(store, "c1", 3, 4.0)

    response = client.post("/admin/recompute", json={"contractorIds": ["c1"]}, headers=AUTH)

    body = response.get_json()
    assert response.status_code == 200
    assert body["total"] == 1
    assert body["successful"] == 1
    assert body["details"][0]["contractorId"] == "c1"


def test_recompute_by_filter(client, engine, store):
    seed_contractor(store, "c1", tier="gold")
    seed_contractor(store, "c2", tier="silver")

    response = client.post("/admin/recompute", json={"filter": {"tier": "gold"}}, headers=AUTH)

    assert [d["contractorId"] for d in response.get_json()["details"]] == ["c1"]


@pytest.mark.parametrize("body", [{}, {"contractorIds": "c1"}])
def test_recompute_bad_body(client, engine, body):
    assert client.post("/admin/recompute", json=body, headers=AUTH).status_code == 400


class TestSurchargeEndpoint:
    def test_increase(self, client, engine, store, now):
        seed_short_task(store, "t1", now)

        response = client.post(
            "/admin/tasks/t1/surcharge", json={"step": 5, "reason": "slow"}, headers=AUTH
        )

        assert response.status_code == 200
        assert response.get_json()["newPercent"] == 20
        history = store.get(TASKS_COLLECTION, "t1").data["manualIncreaseHistory"]
        assert history[0]["adminId"] == "admin-7"

    def test_missing_task(self, client, engine):
        response = client.post("/admin/tasks/ghost/surcharge", json={"step": 5}, headers=AUTH)

        assert response.status_code == 404

    def test_capped_task(self, client, engine, store, now):
        seed_short_task(store, "t1", now, currentUrgentFeePercent=50)

        response = client.post("/admin/tasks/t1/surcharge", json={"step": 5}, headers=AUTH)

        assert response.status_code == 409

    @pytest.mark.parametrize("step", [0, "abc"])
    def test_bad_step(self, client, engine, store, now, step):
        seed_short_task(store, "t1", now)

        response = client.post("/admin/tasks/t1/surcharge", json={"step": step}, headers=AUTH)

        assert response.status_code == 400


def test_escalation_stats(client, engine):
    response = client.get("/admin/escalation-stats?days=3", headers=AUTH)

    assert response.status_code == 200
    assert response.get_json()["ticks"] == 0
    assert client.get("/admin/escalation-stats?days=x", headers=AUTH).status_code == 400


def test_start_and_stop_loops(worker, client, engine):
    assert client.post("/stop").status_code == 400

    assert client.post("/start").status_code == 200
    assert sorted(worker.worker_threads) == ["long", "short"]
    assert client.post("/start").status_code == 400

    response = client.post("/stop")

    assert response.status_code == 200
    assert worker.worker_state["running"] is False
    assert all(not t.is_alive() for t in worker.worker_threads.values())


def test_signal_handler_requests_shutdown(worker):
    worker.signal_handler(15, None)

    assert worker.worker_state["shutdown_requested"] is True
    assert worker.shutdown_event.is_set()
