#!/usr/bin/env python3
"""
Flask-based escalation worker with health monitoring and graceful shutdown.

This worker provides:
- One background thread per enabled escalation cadence
- Event-driven grade recomputation for new evaluations
- HTTP health and status endpoints for monitoring
- Admin endpoints for batch recompute, manual surcharge and tick stats
"""
import os
import signal
import sys
import threading
import time
from datetime import timedelta
from typing import Any, Dict, Optional

from dotenv import load_dotenv
from flask import Flask, jsonify, request

from contractor_engine.admin import AdminService
from contractor_engine.exceptions import (
    AuthorizationError,
    InvalidStateTransition,
    RecordNotFoundError,
    WriteConflictError,
)
from contractor_engine.grading.transitions import ContractorFilter
from contractor_engine.logging_config import get_structured_logger, setup_logging
from contractor_engine.models import Actor, utcnow
from contractor_engine.services import EngineServices, build_services
from contractor_engine.settings import EngineSettings, get_engine_settings

# Load environment variables
load_dotenv()

slogger = get_structured_logger(__name__)

# Global state
worker_state: Dict[str, Any] = {
    "running": False,
    "shutdown_requested": False,
    "start_time": None,
    "ticks": {},
    "last_error": None,
}

# Global components (initialized in main or on /start)
services: Optional[EngineServices] = None
settings: Optional[EngineSettings] = None
worker_threads: Dict[str, threading.Thread] = {}
shutdown_event = threading.Event()

# Flask app
app = Flask(__name__)


def initialize_components(engine_settings: EngineSettings) -> EngineServices:
    """Initialize all worker components."""
    if engine_settings.store_backend == "sqlite":
        slogger.worker_status(
            "store_selected", {"backend": "sqlite", "path": engine_settings.sqlite_path}
        )
    else:
        slogger.worker_status(
            "store_selected",
            {"backend": "firestore", "database": engine_settings.firestore_database},
        )
    return build_services(engine_settings)


def cadence_interval(cadence: str) -> int:
    if settings is None:
        return 60
    if cadence == "short":
        return settings.short_cadence_seconds
    return settings.long_cadence_seconds


def cadence_loop(cadence: str) -> None:
    """Run one cadence's tick, then wait out its period until shutdown."""
    slogger.worker_status("cadence_started", {"cadence": cadence})
    tick_state = worker_state["ticks"].setdefault(
        cadence, {"iterations": 0, "last_tick": None, "last_report": None}
    )

    while not worker_state["shutdown_requested"]:
        scheduler = services.schedulers.get(cadence) if services else None
        if scheduler is None:
            slogger.worker_status("cadence_unavailable", {"cadence": cadence})
            break
        try:
            tick_state["iterations"] += 1
            tick_state["last_tick"] = time.time()
            report = scheduler.tick()
            tick_state["last_report"] = report.to_dict()
        except Exception as e:
            slogger.logger.error(f"Error in {cadence} escalation loop: {e}", exc_info=True)
            worker_state["last_error"] = str(e)
            slogger.worker_status("error_recovery", {"cadence": cadence})

        if shutdown_event.wait(cadence_interval(cadence)):
            break

    slogger.worker_status("cadence_stopped", {"cadence": cadence})


def start_loops() -> None:
    global worker_threads

    worker_state["shutdown_requested"] = False
    worker_state["start_time"] = time.time()
    shutdown_event.clear()
    worker_threads = {}
    for cadence in services.schedulers:
        thread = threading.Thread(target=cadence_loop, args=(cadence,), daemon=True)
        worker_threads[cadence] = thread
        thread.start()
    worker_state["running"] = True
    slogger.worker_status("started", {"cadences": sorted(worker_threads)})


def stop_loops(timeout: float = 30) -> bool:
    """Request shutdown and wait for cadence threads; False if any is still alive."""
    worker_state["shutdown_requested"] = True
    shutdown_event.set()
    for thread in worker_threads.values():
        if thread.is_alive():
            thread.join(timeout=timeout)
    stopped = not any(t.is_alive() for t in worker_threads.values())
    if stopped:
        worker_state["running"] = False
        slogger.worker_status("stopped")
    return stopped


def _ensure_services() -> EngineServices:
    global services, settings

    if services is None:
        settings = settings or get_engine_settings()
        services = initialize_components(settings)
    return services


def current_actor() -> Actor:
    """Map the request's bearer token onto an Actor; unknown callers get no roles."""
    header = request.headers.get("Authorization", "")
    token = header[len("Bearer "):] if header.startswith("Bearer ") else None
    expected = (settings or get_engine_settings()).admin_api_token
    if expected and token == expected:
        return Actor(user_id=request.headers.get("X-Admin-Id", "api-admin"), roles=["admin"])
    return Actor(user_id=request.headers.get("X-Admin-Id"))


# Flask routes
@app.errorhandler(AuthorizationError)
def handle_authorization_error(e):
    return jsonify({"error": str(e)}), 403


@app.route("/health")
def health():
    """Health check endpoint."""
    return jsonify(
        {
            "status": "healthy" if worker_state["running"] else "stopped",
            "running": worker_state["running"],
            "cadences": sorted(worker_threads),
            "last_error": worker_state["last_error"],
        }
    )


@app.route("/status")
def status():
    """Detailed status endpoint."""
    return jsonify(
        {
            "worker": worker_state,
            "store": settings.store_backend if settings else None,
            "notifications_enabled": bool(services and services.dispatcher),
            "uptime": time.time() - (worker_state.get("start_time") or time.time()),
        }
    )


@app.route("/start", methods=["POST"])
def start_worker():
    """Start the cadence loops."""
    if worker_state["running"]:
        return jsonify({"message": "Worker is already running"}), 400

    _ensure_services()
    start_loops()
    return jsonify({"message": "Worker started"})


@app.route("/stop", methods=["POST"])
def stop_worker():
    """Stop the cadence loops gracefully."""
    if not worker_state["running"]:
        return jsonify({"message": "Worker is not running"}), 400

    if not stop_loops():
        return jsonify({"message": "Worker stop requested but still running"}), 202
    return jsonify({"message": "Worker stopped"})


@app.route("/admin/recompute", methods=["POST"])
def admin_recompute():
    """
    Recompute contractor tiers.

    Body: {"contractorIds": [...]} or
    {"filter": {"tier": ..., "minScore": ..., "minEvaluations": ...}}
    """
    actor = current_actor()
    AdminService.authorize(actor, "recompute contractor grades")
    engine = _ensure_services()
    data = request.get_json(silent=True) or {}

    if "contractorIds" in data:
        ids = data["contractorIds"]
        if not isinstance(ids, list):
            return jsonify({"error": "contractorIds must be a list"}), 400
        result = engine.admin.recompute_contractors(actor, ids)
    elif "filter" in data:
        raw = data["filter"] or {}
        contractor_filter = ContractorFilter(
            tier=raw.get("tier"),
            min_score=raw.get("minScore"),
            min_evaluations=raw.get("minEvaluations"),
        )
        result = engine.admin.recompute_by_filter(actor, contractor_filter)
    else:
        return jsonify({"error": "Provide contractorIds or filter"}), 400

    return jsonify(result.to_dict())


@app.route("/admin/tasks/<task_id>/surcharge", methods=["POST"])
def admin_surcharge(task_id: str):
    """Manually raise one open task's urgent fee. Body: {"step": 5, "reason": "..."}."""
    actor = current_actor()
    AdminService.authorize(actor, "increase urgent fees")
    engine = _ensure_services()
    data = request.get_json(silent=True) or {}

    try:
        step = float(data.get("step", 0))
    except (TypeError, ValueError):
        return jsonify({"error": "step must be a number"}), 400

    try:
        result = engine.admin.manual_increase(actor, task_id, step, data.get("reason", ""))
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    except RecordNotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except (InvalidStateTransition, WriteConflictError) as e:
        return jsonify({"error": str(e)}), 409

    return jsonify(result)


@app.route("/admin/escalation-stats")
def admin_escalation_stats():
    """Summed tick stats over the last ?days=N (default 7)."""
    actor = current_actor()
    AdminService.authorize(actor, "read escalation stats")
    engine = _ensure_services()
    try:
        days = max(1, int(request.args.get("days", 7)))
    except ValueError:
        return jsonify({"error": "days must be an integer"}), 400
    return jsonify(engine.admin.escalation_summary(actor, utcnow() - timedelta(days=days)))


def signal_handler(signum, frame):
    """Handle shutdown signals gracefully."""
    slogger.worker_status("shutdown_requested", {"signal": signum})
    worker_state["shutdown_requested"] = True
    shutdown_event.set()


def main():
    """Main entry point."""
    global services, settings

    log_file = os.getenv("WORKER_LOG_FILE")
    try:
        setup_logging(log_file=log_file)
    except OSError as e:
        print(f"Failed to set up file logging at '{log_file}': {e}", file=sys.stderr)
        print("Falling back to default log location.", file=sys.stderr)
        setup_logging()

    # Register signal handlers
    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)

    try:
        settings = get_engine_settings()
        services = initialize_components(settings)

        # Start cadence loops automatically
        start_loops()

        slogger.worker_status(
            "flask_server_starting", {"host": settings.worker_host, "port": settings.worker_port}
        )
        app.run(host=settings.worker_host, port=settings.worker_port, debug=False, use_reloader=False)

    except Exception as e:
        slogger.logger.error(f"Fatal error in Flask worker: {e}", exc_info=True)
        return 1
    finally:
        if services is not None:
            services.close()

    return 0


if __name__ == "__main__":
    sys.exit(main())
