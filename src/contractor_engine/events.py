"""In-process event bus and the evaluation intake path.

New evaluations are persisted first and then announced on the bus as
``evaluation.created``; the grade transition manager subscribes to that
event. Evaluations written by other services reach the same event through
``bridge_store_changes``.

Env:
- CONTRACTOR_ENGINE_EVENTS_URL (optional HTTP sink for forwarded events)
- CONTRACTOR_ENGINE_EVENTS_TOKEN (optional bearer token for the sink)
"""

from __future__ import annotations

import json
import logging
import os
import threading
from typing import Any, Callable, Dict, List, Optional

import requests

from contractor_engine.constants import EVALUATIONS_COLLECTION
from contractor_engine.models import EvaluationRecord
from contractor_engine.storage.record_store import RecordStore, StoredRecord, Unsubscribe

logger = logging.getLogger(__name__)

EVALUATION_CREATED = "evaluation.created"

Handler = Callable[[Any], Any]


class EventBus:
    """Synchronous publish/subscribe keyed by event name."""

    def __init__(self):
        self._handlers: Dict[str, List[Handler]] = {}
        self._lock = threading.Lock()

    def subscribe(self, event: str, handler: Handler) -> Unsubscribe:
        with self._lock:
            self._handlers.setdefault(event, []).append(handler)

        def unsubscribe() -> None:
            with self._lock:
                handlers = self._handlers.get(event, [])
                if handler in handlers:
                    handlers.remove(handler)

        return unsubscribe

    def publish(self, event: str, payload: Any) -> int:
        """
        Call every handler for ``event``; returns how many succeeded.

        A failing handler is logged and does not stop the others.
        """
        with self._lock:
            handlers = list(self._handlers.get(event, []))
        delivered = 0
        for handler in handlers:
            try:
                handler(payload)
                delivered += 1
            except Exception as exc:
                logger.error("Handler for %s failed: %s", event, exc, exc_info=True)
        return delivered


class EvaluationIntake:
    """Write path for new evaluations."""

    def __init__(self, store: RecordStore, bus: EventBus, publish: bool = True):
        self.store = store
        self.bus = bus
        # False when a store listener already bridges creates onto the bus
        self.publish = publish

    def submit(self, evaluation: EvaluationRecord) -> str:
        """Persist an immutable evaluation, then announce it."""
        record_id = self.store.create(
            EVALUATIONS_COLLECTION, evaluation.to_record(), record_id=evaluation.id
        )
        if self.publish:
            stored = StoredRecord(id=record_id, data=evaluation.to_record())
            self.bus.publish(EVALUATION_CREATED, stored)
        return record_id


def bridge_store_changes(store: RecordStore, bus: EventBus) -> Unsubscribe:
    """Publish evaluation.created for evaluations created by any writer."""
    return store.subscribe(
        EVALUATIONS_COLLECTION, lambda record: bus.publish(EVALUATION_CREATED, record)
    )


class HttpEventForwarder:
    """Best-effort POST of bus events to an external endpoint."""

    def __init__(self, url: Optional[str] = None, token: Optional[str] = None, timeout: float = 5):
        self.url = url or os.getenv("CONTRACTOR_ENGINE_EVENTS_URL")
        self.token = token or os.getenv("CONTRACTOR_ENGINE_EVENTS_TOKEN")
        self.timeout = timeout

    @property
    def enabled(self) -> bool:
        return bool(self.url)

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def attach(self, bus: EventBus, event: str) -> Optional[Unsubscribe]:
        if not self.enabled:
            return None
        return bus.subscribe(event, lambda payload: self.send_event(event, payload))

    def send_event(self, event: str, payload: Any) -> bool:
        if not self.enabled:
            return False
        if isinstance(payload, StoredRecord):
            payload = {"id": payload.id, **payload.data}
        body = {"event": event, "data": payload}
        try:
            resp = requests.post(
                self.url,
                data=json.dumps(body, default=str),
                headers=self._headers(),
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            logger.debug("Event forward error for %s: %s", event, exc)
            return False
        if resp.status_code >= 300:
            logger.debug("Event forward failed for %s: %s %s", event, resp.status_code, resp.text)
            return False
        return True
