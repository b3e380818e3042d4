"""Wire the engine's components from settings.

Both the long-running worker and the cron entry point build the same
object graph here so they share one notion of store, policy and dispatcher.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Optional

from contractor_engine.admin import AdminService
from contractor_engine.config_loader import ConfigLoader
from contractor_engine.escalation.scheduler import FeeEscalationScheduler
from contractor_engine.events import (
    EVALUATION_CREATED,
    EvaluationIntake,
    EventBus,
    HttpEventForwarder,
    bridge_store_changes,
)
from contractor_engine.grading.classifier import GradeClassifier
from contractor_engine.grading.transitions import GradeTransitionManager
from contractor_engine.notifications.dispatcher import NotificationDispatcher
from contractor_engine.notifications.push import PushTransport
from contractor_engine.settings import EngineSettings
from contractor_engine.storage import build_store
from contractor_engine.storage.record_store import RecordStore

logger = logging.getLogger(__name__)


@dataclass
class EngineServices:
    store: RecordStore
    config_loader: ConfigLoader
    classifier: GradeClassifier
    dispatcher: Optional[NotificationDispatcher]
    transitions: GradeTransitionManager
    schedulers: Dict[str, FeeEscalationScheduler]
    bus: EventBus
    intake: EvaluationIntake
    admin: AdminService
    unsubscribers: list = field(default_factory=list)

    def close(self) -> None:
        for unsubscribe in self.unsubscribers:
            unsubscribe()
        self.unsubscribers.clear()


def build_services(
    settings: EngineSettings,
    store: Optional[RecordStore] = None,
    transport: Optional[PushTransport] = None,
    listen: bool = True,
) -> EngineServices:
    """
    Construct every component.

    Args:
        settings: Runtime settings
        store: Pre-built store (tests); otherwise chosen by settings
        transport: Push transport; Firebase Cloud Messaging when credentials exist
        listen: Subscribe grading to evaluation creates in the store
    """
    firebase_context = None
    if store is None or (transport is None and settings.credentials_path):
        if settings.store_backend == "firestore" or settings.credentials_path:
            from contractor_engine.storage.firestore_client import FirebaseContext

            firebase_context = FirebaseContext.from_credentials(
                settings.credentials_path, settings.firestore_database
            )

    if store is None:
        store = build_store(settings, firebase_context)

    if transport is None and firebase_context is not None:
        from contractor_engine.notifications.push import FirebasePushTransport

        transport = FirebasePushTransport(firebase_context.app)

    config_loader = ConfigLoader(store)
    classifier = GradeClassifier.from_config(config_loader.get_grade_policy())

    dispatcher = None
    if transport is not None:
        dispatcher = NotificationDispatcher(
            store, transport, policy=config_loader.get_notification_policy()
        )
    else:
        logger.warning("No push transport configured; notifications are disabled")

    transitions = GradeTransitionManager(store, classifier, dispatcher)

    escalation_policy = config_loader.get_escalation_policy()
    schedulers = {
        name: FeeEscalationScheduler.from_policy(store, name, escalation_policy, dispatcher)
        for name in settings.enabled_cadences
        if escalation_policy[name].get("enabled", True)
    }

    bus = EventBus()
    services = EngineServices(
        store=store,
        config_loader=config_loader,
        classifier=classifier,
        dispatcher=dispatcher,
        transitions=transitions,
        schedulers=schedulers,
        bus=bus,
        intake=EvaluationIntake(store, bus, publish=not listen),
        admin=AdminService(store, transitions),
    )

    services.unsubscribers.append(
        bus.subscribe(EVALUATION_CREATED, transitions.handle_evaluation_created)
    )
    if listen:
        services.unsubscribers.append(bridge_store_changes(store, bus))

    forwarder = HttpEventForwarder()
    unsubscribe = forwarder.attach(bus, EVALUATION_CREATED)
    if unsubscribe:
        services.unsubscribers.append(unsubscribe)

    return services
