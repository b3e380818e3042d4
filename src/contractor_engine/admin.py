"""Administrator-triggered operations.

Every method checks the caller's role before it touches storage.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, Optional

from contractor_engine.escalation.scheduler import manual_increase, summarize_escalation_stats
from contractor_engine.exceptions import AuthorizationError
from contractor_engine.grading.transitions import BatchResult, ContractorFilter, GradeTransitionManager
from contractor_engine.models import Actor, utcnow
from contractor_engine.storage.record_store import RecordStore

logger = logging.getLogger(__name__)


class AdminService:
    def __init__(self, store: RecordStore, transitions: GradeTransitionManager):
        self.store = store
        self.transitions = transitions

    @staticmethod
    def authorize(actor: Optional[Actor], operation: str) -> None:
        if actor is None or not actor.is_admin:
            actor_id = actor.user_id if actor else None
            logger.warning("Rejected %s for actor %s", operation, actor_id)
            raise AuthorizationError(actor_id, operation)

    def recompute_contractor(self, actor: Optional[Actor], contractor_id: str) -> BatchResult:
        self.authorize(actor, "recompute contractor grades")
        return self.transitions.recompute_many([contractor_id], reason="admin")

    def recompute_contractors(
        self, actor: Optional[Actor], contractor_ids: Iterable[str]
    ) -> BatchResult:
        self.authorize(actor, "recompute contractor grades")
        return self.transitions.recompute_many(contractor_ids, reason="admin")

    def recompute_by_filter(
        self, actor: Optional[Actor], contractor_filter: ContractorFilter
    ) -> BatchResult:
        self.authorize(actor, "recompute contractor grades")
        return self.transitions.recompute_by_filter(contractor_filter, reason="admin_filter")

    def manual_increase(
        self,
        actor: Optional[Actor],
        task_id: str,
        step: float,
        reason: str = "",
    ) -> Dict[str, Any]:
        self.authorize(actor, "increase urgent fees")
        return manual_increase(self.store, task_id, step, reason, actor.user_id)

    def escalation_summary(
        self, actor: Optional[Actor], since: Optional[datetime] = None, days: int = 7
    ) -> Dict[str, Any]:
        self.authorize(actor, "read escalation stats")
        return summarize_escalation_stats(self.store, since or utcnow() - timedelta(days=days))
