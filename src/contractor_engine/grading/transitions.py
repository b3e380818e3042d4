"""Tier recomputation for one contractor or a filtered batch.

A recomputation reads the contractor, aggregates and classifies, and then
either refreshes cached statistics (same tier) or commits the tier change,
its history entry and an audit log entry in one conditional batch. The
notification goes out only after that batch commits and its failure never
touches the committed state.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional

from contractor_engine.constants import (
    CONTRACTORS_COLLECTION,
    DEFAULT_BATCH_WORKERS,
    GRADE_CHANGE_LOGS_COLLECTION,
)
from contractor_engine.exceptions import ContractorNotFoundError, WriteConflictError
from contractor_engine.grading.aggregator import MetricsAggregator, MetricsBundle
from contractor_engine.grading.classifier import Classification, GradeClassifier
from contractor_engine.grading.recommendations import improvement_recommendations
from contractor_engine.logging_config import get_structured_logger
from contractor_engine.models import TierHistoryEntry, utcnow
from contractor_engine.notifications import templates
from contractor_engine.notifications.dispatcher import NotificationDispatcher, Recipient
from contractor_engine.storage.record_store import QueryFilter, RecordStore, StoredRecord, WriteBatch

logger = logging.getLogger(__name__)

UNCHANGED = "unchanged"
STATS_UPDATED = "stats_updated"
UPGRADED = "upgraded"
DOWNGRADED = "downgraded"
CONFLICT = "conflict"


@dataclass
class RecomputeResult:
    contractor_id: str
    status: str
    previous_tier: Optional[str]
    new_tier: Optional[str]
    score: float = 0.0
    notification_status: Optional[str] = None

    @property
    def tier_changed(self) -> bool:
        return self.status in (UPGRADED, DOWNGRADED)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "contractorId": self.contractor_id,
            "status": self.status,
            "previousTier": self.previous_tier,
            "newTier": self.new_tier,
            "score": round(self.score, 4),
            "notificationStatus": self.notification_status,
        }


@dataclass
class BatchResult:
    """Per-item results and errors from a batch recomputation."""

    results: List[RecomputeResult] = field(default_factory=list)
    errors: List[Dict[str, str]] = field(default_factory=list)

    @property
    def grade_changes(self) -> int:
        return sum(1 for r in self.results if r.tier_changed)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": len(self.results) + len(self.errors),
            "successful": len(self.results),
            "failed": len(self.errors),
            "gradeChanges": self.grade_changes,
            "details": [r.to_dict() for r in self.results],
            "errors": self.errors,
        }


@dataclass
class ContractorFilter:
    """Admin batch selection; unset fields do not filter."""

    tier: Optional[str] = None
    min_score: Optional[float] = None
    min_evaluations: Optional[int] = None

    def to_query(self) -> List[QueryFilter]:
        filters: List[QueryFilter] = []
        if self.tier is not None:
            filters.append(("tier", "==", self.tier))
        if self.min_score is not None:
            filters.append(("averageScore", ">=", float(self.min_score)))
        if self.min_evaluations is not None:
            filters.append(("totalEvaluations", ">=", int(self.min_evaluations)))
        return filters


class GradeTransitionManager:
    """Recompute contractor tiers and apply the resulting transitions."""

    def __init__(
        self,
        store: RecordStore,
        classifier: GradeClassifier,
        dispatcher: Optional[NotificationDispatcher] = None,
        aggregator: Optional[MetricsAggregator] = None,
        clock: Callable[[], datetime] = utcnow,
        max_workers: int = DEFAULT_BATCH_WORKERS,
    ):
        self.store = store
        self.classifier = classifier
        self.dispatcher = dispatcher
        self.aggregator = aggregator or MetricsAggregator(store)
        self.clock = clock
        self.max_workers = max_workers
        self.slogger = get_structured_logger(__name__)

    def recompute(self, contractor_id: str, reason: str = "evaluation") -> RecomputeResult:
        """
        Recompute one contractor's tier.

        Args:
            contractor_id: Contractor record id
            reason: Trigger recorded on the audit entry (evaluation, admin, ...)

        Returns:
            RecomputeResult; status ``conflict`` means a concurrent writer won
            and this decision was dropped.

        Raises:
            ContractorNotFoundError: If the contractor does not exist
        """
        record = self.store.get(CONTRACTORS_COLLECTION, contractor_id)
        if record is None:
            raise ContractorNotFoundError(contractor_id)

        stats, bundle = self.aggregator.collect(contractor_id)
        classification = self.classifier.classify(bundle)
        current_tier = record.data.get("tier")

        cached = {
            "averageScore": stats.average_rating,
            "totalEvaluations": stats.evaluation_count,
            "stats": stats.to_dict(),
            "tierPolicy": self.classifier.policy_name,
        }

        if classification.tier == current_tier:
            return self._refresh_stats(record, cached, classification)

        return self._apply_transition(record, cached, bundle, classification, reason)

    def _refresh_stats(
        self, record: StoredRecord, cached: Dict[str, Any], classification: Classification
    ) -> RecomputeResult:
        tier = record.data.get("tier")
        if all(record.data.get(key) == value for key, value in cached.items()):
            return RecomputeResult(record.id, UNCHANGED, tier, tier, classification.score)

        try:
            self.store.update(
                CONTRACTORS_COLLECTION, record.id, cached, expected_version=record.version
            )
        except WriteConflictError as exc:
            logger.info("Dropping stale stats refresh for %s: %s", record.id, exc)
            return RecomputeResult(record.id, CONFLICT, tier, tier, classification.score)

        return RecomputeResult(record.id, STATS_UPDATED, tier, tier, classification.score)

    def _apply_transition(
        self,
        record: StoredRecord,
        cached: Dict[str, Any],
        bundle: MetricsBundle,
        classification: Classification,
        reason: str,
    ) -> RecomputeResult:
        now = self.clock()
        from_tier = record.data.get("tier")
        to_tier = classification.tier
        upgrade = self.classifier.rank(to_tier) > self.classifier.rank(from_tier)
        recommendations = [] if upgrade else improvement_recommendations(bundle)

        history_entry = TierHistoryEntry(
            from_tier=from_tier, to_tier=to_tier, timestamp=now, score=classification.score
        ).model_dump(by_alias=True)

        batch = WriteBatch()
        batch.update(
            CONTRACTORS_COLLECTION,
            record.id,
            {**cached, "tier": to_tier, "lastGradeUpdate": now},
            expected_version=record.version,
            array_union={"tierHistory": [history_entry]},
        )
        batch.create(
            GRADE_CHANGE_LOGS_COLLECTION,
            {
                "contractorId": record.id,
                "contractorName": record.data.get("name", ""),
                "fromTier": from_tier,
                "toTier": to_tier,
                "changeType": "upgrade" if upgrade else "downgrade",
                "score": classification.score,
                "policy": classification.policy,
                "metrics": bundle.to_dict(),
                "classification": classification.to_dict(),
                "recommendations": recommendations,
                "reason": reason,
                "timestamp": now,
            },
        )

        try:
            self.store.commit(batch)
        except WriteConflictError as exc:
            logger.info("Dropping stale tier decision for %s: %s", record.id, exc)
            return RecomputeResult(record.id, CONFLICT, from_tier, from_tier, classification.score)

        self.slogger.grade_transition(
            record.id,
            record.data.get("name", ""),
            from_tier,
            to_tier,
            {"score": classification.score, "reason": reason, "policy": classification.policy},
        )

        status = UPGRADED if upgrade else DOWNGRADED
        notification_status = None
        # No notice for a first grading into the lowest tier
        if from_tier or to_tier != self.classifier.lowest_tier:
            notification_status = self._notify(
                record.id, from_tier, to_tier, upgrade, recommendations
            )
        return RecomputeResult(
            record.id, status, from_tier, to_tier, classification.score, notification_status
        )

    def _notify(
        self,
        contractor_id: str,
        from_tier: Optional[str],
        to_tier: str,
        upgrade: bool,
        recommendations: List[str],
    ) -> Optional[str]:
        if self.dispatcher is None:
            return None
        if upgrade:
            message = templates.tier_upgrade(contractor_id, from_tier, to_tier)
        else:
            message = templates.tier_downgrade(contractor_id, from_tier, to_tier, recommendations)
        try:
            report = self.dispatcher.dispatch(
                message, [Recipient(contractor_id, CONTRACTORS_COLLECTION)]
            )
        except Exception as exc:
            # The tier change is committed; delivery problems stay here
            logger.error(
                "Tier notification for %s failed: %s", contractor_id, exc, exc_info=True
            )
            return "error"
        return report.status

    # ------------------------------------------------------------------ #
    # Batch mode
    # ------------------------------------------------------------------ #

    def recompute_many(self, contractor_ids: Iterable[str], reason: str = "admin") -> BatchResult:
        """Recompute each contractor independently, collecting per-item errors."""
        ids = list(dict.fromkeys(contractor_ids))
        batch_result = BatchResult()
        if not ids:
            return batch_result

        self.slogger.batch_activity("recompute", "started", {"count": len(ids)})
        workers = max(1, min(self.max_workers, len(ids)))
        with ThreadPoolExecutor(max_workers=workers) as executor:
            futures = [(cid, executor.submit(self.recompute, cid, reason)) for cid in ids]
            for contractor_id, future in futures:
                try:
                    batch_result.results.append(future.result())
                except Exception as exc:
                    logger.error(
                        "Recompute failed for %s: %s", contractor_id, exc, exc_info=True
                    )
                    batch_result.errors.append({"contractorId": contractor_id, "error": str(exc)})

        self.slogger.batch_activity(
            "recompute",
            "completed",
            {
                "successful": len(batch_result.results),
                "failed": len(batch_result.errors),
                "grade_changes": batch_result.grade_changes,
            },
        )
        return batch_result

    def recompute_by_filter(
        self, contractor_filter: ContractorFilter, reason: str = "admin"
    ) -> BatchResult:
        records = self.store.query(CONTRACTORS_COLLECTION, contractor_filter.to_query())
        return self.recompute_many([r.id for r in records], reason=reason)

    def handle_evaluation_created(self, record: StoredRecord) -> Optional[RecomputeResult]:
        """Event hook: recompute the contractor a new evaluation targets."""
        contractor_id = record.data.get("contractorId")
        if not contractor_id:
            logger.warning("Evaluation %s has no contractorId; ignoring", record.id)
            return None
        return self.recompute(contractor_id, reason="evaluation")
