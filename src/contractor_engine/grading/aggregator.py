"""Reduce evaluation and completion records into a normalized metrics bundle.

Statistics are folded with ``combine``, a pure reducer, so the incrementally
maintained running totals and a from-scratch recomputation over the full
evaluation log are the same computation.
"""

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from contractor_engine.constants import (
    COMPLETED_JOBS_RANGE,
    CONTRACTORS_COLLECTION,
    EVALUATION_CATEGORY_WEIGHTS,
    EVALUATIONS_COLLECTION,
    PERCENT_RANGE,
    QUALITY_CATEGORY,
    RATING_RANGE,
    RESPONSE_TIME_RANGE_MINUTES,
    TASKS_COLLECTION,
)
from contractor_engine.models import EvaluationRecord, TaskStatus
from contractor_engine.storage.record_store import RecordStore

logger = logging.getLogger(__name__)


def clamp(value: Any, low: float, high: float, default: Optional[float] = None) -> Optional[float]:
    """Coerce to float inside [low, high]; corrupt input returns ``default``."""
    if value is None or isinstance(value, bool):
        return default
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    if math.isnan(number):
        return default
    return max(low, min(high, number))


def _record_rating(record: EvaluationRecord, categories: Dict[str, float]) -> Optional[float]:
    """Overall rating for one evaluation, preferring the explicit overall score."""
    overall = clamp(record.overall_score, *RATING_RANGE)
    if overall is not None:
        return overall
    if not categories:
        return None

    weighted = {k: v for k, v in categories.items() if k in EVALUATION_CATEGORY_WEIGHTS}
    if not weighted:
        return sum(categories.values()) / len(categories)
    total_weight = sum(EVALUATION_CATEGORY_WEIGHTS[k] for k in weighted)
    return sum(v * EVALUATION_CATEGORY_WEIGHTS[k] for k, v in weighted.items()) / total_weight


@dataclass(frozen=True)
class RunningStats:
    """Running totals over a contractor's evaluation log."""

    evaluation_count: int = 0
    rated_count: int = 0
    rating_sum: float = 0.0
    category_sums: Dict[str, float] = field(default_factory=dict)
    category_counts: Dict[str, int] = field(default_factory=dict)
    recommend_yes: int = 0
    recommend_total: int = 0

    @property
    def average_rating(self) -> float:
        if not self.rated_count:
            return 0.0
        return self.rating_sum / self.rated_count

    @property
    def category_averages(self) -> Dict[str, float]:
        return {
            name: self.category_sums[name] / count
            for name, count in self.category_counts.items()
            if count
        }

    @classmethod
    def from_records(cls, records: Iterable[EvaluationRecord]) -> "RunningStats":
        stats = cls()
        for record in records:
            stats = combine(stats, record)
        return stats

    def to_dict(self) -> Dict[str, Any]:
        return {
            "evaluationCount": self.evaluation_count,
            "ratedCount": self.rated_count,
            "ratingSum": self.rating_sum,
            "categorySums": dict(self.category_sums),
            "categoryCounts": dict(self.category_counts),
            "recommendYes": self.recommend_yes,
            "recommendTotal": self.recommend_total,
        }


def combine(prior: RunningStats, record: EvaluationRecord) -> RunningStats:
    """Fold one evaluation into running totals without mutating ``prior``."""
    categories: Dict[str, float] = {}
    for name, raw in (record.ratings or {}).items():
        value = clamp(raw, *RATING_RANGE)
        if value is None:
            logger.debug("Dropping corrupt %s rating %r on evaluation %s", name, raw, record.id)
            continue
        categories[name] = value

    category_sums = dict(prior.category_sums)
    category_counts = dict(prior.category_counts)
    for name, value in categories.items():
        category_sums[name] = category_sums.get(name, 0.0) + value
        category_counts[name] = category_counts.get(name, 0) + 1

    rating = _record_rating(record, categories)

    recommend_yes = prior.recommend_yes
    recommend_total = prior.recommend_total
    if record.would_recommend is not None:
        recommend_total += 1
        if record.would_recommend:
            recommend_yes += 1

    return RunningStats(
        evaluation_count=prior.evaluation_count + 1,
        rated_count=prior.rated_count + (1 if rating is not None else 0),
        rating_sum=prior.rating_sum + (rating if rating is not None else 0.0),
        category_sums=category_sums,
        category_counts=category_counts,
        recommend_yes=recommend_yes,
        recommend_total=recommend_total,
    )


@dataclass
class MetricsBundle:
    """Normalized performance metrics for one contractor."""

    completed_jobs_count: int = 0
    average_rating: float = 0.0
    category_averages: Dict[str, float] = field(default_factory=dict)
    response_time_minutes: float = 0.0
    on_time_rate_percent: float = 0.0
    recommendation_rate_percent: float = 0.0
    evaluation_count: int = 0

    @property
    def quality_score(self) -> float:
        return self.category_averages.get(QUALITY_CATEGORY, 0.0)

    @classmethod
    def zero(cls) -> "MetricsBundle":
        return cls()

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "completedJobsCount": self.completed_jobs_count,
            "averageRating": round(self.average_rating, 4),
            "categoryAverages": {k: round(v, 4) for k, v in self.category_averages.items()},
            "responseTimeMinutes": round(self.response_time_minutes, 2),
            "onTimeRatePercent": round(self.on_time_rate_percent, 2),
            "recommendationRatePercent": round(self.recommendation_rate_percent, 2),
            "evaluationCount": self.evaluation_count,
        }


class MetricsAggregator:
    """Read a contractor's records and reduce them to a MetricsBundle."""

    def __init__(self, store: RecordStore):
        self.store = store

    @staticmethod
    def aggregate(stats: RunningStats, completions: Iterable[Mapping[str, Any]]) -> MetricsBundle:
        """
        Build the bundle from folded evaluation stats and completed-task records.

        A contractor with no evaluations gets the all-zero bundle. Response
        time defaults to the slowest allowed value when no completion carries
        timing data, so unknown speed never helps a tier decision.
        """
        if stats.evaluation_count == 0:
            return MetricsBundle.zero()

        completions = list(completions)
        jobs = clamp(len(completions), *COMPLETED_JOBS_RANGE, default=0)

        on_time_flags = [c.get("onTime") for c in completions if isinstance(c.get("onTime"), bool)]
        on_time_rate = (
            100.0 * sum(1 for flag in on_time_flags if flag) / len(on_time_flags)
            if on_time_flags
            else 0.0
        )

        response_values = [
            clamp(c.get("responseMinutes"), *RESPONSE_TIME_RANGE_MINUTES)
            for c in completions
        ]
        response_values = [v for v in response_values if v is not None]
        response_time = (
            sum(response_values) / len(response_values)
            if response_values
            else RESPONSE_TIME_RANGE_MINUTES[1]
        )

        average_rating = clamp(stats.average_rating, *RATING_RANGE, default=0.0)
        if stats.recommend_total:
            recommendation_rate = 100.0 * stats.recommend_yes / stats.recommend_total
        else:
            # No explicit recommendations; satisfaction follows the rating
            recommendation_rate = average_rating / RATING_RANGE[1] * 100.0

        return MetricsBundle(
            completed_jobs_count=int(jobs),
            average_rating=average_rating,
            category_averages={
                k: clamp(v, *RATING_RANGE, default=0.0) for k, v in stats.category_averages.items()
            },
            response_time_minutes=response_time,
            on_time_rate_percent=clamp(on_time_rate, *PERCENT_RANGE, default=0.0),
            recommendation_rate_percent=clamp(recommendation_rate, *PERCENT_RANGE, default=0.0),
            evaluation_count=stats.evaluation_count,
        )

    def load_evaluations(self, contractor_id: str) -> List[EvaluationRecord]:
        records = self.store.query(
            EVALUATIONS_COLLECTION, [("contractorId", "==", contractor_id)]
        )
        evaluations = []
        for record in records:
            try:
                evaluations.append(EvaluationRecord.model_validate({"id": record.id, **record.data}))
            except ValueError as exc:
                logger.warning("Skipping malformed evaluation %s: %s", record.id, exc)
        evaluations.sort(key=lambda e: e.created_at)
        return evaluations

    def load_completions(self, contractor_id: str) -> List[Dict[str, Any]]:
        records = self.store.query(
            TASKS_COLLECTION,
            [
                ("assignedContractorId", "==", contractor_id),
                ("status", "==", TaskStatus.COMPLETED.value),
            ],
        )
        return [record.data for record in records]

    def collect(self, contractor_id: str) -> Tuple[RunningStats, MetricsBundle]:
        """Read both record kinds for one contractor and reduce them."""
        stats = RunningStats.from_records(self.load_evaluations(contractor_id))
        bundle = self.aggregate(stats, self.load_completions(contractor_id))
        logger.debug(
            "Aggregated %s evaluations for %s/%s",
            stats.evaluation_count,
            CONTRACTORS_COLLECTION,
            contractor_id,
        )
        return stats, bundle
