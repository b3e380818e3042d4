"""Deterministic metrics -> tier classification.

Two policies share one interface:

- ``ThresholdPolicy`` walks an ordered tier table from highest to lowest and
  returns the first tier whose every criterion the bundle meets. Top-down
  order is the tie-break: a bundle that satisfies a high tier is never
  placed in a lower one.
- ``WeightedScorePolicy`` maps each metric to a 0-100 sub-score, combines
  them with weights summing to 1.0 and maps the composite onto score bands.

Neither policy reads the clock or any state beyond the bundle, and invalid
tables are rejected at construction, so ``classify`` cannot fail.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence

from contractor_engine.constants import (
    JOBS_SATURATION_POINT,
    RATING_RANGE,
    WEIGHT_SUM_TOLERANCE,
)
from contractor_engine.exceptions import ConfigurationError
from contractor_engine.grading.aggregator import MetricsBundle

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TierDefinition:
    """Minimum requirements for one tier (response time is a maximum)."""

    tier: str
    min_jobs: float
    min_rating: float
    min_quality: float
    max_response_minutes: float
    min_on_time_rate: float
    min_satisfaction_rate: float

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "TierDefinition":
        return cls(
            tier=str(data["tier"]),
            min_jobs=float(data["minJobs"]),
            min_rating=float(data["minRating"]),
            min_quality=float(data["minQuality"]),
            max_response_minutes=float(data["maxResponseMinutes"]),
            min_on_time_rate=float(data["minOnTimeRate"]),
            min_satisfaction_rate=float(data["minSatisfactionRate"]),
        )

    def unmet(self, bundle: MetricsBundle) -> List[str]:
        """Names of the criteria the bundle fails; empty when the tier matches."""
        failures = []
        if bundle.completed_jobs_count < self.min_jobs:
            failures.append("completedJobsCount")
        if bundle.average_rating < self.min_rating:
            failures.append("averageRating")
        if bundle.quality_score < self.min_quality:
            failures.append("qualityScore")
        if bundle.response_time_minutes > self.max_response_minutes:
            failures.append("responseTimeMinutes")
        if bundle.on_time_rate_percent < self.min_on_time_rate:
            failures.append("onTimeRatePercent")
        if bundle.recommendation_rate_percent < self.min_satisfaction_rate:
            failures.append("recommendationRatePercent")
        return failures

    def is_at_least_as_strict_as(self, other: "TierDefinition") -> bool:
        return (
            self.min_jobs >= other.min_jobs
            and self.min_rating >= other.min_rating
            and self.min_quality >= other.min_quality
            and self.max_response_minutes <= other.max_response_minutes
            and self.min_on_time_rate >= other.min_on_time_rate
            and self.min_satisfaction_rate >= other.min_satisfaction_rate
        )


@dataclass
class Classification:
    """Result of classifying one bundle."""

    tier: str
    rank: int
    score: float
    policy: str
    unmet_criteria: Dict[str, List[str]] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tier": self.tier,
            "rank": self.rank,
            "score": round(self.score, 4),
            "policy": self.policy,
            "unmetCriteria": self.unmet_criteria,
        }


class ThresholdPolicy:
    """Ordered tier table, highest tier first."""

    name = "threshold"

    def __init__(self, tiers: Sequence[TierDefinition]):
        if not tiers:
            raise ConfigurationError("Threshold policy needs at least one tier")
        names = [t.tier for t in tiers]
        if len(set(names)) != len(names):
            raise ConfigurationError(f"Duplicate tier names in threshold policy: {names}")
        for higher, lower in zip(tiers, tiers[1:]):
            if not higher.is_at_least_as_strict_as(lower):
                raise ConfigurationError(
                    f"Threshold tiers must be ordered highest first: "
                    f"'{higher.tier}' is looser than '{lower.tier}' on some criterion"
                )
        self.tiers = list(tiers)

    @classmethod
    def from_config(cls, tiers: Sequence[Mapping[str, Any]]) -> "ThresholdPolicy":
        try:
            return cls([TierDefinition.from_dict(t) for t in tiers])
        except (KeyError, TypeError, ValueError) as exc:
            raise ConfigurationError(f"Invalid threshold tier table: {exc}") from exc

    @property
    def tier_names(self) -> List[str]:
        return [t.tier for t in self.tiers]

    def evaluate(self, bundle: MetricsBundle) -> Classification:
        unmet: Dict[str, List[str]] = {}
        chosen = self.tiers[-1]
        for definition in self.tiers:
            failures = definition.unmet(bundle)
            if not failures:
                chosen = definition
                break
            unmet[definition.tier] = failures
        return Classification(
            tier=chosen.tier,
            rank=0,
            score=bundle.average_rating,
            policy=self.name,
            unmet_criteria=unmet,
        )


class WeightedScorePolicy:
    """Weighted 0-100 composite mapped onto descending score bands."""

    name = "weighted"

    SUB_SCORES = ("jobs", "rating", "quality", "responseTime", "onTime", "satisfaction")

    def __init__(self, weights: Mapping[str, float], bands: Sequence[Mapping[str, Any]]):
        unknown = [k for k in weights if k not in self.SUB_SCORES]
        if unknown:
            raise ConfigurationError(f"Unknown weight keys: {unknown}")
        total = sum(float(w) for w in weights.values())
        if abs(total - 1.0) > WEIGHT_SUM_TOLERANCE:
            raise ConfigurationError(f"Score weights must sum to 1.0, got {total:.6f}")
        if not bands:
            raise ConfigurationError("Weighted policy needs at least one score band")

        try:
            parsed = [(str(b["tier"]), float(b["minScore"])) for b in bands]
        except (KeyError, TypeError, ValueError) as exc:
            raise ConfigurationError(f"Invalid score bands: {exc}") from exc
        thresholds = [score for _, score in parsed]
        if thresholds != sorted(thresholds, reverse=True) or len(set(thresholds)) != len(thresholds):
            raise ConfigurationError("Score bands must be strictly descending by minScore")

        self.weights = {k: float(v) for k, v in weights.items()}
        self.bands = parsed

    @property
    def tier_names(self) -> List[str]:
        return [tier for tier, _ in self.bands]

    @staticmethod
    def sub_scores(bundle: MetricsBundle) -> Dict[str, float]:
        rating_max = RATING_RANGE[1]
        return {
            "jobs": min(bundle.completed_jobs_count / JOBS_SATURATION_POINT, 1.0) * 100.0,
            "rating": bundle.average_rating / rating_max * 100.0,
            "quality": bundle.quality_score / rating_max * 100.0,
            "responseTime": max(0.0, 100.0 - bundle.response_time_minutes / 2.0),
            "onTime": bundle.on_time_rate_percent,
            "satisfaction": bundle.recommendation_rate_percent,
        }

    def composite(self, bundle: MetricsBundle) -> float:
        scores = self.sub_scores(bundle)
        return sum(scores[key] * weight for key, weight in self.weights.items())

    def evaluate(self, bundle: MetricsBundle) -> Classification:
        score = self.composite(bundle)
        tier = self.bands[-1][0]
        for band_tier, min_score in self.bands:
            if score >= min_score:
                tier = band_tier
                break
        return Classification(tier=tier, rank=0, score=score, policy=self.name)


class GradeClassifier:
    """Single entry point for tier decisions, parameterized by policy."""

    def __init__(self, policy):
        self.policy = policy
        names = policy.tier_names
        # Highest tier gets the largest rank
        self._ranks = {name: len(names) - index for index, name in enumerate(names)}

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> "GradeClassifier":
        """Build from a grade-policy document (see ConfigLoader.get_grade_policy)."""
        kind = config.get("policy", "threshold")
        if kind == "threshold":
            return cls(ThresholdPolicy.from_config(config["tiers"]))
        if kind == "weighted":
            return cls(WeightedScorePolicy(config["weights"], config["bands"]))
        raise ConfigurationError(f"Unknown grade policy: {kind}")

    @property
    def policy_name(self) -> str:
        return self.policy.name

    @property
    def tiers(self) -> List[str]:
        return list(self.policy.tier_names)

    @property
    def lowest_tier(self) -> str:
        return self.policy.tier_names[-1]

    def rank(self, tier: Optional[str]) -> int:
        """Position of ``tier`` (higher is better); 0 for unknown or missing."""
        return self._ranks.get(tier, 0) if tier else 0

    def classify(self, bundle: MetricsBundle) -> Classification:
        result = self.policy.evaluate(bundle)
        result.rank = self.rank(result.tier)
        return result
