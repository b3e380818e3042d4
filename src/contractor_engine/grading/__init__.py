"""Contractor grading: aggregation, classification and tier transitions."""

from contractor_engine.grading.aggregator import MetricsAggregator, MetricsBundle, RunningStats, combine
from contractor_engine.grading.classifier import (
    GradeClassifier,
    ThresholdPolicy,
    TierDefinition,
    WeightedScorePolicy,
)

__all__ = [
    "GradeClassifier",
    "MetricsAggregator",
    "MetricsBundle",
    "RunningStats",
    "ThresholdPolicy",
    "TierDefinition",
    "WeightedScorePolicy",
    "combine",
]
