"""Improvement guidance attached to downgrade notices and audit entries."""

from typing import List

from contractor_engine.constants import IMPROVEMENT_THRESHOLD
from contractor_engine.grading.aggregator import MetricsBundle

CATEGORY_GUIDANCE = {
    "quality": "Double-check workmanship and finish before closing a job.",
    "punctuality": "Arrive within the agreed window and keep the schedule.",
    "costSaving": "Quote precisely and avoid unplanned extra charges.",
    "communication": "Confirm details with the customer before and after each visit.",
    "professionalism": "Keep the site tidy and follow the agreed process.",
}

GENERAL_GUIDANCE = "Overall ratings are low; review recent feedback and focus on the basics."


def improvement_recommendations(bundle: MetricsBundle) -> List[str]:
    """Guidance for every category averaging under the improvement threshold."""
    recommendations = []
    for category, average in sorted(bundle.category_averages.items()):
        if average < IMPROVEMENT_THRESHOLD:
            recommendations.append(
                CATEGORY_GUIDANCE.get(category, f"Work on improving your {category} rating.")
            )
    if bundle.evaluation_count and bundle.average_rating < IMPROVEMENT_THRESHOLD:
        recommendations.append(GENERAL_GUIDANCE)
    return recommendations
