"""Message templates for tier changes and surcharge escalation."""

from dataclasses import dataclass, field
from typing import Dict, List, Optional

from contractor_engine.models import NotificationCategory


@dataclass
class NotificationMessage:
    category: NotificationCategory
    title: str
    body: str
    data: Dict[str, str] = field(default_factory=dict)


def tier_upgrade(contractor_id: str, from_tier: Optional[str], to_tier: str) -> NotificationMessage:
    return NotificationMessage(
        category=NotificationCategory.TIER_UPGRADE,
        title="Congratulations, you moved up a tier!",
        body=(
            f"Your great work paid off: you are now {to_tier.upper()} tier"
            + (f" (up from {from_tier.upper()})." if from_tier else ".")
        ),
        data={
            "type": NotificationCategory.TIER_UPGRADE.value,
            "contractorId": contractor_id,
            "fromTier": from_tier or "",
            "toTier": to_tier,
        },
    )


def tier_downgrade(
    contractor_id: str,
    from_tier: Optional[str],
    to_tier: str,
    recommendations: List[str],
) -> NotificationMessage:
    body = f"Your tier changed to {to_tier.upper()}."
    if recommendations:
        body += " To move back up: " + " ".join(recommendations)
    return NotificationMessage(
        category=NotificationCategory.TIER_DOWNGRADE,
        title="Your contractor tier has changed",
        body=body,
        data={
            "type": NotificationCategory.TIER_DOWNGRADE.value,
            "contractorId": contractor_id,
            "fromTier": from_tier or "",
            "toTier": to_tier,
        },
    )


def fee_escalation(task_id: str, title: str, old_percent: float, new_percent: float) -> NotificationMessage:
    return NotificationMessage(
        category=NotificationCategory.FEE_ESCALATION,
        title="Urgent fee increased",
        body=f"The urgent fee for '{title}' rose from {old_percent:g}% to {new_percent:g}%.",
        data={
            "type": NotificationCategory.FEE_ESCALATION.value,
            "taskId": task_id,
            "oldPercent": f"{old_percent:g}",
            "newPercent": f"{new_percent:g}",
        },
    )


def fee_capped(task_id: str, title: str, max_percent: float) -> NotificationMessage:
    return NotificationMessage(
        category=NotificationCategory.FEE_CAPPED,
        title="Urgent fee at maximum",
        body=f"The urgent fee for '{title}' reached its {max_percent:g}% maximum.",
        data={
            "type": NotificationCategory.FEE_CAPPED.value,
            "taskId": task_id,
            "maxPercent": f"{max_percent:g}",
        },
    )


def escalation_errors(cadence: str, error_count: int, errors: List[str]) -> NotificationMessage:
    preview = "; ".join(errors[:3])
    return NotificationMessage(
        category=NotificationCategory.ESCALATION_ERRORS,
        title="Urgent fee escalation errors",
        body=f"{error_count} task(s) failed during the {cadence} escalation tick. {preview}",
        data={
            "type": NotificationCategory.ESCALATION_ERRORS.value,
            "cadence": cadence,
            "errorCount": str(error_count),
        },
    )
