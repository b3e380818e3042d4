"""
Pydantic models for contractor, evaluation, task and notification records.

Stored documents use camelCase field names; the models expose snake_case
attributes and accept either form on input.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    ValidationInfo,
    ValidatorFunctionWrapHandler,
    field_validator,
)
from pydantic.alias_generators import to_camel

from contractor_engine.constants import ADMIN_ROLE


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RecordModel(BaseModel):
    """Base for models persisted as camelCase documents."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        use_enum_values=True,
        extra="ignore",
    )

    def to_record(self) -> Dict[str, Any]:
        """Dump to the stored document shape."""
        return self.model_dump(by_alias=True, exclude={"id"}, exclude_none=True)


class TaskStatus(str, Enum):
    """
    Lifecycle of a task.

    open -> assigned -> in_progress -> completed | cancelled. Surcharge
    fields only change while a task is OPEN.
    """

    OPEN = "open"
    ASSIGNED = "assigned"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class NotificationCategory(str, Enum):
    TIER_UPGRADE = "tier_upgrade"
    TIER_DOWNGRADE = "tier_downgrade"
    FEE_ESCALATION = "fee_escalation"
    FEE_CAPPED = "fee_capped"
    ESCALATION_ERRORS = "escalation_errors"


class DeliveryOutcome(str, Enum):
    """Outcome recorded for each delivery attempt."""

    SUCCESS = "success"
    FAILURE = "failure"  # Transient failure, another attempt follows
    RETRY_EXHAUSTED = "retry_exhausted"
    INVALID_TOKEN = "invalid_token"


class TierHistoryEntry(RecordModel):
    from_tier: Optional[str] = None
    to_tier: str
    timestamp: datetime
    score: float


class EvaluationRecord(RecordModel):
    """Immutable review of one contractor; never updated after creation."""

    model_config = ConfigDict(frozen=True)

    id: Optional[str] = None
    contractor_id: str
    task_id: Optional[str] = None
    ratings: Dict[str, Any] = Field(default_factory=dict)
    overall_score: Optional[float] = None
    would_recommend: Optional[bool] = None
    created_at: datetime = Field(default_factory=utcnow)

    @field_validator("overall_score", "would_recommend", mode="wrap")
    @classmethod
    def _drop_unreadable(
        cls, value: Any, handler: ValidatorFunctionWrapHandler, info: ValidationInfo
    ) -> Any:
        """An unreadable optional field is discarded; the rest of the review still counts."""
        if info.field_name == "overall_score" and isinstance(value, bool):
            return None
        try:
            return handler(value)
        except ValidationError:
            return None

    @field_validator("created_at")
    @classmethod
    def _assume_utc(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


class NotificationEvent(RecordModel):
    """One delivery attempt, logged for observability."""

    recipient_id: str
    category: NotificationCategory
    title: str
    body: str
    data: Dict[str, str] = Field(default_factory=dict)
    token: str = ""
    attempt: int = 1
    outcome: DeliveryOutcome
    error: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)


class Actor(BaseModel):
    """Caller identity for admin-triggered operations."""

    user_id: Optional[str] = None
    roles: List[str] = Field(default_factory=list)

    @property
    def is_admin(self) -> bool:
        return ADMIN_ROLE in self.roles
