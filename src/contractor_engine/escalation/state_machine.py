"""Per-task urgent-fee escalation state machine.

Tasks carry their escalation fields in one of two layouts (a short cadence
and a long cadence) with the same meaning. ``CadenceFields`` maps logical
fields onto each layout, and ``decide`` is a pure function of the persisted
fields and ``now``: an increase happens only when the interval has elapsed
since the persisted last-increase timestamp, so a repeated tick inside the
same window is a no-op.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Mapping, Optional

from contractor_engine.constants import (
    DEFAULT_BASE_SURCHARGE,
    DEFAULT_ESCALATION_STEP,
    DEFAULT_MAX_SURCHARGE,
    LONG_CADENCE_INTERVAL_SECONDS,
    SHORT_CADENCE_INTERVAL_SECONDS,
)

INTERVAL_OVERRIDE_FIELD = "increaseIntervalSeconds"
STEP_OVERRIDE_FIELD = "stepSize"


class EscalationState(str, Enum):
    BASE = "base"
    ESCALATING = "escalating"
    CAPPED = "capped"


@dataclass(frozen=True)
class CadenceFields:
    """Where one cadence keeps each logical escalation field."""

    name: str
    markers: tuple
    base: str
    last_increase: str
    default_interval_seconds: int
    default_step: float
    enabled_flag: Optional[str] = None
    started: Optional[str] = None
    current: str = "currentUrgentFeePercent"
    maximum: str = "maxUrgentFeePercent"
    count: str = "urgentFeeIncreaseCount"
    cap_reached: str = "urgentFeeMaxReachedAt"

    def with_defaults(self, interval_seconds: int, step: float) -> "CadenceFields":
        return CadenceFields(
            name=self.name,
            markers=self.markers,
            base=self.base,
            last_increase=self.last_increase,
            default_interval_seconds=int(interval_seconds),
            default_step=float(step),
            enabled_flag=self.enabled_flag,
            started=self.started,
        )


SHORT_CADENCE = CadenceFields(
    name="short",
    markers=("urgentFeeEnabled", "urgentFeePercent", "lastUrgentFeeUpdate"),
    base="urgentFeePercent",
    last_increase="lastUrgentFeeUpdate",
    default_interval_seconds=SHORT_CADENCE_INTERVAL_SECONDS,
    default_step=DEFAULT_ESCALATION_STEP,
    enabled_flag="urgentFeeEnabled",
    started="urgentFeeIncreaseStartAt",
)

LONG_CADENCE = CadenceFields(
    name="long",
    markers=("baseUrgentFeePercent", "lastFeeIncreaseAt"),
    base="baseUrgentFeePercent",
    last_increase="lastFeeIncreaseAt",
    default_interval_seconds=LONG_CADENCE_INTERVAL_SECONDS,
    default_step=DEFAULT_ESCALATION_STEP,
)

CADENCES = {SHORT_CADENCE.name: SHORT_CADENCE, LONG_CADENCE.name: LONG_CADENCE}

DUAL_LAYOUT = "both"


def detect_layout(data: Mapping[str, Any]) -> Optional[str]:
    """Return "short", "long", "both" (integrity problem) or None."""
    found = [
        cadence.name
        for cadence in CADENCES.values()
        if any(marker in data for marker in cadence.markers)
    ]
    if len(found) > 1:
        return DUAL_LAYOUT
    return found[0] if found else None


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Accept datetimes or ISO strings; naive values are taken as UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    else:
        raise ValueError(f"Unsupported timestamp value: {value!r}")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _number(value: Any, default: float) -> float:
    if value is None or isinstance(value, bool):
        return float(default)
    return float(value)


@dataclass
class EscalationConfig:
    """Escalation fields of one task, read through its cadence layout."""

    fields: CadenceFields
    base: float
    current: float
    maximum: float
    interval_seconds: float
    step: float
    count: int
    last_increase_at: Optional[datetime]
    started_at: Optional[datetime]
    created_at: Optional[datetime]
    cap_reached_at: Optional[datetime]

    @classmethod
    def from_task(cls, data: Mapping[str, Any], fields: CadenceFields) -> "EscalationConfig":
        """
        Raises:
            ValueError: If a numeric or timestamp field holds garbage
        """
        base = _number(data.get(fields.base), DEFAULT_BASE_SURCHARGE)
        return cls(
            fields=fields,
            base=base,
            current=_number(data.get(fields.current), base),
            maximum=_number(data.get(fields.maximum), DEFAULT_MAX_SURCHARGE),
            interval_seconds=_number(
                data.get(INTERVAL_OVERRIDE_FIELD), fields.default_interval_seconds
            ),
            step=_number(data.get(STEP_OVERRIDE_FIELD), fields.default_step),
            count=int(_number(data.get(fields.count), 0)),
            last_increase_at=parse_timestamp(data.get(fields.last_increase)),
            started_at=parse_timestamp(data.get(fields.started)) if fields.started else None,
            created_at=parse_timestamp(data.get("createdAt")),
            cap_reached_at=parse_timestamp(data.get(fields.cap_reached)),
        )

    @property
    def state(self) -> EscalationState:
        if self.current >= self.maximum:
            return EscalationState.CAPPED
        if self.count > 0 or self.current > self.base:
            return EscalationState.ESCALATING
        return EscalationState.BASE

    @property
    def reference_time(self) -> Optional[datetime]:
        return self.last_increase_at or self.started_at or self.created_at


@dataclass
class EscalationDecision:
    """What a tick should write for one task; empty ``changes`` means no-op."""

    reason: str
    state_before: EscalationState
    state_after: EscalationState
    old_percent: float
    new_percent: float
    changes: Dict[str, Any] = field(default_factory=dict)

    @property
    def increased(self) -> bool:
        return self.new_percent > self.old_percent

    @property
    def reached_cap(self) -> bool:
        return self.state_after == EscalationState.CAPPED and self.state_before != EscalationState.CAPPED


def decide(config: EscalationConfig, now: datetime) -> EscalationDecision:
    """Apply the transition rule for one tick."""
    fields = config.fields
    state = config.state

    def no_op(reason: str, changes: Optional[Dict[str, Any]] = None) -> EscalationDecision:
        return EscalationDecision(reason, state, state, config.current, config.current, changes or {})

    if state == EscalationState.CAPPED:
        if config.cap_reached_at is None:
            return no_op("cap_recorded", {fields.cap_reached: now})
        return no_op("capped")

    if config.step <= 0 or config.interval_seconds <= 0:
        return no_op("invalid_schedule")

    reference = config.reference_time
    if reference is None:
        return no_op("missing_reference_time")

    elapsed = (now - reference).total_seconds()
    if elapsed < config.interval_seconds:
        return no_op("interval_not_elapsed")

    new_percent = min(config.current + config.step, config.maximum)
    changes: Dict[str, Any] = {
        fields.current: new_percent,
        fields.last_increase: now,
        fields.count: config.count + 1,
    }
    state_after = EscalationState.ESCALATING
    if new_percent >= config.maximum:
        state_after = EscalationState.CAPPED
        if config.cap_reached_at is None:
            changes[fields.cap_reached] = now

    return EscalationDecision("increased", state, state_after, config.current, new_percent, changes)
