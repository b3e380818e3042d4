"""Time-based urgent-fee escalation."""

from contractor_engine.escalation.scheduler import FeeEscalationScheduler, TickReport
from contractor_engine.escalation.state_machine import (
    CADENCES,
    LONG_CADENCE,
    SHORT_CADENCE,
    EscalationState,
    decide,
)

__all__ = [
    "CADENCES",
    "EscalationState",
    "FeeEscalationScheduler",
    "LONG_CADENCE",
    "SHORT_CADENCE",
    "TickReport",
    "decide",
]
