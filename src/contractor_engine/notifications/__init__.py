"""Notification delivery shared by grading and fee escalation."""

from contractor_engine.notifications.dispatcher import (
    DispatchReport,
    NotificationDispatcher,
    Recipient,
)
from contractor_engine.notifications.templates import NotificationMessage

__all__ = ["DispatchReport", "NotificationDispatcher", "NotificationMessage", "Recipient"]
