"""Recurring urgent-fee escalation over open tasks.

Each tick scans open tasks of one cadence and writes every increase as a
single conditional update: the version seen at scan time must still be
current and the task must still be open. A lost race, or a task claimed
between scan and write, leaves the task untouched.
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from contractor_engine.constants import (
    ADMIN_ROLE,
    ESCALATION_STATS_COLLECTION,
    MAX_REPORTED_TICK_ERRORS,
    TASKS_COLLECTION,
    USERS_COLLECTION,
)
from contractor_engine.exceptions import (
    InvalidStateTransition,
    RecordNotFoundError,
    StorageError,
    TaskNotFoundError,
    WriteConflictError,
)
from contractor_engine.escalation.state_machine import (
    CADENCES,
    DUAL_LAYOUT,
    CadenceFields,
    EscalationConfig,
    EscalationState,
    decide,
    detect_layout,
)
from contractor_engine.logging_config import get_structured_logger
from contractor_engine.models import TaskStatus, utcnow
from contractor_engine.notifications import templates
from contractor_engine.notifications.dispatcher import NotificationDispatcher, Recipient
from contractor_engine.storage.record_store import RecordStore, StoredRecord

logger = logging.getLogger(__name__)

MANUAL_HISTORY_FIELD = "manualIncreaseHistory"


@dataclass
class TaskOutcome:
    task_id: str
    action: str
    old_percent: Optional[float] = None
    new_percent: Optional[float] = None
    capped: bool = False
    error: Optional[str] = None


@dataclass
class TickReport:
    """Counters for one escalation tick."""

    cadence: str
    started_at: datetime
    processed: int = 0
    increased: int = 0
    capped: int = 0
    skipped: int = 0
    conflicts: int = 0
    integrity_warnings: List[str] = field(default_factory=list)
    errors: List[Dict[str, str]] = field(default_factory=list)
    execution_ms: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cadence": self.cadence,
            "startedAt": self.started_at.isoformat(),
            "processed": self.processed,
            "increased": self.increased,
            "capped": self.capped,
            "skipped": self.skipped,
            "conflicts": self.conflicts,
            "integrityWarnings": list(self.integrity_warnings),
            "errorCount": len(self.errors),
            "errors": self.errors[:MAX_REPORTED_TICK_ERRORS],
            "executionMs": self.execution_ms,
        }


class FeeEscalationScheduler:
    """Advance the escalation state machine of every open task in one cadence."""

    def __init__(
        self,
        store: RecordStore,
        cadence: CadenceFields,
        dispatcher: Optional[NotificationDispatcher] = None,
        clock: Callable[[], datetime] = utcnow,
        max_workers: int = 8,
        notify_recipients: bool = True,
    ):
        self.store = store
        self.cadence = cadence
        self.dispatcher = dispatcher
        self.clock = clock
        self.max_workers = max_workers
        self.notify_recipients = notify_recipients
        self.slogger = get_structured_logger(__name__)

    @classmethod
    def from_policy(
        cls,
        store: RecordStore,
        cadence_name: str,
        policy: Dict[str, Any],
        dispatcher: Optional[NotificationDispatcher] = None,
        **kwargs,
    ) -> "FeeEscalationScheduler":
        """Build with cadence defaults taken from an escalation-policy document."""
        section = policy[cadence_name]
        cadence = CADENCES[cadence_name].with_defaults(
            section["intervalSeconds"], section["stepSize"]
        )
        kwargs.setdefault("notify_recipients", policy.get("notifyOnIncrease", True))
        return cls(store, cadence, dispatcher=dispatcher, **kwargs)

    # ------------------------------------------------------------------ #
    # Tick
    # ------------------------------------------------------------------ #

    def tick(self, now: Optional[datetime] = None) -> TickReport:
        """Run one scan; per-task failures are collected, never raised."""
        now = now or self.clock()
        started = time.monotonic()
        report = TickReport(cadence=self.cadence.name, started_at=now)

        tasks = self.store.query(TASKS_COLLECTION, [("status", "==", TaskStatus.OPEN.value)])
        self.slogger.batch_activity(
            "escalation_tick", "started", {"cadence": self.cadence.name, "open_tasks": len(tasks)}
        )

        outcomes: List[TaskOutcome] = []
        if tasks:
            workers = max(1, min(self.max_workers, len(tasks)))
            with ThreadPoolExecutor(max_workers=workers) as executor:
                futures = [(task.id, executor.submit(self._process, task, now)) for task in tasks]
                for task_id, future in futures:
                    try:
                        outcomes.append(future.result())
                    except Exception as exc:
                        logger.error("Escalation failed for %s: %s", task_id, exc, exc_info=True)
                        outcomes.append(TaskOutcome(task_id, "error", error=str(exc)))

        for outcome in outcomes:
            self._count(report, outcome)

        report.execution_ms = int((time.monotonic() - started) * 1000)
        self._persist_report(report, now)
        if report.errors:
            self._notify_admins(report)

        self.slogger.batch_activity(
            "escalation_tick",
            "completed",
            {
                "cadence": report.cadence,
                "processed": report.processed,
                "increased": report.increased,
                "capped": report.capped,
                "conflicts": report.conflicts,
                "errors": len(report.errors),
            },
        )
        return report

    @staticmethod
    def _count(report: TickReport, outcome: TaskOutcome) -> None:
        if outcome.action == "other_cadence":
            return
        if outcome.action == "integrity_warning":
            report.integrity_warnings.append(outcome.task_id)
            return
        report.processed += 1
        if outcome.action == "increased":
            report.increased += 1
            if outcome.capped:
                report.capped += 1
        elif outcome.action == "conflict":
            report.conflicts += 1
        elif outcome.action == "error":
            report.errors.append({"taskId": outcome.task_id, "error": outcome.error or ""})
        else:
            report.skipped += 1

    def _process(self, task: StoredRecord, now: datetime) -> TaskOutcome:
        layout = detect_layout(task.data)
        if layout == DUAL_LAYOUT:
            self.slogger.fee_escalation(
                task.id,
                "integrity_warning",
                {"reason": "task carries both short and long cadence fields"},
            )
            return TaskOutcome(task.id, "integrity_warning")
        if layout != self.cadence.name:
            return TaskOutcome(task.id, "other_cadence")

        if self.cadence.enabled_flag and not task.data.get(self.cadence.enabled_flag):
            return TaskOutcome(task.id, "disabled")

        try:
            config = EscalationConfig.from_task(task.data, self.cadence)
        except (TypeError, ValueError) as exc:
            self.slogger.fee_escalation(task.id, "failed", {"error": str(exc)})
            return TaskOutcome(task.id, "error", error=f"invalid escalation fields: {exc}")

        decision = decide(config, now)
        if not decision.changes:
            return TaskOutcome(task.id, decision.reason)

        try:
            self.store.update(
                TASKS_COLLECTION,
                task.id,
                decision.changes,
                expected_version=task.version,
                where={"status": TaskStatus.OPEN.value},
            )
        except (WriteConflictError, RecordNotFoundError) as exc:
            self.slogger.fee_escalation(task.id, "conflict", {"reason": str(exc)})
            return TaskOutcome(task.id, "conflict")
        except StorageError as exc:
            self.slogger.fee_escalation(task.id, "failed", {"error": str(exc)})
            return TaskOutcome(task.id, "error", error=str(exc))

        if not decision.increased:
            return TaskOutcome(task.id, decision.reason)

        self.slogger.fee_escalation(
            task.id,
            "capped" if decision.reached_cap else "increased",
            {
                "cadence": self.cadence.name,
                "old_percent": decision.old_percent,
                "new_percent": decision.new_percent,
            },
        )
        self._notify_task(task, decision.old_percent, decision.new_percent, decision.reached_cap, config)
        return TaskOutcome(
            task.id,
            "increased",
            decision.old_percent,
            decision.new_percent,
            capped=decision.reached_cap,
        )

    # ------------------------------------------------------------------ #
    # Side effects after commit
    # ------------------------------------------------------------------ #

    def _notify_task(
        self,
        task: StoredRecord,
        old_percent: float,
        new_percent: float,
        capped: bool,
        config: EscalationConfig,
    ) -> None:
        recipients = [Recipient(uid) for uid in task.data.get("notificationRecipients") or []]
        if not self.dispatcher or not self.notify_recipients or not recipients:
            return
        title = task.data.get("title", task.id)
        if capped:
            message = templates.fee_capped(task.id, title, config.maximum)
        else:
            message = templates.fee_escalation(task.id, title, old_percent, new_percent)
        try:
            self.dispatcher.dispatch(message, recipients)
        except Exception as exc:
            logger.error("Escalation notice for %s failed: %s", task.id, exc, exc_info=True)

    def _persist_report(self, report: TickReport, now: datetime) -> None:
        try:
            self.store.create(ESCALATION_STATS_COLLECTION, {**report.to_dict(), "timestamp": now})
        except StorageError as exc:
            logger.warning("Failed to persist escalation stats: %s", exc)

    def _notify_admins(self, report: TickReport) -> None:
        if not self.dispatcher:
            return
        try:
            admins = self.store.query(USERS_COLLECTION, [("role", "==", ADMIN_ROLE)])
            if not admins:
                logger.warning("Escalation errors occurred but no admin users are registered")
                return
            message = templates.escalation_errors(
                report.cadence,
                len(report.errors),
                [f"{e['taskId']}: {e['error']}" for e in report.errors],
            )
            self.dispatcher.dispatch(message, [Recipient(a.id) for a in admins])
        except Exception as exc:
            logger.error("Failed to notify admins of escalation errors: %s", exc, exc_info=True)


# ---------------------------------------------------------------------- #
# Admin operations
# ---------------------------------------------------------------------- #


def manual_increase(
    store: RecordStore,
    task_id: str,
    step: float,
    reason: str,
    admin_id: Optional[str],
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Raise one open task's surcharge by ``step`` outside the schedule.

    The increase respects the task's maximum and restarts its interval.

    Raises:
        TaskNotFoundError: If the task does not exist
        InvalidStateTransition: If the task is not open, has no escalation
            fields, carries both layouts or is already at its maximum
        WriteConflictError: If the task changed while the increase was applied
    """
    if step <= 0:
        raise ValueError("step must be positive")
    now = now or utcnow()

    record = store.get(TASKS_COLLECTION, task_id)
    if record is None:
        raise TaskNotFoundError(task_id)
    if record.data.get("status") != TaskStatus.OPEN.value:
        raise InvalidStateTransition(
            f"Task {task_id} is {record.data.get('status')}; surcharge is frozen"
        )

    layout = detect_layout(record.data)
    if layout is None or layout == DUAL_LAYOUT:
        raise InvalidStateTransition(
            f"Task {task_id} has {'conflicting' if layout else 'no'} urgent fee configuration"
        )

    fields = CADENCES[layout]
    config = EscalationConfig.from_task(record.data, fields)
    if config.state == EscalationState.CAPPED:
        raise InvalidStateTransition(f"Task {task_id} is already at its maximum urgent fee")

    new_percent = min(config.current + step, config.maximum)
    changes: Dict[str, Any] = {
        fields.current: new_percent,
        fields.last_increase: now,
        fields.count: config.count + 1,
    }
    if new_percent >= config.maximum and config.cap_reached_at is None:
        changes[fields.cap_reached] = now

    entry = {
        "oldFee": config.current,
        "newFee": new_percent,
        "increasePercent": new_percent - config.current,
        "reason": reason,
        "adminId": admin_id,
        "timestamp": now,
    }
    store.update(
        TASKS_COLLECTION,
        task_id,
        changes,
        expected_version=record.version,
        where={"status": TaskStatus.OPEN.value},
        array_union={MANUAL_HISTORY_FIELD: [entry]},
    )

    logger.info(
        "Manual urgent fee increase on %s: %s -> %s by %s", task_id, config.current, new_percent, admin_id
    )
    return {
        "taskId": task_id,
        "oldPercent": config.current,
        "newPercent": new_percent,
        "capped": new_percent >= config.maximum,
    }


def summarize_escalation_stats(store: RecordStore, since: datetime) -> Dict[str, Any]:
    """Totals over tick reports persisted at or after ``since``."""
    records = store.query(ESCALATION_STATS_COLLECTION, [("timestamp", ">=", since)])
    summary: Dict[str, Any] = {
        "since": since.isoformat(),
        "ticks": len(records),
        "processed": 0,
        "increased": 0,
        "capped": 0,
        "conflicts": 0,
        "errors": 0,
        "byCadence": {},
    }
    for record in records:
        data = record.data
        summary["processed"] += int(data.get("processed", 0))
        summary["increased"] += int(data.get("increased", 0))
        summary["capped"] += int(data.get("capped", 0))
        summary["conflicts"] += int(data.get("conflicts", 0))
        summary["errors"] += int(data.get("errorCount", 0))
        cadence = data.get("cadence", "unknown")
        summary["byCadence"][cadence] = summary["byCadence"].get(cadence, 0) + 1
    return summary
