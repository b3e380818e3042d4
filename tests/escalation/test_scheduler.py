"""Tests for FeeEscalationScheduler ticks and admin surcharge operations."""

from datetime import timedelta

import pytest

from contractor_engine.constants import (
    DEFAULT_ESCALATION_POLICY,
    ESCALATION_STATS_COLLECTION,
    TASKS_COLLECTION,
)
from contractor_engine.escalation.scheduler import (
    MANUAL_HISTORY_FIELD,
    FeeEscalationScheduler,
    manual_increase,
    summarize_escalation_stats,
)
from contractor_engine.escalation.state_machine import LONG_CADENCE, SHORT_CADENCE
from contractor_engine.exceptions import InvalidStateTransition, TaskNotFoundError
from contractor_engine.notifications.dispatcher import NotificationDispatcher
from helpers import minutes, seed_long_task, seed_short_task, seed_user


@pytest.fixture
def dispatcher(store, transport):
    return NotificationDispatcher(store, transport, sleep=lambda _: None)


@pytest.fixture
def short_scheduler(store, dispatcher):
    return FeeEscalationScheduler(store, SHORT_CADENCE, dispatcher, max_workers=4)


def _fee(store, task_id):
    return store.get(TASKS_COLLECTION, task_id).data["currentUrgentFeePercent"]


def test_seven_ticks_reach_the_cap(store, short_scheduler, now):
    seed_short_task(store, "t1", now)

    fees = []
    for step in range(1, 9):
        short_scheduler.tick(now + minutes(10 * step))
        fees.append(_fee(store, "t1"))

    assert fees == [20, 25, 30, 35, 40, 45, 50, 50]
    task = store.get(TASKS_COLLECTION, "t1").data
    assert task["urgentFeeIncreaseCount"] == 7
    assert task["urgentFeeMaxReachedAt"] == (now + minutes(70)).isoformat()


def test_tick_counts_cap(store, short_scheduler, now):
    seed_short_task(store, "t1", now, currentUrgentFeePercent=45, urgentFeeIncreaseCount=6)

    report = short_scheduler.tick(now + minutes(10))

    assert (report.processed, report.increased, report.capped) == (1, 1, 1)


def test_repeated_tick_in_same_window_is_noop(store, short_scheduler, now):
    seed_short_task(store, "t1", now)
    tick_time = now + minutes(10)

    first = short_scheduler.tick(tick_time)
    second = short_scheduler.tick(tick_time + timedelta(seconds=30))

    assert first.increased == 1
    assert second.increased == 0
    assert second.skipped == 1
    assert _fee(store, "t1") == 20


def test_task_claimed_between_scan_and_write_is_untouched(store, short_scheduler, now):
    seed_short_task(store, "t1", now)
    original_query = store.query

    def query_then_claim(collection, filters=(), limit=None):
        records = original_query(collection, filters, limit)
        if collection == TASKS_COLLECTION:
            store.update(TASKS_COLLECTION, "t1", {"status": "assigned"})
        return records

    store.query = query_then_claim

    report = short_scheduler.tick(now + minutes(10))

    task = store.get(TASKS_COLLECTION, "t1").data
    assert report.conflicts == 1
    assert report.increased == 0
    assert task["status"] == "assigned"
    assert task["currentUrgentFeePercent"] == 15


def test_non_open_tasks_are_frozen(store, short_scheduler, now):
    seed_short_task(store, "t1", now, status="assigned")

    report = short_scheduler.tick(now + minutes(60))

    assert report.processed == 0
    assert _fee(store, "t1") == 15


def test_dual_layout_task_is_flagged_and_skipped(store, short_scheduler, now):
    seed_short_task(store, "t1", now, baseUrgentFeePercent=15, lastFeeIncreaseAt=None)

    report = short_scheduler.tick(now + minutes(10))

    assert report.integrity_warnings == ["t1"]
    assert report.processed == 0
    assert _fee(store, "t1") == 15


def test_disabled_short_cadence_task_is_skipped(store, short_scheduler, now):
    seed_short_task(store, "t1", now, urgentFeeEnabled=False)

    report = short_scheduler.tick(now + minutes(10))

    assert report.skipped == 1
    assert _fee(store, "t1") == 15


def test_cadences_only_touch_their_own_layout(store, dispatcher, now):
    seed_short_task(store, "short-1", now)
    seed_long_task(store, "long-1", now)
    long_scheduler = FeeEscalationScheduler.from_policy(
        store, "long", DEFAULT_ESCALATION_POLICY, dispatcher
    )

    report = long_scheduler.tick(now + timedelta(hours=1))

    assert report.processed == 1
    assert _fee(store, "long-1") == 20
    assert _fee(store, "short-1") == 15
    assert store.get(TASKS_COLLECTION, "long-1").data["lastFeeIncreaseAt"] == (
        now + timedelta(hours=1)
    ).isoformat()


def test_from_policy_applies_cadence_defaults(store):
    policy = {
        "short": {"intervalSeconds": 120, "stepSize": 2},
        "long": {"intervalSeconds": 7200, "stepSize": 10},
        "notifyOnIncrease": False,
    }

    scheduler = FeeEscalationScheduler.from_policy(store, "short", policy)

    assert scheduler.cadence.default_interval_seconds == 120
    assert scheduler.cadence.default_step == 2
    assert scheduler.cadence.enabled_flag == SHORT_CADENCE.enabled_flag
    assert scheduler.notify_recipients is False


def test_increase_notifies_task_recipients(store, short_scheduler, transport, now):
    seed_user(store, "owner")
    seed_short_task(store, "t1", now, notificationRecipients=["owner"])

    short_scheduler.tick(now + minutes(10))

    assert len(transport.sent) == 1
    assert transport.sent[0]["data"]["type"] == "fee_escalation"
    assert transport.sent[0]["data"]["newPercent"] == "20"


def test_reaching_cap_sends_capped_notice(store, short_scheduler, transport, now):
    seed_user(store, "owner")
    seed_short_task(
        store, "t1", now, currentUrgentFeePercent=45, notificationRecipients=["owner"]
    )

    short_scheduler.tick(now + minutes(10))

    assert [m["data"]["type"] for m in transport.sent] == ["fee_capped"]


def test_task_errors_are_collected_and_reported_to_admins(store, short_scheduler, transport, now):
    seed_user(store, "admin-1", role="admin")
    seed_user(store, "regular", role="customer")
    seed_short_task(store, "bad", now, currentUrgentFeePercent="lots")
    seed_short_task(store, "good", now)

    report = short_scheduler.tick(now + minutes(10))

    assert report.increased == 1
    assert [e["taskId"] for e in report.errors] == ["bad"]
    assert _fee(store, "good") == 20
    assert [m["token"] for m in transport.sent] == ["tok-admin-1"]
    assert transport.sent[0]["data"]["type"] == "escalation_errors"


def test_tick_stats_are_persisted_and_summarized(store, short_scheduler, now):
    seed_short_task(store, "t1", now)
    seed_short_task(store, "t2", now, status="cancelled")

    short_scheduler.tick(now + minutes(10))
    short_scheduler.tick(now + minutes(20))

    stats = store.query(ESCALATION_STATS_COLLECTION)
    assert len(stats) == 2
    assert all(s.data["cadence"] == "short" for s in stats)

    summary = summarize_escalation_stats(store, now)
    assert summary["ticks"] == 2
    assert summary["increased"] == 2
    assert summary["byCadence"] == {"short": 2}

    assert summarize_escalation_stats(store, now + minutes(15))["ticks"] == 1


class TestManualIncrease:
    def test_increase_appends_history_and_restarts_interval(self, store, now):
        seed_short_task(store, "t1", now)

        result = manual_increase(store, "t1", 10, "customer request", "admin-1", now=now)

        task = store.get(TASKS_COLLECTION, "t1").data
        assert result == {"taskId": "t1", "oldPercent": 15, "newPercent": 25, "capped": False}
        assert task["currentUrgentFeePercent"] == 25
        assert task["lastUrgentFeeUpdate"] == now.isoformat()
        assert task[MANUAL_HISTORY_FIELD][0]["adminId"] == "admin-1"
        assert task[MANUAL_HISTORY_FIELD][0]["reason"] == "customer request"

    def test_increase_is_bounded_by_maximum(self, store, now):
        seed_long_task(store, "t1", now, currentUrgentFeePercent=45)

        result = manual_increase(store, "t1", 20, "", "admin-1", now=now)

        task = store.get(TASKS_COLLECTION, "t1").data
        assert result["newPercent"] == 50
        assert result["capped"] is True
        assert task["urgentFeeMaxReachedAt"] == now.isoformat()

    def test_capped_task_rejected(self, store, now):
        seed_short_task(store, "t1", now, currentUrgentFeePercent=50)

        with pytest.raises(InvalidStateTransition, match="maximum"):
            manual_increase(store, "t1", 5, "", "admin-1", now=now)

    def test_non_open_task_rejected(self, store, now):
        seed_short_task(store, "t1", now, status="in_progress")

        with pytest.raises(InvalidStateTransition, match="frozen"):
            manual_increase(store, "t1", 5, "", "admin-1", now=now)

    def test_task_without_fee_fields_rejected(self, store, now):
        store.create(TASKS_COLLECTION, {"status": "open"}, record_id="plain")

        with pytest.raises(InvalidStateTransition, match="no urgent fee"):
            manual_increase(store, "plain", 5, "", "admin-1", now=now)

    def test_missing_task(self, store):
        with pytest.raises(TaskNotFoundError):
            manual_increase(store, "ghost", 5, "", "admin-1")

    def test_non_positive_step(self, store):
        with pytest.raises(ValueError):
            manual_increase(store, "t1", 0, "", "admin-1")
