"""Tests for NotificationDispatcher fan-out, retry and token pruning."""

from unittest.mock import patch

import pytest

from contractor_engine.constants import NOTIFICATION_LOGS_COLLECTION, USERS_COLLECTION
from contractor_engine.exceptions import DeliveryError
from contractor_engine.models import DeliveryOutcome
from contractor_engine.notifications import templates
from contractor_engine.notifications.dispatcher import (
    NotificationDispatcher,
    Recipient,
    extract_tokens,
)
from helpers import FakeTransport, seed_user


@pytest.fixture
def message():
    return templates.fee_escalation("t1", "Fix sink", 15, 20)


def _dispatcher(store, transport, sleeps=None, **policy):
    sleep = sleeps.append if sleeps is not None else (lambda _: None)
    return NotificationDispatcher(store, transport, policy=policy or None, sleep=sleep)


def test_all_recipients_delivered(store, transport, message):
    seed_user(store, "u1")
    seed_user(store, "u2")

    report = _dispatcher(store, transport).dispatch(message, [Recipient("u1"), Recipient("u2")])

    assert report.status == "success"
    assert report.delivered_recipients == ["u1", "u2"]
    assert sorted(m["token"] for m in transport.sent) == ["tok-u1", "tok-u2"]


def test_invalid_token_gives_partial_and_is_pruned(store, message):
    for user_id in ("u1", "u2", "u3"):
        seed_user(store, user_id)
    transport = FakeTransport(invalid={"tok-u2"})

    report = _dispatcher(store, transport).dispatch(
        message, [Recipient("u1"), Recipient("u2"), Recipient("u3")]
    )

    assert report.status == "partial"
    assert report.delivered_recipients == ["u1", "u3"]
    failed = [r for r in report.results if r.recipient_id == "u2"][0]
    assert failed.outcome == DeliveryOutcome.INVALID_TOKEN
    assert failed.pruned is True
    assert store.get(USERS_COLLECTION, "u2").data["notificationTokens"] == []
    assert store.get(USERS_COLLECTION, "u1").data["notificationTokens"] == ["tok-u1"]


def test_transient_failures_retry_until_exhausted(store, message):
    seed_user(store, "u1")
    transport = FakeTransport(transient={"tok-u1": 10})
    sleeps = []

    report = _dispatcher(store, transport, sleeps).dispatch(message, [Recipient("u1")])

    assert report.status == "failed"
    result = report.results[0]
    assert result.outcome == DeliveryOutcome.RETRY_EXHAUSTED
    assert result.attempts == 3
    assert transport.attempts == ["tok-u1"] * 3
    assert len(sleeps) == 2

    outcomes = [e.data["outcome"] for e in store.query(NOTIFICATION_LOGS_COLLECTION)]
    assert sorted(outcomes) == ["failure", "failure", "retry_exhausted"]


def test_transient_failure_then_success(store, message):
    seed_user(store, "u1")
    transport = FakeTransport(transient={"tok-u1": 1})

    report = _dispatcher(store, transport).dispatch(message, [Recipient("u1")])

    assert report.status == "success"
    assert report.results[0].attempts == 2


def test_max_attempts_comes_from_policy(store, message):
    seed_user(store, "u1")
    transport = FakeTransport(transient={"tok-u1": 10})

    report = _dispatcher(store, transport, maxAttempts=5).dispatch(message, [Recipient("u1")])

    assert report.results[0].attempts == 5


def test_permanent_failure_is_not_retried(store, message):
    seed_user(store, "u1")

    class RejectingTransport(FakeTransport):
        def deliver(self, token, title, body, data):
            self.attempts.append(token)
            raise DeliveryError("payload too large", token=token)

    transport = RejectingTransport()

    report = _dispatcher(store, transport).dispatch(message, [Recipient("u1")])

    assert report.status == "failed"
    assert report.results[0].outcome == DeliveryOutcome.FAILURE
    assert transport.attempts == ["tok-u1"]


def test_recipients_without_tokens(store, transport, message):
    seed_user(store, "u1")
    store.create(USERS_COLLECTION, {"name": "No devices"}, record_id="u2")

    report = _dispatcher(store, transport).dispatch(
        message, [Recipient("u1"), Recipient("u2"), Recipient("ghost")]
    )

    assert report.status == "partial"
    assert report.recipients_without_tokens == ["u2", "ghost"]


def test_no_targets(store, transport, message):
    report = _dispatcher(store, transport).dispatch(message, [Recipient("ghost")])

    assert report.status == "no_targets"
    assert transport.attempts == []


def test_legacy_single_token_is_used_and_pruned(store, message):
    store.create(USERS_COLLECTION, {"fcmToken": "legacy-token"}, record_id="u1")
    transport = FakeTransport(invalid={"legacy-token"})

    report = _dispatcher(store, transport).dispatch(message, [Recipient("u1")])

    assert report.status == "failed"
    assert store.get(USERS_COLLECTION, "u1").data["fcmToken"] is None


def test_pruning_a_vanished_recipient_does_not_raise(store, message):
    seed_user(store, "u1")
    transport = FakeTransport(invalid={"tok-u1"})
    dispatcher = _dispatcher(store, transport)

    with patch.object(store, "array_remove", return_value=False) as array_remove:
        report = dispatcher.dispatch(message, [Recipient("u1")])

    array_remove.assert_called_once_with(USERS_COLLECTION, "u1", "notificationTokens", ["tok-u1"])
    assert report.results[0].pruned is False


def test_contractor_recipients_read_contractor_collection(store, transport, message):
    store.create("contractors", {"notificationTokens": ["tok-c1"]}, record_id="c1")

    report = _dispatcher(store, transport).dispatch(message, [Recipient("c1", "contractors")])

    assert report.status == "success"


def test_attempt_log_masks_tokens(store, message):
    seed_user(store, "u1", notificationTokens=["a-very-long-device-token-value"])

    _dispatcher(store, FakeTransport()).dispatch(message, [Recipient("u1")])

    logged = store.query(NOTIFICATION_LOGS_COLLECTION)[0].data
    assert logged["outcome"] == "success"
    assert logged["token"] == "a-very-long-..."
    assert logged["category"] == "fee_escalation"


def test_extract_tokens_deduplicates_legacy_field():
    data = {"notificationTokens": ["a", "b", "a", ""], "fcmToken": "b"}

    assert extract_tokens(data) == [("a", "notificationTokens"), ("b", "notificationTokens")]
