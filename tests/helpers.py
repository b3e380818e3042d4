"""Seed helpers and fakes shared across test modules."""

from datetime import timedelta

from contractor_engine.constants import (
    CONTRACTORS_COLLECTION,
    EVALUATIONS_COLLECTION,
    TASKS_COLLECTION,
    USERS_COLLECTION,
)
from contractor_engine.exceptions import InvalidTokenError, TransientDeliveryError


class FakeTransport:
    """
    In-memory PushTransport.

    ``invalid`` tokens always raise InvalidTokenError; ``transient`` maps a
    token to how many times it fails with TransientDeliveryError before it
    goes through.
    """

    def __init__(self, invalid=(), transient=None):
        self.invalid = set(invalid)
        self.transient = dict(transient or {})
        self.sent = []
        self.attempts = []

    def deliver(self, token, title, body, data):
        self.attempts.append(token)
        if token in self.invalid:
            raise InvalidTokenError("registration token is not registered", token=token)
        remaining = self.transient.get(token, 0)
        if remaining:
            self.transient[token] = remaining - 1
            raise TransientDeliveryError("service unavailable", token=token)
        self.sent.append({"token": token, "title": title, "body": body, "data": data})
        return f"msg-{len(self.sent)}"


def minutes(n):
    return timedelta(minutes=n)


def seed_contractor(store, contractor_id="c1", **fields):
    data = {"name": f"Contractor {contractor_id}", "notificationTokens": [f"tok-{contractor_id}"]}
    data.update(fields)
    store.create(CONTRACTORS_COLLECTION, data, record_id=contractor_id)
    return contractor_id


def seed_user(store, user_id, **fields):
    data = {"notificationTokens": [f"tok-{user_id}"]}
    data.update(fields)
    store.create(USERS_COLLECTION, data, record_id=user_id)
    return user_id


def seed_evaluations(store, contractor_id, count, rating, would_recommend=True, start=0):
    """Write ``count`` evaluations with every category at ``rating``."""
    for index in range(start, start + count):
        store.create(
            EVALUATIONS_COLLECTION,
            {
                "contractorId": contractor_id,
                "ratings": {
                    "quality": rating,
                    "punctuality": rating,
                    "costSaving": rating,
                    "communication": rating,
                    "professionalism": rating,
                },
                "overallScore": rating,
                "wouldRecommend": would_recommend,
                "createdAt": f"2024-01-01T00:00:{index % 60:02d}+00:00",
            },
            record_id=f"{contractor_id}-eval-{index:03d}",
        )


def seed_completions(store, contractor_id, count, on_time, response_minutes=20):
    """Write ``count`` completed tasks; the first ``on_time`` of them were on time."""
    for index in range(count):
        store.create(
            TASKS_COLLECTION,
            {
                "title": f"Job {index}",
                "status": "completed",
                "assignedContractorId": contractor_id,
                "onTime": index < on_time,
                "responseMinutes": response_minutes,
            },
            record_id=f"{contractor_id}-job-{index:03d}",
        )


def seed_short_task(store, task_id, created_at, **fields):
    """Open task in the short-cadence layout at its 15% base."""
    data = {
        "title": f"Task {task_id}",
        "status": "open",
        "createdAt": created_at,
        "urgentFeeEnabled": True,
        "urgentFeePercent": 15,
        "currentUrgentFeePercent": 15,
        "maxUrgentFeePercent": 50,
        "urgentFeeIncreaseCount": 0,
        "urgentFeeIncreaseStartAt": created_at,
    }
    data.update(fields)
    store.create(TASKS_COLLECTION, data, record_id=task_id)
    return task_id


def seed_long_task(store, task_id, created_at, **fields):
    """Open task in the long-cadence layout at its 15% base."""
    data = {
        "title": f"Task {task_id}",
        "status": "open",
        "createdAt": created_at,
        "baseUrgentFeePercent": 15,
        "currentUrgentFeePercent": 15,
        "maxUrgentFeePercent": 50,
        "urgentFeeIncreaseCount": 0,
    }
    data.update(fields)
    store.create(TASKS_COLLECTION, data, record_id=task_id)
    return task_id
