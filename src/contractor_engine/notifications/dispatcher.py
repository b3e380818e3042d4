"""Best-effort fan-out of one message to many recipients.

Every (recipient, token) pair is delivered on its own worker with bounded
retries, so one recipient's slow retries never hold up another. Results are
settled and reported together; dispatch itself never raises for delivery
problems.
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from contractor_engine.constants import (
    DEFAULT_NOTIFICATION_POLICY,
    NOTIFICATION_LOGS_COLLECTION,
    USERS_COLLECTION,
)
from contractor_engine.exceptions import (
    DeliveryError,
    InvalidTokenError,
    StorageError,
    TransientDeliveryError,
)
from contractor_engine.logging_config import get_structured_logger, mask_token
from contractor_engine.models import DeliveryOutcome, NotificationEvent
from contractor_engine.notifications.push import PushTransport
from contractor_engine.notifications.templates import NotificationMessage
from contractor_engine.storage.record_store import RecordStore

logger = logging.getLogger(__name__)

TOKEN_LIST_FIELD = "notificationTokens"
LEGACY_TOKEN_FIELD = "fcmToken"


@dataclass(frozen=True)
class Recipient:
    """A record that holds delivery tokens."""

    id: str
    collection: str = USERS_COLLECTION


@dataclass
class DeliveryResult:
    recipient_id: str
    token: str
    outcome: DeliveryOutcome
    attempts: int
    error: Optional[str] = None
    pruned: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "recipientId": self.recipient_id,
            "token": mask_token(self.token),
            "outcome": self.outcome.value,
            "attempts": self.attempts,
            "error": self.error,
            "pruned": self.pruned,
        }


@dataclass
class DispatchReport:
    """Settled outcome of one dispatch call."""

    category: str
    status: str
    results: List[DeliveryResult] = field(default_factory=list)
    recipients_without_tokens: List[str] = field(default_factory=list)

    @property
    def delivered_recipients(self) -> List[str]:
        return sorted(
            {r.recipient_id for r in self.results if r.outcome == DeliveryOutcome.SUCCESS}
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "category": self.category,
            "status": self.status,
            "deliveredRecipients": self.delivered_recipients,
            "recipientsWithoutTokens": self.recipients_without_tokens,
            "results": [r.to_dict() for r in self.results],
        }


def extract_tokens(data: Mapping[str, Any]) -> List[Tuple[str, str]]:
    """(token, field) pairs from a record, legacy single-token field included."""
    pairs: List[Tuple[str, str]] = []
    seen = set()
    for token in data.get(TOKEN_LIST_FIELD) or []:
        if isinstance(token, str) and token and token not in seen:
            seen.add(token)
            pairs.append((token, TOKEN_LIST_FIELD))
    legacy = data.get(LEGACY_TOKEN_FIELD)
    if isinstance(legacy, str) and legacy and legacy not in seen:
        pairs.append((legacy, LEGACY_TOKEN_FIELD))
    return pairs


class NotificationDispatcher:
    """Deliver messages through a PushTransport with retry and token pruning."""

    def __init__(
        self,
        store: RecordStore,
        transport: PushTransport,
        policy: Optional[Mapping[str, Any]] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        policy = {**DEFAULT_NOTIFICATION_POLICY, **(policy or {})}
        self.store = store
        self.transport = transport
        self.max_attempts = int(policy["maxAttempts"])
        self.backoff_multiplier = float(policy["backoffMultiplierSeconds"])
        self.backoff_max = float(policy["backoffMaxSeconds"])
        self.max_workers = int(policy["maxWorkers"])
        self.sleep = sleep
        self.slogger = get_structured_logger(__name__)

    # ------------------------------------------------------------------ #
    # Public API
    # ------------------------------------------------------------------ #

    def dispatch(
        self, message: NotificationMessage, recipients: Sequence[Recipient]
    ) -> DispatchReport:
        """
        Deliver ``message`` to every token of every recipient.

        Returns a report whose status is ``success`` when every recipient got
        at least one delivery, ``partial`` when some did, ``failed`` when none
        did and ``no_targets`` when no recipient had a token.
        """
        category = getattr(message.category, "value", message.category)
        targets: List[Tuple[Recipient, str, str]] = []
        without_tokens: List[str] = []

        for recipient in dict.fromkeys(recipients):
            tokens = self._resolve_tokens(recipient)
            if not tokens:
                without_tokens.append(recipient.id)
                continue
            targets.extend((recipient, token, token_field) for token, token_field in tokens)

        if not targets:
            logger.info("No delivery targets for %s notification", category)
            return DispatchReport(
                category=category, status="no_targets", recipients_without_tokens=without_tokens
            )

        workers = max(1, min(self.max_workers, len(targets)))
        with ThreadPoolExecutor(max_workers=workers) as executor:
            futures = [
                (recipient, token, executor.submit(self._deliver, message, recipient, token, token_field))
                for recipient, token, token_field in targets
            ]
            results = []
            for recipient, token, future in futures:
                try:
                    results.append(future.result())
                except Exception as exc:
                    logger.error(
                        "Delivery to %s crashed: %s", recipient.id, exc, exc_info=True
                    )
                    results.append(
                        DeliveryResult(recipient.id, token, DeliveryOutcome.FAILURE, 0, str(exc))
                    )

        delivered = {r.recipient_id for r in results if r.outcome == DeliveryOutcome.SUCCESS}
        attempted = {recipient.id for recipient, _, _ in targets} | set(without_tokens)
        if delivered == attempted:
            status = "success"
        elif delivered:
            status = "partial"
        else:
            status = "failed"

        return DispatchReport(
            category=category,
            status=status,
            results=results,
            recipients_without_tokens=without_tokens,
        )

    # ------------------------------------------------------------------ #
    # Internals
    # ------------------------------------------------------------------ #

    def _resolve_tokens(self, recipient: Recipient) -> List[Tuple[str, str]]:
        try:
            record = self.store.get(recipient.collection, recipient.id)
        except StorageError as exc:
            logger.warning("Could not load recipient %s: %s", recipient.id, exc)
            return []
        if record is None:
            logger.debug("Recipient %s/%s not found", recipient.collection, recipient.id)
            return []
        return extract_tokens(record.data)

    def _deliver(
        self,
        message: NotificationMessage,
        recipient: Recipient,
        token: str,
        token_field: str,
    ) -> DeliveryResult:
        attempts = 0

        def attempt() -> str:
            nonlocal attempts
            attempts += 1
            try:
                message_id = self.transport.deliver(token, message.title, message.body, message.data)
            except TransientDeliveryError as exc:
                outcome = (
                    DeliveryOutcome.RETRY_EXHAUSTED
                    if attempts >= self.max_attempts
                    else DeliveryOutcome.FAILURE
                )
                self._record_attempt(message, recipient.id, token, attempts, outcome, str(exc))
                raise
            except InvalidTokenError as exc:
                self._record_attempt(
                    message, recipient.id, token, attempts, DeliveryOutcome.INVALID_TOKEN, str(exc)
                )
                raise
            except DeliveryError as exc:
                self._record_attempt(
                    message, recipient.id, token, attempts, DeliveryOutcome.FAILURE, str(exc)
                )
                raise
            self._record_attempt(message, recipient.id, token, attempts, DeliveryOutcome.SUCCESS)
            return message_id

        retrying = Retrying(
            retry=retry_if_exception_type(TransientDeliveryError),
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.backoff_multiplier, max=self.backoff_max),
            sleep=self.sleep,
            reraise=True,
        )

        try:
            retrying(attempt)
        except TransientDeliveryError as exc:
            return DeliveryResult(
                recipient.id, token, DeliveryOutcome.RETRY_EXHAUSTED, attempts, str(exc)
            )
        except InvalidTokenError as exc:
            pruned = self._prune_token(recipient, token, token_field)
            return DeliveryResult(
                recipient.id, token, DeliveryOutcome.INVALID_TOKEN, attempts, str(exc), pruned
            )
        except DeliveryError as exc:
            return DeliveryResult(recipient.id, token, DeliveryOutcome.FAILURE, attempts, str(exc))

        return DeliveryResult(recipient.id, token, DeliveryOutcome.SUCCESS, attempts)

    def _prune_token(self, recipient: Recipient, token: str, token_field: str) -> bool:
        """Drop a dead token; never raises, and a vanished recipient is fine."""
        try:
            removed = self.store.array_remove(recipient.collection, recipient.id, token_field, [token])
        except StorageError as exc:
            logger.warning("Failed to prune token for %s: %s", recipient.id, exc)
            return False
        if not removed:
            logger.info("Recipient %s gone before its dead token could be pruned", recipient.id)
        return removed

    def _record_attempt(
        self,
        message: NotificationMessage,
        recipient_id: str,
        token: str,
        attempt: int,
        outcome: DeliveryOutcome,
        error: Optional[str] = None,
    ) -> None:
        event = NotificationEvent(
            recipient_id=recipient_id,
            category=message.category,
            title=message.title,
            body=message.body,
            data=message.data,
            token=mask_token(token),
            attempt=attempt,
            outcome=outcome,
            error=error,
        )
        self.slogger.notification_delivery(
            recipient_id,
            event.category,
            event.outcome,
            {"attempt": attempt, "token": event.token, "error": error},
        )
        try:
            self.store.create(NOTIFICATION_LOGS_COLLECTION, event.to_record())
        except StorageError as exc:
            logger.warning("Failed to write notification log for %s: %s", recipient_id, exc)
