"""Push delivery transports.

A transport delivers one message to one device token and classifies every
failure as transient (worth retrying) or permanent for that token.
"""

import logging
from typing import Any, Dict, Optional, Protocol

from firebase_admin import exceptions as firebase_exceptions
from firebase_admin import messaging

from contractor_engine.exceptions import DeliveryError, InvalidTokenError, TransientDeliveryError

logger = logging.getLogger(__name__)


class PushTransport(Protocol):
    def deliver(self, token: str, title: str, body: str, data: Dict[str, str]) -> str:
        """
        Send one message and return the transport's message id.

        Raises:
            TransientDeliveryError: Retry later
            InvalidTokenError: The token will never succeed again
            DeliveryError: Permanent failure unrelated to the token
        """
        ...


class FirebasePushTransport:
    """Deliver through Firebase Cloud Messaging on an explicit app."""

    def __init__(self, app: Optional[Any] = None, dry_run: bool = False):
        self.app = app
        self.dry_run = dry_run

    def deliver(self, token: str, title: str, body: str, data: Dict[str, str]) -> str:
        message = messaging.Message(
            token=token,
            notification=messaging.Notification(title=title, body=body),
            data={key: str(value) for key, value in (data or {}).items()},
        )
        try:
            return messaging.send(message, dry_run=self.dry_run, app=self.app)
        except (messaging.UnregisteredError, messaging.SenderIdMismatchError) as e:
            raise InvalidTokenError(str(e), token=token) from e
        except firebase_exceptions.InvalidArgumentError as e:
            if "registration token" in str(e).lower():
                raise InvalidTokenError(str(e), token=token) from e
            raise DeliveryError(f"Message rejected: {e}", token=token) from e
        except firebase_exceptions.FirebaseError as e:
            raise TransientDeliveryError(str(e), token=token) from e
