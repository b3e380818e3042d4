"""Custom exceptions for the contractor grade engine.

This module defines domain-specific exceptions that provide clearer error
handling and better context than generic Python exceptions.
"""

from typing import Optional


class ContractorEngineError(Exception):
    """Base exception for all contractor engine errors.

    All custom exceptions in this module inherit from this base class,
    making it easy to catch all engine-specific errors.
    """

    pass


class ConfigurationError(ContractorEngineError):
    """Raised when there's an error in configuration.

    Examples:
    - Classifier weights that do not sum to 1.0
    - Tier table not ordered from highest to lowest
    - Missing credentials for the Firestore backend
    - Unknown store backend or cadence name
    """

    pass


class InitializationError(ContractorEngineError):
    """Raised when a component fails to initialize properly.

    Examples:
    - Policy document present but missing required keys
    - Policy document holding invalid JSON
    - Firebase app could not be created
    """

    pass


class StorageError(ContractorEngineError):
    """Raised when storage operations fail.

    Examples:
    - Database not reachable
    - Failed to save record
    - Failed to query collection
    """

    pass


class RecordNotFoundError(StorageError):
    """Raised when a record looked up by id does not exist.

    Attributes:
        collection: Collection that was searched
        record_id: The missing record id
    """

    def __init__(self, collection: str, record_id: str, message: Optional[str] = None):
        self.collection = collection
        self.record_id = record_id
        super().__init__(message or f"{collection}/{record_id} not found")


class ContractorNotFoundError(RecordNotFoundError):
    """Raised when a grade recomputation targets an unknown contractor."""

    def __init__(self, contractor_id: str):
        super().__init__("contractors", contractor_id, f"Contractor '{contractor_id}' not found")


class TaskNotFoundError(RecordNotFoundError):
    """Raised when a surcharge operation targets an unknown task."""

    def __init__(self, task_id: str):
        super().__init__("tasks", task_id, f"Task '{task_id}' not found")


class WriteConflictError(StorageError):
    """Raised when a conditional write loses an optimistic-concurrency race.

    The caller that receives this must not re-apply its decision; the record
    changed after it was read and the decision is stale.

    Examples:
    - Record version moved on between read and write
    - Task left the open state before the surcharge update landed
    """

    pass


class InvalidStateTransition(ContractorEngineError):
    """Raised when an entity attempts an invalid state transition."""

    pass


class DeliveryError(ContractorEngineError):
    """Raised when push delivery fails.

    Attributes:
        token: The delivery token the failure applies to
    """

    def __init__(self, message: str, token: Optional[str] = None):
        self.token = token
        super().__init__(message)


class TransientDeliveryError(DeliveryError):
    """Raised for delivery failures worth retrying.

    Examples:
    - Transport unavailable or timed out
    - Quota exceeded
    - Internal error from the push service
    """

    pass


class InvalidTokenError(DeliveryError):
    """Raised when the transport confirms a token will never succeed again.

    When caught by the dispatcher, the token is pruned from the recipient
    record and no further attempts are made.
    """

    pass


class AuthorizationError(ContractorEngineError):
    """Raised when an actor lacks the role an admin operation requires.

    Attributes:
        actor_id: The rejected actor
        operation: Name of the operation that was refused
    """

    def __init__(self, actor_id: Optional[str], operation: str):
        self.actor_id = actor_id
        self.operation = operation
        super().__init__(f"Actor '{actor_id}' is not authorized to {operation}")
