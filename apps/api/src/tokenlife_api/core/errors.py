"""Error kinds shared by the ledger, subscription and scheduling layers."""

from __future__ import annotations

from uuid import UUID


class TokenLifecycleError(RuntimeError):
    """Base exception for subscription and token lifecycle failures."""


class InsufficientBalanceError(TokenLifecycleError):
    """Raised when a debit exceeds the user's available token balance."""

    def __init__(self, user_id: UUID, *, requested: int, available: int) -> None:
        super().__init__(
            f"Insufficient token balance for user {user_id}: requested {requested}, available {available}"
        )
        self.user_id = user_id
        self.requested = requested
        self.available = available


class RecordNotFoundError(TokenLifecycleError):
    """Raised when a user, plan, subscription, invitation or task is missing."""

    def __init__(self, kind: str, identifier: object) -> None:
        super().__init__(f"{kind} not found: {identifier}")
        self.kind = kind
        self.identifier = identifier


class StorageFailureError(TokenLifecycleError):
    """Raised when a flush or commit fails while persisting lifecycle state."""


class HandlerFailureError(TokenLifecycleError):
    """Raised when a scheduled job handler fails during a manual trigger."""

    def __init__(self, job_id: str, message: str) -> None:
        super().__init__(f"Task {job_id} failed: {message}")
        self.job_id = job_id
        self.message = message


class InvalidSubscriptionTransitionError(TokenLifecycleError):
    """Raised when a subscription status change violates the state machine."""

    def __init__(self, current_status: str, requested_status: str) -> None:
        super().__init__(f"Cannot transition subscription from {current_status} to {requested_status}")
        self.current_status = current_status
        self.requested_status = requested_status


class SubscriptionConflictError(TokenLifecycleError):
    """Raised when a grant would give a user a second live subscription."""


class InvitationError(TokenLifecycleError):
    """Raised when an invitation cannot be issued or accepted."""


__all__ = [
    "HandlerFailureError",
    "InsufficientBalanceError",
    "InvalidSubscriptionTransitionError",
    "InvitationError",
    "RecordNotFoundError",
    "StorageFailureError",
    "SubscriptionConflictError",
    "TokenLifecycleError",
]
