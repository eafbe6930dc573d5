"""Translate lifecycle errors into HTTP responses."""

from __future__ import annotations

from fastapi import HTTPException, status

from tokenlife_api.core.errors import (
    HandlerFailureError,
    InsufficientBalanceError,
    InvalidSubscriptionTransitionError,
    InvitationError,
    RecordNotFoundError,
    StorageFailureError,
    SubscriptionConflictError,
    TokenLifecycleError,
)

_STATUS_BY_ERROR: tuple[tuple[type[TokenLifecycleError], int], ...] = (
    (RecordNotFoundError, status.HTTP_404_NOT_FOUND),
    (InsufficientBalanceError, status.HTTP_409_CONFLICT),
    (SubscriptionConflictError, status.HTTP_409_CONFLICT),
    (InvalidSubscriptionTransitionError, status.HTTP_400_BAD_REQUEST),
    (InvitationError, status.HTTP_400_BAD_REQUEST),
    (HandlerFailureError, status.HTTP_500_INTERNAL_SERVER_ERROR),
    (StorageFailureError, status.HTTP_503_SERVICE_UNAVAILABLE),
)


def http_error_from(exc: TokenLifecycleError) -> HTTPException:
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return HTTPException(status_code=status_code, detail=str(exc))
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc))
