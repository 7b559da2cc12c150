"""
Notification-specific exceptions.

Exception Hierarchy:
    NotificationError (base for notification domain)
    └── NotificationImmutableError - Attempt to edit a stored notification

    StaleDeliveryError - Optimistic locking conflict (inherits ConflictError)
    InvalidDeliveryTransitionError - FSM transition not allowed (inherits ConflictError)
    TransportError - Channel transport failure (inherits ExternalServiceError)

Usage:
    from notifications.exceptions import TransportError

    raise TransportError(
        "SMTP relay refused recipient",
        code="invalid_recipient",
        is_permanent=True,
    )
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from core.exceptions import (
    BaseApplicationError,
    ConflictError,
    ExternalServiceError,
)

if TYPE_CHECKING:
    from typing import Any


# Error classification for retry logic
PERMANENT_ERRORS = {
    "unregistered",
    "invalid_token",
    "invalid_email",
    "invalid_recipient",
    "hard_bounce",
    "no_address",
    "rejected",
    "complaint",
}
TRANSIENT_ERRORS = {
    "rate_limited",
    "timeout",
    "provider_unavailable",
    "connection_error",
    "lease_expired",
    "transport_error",
    "not_configured",
}


class NotificationError(BaseApplicationError):
    """Base exception for notification domain errors."""

    default_error_code = "NOTIFICATION_ERROR"


class NotificationImmutableError(NotificationError):
    """Raised when stored notification content is modified in place."""

    default_error_code = "NOTIFICATION_IMMUTABLE"


class StaleDeliveryError(ConflictError):
    """
    Raised when a delivery row was modified by another process.

    The version the caller read no longer matches the row, so the
    caller's write is discarded. Reload and decide again.

    Attributes:
        details: Contains pk and expected_version
    """

    default_error_code = "STALE_DELIVERY"


class InvalidDeliveryTransitionError(ConflictError):
    """Raised when a delivery status change is not allowed by the state machine."""

    default_error_code = "INVALID_TRANSITION"


class TransportError(ExternalServiceError):
    """
    Raised by a channel transport when a send attempt fails.

    Attributes:
        code: Provider-neutral failure code (see PERMANENT_ERRORS / TRANSIENT_ERRORS)
        is_permanent: True if retrying cannot help (invalid address, hard bounce)
    """

    default_error_code = "TRANSPORT_ERROR"

    def __init__(
        self,
        message: str,
        code: str = "transport_error",
        is_permanent: bool | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, details=details)
        self.code = code
        if is_permanent is None:
            is_permanent = code in PERMANENT_ERRORS
        self.is_permanent = is_permanent
