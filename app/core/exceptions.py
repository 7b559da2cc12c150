"""
Base exception classes for application-wide error handling.

Exception Hierarchy:
    BaseApplicationError (base)
    ├── ValidationError - Input or invariant violations
    ├── NotFoundError - Record lookup failures
    ├── ConflictError - Concurrent modification, illegal state changes
    └── ExternalServiceError - Provider / gateway failures

Usage:
    from core.exceptions import NotFoundError

    raise NotFoundError(
        "Notification not found",
        error_code="NOTIFICATION_NOT_FOUND",
        details={"notification_id": str(notification_id)},
    )

    try:
        ...
    except BaseApplicationError as e:
        return Response(e.to_dict(), status=409)
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from typing import Any


class BaseApplicationError(Exception):
    """
    Base exception for all application-specific errors.

    Attributes:
        message: Human-readable error description
        error_code: Machine-readable code for client-side handling
        details: Additional error context
    """

    default_error_code: str = "APPLICATION_ERROR"

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        self.message = message
        self.error_code = error_code or self.default_error_code
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        """
        Convert exception to dictionary for API response.

        Example:
            {
                "error": "Delivery was modified concurrently",
                "error_code": "STALE_DELIVERY",
                "details": {"pk": "..."}
            }
        """
        result: dict[str, Any] = {
            "error": self.message,
            "error_code": self.error_code,
        }
        if self.details:
            result["details"] = self.details
        return result

    def __str__(self) -> str:
        return f"[{self.error_code}] {self.message}"

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}("
            f"message={self.message!r}, "
            f"error_code={self.error_code!r}, "
            f"details={self.details!r})"
        )


class ValidationError(BaseApplicationError):
    """Raised when input or a model invariant is violated."""

    default_error_code: str = "VALIDATION_ERROR"


class NotFoundError(BaseApplicationError):
    """
    Raised when a requested record does not exist.

    Example:
        raise NotFoundError(
            f"NotificationDelivery {pk} not found",
            error_code="NOTIFICATIONDELIVERY_NOT_FOUND",
        )
    """

    default_error_code: str = "NOT_FOUND"


class ConflictError(BaseApplicationError):
    """
    Raised when an operation conflicts with the current state of a record.

    Use for:
    - Optimistic locking failures (version mismatch)
    - State machine transitions that are not allowed
    - Duplicate keys
    """

    default_error_code: str = "CONFLICT"


class ExternalServiceError(BaseApplicationError):
    """
    Raised when a third-party service call fails.

    Use for:
    - SMTP relay errors
    - Push / SMS gateway errors
    - Chat webhook endpoints returning errors or timing out
    """

    default_error_code: str = "EXTERNAL_SERVICE_ERROR"
