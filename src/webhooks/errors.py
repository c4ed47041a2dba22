"""Exception hierarchy for webhook delivery.

Exception Hierarchy:
    WebhookError (base)
    ├── ValidationError - Bad input to the registry or publisher
    ├── NotFoundError - Unknown, foreign-tenant or soft-deleted record
    ├── InvalidStateError - Operation not allowed in the record's current state
    ├── TransientDeliveryError - A single delivery attempt failed
    └── DeliveryLogError - A delivery log entry could not be written
"""

from typing import Any


class WebhookError(Exception):
    """Base exception for all webhook errors.

    Attributes:
        message: Human-readable error message.
        details: Additional error details.
        recoverable: Whether the caller can reasonably retry.
    """

    def __init__(
        self,
        message: str,
        *,
        details: dict[str, Any] | None = None,
        recoverable: bool = False,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.recoverable = recoverable

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for logging/API responses."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "details": self.details,
            "recoverable": self.recoverable,
        }


class ValidationError(WebhookError):
    """Input failed validation.

    Attributes:
        field: Name of the offending field, if known.
    """

    def __init__(
        self,
        message: str,
        *,
        field: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, details=details, recoverable=False)
        self.field = field

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        base = super().to_dict()
        base["field"] = self.field
        return base


class NotFoundError(WebhookError):
    """A record does not exist for the given tenant.

    Attributes:
        resource: Kind of record ("subscription", "delivery", "event").
        resource_id: Identifier that was looked up.
    """

    def __init__(self, resource: str, resource_id: str) -> None:
        super().__init__(
            f"{resource.capitalize()} {resource_id} not found",
            details={"resource": resource, "resource_id": resource_id},
        )
        self.resource = resource
        self.resource_id = resource_id


class InvalidStateError(WebhookError):
    """Operation is not allowed in the record's current state."""


class TransientDeliveryError(WebhookError):
    """A delivery attempt failed and should go through the retry schedule.

    Non-2xx responses, timeouts and network failures all map here; there is
    no permanent failure class.

    Attributes:
        code: Error code stored on the delivery (HTTP_500, TIMEOUT, NETWORK_ERROR).
        status_code: HTTP status if a response was received.
        response_headers: Response headers if a response was received.
        response_body: Truncated response body if a response was received.
        response_time_ms: Time spent before the failure.
    """

    def __init__(
        self,
        message: str,
        *,
        code: str,
        status_code: int | None = None,
        response_headers: dict[str, str] | None = None,
        response_body: str | None = None,
        response_time_ms: int | None = None,
    ) -> None:
        super().__init__(message, details={"code": code}, recoverable=True)
        self.code = code
        self.status_code = status_code
        self.response_headers = response_headers
        self.response_body = response_body
        self.response_time_ms = response_time_ms

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        base = super().to_dict()
        base.update({"code": self.code, "status_code": self.status_code})
        return base


class DeliveryLogError(WebhookError):
    """A delivery log entry could not be persisted."""
