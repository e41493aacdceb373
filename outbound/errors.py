"""Error taxonomy for the outbound delivery subsystem.

Exception Hierarchy:
    OutboundError (base)
    ├── MessageValidationError - Email rejected at enqueue time
    ├── SubscriptionValidationError - Malformed webhook subscription
    ├── SubscriptionNotFoundError - Unknown or foreign subscription
    └── StoreUnavailableError - Queue store or registry backend failure

Transport errors are not exceptions here: the transport reports them as a
failed DeliveryOutcome so callers can count or retry them per item.
"""

from typing import Any


class OutboundError(Exception):
    """Base exception for all outbound delivery errors.

    Attributes:
        message: Human-readable error message.
        details: Additional error details.
        recoverable: Whether retrying the operation may succeed.
    """

    def __init__(
        self,
        message: str,
        *,
        details: dict[str, Any] | None = None,
        recoverable: bool = True,
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


class MessageValidationError(OutboundError):
    """An email could not be enqueued because it is malformed.

    Attributes:
        field: Name of the offending field.
    """

    def __init__(
        self,
        message: str,
        *,
        field: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, details=details, recoverable=False)
        self.field = field

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        base = super().to_dict()
        base["field"] = self.field
        return base


class SubscriptionValidationError(OutboundError):
    """A webhook subscription has an invalid URL or event list."""

    def __init__(
        self,
        message: str,
        *,
        field: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, details=details, recoverable=False)
        self.field = field

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        base = super().to_dict()
        base["field"] = self.field
        return base


class SubscriptionNotFoundError(OutboundError):
    """No subscription with the given id exists for the tenant."""

    def __init__(self, subscription_id: str, *, tenant_id: str | None = None) -> None:
        super().__init__(
            f"Webhook {subscription_id} not found",
            details={"subscription_id": subscription_id, "tenant_id": tenant_id},
            recoverable=False,
        )
        self.subscription_id = subscription_id
        self.tenant_id = tenant_id


class StoreUnavailableError(OutboundError):
    """The backing data store could not be reached or rejected an operation.

    Attributes:
        operation: Store operation that failed.
    """

    def __init__(
        self,
        message: str,
        *,
        operation: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, details=details, recoverable=True)
        self.operation = operation

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        base = super().to_dict()
        base["operation"] = self.operation
        return base
