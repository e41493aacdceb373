"""Delivery outcome produced by a single transport attempt."""

from dataclasses import dataclass
from typing import Any

# Response bodies are truncated to this many bytes
DEFAULT_RESPONSE_EXCERPT_BYTES = 500


@dataclass(frozen=True)
class DeliveryOutcome:
    """Result of one outbound delivery attempt.

    Transient: consumed by the caller and discarded, never persisted.

    Attributes:
        success: True when the receiver answered with a 2xx or 3xx status.
        status_code: HTTP status code, absent on transport-level errors.
        response_excerpt: Leading bytes of the response body, decoded.
        error: Error message when the attempt did not succeed.
    """

    success: bool
    status_code: int | None = None
    response_excerpt: str = ""
    error: str | None = None

    @property
    def transport_failed(self) -> bool:
        """True when no HTTP response was received at all."""
        return self.status_code is None and not self.success

    @classmethod
    def from_status(cls, status_code: int, excerpt: str = "") -> "DeliveryOutcome":
        """Build an outcome from a received HTTP status."""
        success = 200 <= status_code < 400
        return cls(
            success=success,
            status_code=status_code,
            response_excerpt=excerpt,
            error=None if success else f"HTTP {status_code}",
        )

    @classmethod
    def from_error(cls, error: str) -> "DeliveryOutcome":
        """Build an outcome for a connection, DNS, TLS or timeout failure."""
        return cls(success=False, error=error)

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-serializable dictionary."""
        return {
            "success": self.success,
            "status_code": self.status_code,
            "response": self.response_excerpt,
            "error": self.error,
        }
