"""Outbound delivery for InsightHub.

Queued transactional email and signed, per-tenant webhook fan-out.
"""

from outbound.config import Settings
from outbound.errors import (
    MessageValidationError,
    OutboundError,
    StoreUnavailableError,
    SubscriptionNotFoundError,
    SubscriptionValidationError,
)
from outbound.service import OutboundService

__all__ = [
    "Settings",
    "OutboundService",
    # Errors
    "OutboundError",
    "MessageValidationError",
    "SubscriptionValidationError",
    "SubscriptionNotFoundError",
    "StoreUnavailableError",
]
