"""Outbound HTTP transport.

This module provides:
- DeliveryOutcome: Structured result of one delivery attempt
- HttpTransport: Single-attempt HTTP POST with bounded response read
"""

from outbound.transport.http import DEFAULT_TIMEOUT_SECONDS, HttpTransport
from outbound.transport.models import DEFAULT_RESPONSE_EXCERPT_BYTES, DeliveryOutcome

__all__ = [
    "DEFAULT_RESPONSE_EXCERPT_BYTES",
    "DEFAULT_TIMEOUT_SECONDS",
    "DeliveryOutcome",
    "HttpTransport",
]
