"""HTTP API for the outbound delivery service.

This module provides:
- create_app(): FastAPI application factory
- Webhook management and inbound webhook routes
- Email queue routes
"""

from outbound.api.app import ErrorResponse, create_app

__all__ = [
    "ErrorResponse",
    "create_app",
]
