"""Outbound webhooks for tenant integrations.

This module provides:
- WebhookEventType: Event names emitted by the application
- WebhookRegistry: Per-tenant subscription storage (in-memory and SQLite)
- WebhookDispatcher: Signed fan-out of events to matching subscriptions
- InboundWebhookVerifier: Signature checks for inbound requests
- HMAC signing and verification helpers
"""

from outbound.webhooks.dispatcher import DeliveryFailure, WebhookDispatcher
from outbound.webhooks.events import (
    TEST_EVENT,
    WILDCARD_EVENT,
    WebhookEnvelope,
    WebhookEventType,
    create_envelope,
)
from outbound.webhooks.inbound import (
    InboundVerification,
    InboundWebhookVerifier,
    verify_inbound_signature,
)
from outbound.webhooks.registry import (
    InMemoryWebhookRegistry,
    RegisteredWebhook,
    SQLiteWebhookRegistry,
    WebhookRegistry,
    WebhookSubscription,
)
from outbound.webhooks.security import (
    SIGNATURE_HEADER,
    SUBSCRIPTION_ID_HEADER,
    generate_secret,
    sign,
    verify,
)

__all__ = [
    # Events
    "TEST_EVENT",
    "WILDCARD_EVENT",
    "WebhookEnvelope",
    "WebhookEventType",
    "create_envelope",
    # Registry
    "InMemoryWebhookRegistry",
    "RegisteredWebhook",
    "SQLiteWebhookRegistry",
    "WebhookRegistry",
    "WebhookSubscription",
    # Dispatcher
    "DeliveryFailure",
    "WebhookDispatcher",
    # Inbound
    "InboundVerification",
    "InboundWebhookVerifier",
    "verify_inbound_signature",
    # Security
    "SIGNATURE_HEADER",
    "SUBSCRIPTION_ID_HEADER",
    "generate_secret",
    "sign",
    "verify",
]
