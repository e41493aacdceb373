"""Inbound webhook verification.

Checks that a request claiming to come from one of our subscriptions was
signed with that subscription's secret over the exact raw body.
"""

from enum import Enum

import structlog

from outbound.webhooks.registry import WebhookRegistry
from outbound.webhooks.security import verify

logger = structlog.get_logger(__name__)


class InboundVerification(str, Enum):
    """Result of verifying an inbound webhook request."""

    VALID = "valid"
    INVALID = "invalid"
    UNKNOWN_SUBSCRIPTION = "unknown_subscription"


def verify_inbound_signature(
    body: bytes,
    signature_header: str | None,
    secret: str,
) -> bool:
    """Verify the signature header of an inbound request.

    A missing or empty header is treated as an invalid signature.

    Args:
        body: Raw request body, as received.
        signature_header: Value of the X-Webhook-Signature header.
        secret: Shared secret of the subscription.

    Returns:
        True if the signature matches the body.
    """
    return verify(body, signature_header, secret)


class InboundWebhookVerifier:
    """Verifies inbound requests against secrets stored in the registry."""

    def __init__(self, registry: WebhookRegistry) -> None:
        self._registry = registry
        self._logger = logger.bind(component="inbound_verifier")

    async def verify(
        self,
        subscription_id: str,
        body: bytes,
        signature_header: str | None,
    ) -> InboundVerification:
        """Verify a request addressed to a subscription.

        Args:
            subscription_id: Subscription the request claims to belong to.
            body: Raw request body.
            signature_header: Value of the X-Webhook-Signature header.

        Returns:
            Verification result.
        """
        subscription = await self._registry.get(subscription_id)
        if subscription is None:
            self._logger.warning(
                "inbound_webhook_unknown",
                subscription_id=subscription_id,
            )
            return InboundVerification.UNKNOWN_SUBSCRIPTION

        if not verify_inbound_signature(body, signature_header, subscription.secret):
            self._logger.warning(
                "inbound_webhook_rejected",
                subscription_id=subscription_id,
                signature_present=bool(signature_header),
            )
            return InboundVerification.INVALID

        self._logger.info("inbound_webhook_verified", subscription_id=subscription_id)
        return InboundVerification.VALID
