"""Webhook security utilities.

Provides HMAC-SHA256 signature generation and verification over the exact
bytes of a webhook body, keyed with the per-subscription secret.
"""

import hashlib
import hmac
import secrets

import structlog

logger = structlog.get_logger(__name__)

# Header names on the wire
SIGNATURE_HEADER = "X-Webhook-Signature"
SUBSCRIPTION_ID_HEADER = "X-Webhook-ID"

# Bytes of randomness in a generated secret (hex encoded: 64 chars)
SECRET_NUM_BYTES = 32


def _to_bytes(value: bytes | str) -> bytes:
    if isinstance(value, bytes):
        return value
    return value.encode("utf-8")


def generate_secret() -> str:
    """Generate a new subscription secret.

    Returns:
        64-character hex string.
    """
    return secrets.token_hex(SECRET_NUM_BYTES)


def sign(payload: bytes | str, secret: bytes | str) -> str:
    """Compute the HMAC-SHA256 signature of a payload.

    Args:
        payload: Exact serialized body (str is encoded as UTF-8).
        secret: Subscription secret.

    Returns:
        Lowercase hex digest.
    """
    return hmac.new(_to_bytes(secret), _to_bytes(payload), hashlib.sha256).hexdigest()


def verify(
    payload: bytes | str,
    signature: str | bytes | None,
    secret: bytes | str,
) -> bool:
    """Verify an HMAC-SHA256 signature in constant time.

    The comparison runs over bytes with hmac.compare_digest, so its duration
    does not depend on how many leading characters match. The claimed
    signature is compared as given: no case folding or trimming.

    Args:
        payload: Exact body the signature claims to cover.
        signature: Claimed hex signature.
        secret: Subscription secret.

    Returns:
        True if the signature is valid, False otherwise.
    """
    if not signature:
        return False

    expected = sign(payload, secret).encode("ascii")
    is_valid = hmac.compare_digest(expected, _to_bytes(signature))

    if not is_valid:
        logger.warning("webhook_signature_invalid", payload_length=len(_to_bytes(payload)))
    else:
        logger.debug("webhook_signature_verified")

    return is_valid


def create_signature_headers(
    body: bytes,
    secret: str,
    subscription_id: str,
) -> dict[str, str]:
    """Create the signature and identification headers for a delivery.

    Args:
        body: Exact JSON body bytes that will be sent.
        secret: Subscription secret.
        subscription_id: Subscription identifier.

    Returns:
        Dictionary of headers to include in the request.
    """
    return {
        SIGNATURE_HEADER: sign(body, secret),
        SUBSCRIPTION_ID_HEADER: subscription_id,
    }
