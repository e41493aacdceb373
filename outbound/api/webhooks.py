"""Webhook management API endpoints.

Provides REST API for managing a tenant's webhook subscriptions, sending
test deliveries and receiving signed inbound webhooks.
"""

from typing import Annotated

import structlog
from fastapi import APIRouter, Depends, Header, HTTPException, Request
from pydantic import BaseModel, Field

from outbound.api.dependencies import get_service, get_tenant_id
from outbound.errors import SubscriptionNotFoundError, SubscriptionValidationError
from outbound.service import OutboundService
from outbound.webhooks.inbound import InboundVerification
from outbound.webhooks.registry import WebhookSubscription
from outbound.webhooks.security import SIGNATURE_HEADER

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])

ServiceDep = Annotated[OutboundService, Depends(get_service)]
TenantDep = Annotated[str, Depends(get_tenant_id)]


# ============================================================================
# Request Models
# ============================================================================


class WebhookCreateRequest(BaseModel):
    """Request to create a new webhook."""

    url: str = Field(
        ..., description="Webhook endpoint URL (http or https)"
    )
    name: str = Field(
        default="",
        description="Human-readable name",
    )
    events: list[str] | None = Field(
        default=None,
        description="Event names to subscribe to (null = all, empty = none)",
    )


class WebhookUpdateRequest(BaseModel):
    """Request to update a webhook."""

    url: str | None = Field(
        default=None, description="New URL"
    )
    name: str | None = Field(
        default=None, description="New name"
    )
    events: list[str] | None = Field(
        default=None, description="New event subscriptions"
    )
    is_active: bool | None = Field(
        default=None, description="Enable/disable webhook"
    )


# ============================================================================
# Response Models
# ============================================================================


class WebhookResponse(BaseModel):
    """Webhook details response. The secret is never included."""

    id: str
    name: str
    url: str
    events: list[str]
    is_active: bool
    failure_count: int
    last_triggered_at: str | None
    created_at: str
    updated_at: str

    @classmethod
    def from_subscription(cls, subscription: WebhookSubscription) -> "WebhookResponse":
        """Create response from a WebhookSubscription."""
        return cls(
            id=subscription.id,
            name=subscription.name,
            url=subscription.url,
            events=subscription.events,
            is_active=subscription.is_active,
            failure_count=subscription.failure_count,
            last_triggered_at=(
                subscription.last_triggered_at.isoformat()
                if subscription.last_triggered_at
                else None
            ),
            created_at=subscription.created_at.isoformat(),
            updated_at=subscription.updated_at.isoformat(),
        )


class WebhookCreatedResponse(WebhookResponse):
    """Creation response; the only one that carries the secret."""

    secret: str


class SecretResponse(BaseModel):
    """Response from secret regeneration."""

    secret: str


class TestWebhookResponse(BaseModel):
    """Response from test webhook endpoint."""

    success: bool
    status_code: int | None
    response: str
    error: str | None


def _not_found(e: SubscriptionNotFoundError) -> HTTPException:
    return HTTPException(status_code=404, detail=e.message)


# ============================================================================
# Endpoints
# ============================================================================


@router.post(
    "",
    response_model=WebhookCreatedResponse,
    responses={
        201: {"description": "Webhook created"},
        422: {"description": "Invalid URL or events"},
    },
    status_code=201,
)
async def create_webhook(
    request: WebhookCreateRequest,
    service: ServiceDep,
    tenant_id: TenantDep,
) -> WebhookCreatedResponse:
    """Register a new webhook.

    A secret is generated for HMAC signature verification and returned in
    this response only.
    """
    try:
        registered = await service.register_webhook(
            tenant_id, request.url, request.events, name=request.name
        )
    except SubscriptionValidationError as e:
        raise HTTPException(status_code=422, detail=e.message) from e

    subscription = await service.get_webhook(tenant_id, registered.id)
    return WebhookCreatedResponse(
        **WebhookResponse.from_subscription(subscription).model_dump(),
        secret=registered.secret,
    )


@router.get(
    "",
    response_model=list[WebhookResponse],
)
async def list_webhooks(
    service: ServiceDep,
    tenant_id: TenantDep,
) -> list[WebhookResponse]:
    """List the tenant's webhooks, newest first."""
    subscriptions = await service.list_webhooks(tenant_id)
    return [WebhookResponse.from_subscription(s) for s in subscriptions]


@router.post(
    "/incoming/{webhook_id}",
    responses={
        401: {"description": "Invalid signature"},
        404: {"description": "Webhook not found"},
    },
)
async def receive_webhook(
    webhook_id: str,
    request: Request,
    service: ServiceDep,
    signature: Annotated[str | None, Header(alias=SIGNATURE_HEADER)] = None,
) -> dict[str, bool]:
    """Receive an inbound webhook signed with the subscription's secret.

    The signature is checked against the raw request body.
    """
    body = await request.body()
    result = await service.verify_inbound_request(webhook_id, body, signature)

    if result == InboundVerification.UNKNOWN_SUBSCRIPTION:
        raise HTTPException(status_code=404, detail=f"Webhook {webhook_id} not found")
    if result == InboundVerification.INVALID:
        raise HTTPException(status_code=401, detail="Invalid signature")

    logger.info("webhook_received", webhook_id=webhook_id, body_length=len(body))
    return {"received": True}


@router.get(
    "/{webhook_id}",
    response_model=WebhookResponse,
    responses={
        404: {"description": "Webhook not found"},
    },
)
async def get_webhook(
    webhook_id: str,
    service: ServiceDep,
    tenant_id: TenantDep,
) -> WebhookResponse:
    """Get webhook details by ID."""
    try:
        subscription = await service.get_webhook(tenant_id, webhook_id)
    except SubscriptionNotFoundError as e:
        raise _not_found(e) from e

    return WebhookResponse.from_subscription(subscription)


@router.put(
    "/{webhook_id}",
    response_model=WebhookResponse,
    responses={
        404: {"description": "Webhook not found"},
        422: {"description": "Invalid URL or events"},
    },
)
async def update_webhook(
    webhook_id: str,
    request: WebhookUpdateRequest,
    service: ServiceDep,
    tenant_id: TenantDep,
) -> WebhookResponse:
    """Update a webhook."""
    try:
        updated = await service.update_webhook(
            tenant_id,
            webhook_id,
            name=request.name,
            url=request.url,
            events=request.events,
            is_active=request.is_active,
        )
    except SubscriptionNotFoundError as e:
        raise _not_found(e) from e
    except SubscriptionValidationError as e:
        raise HTTPException(status_code=422, detail=e.message) from e

    return WebhookResponse.from_subscription(updated)


@router.delete(
    "/{webhook_id}",
    responses={
        204: {"description": "Webhook deleted"},
        404: {"description": "Webhook not found"},
    },
    status_code=204,
)
async def delete_webhook(
    webhook_id: str,
    service: ServiceDep,
    tenant_id: TenantDep,
) -> None:
    """Delete a webhook."""
    try:
        await service.delete_webhook(tenant_id, webhook_id)
    except SubscriptionNotFoundError as e:
        raise _not_found(e) from e


@router.post(
    "/{webhook_id}/regenerate-secret",
    response_model=SecretResponse,
    responses={
        404: {"description": "Webhook not found"},
    },
)
async def regenerate_secret(
    webhook_id: str,
    service: ServiceDep,
    tenant_id: TenantDep,
) -> SecretResponse:
    """Replace the webhook's secret. The old secret stops verifying at once."""
    try:
        secret = await service.rotate_webhook_secret(tenant_id, webhook_id)
    except SubscriptionNotFoundError as e:
        raise _not_found(e) from e

    return SecretResponse(secret=secret)


@router.post(
    "/{webhook_id}/test",
    response_model=TestWebhookResponse,
    responses={
        404: {"description": "Webhook not found"},
    },
)
async def test_webhook(
    webhook_id: str,
    service: ServiceDep,
    tenant_id: TenantDep,
) -> TestWebhookResponse:
    """Send a test event to a webhook.

    Waits for the single delivery attempt and reports its outcome.
    """
    try:
        outcome = await service.test_webhook(tenant_id, webhook_id)
    except SubscriptionNotFoundError as e:
        raise _not_found(e) from e

    return TestWebhookResponse(**outcome.to_dict())
