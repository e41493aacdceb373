"""Outbound delivery service.

Wires the email queue, the email dispatcher, the webhook registry and the
webhook fan-out dispatcher together behind one object. The application
constructs a single OutboundService at startup and passes it to whatever
needs to send mail or emit events.

Example:
    service = OutboundService.from_settings(Settings.from_env())
    await service.start()
    await service.enqueue_email("ada@example.com", "Hello", "<p>Hi</p>")
    await service.trigger_webhooks("org-1", "dashboard.created", {"id": "d1"})
    await service.stop()
"""

from collections.abc import Iterable, Sequence
from datetime import datetime
from typing import Any

import structlog

from outbound.config import Settings
from outbound.email.dispatcher import EmailDispatcher
from outbound.email.models import OutboundMessage, new_message
from outbound.email.notifications import (
    DigestItem,
    alert_recipients,
    render_alert,
    render_digest,
    render_notification,
    render_welcome,
)
from outbound.email.senders import EmailSender, HttpRelayEmailSender, SmtpEmailSender
from outbound.email.store import EmailQueueStore, SQLiteEmailQueueStore
from outbound.errors import SubscriptionNotFoundError
from outbound.transport import DeliveryOutcome, HttpTransport
from outbound.webhooks.dispatcher import WebhookDispatcher
from outbound.webhooks.events import WebhookEventType, event_name
from outbound.webhooks.inbound import (
    InboundVerification,
    InboundWebhookVerifier,
    verify_inbound_signature,
)
from outbound.webhooks.registry import (
    RegisteredWebhook,
    SQLiteWebhookRegistry,
    WebhookRegistry,
    WebhookSubscription,
)

logger = structlog.get_logger(__name__)


def build_email_sender(settings: Settings, transport: HttpTransport) -> EmailSender:
    """Create the email sender selected by EMAIL_BACKEND.

    Raises:
        ValueError: If the backend is unknown or the relay URL is missing.
    """
    if settings.EMAIL_BACKEND == "smtp":
        return SmtpEmailSender(
            host=settings.SMTP_HOST,
            port=settings.SMTP_PORT,
            from_address=settings.EMAIL_FROM,
            username=settings.SMTP_USER,
            password=settings.SMTP_PASS,
            start_tls=settings.SMTP_USE_TLS,
            timeout=settings.EMAIL_SEND_TIMEOUT_SECONDS,
        )

    if settings.EMAIL_BACKEND == "http":
        if not settings.EMAIL_RELAY_URL:
            raise ValueError("EMAIL_RELAY_URL is required for the http email backend")
        return HttpRelayEmailSender(
            transport,
            relay_url=settings.EMAIL_RELAY_URL,
            from_address=settings.EMAIL_FROM,
            api_key=settings.EMAIL_RELAY_API_KEY,
            timeout=settings.EMAIL_SEND_TIMEOUT_SECONDS,
        )

    raise ValueError(f"Unknown EMAIL_BACKEND: {settings.EMAIL_BACKEND}")


class OutboundService:
    """Facade over outbound email and webhook delivery."""

    def __init__(
        self,
        *,
        email_store: EmailQueueStore,
        registry: WebhookRegistry,
        email_sender: EmailSender,
        transport: HttpTransport,
        settings: Settings | None = None,
    ) -> None:
        """Initialize the service.

        Args:
            email_store: Email queue store.
            registry: Webhook subscription registry.
            email_sender: Sender used by the email dispatcher.
            transport: HTTP transport for webhook deliveries.
            settings: Tunables; defaults are used when omitted.
        """
        self._settings = settings or Settings()
        self._email_store = email_store
        self._registry = registry
        self._transport = transport

        self._email_dispatcher = EmailDispatcher(
            email_store,
            email_sender,
            interval_seconds=self._settings.EMAIL_POLL_INTERVAL_SECONDS,
            batch_size=self._settings.EMAIL_BATCH_SIZE,
            max_attempts=self._settings.EMAIL_MAX_ATTEMPTS,
            lease_seconds=self._settings.EMAIL_CLAIM_LEASE_SECONDS,
            concurrency=self._settings.EMAIL_SEND_CONCURRENCY,
            send_timeout=self._settings.EMAIL_SEND_TIMEOUT_SECONDS,
        )
        self._webhook_dispatcher = WebhookDispatcher(
            registry,
            transport,
            delivery_timeout=self._settings.WEBHOOK_TIMEOUT_SECONDS,
            max_concurrent_deliveries=self._settings.WEBHOOK_MAX_CONCURRENT,
            user_agent=self._settings.WEBHOOK_USER_AGENT,
        )
        self._inbound_verifier = InboundWebhookVerifier(registry)
        self._logger = logger.bind(component="outbound_service")

    @classmethod
    def from_settings(cls, settings: Settings) -> "OutboundService":
        """Build a service backed by SQLite at settings.DATABASE_PATH."""
        transport = HttpTransport(
            default_timeout=settings.WEBHOOK_TIMEOUT_SECONDS,
            max_response_bytes=settings.RESPONSE_EXCERPT_BYTES,
        )
        return cls(
            email_store=SQLiteEmailQueueStore(settings.DATABASE_PATH),
            registry=SQLiteWebhookRegistry(settings.DATABASE_PATH),
            email_sender=build_email_sender(settings, transport),
            transport=transport,
            settings=settings,
        )

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def email_store(self) -> EmailQueueStore:
        return self._email_store

    @property
    def registry(self) -> WebhookRegistry:
        return self._registry

    @property
    def email_dispatcher(self) -> EmailDispatcher:
        return self._email_dispatcher

    @property
    def webhook_dispatcher(self) -> WebhookDispatcher:
        return self._webhook_dispatcher

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def initialize(self) -> None:
        """Open the stores without starting the email worker."""
        await self._email_store.initialize()
        await self._registry.initialize()

    async def start(self) -> None:
        """Open the stores and start the periodic email dispatcher."""
        await self.initialize()
        self._email_dispatcher.start()
        self._logger.info("outbound_service_started")

    async def stop(self) -> None:
        """Stop the email worker, drain webhook deliveries, release resources."""
        await self._email_dispatcher.stop()
        await self._webhook_dispatcher.shutdown()
        await self._transport.aclose()
        await self._email_store.close()
        await self._registry.close()
        self._logger.info("outbound_service_stopped")

    # =========================================================================
    # Email
    # =========================================================================

    async def enqueue_email(
        self,
        recipient: str,
        subject: str,
        body: str,
        scheduled_for: datetime | None = None,
    ) -> str:
        """Queue an email for the dispatcher.

        Returns:
            ID of the queued message.

        Raises:
            MessageValidationError: If recipient or subject is unusable.
            StoreUnavailableError: If the queue cannot be written.
        """
        message = new_message(recipient, subject, body, scheduled_for)
        await self._email_store.enqueue(message)
        self._logger.info(
            "email_queued",
            message_id=message.id,
            scheduled_for=message.scheduled_for.isoformat(),
        )
        return message.id

    async def get_email(self, message_id: str) -> OutboundMessage | None:
        """Look up a queued message by ID."""
        return await self._email_store.get(message_id)

    async def send_notification_email(
        self, recipient: str, subject: str, message: str
    ) -> str:
        """Queue a plain notification email."""
        rendered = render_notification(subject, message)
        return await self.enqueue_email(recipient, rendered.subject, rendered.body)

    async def send_welcome_email(
        self, recipient: str, user_name: str, organization_name: str
    ) -> str:
        """Queue the welcome email for a new organization member."""
        rendered = render_welcome(user_name, organization_name, self._settings.FRONTEND_URL)
        return await self.enqueue_email(recipient, rendered.subject, rendered.body)

    async def send_digest_email(
        self,
        recipient: str,
        organization_name: str,
        items: Sequence[DigestItem],
    ) -> str | None:
        """Queue a notification digest.

        Returns:
            Message ID, or None when there were no items to report.
        """
        rendered = render_digest(organization_name, items, self._settings.FRONTEND_URL)
        if rendered is None:
            return None
        return await self.enqueue_email(recipient, rendered.subject, rendered.body)

    async def send_alert_email(
        self,
        admins: Iterable[dict[str, Any]],
        alert_type: str,
        details: Any,
    ) -> list[str]:
        """Queue one alert email per active owner or admin.

        Args:
            admins: User records with "email", "role" and "is_active" keys.
            alert_type: Short alert name used in the subject.
            details: JSON-serializable alert details.

        Returns:
            IDs of the queued messages.
        """
        rendered = render_alert(alert_type, details)
        return [
            await self.enqueue_email(recipient, rendered.subject, rendered.body)
            for recipient in alert_recipients(admins)
        ]

    # =========================================================================
    # Webhooks
    # =========================================================================

    async def register_webhook(
        self,
        tenant_id: str,
        url: str,
        events: Iterable[WebhookEventType | str] | None = None,
        *,
        name: str = "",
    ) -> RegisteredWebhook:
        """Register a webhook; the secret is returned only here.

        Raises:
            SubscriptionValidationError: If url or events are invalid.
        """
        subscription = await self._registry.register(tenant_id, url, events, name=name)
        return RegisteredWebhook(id=subscription.id, secret=subscription.secret)

    async def list_webhooks(self, tenant_id: str) -> list[WebhookSubscription]:
        return await self._registry.list_for_tenant(tenant_id)

    async def get_webhook(self, tenant_id: str, subscription_id: str) -> WebhookSubscription:
        """Get a tenant's subscription.

        Raises:
            SubscriptionNotFoundError: If it does not exist for the tenant.
        """
        subscription = await self._registry.get_for_tenant(tenant_id, subscription_id)
        if subscription is None:
            raise SubscriptionNotFoundError(subscription_id, tenant_id=tenant_id)
        return subscription

    async def update_webhook(
        self,
        tenant_id: str,
        subscription_id: str,
        *,
        name: str | None = None,
        url: str | None = None,
        events: Iterable[WebhookEventType | str] | None = None,
        is_active: bool | None = None,
    ) -> WebhookSubscription:
        """Update a tenant's subscription.

        Raises:
            SubscriptionNotFoundError: If it does not exist for the tenant.
            SubscriptionValidationError: If url or events are invalid.
        """
        await self.get_webhook(tenant_id, subscription_id)
        updated = await self._registry.update(
            subscription_id, name=name, url=url, events=events, is_active=is_active
        )
        if updated is None:
            raise SubscriptionNotFoundError(subscription_id, tenant_id=tenant_id)
        return updated

    async def delete_webhook(self, tenant_id: str, subscription_id: str) -> None:
        """Delete a tenant's subscription.

        Raises:
            SubscriptionNotFoundError: If it does not exist for the tenant.
        """
        await self.get_webhook(tenant_id, subscription_id)
        await self._registry.delete(subscription_id)

    async def rotate_webhook_secret(self, tenant_id: str, subscription_id: str) -> str:
        """Replace a subscription's secret and return the new one.

        Raises:
            SubscriptionNotFoundError: If it does not exist for the tenant.
        """
        await self.get_webhook(tenant_id, subscription_id)
        secret = await self._registry.rotate_secret(subscription_id)
        if secret is None:
            raise SubscriptionNotFoundError(subscription_id, tenant_id=tenant_id)
        return secret

    async def test_webhook(self, tenant_id: str, subscription_id: str) -> DeliveryOutcome:
        """Deliver a test event to one subscription and wait for it.

        Raises:
            SubscriptionNotFoundError: If it does not exist for the tenant.
        """
        outcome = await self._webhook_dispatcher.send_test_event(tenant_id, subscription_id)
        if outcome is None:
            raise SubscriptionNotFoundError(subscription_id, tenant_id=tenant_id)
        return outcome

    async def trigger_webhooks(
        self,
        tenant_id: str,
        event: WebhookEventType | str,
        payload: Any,
    ) -> None:
        """Fan an event out to the tenant's subscriptions.

        Returns as soon as deliveries are started and never raises, so the
        request that produced the event is not affected by its webhooks.
        """
        try:
            await self._webhook_dispatcher.dispatch(tenant_id, event, payload)
        except Exception as e:
            self._logger.error(
                "webhook_trigger_failed",
                tenant_id=tenant_id,
                event_type=event_name(event),
                error_type=e.__class__.__name__,
                error=str(e),
            )

    # =========================================================================
    # Inbound
    # =========================================================================

    @staticmethod
    def verify_inbound_signature(
        body: bytes, signature_header: str | None, secret: str
    ) -> bool:
        """Verify an inbound signature header against a known secret."""
        return verify_inbound_signature(body, signature_header, secret)

    async def verify_inbound_request(
        self,
        subscription_id: str,
        body: bytes,
        signature_header: str | None,
    ) -> InboundVerification:
        """Verify an inbound request using the subscription's stored secret."""
        return await self._inbound_verifier.verify(subscription_id, body, signature_header)
