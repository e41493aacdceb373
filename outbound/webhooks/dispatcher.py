"""Webhook fan-out dispatcher.

Delivers one event to every matching subscription of a tenant. Each
subscription is an independent task: a slow or failing endpoint never
delays or fails the others, and the caller only waits for the tasks to be
started.
"""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import structlog

from outbound.storage import utc_now
from outbound.transport import DEFAULT_TIMEOUT_SECONDS, DeliveryOutcome, HttpTransport
from outbound.webhooks.events import (
    TEST_EVENT,
    WebhookEnvelope,
    WebhookEventType,
    create_envelope,
    event_name,
)
from outbound.webhooks.registry import WebhookRegistry, WebhookSubscription
from outbound.webhooks.security import create_signature_headers

logger = structlog.get_logger(__name__)

DEFAULT_USER_AGENT = "InsightHub-Webhook/1.0"
DEFAULT_MAX_CONCURRENT_DELIVERIES = 10


@dataclass(frozen=True)
class DeliveryFailure:
    """A failed delivery, reported to failure listeners (e.g. an audit log).

    Attributes:
        tenant_id: Owning tenant.
        subscription_id: Target subscription.
        event: Event name.
        outcome: Transport outcome of the attempt.
        occurred_at: When the attempt finished.
    """

    tenant_id: str
    subscription_id: str
    event: str
    outcome: DeliveryOutcome
    occurred_at: datetime = field(default_factory=utc_now)


# Type for failure listeners
FailureListener = Callable[[DeliveryFailure], Awaitable[None] | None]


class WebhookDispatcher:
    """Dispatches events to tenant webhook subscriptions.

    Features:
    - One signed POST per matching subscription, no retries
    - Fan-out bounded per call by a semaphore
    - Failure counter bookkeeping on transport-level errors
    - Failure listeners for external audit logging
    """

    def __init__(
        self,
        registry: WebhookRegistry,
        transport: HttpTransport,
        *,
        delivery_timeout: float = DEFAULT_TIMEOUT_SECONDS,
        max_concurrent_deliveries: int = DEFAULT_MAX_CONCURRENT_DELIVERIES,
        user_agent: str = DEFAULT_USER_AGENT,
    ) -> None:
        """Initialize the dispatcher.

        Args:
            registry: Webhook subscription registry.
            transport: HTTP transport for delivery attempts.
            delivery_timeout: Timeout per delivery in seconds.
            max_concurrent_deliveries: In-flight deliveries per dispatch call.
            user_agent: User-Agent header value.
        """
        if max_concurrent_deliveries < 1:
            raise ValueError("max_concurrent_deliveries must be positive")

        self._registry = registry
        self._transport = transport
        self._delivery_timeout = delivery_timeout
        self._max_concurrent = max_concurrent_deliveries
        self._user_agent = user_agent
        self._failure_listeners: list[FailureListener] = []
        self._background_tasks: set[asyncio.Task[DeliveryOutcome]] = set()
        self._logger = logger.bind(component="webhook_dispatcher")

    @property
    def pending_deliveries(self) -> int:
        """Number of deliveries still in flight."""
        return len(self._background_tasks)

    def add_failure_listener(self, listener: FailureListener) -> None:
        """Add a listener called for every failed delivery.

        Args:
            listener: Async or sync function receiving a DeliveryFailure.
        """
        self._failure_listeners.append(listener)

    def remove_failure_listener(self, listener: FailureListener) -> None:
        """Remove a failure listener.

        Args:
            listener: Listener to remove.
        """
        if listener in self._failure_listeners:
            self._failure_listeners.remove(listener)

    async def dispatch(
        self,
        tenant_id: str,
        event: WebhookEventType | str,
        payload: Any,
        *,
        wait: bool = False,
    ) -> list[WebhookSubscription]:
        """Dispatch an event to the tenant's matching subscriptions.

        Args:
            tenant_id: Tenant whose subscriptions receive the event.
            event: Event name.
            payload: JSON-serializable event data.
            wait: If True, wait for all deliveries to complete.

        Returns:
            Subscriptions a delivery was started for. Empty when none match
            or the registry is unreachable; never raises for either.
        """
        name = event_name(event)

        try:
            subscriptions = await self._registry.find_matching(tenant_id, name)
        except Exception as e:
            self._logger.error(
                "webhook_fanout_aborted",
                tenant_id=tenant_id,
                event_type=name,
                error_type=e.__class__.__name__,
                error=str(e),
            )
            return []

        if not subscriptions:
            self._logger.debug(
                "no_webhooks_subscribed",
                tenant_id=tenant_id,
                event_type=name,
            )
            return []

        # One body for all subscribers; each signs it with its own secret
        envelope = create_envelope(name, payload)
        body = envelope.to_bytes()
        semaphore = asyncio.Semaphore(self._max_concurrent)

        tasks: list[asyncio.Task[DeliveryOutcome]] = []
        for subscription in subscriptions:
            task = asyncio.create_task(
                self._deliver(subscription, envelope, body, semaphore)
            )
            tasks.append(task)
            self._background_tasks.add(task)
            task.add_done_callback(self._background_tasks.discard)

        self._logger.info(
            "event_dispatched",
            tenant_id=tenant_id,
            event_type=name,
            subscription_count=len(subscriptions),
        )

        if wait:
            await asyncio.gather(*tasks, return_exceptions=True)

        return subscriptions

    async def _deliver(
        self,
        subscription: WebhookSubscription,
        envelope: WebhookEnvelope,
        body: bytes,
        semaphore: asyncio.Semaphore | None = None,
    ) -> DeliveryOutcome:
        """Make one delivery attempt and do the bookkeeping.

        Args:
            subscription: Target subscription.
            envelope: Event envelope (for logging and listeners).
            body: Canonical serialized envelope.
            semaphore: Optional fan-out limit.

        Returns:
            Outcome of the attempt.
        """
        headers = {
            "Content-Type": "application/json",
            "User-Agent": self._user_agent,
            **create_signature_headers(body, subscription.secret, subscription.id),
        }

        if semaphore is None:
            outcome = await self._attempt(subscription, headers, body)
        else:
            async with semaphore:
                outcome = await self._attempt(subscription, headers, body)

        if outcome.success:
            self._logger.info(
                "delivery_success",
                subscription_id=subscription.id,
                event_type=envelope.event,
                status_code=outcome.status_code,
            )
        else:
            self._logger.warning(
                "delivery_failed",
                subscription_id=subscription.id,
                event_type=envelope.event,
                status_code=outcome.status_code,
                error=outcome.error,
            )

        # Only transport-level errors count against the subscription
        try:
            await self._registry.record_delivery(
                subscription.id,
                transport_failed=outcome.transport_failed,
            )
        except Exception as e:
            self._logger.error(
                "delivery_bookkeeping_failed",
                subscription_id=subscription.id,
                error=str(e),
            )

        if not outcome.success:
            await self._notify_failure(
                DeliveryFailure(
                    tenant_id=subscription.tenant_id,
                    subscription_id=subscription.id,
                    event=envelope.event,
                    outcome=outcome,
                )
            )

        return outcome

    async def _attempt(
        self,
        subscription: WebhookSubscription,
        headers: dict[str, str],
        body: bytes,
    ) -> DeliveryOutcome:
        try:
            return await self._transport.deliver(
                subscription.url,
                headers=headers,
                body=body,
                timeout=self._delivery_timeout,
            )
        except Exception as e:
            self._logger.warning(
                "delivery_unexpected_error",
                subscription_id=subscription.id,
                error=str(e),
            )
            return DeliveryOutcome.from_error(str(e) or e.__class__.__name__)

    async def _notify_failure(self, failure: DeliveryFailure) -> None:
        """Notify failure listeners; their errors are logged and ignored."""
        for listener in self._failure_listeners:
            try:
                result = listener(failure)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                self._logger.warning(
                    "failure_listener_error",
                    subscription_id=failure.subscription_id,
                    error=str(e),
                )

    async def send_test_event(
        self,
        tenant_id: str,
        subscription_id: str,
    ) -> DeliveryOutcome | None:
        """Send a test event to one subscription and wait for the outcome.

        Inactive subscriptions are tested too.

        Args:
            tenant_id: Tenant that owns the subscription.
            subscription_id: Subscription to test.

        Returns:
            Outcome if the subscription exists for the tenant, None otherwise.
        """
        subscription = await self._registry.get_for_tenant(tenant_id, subscription_id)
        if subscription is None:
            return None

        envelope = create_envelope(
            TEST_EVENT,
            {"message": "This is a test webhook delivery"},
        )
        outcome = await self._deliver(subscription, envelope, envelope.to_bytes())

        self._logger.info(
            "webhook_tested",
            subscription_id=subscription_id,
            success=outcome.success,
        )
        return outcome

    async def shutdown(self) -> None:
        """Wait for deliveries still in flight."""
        if self._background_tasks:
            self._logger.info(
                "waiting_for_pending_deliveries",
                count=len(self._background_tasks),
            )
            await asyncio.gather(*self._background_tasks, return_exceptions=True)
