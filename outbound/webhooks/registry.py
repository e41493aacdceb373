"""Webhook subscription registry.

Provides storage and management of per-tenant webhook subscriptions:
registration, secret rotation, activation toggles and post-delivery
failure bookkeeping.
"""

from __future__ import annotations

import json
import uuid
from abc import ABC, abstractmethod
from collections.abc import Iterable
from datetime import datetime
from pathlib import Path
from typing import Any

import aiosqlite
import httpx
import structlog
from pydantic import BaseModel, Field

from outbound.errors import SubscriptionValidationError
from outbound.storage import (
    SQLiteBackend,
    from_db_timestamp,
    store_errors,
    to_db_timestamp,
    utc_now,
)
from outbound.webhooks.events import WILDCARD_EVENT, WebhookEventType, event_name
from outbound.webhooks.security import generate_secret

logger = structlog.get_logger(__name__)


class WebhookSubscription(BaseModel):
    """A tenant's registered webhook endpoint."""

    id: str = Field(
        default_factory=lambda: f"wh_{uuid.uuid4().hex[:12]}",
        description="Unique subscription identifier",
    )
    tenant_id: str = Field(
        ..., description="Owning tenant"
    )
    name: str = Field(
        default="",
        description="Human-readable name",
    )
    url: str = Field(
        ..., description="Destination URL"
    )
    secret: str = Field(
        default_factory=generate_secret,
        description="Shared secret for HMAC signatures",
    )
    events: list[str] = Field(
        default_factory=lambda: [WILDCARD_EVENT],
        description="Subscribed event patterns ('*' matches all)",
    )
    is_active: bool = Field(
        default=True,
        description="Whether deliveries are made",
    )
    failure_count: int = Field(
        default=0,
        ge=0,
        description="Transport-level delivery failures",
    )
    last_triggered_at: datetime | None = Field(
        default=None,
        description="Last delivery attempt",
    )
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    def matches_event(self, event: str) -> bool:
        """Check if this subscription should receive an event.

        Args:
            event: Event name.

        Returns:
            True if events contains the name or the wildcard.
        """
        return WILDCARD_EVENT in self.events or event in self.events


class RegisteredWebhook(BaseModel):
    """Result of a registration: the only time the secret is handed out."""

    id: str
    secret: str


def validate_url(url: str) -> str:
    """Check that a destination URL is absolute http(s) with a host.

    Raises:
        SubscriptionValidationError: If the URL is unusable.
    """
    try:
        parsed = httpx.URL(url)
    except (httpx.InvalidURL, TypeError) as e:
        raise SubscriptionValidationError(
            f"Invalid webhook URL: {e}", field="url"
        ) from e

    if parsed.scheme not in ("http", "https") or not parsed.host:
        raise SubscriptionValidationError(
            "Webhook URL must be an absolute http or https URL",
            field="url",
            details={"scheme": parsed.scheme},
        )
    return url


def normalize_events(events: Iterable[WebhookEventType | str] | None) -> list[str]:
    """Validate event patterns, dropping duplicates.

    None means all events. An empty list is kept as is and matches nothing.

    Raises:
        SubscriptionValidationError: If a pattern is not a non-empty string.
    """
    if events is None:
        return [WILDCARD_EVENT]

    normalized: list[str] = []
    for event in events:
        if not isinstance(event, str) or not event_name(event).strip():
            raise SubscriptionValidationError(
                "Event patterns must be non-empty strings",
                field="events",
                details={"event": repr(event)},
            )
        name = event_name(event).strip()
        if name not in normalized:
            normalized.append(name)
    return normalized


class WebhookRegistry(ABC):
    """Persisted set of webhook subscriptions.

    All mutations are scoped to a single subscription row.
    """

    async def initialize(self) -> None:
        """Prepare the backing store."""

    async def close(self) -> None:
        """Release the backing store."""

    async def register(
        self,
        tenant_id: str,
        url: str,
        events: Iterable[WebhookEventType | str] | None = None,
        *,
        name: str = "",
    ) -> WebhookSubscription:
        """Register a new subscription with a freshly generated secret.

        Args:
            tenant_id: Owning tenant.
            url: Destination URL.
            events: Event patterns (None = all events).
            name: Human-readable name.

        Returns:
            Created subscription.

        Raises:
            SubscriptionValidationError: If url or events are invalid.
        """
        if not tenant_id:
            raise SubscriptionValidationError("Tenant is required", field="tenant_id")

        subscription = WebhookSubscription(
            tenant_id=tenant_id,
            name=name,
            url=validate_url(url),
            events=normalize_events(events),
        )
        await self._insert(subscription)

        logger.info(
            "webhook_registered",
            subscription_id=subscription.id,
            tenant_id=tenant_id,
            url=subscription.url,
            event_count=len(subscription.events),
        )
        return subscription

    async def get_for_tenant(
        self, tenant_id: str, subscription_id: str
    ) -> WebhookSubscription | None:
        """Get a subscription only if it belongs to the tenant."""
        subscription = await self.get(subscription_id)
        if subscription is None or subscription.tenant_id != tenant_id:
            return None
        return subscription

    async def update(
        self,
        subscription_id: str,
        *,
        name: str | None = None,
        url: str | None = None,
        events: Iterable[WebhookEventType | str] | None = None,
        is_active: bool | None = None,
    ) -> WebhookSubscription | None:
        """Update mutable fields of a subscription.

        Returns:
            Updated subscription if found, None otherwise.
        """
        changes: dict[str, Any] = {}
        if name is not None:
            changes["name"] = name
        if url is not None:
            changes["url"] = validate_url(url)
        if events is not None:
            changes["events"] = normalize_events(events)
        if is_active is not None:
            changes["is_active"] = is_active
        changes["updated_at"] = utc_now()

        updated = await self._apply_update(subscription_id, changes)
        if updated:
            logger.info(
                "webhook_updated",
                subscription_id=subscription_id,
                fields=sorted(k for k in changes if k != "updated_at"),
            )
        return updated

    async def rotate_secret(self, subscription_id: str) -> str | None:
        """Replace the secret of a subscription.

        Returns:
            The new secret, or None if the subscription does not exist.
        """
        secret = generate_secret()
        updated = await self._apply_update(
            subscription_id, {"secret": secret, "updated_at": utc_now()}
        )
        if updated is None:
            return None

        logger.info("webhook_secret_rotated", subscription_id=subscription_id)
        return secret

    @abstractmethod
    async def _insert(self, subscription: WebhookSubscription) -> None:
        """Persist a new subscription."""

    @abstractmethod
    async def _apply_update(
        self, subscription_id: str, changes: dict[str, Any]
    ) -> WebhookSubscription | None:
        """Apply already-validated field changes to one row."""

    @abstractmethod
    async def get(self, subscription_id: str) -> WebhookSubscription | None:
        """Get a subscription by ID."""

    @abstractmethod
    async def list_for_tenant(self, tenant_id: str) -> list[WebhookSubscription]:
        """List a tenant's subscriptions, newest first."""

    @abstractmethod
    async def find_matching(
        self, tenant_id: str, event: str
    ) -> list[WebhookSubscription]:
        """Active subscriptions of the tenant whose events contain event or '*'."""

    @abstractmethod
    async def record_delivery(
        self,
        subscription_id: str,
        *,
        transport_failed: bool,
        at: datetime | None = None,
    ) -> None:
        """Stamp last_triggered_at and count a transport-level failure."""

    @abstractmethod
    async def delete(self, subscription_id: str) -> bool:
        """Delete a subscription. Returns True if it existed."""


class InMemoryWebhookRegistry(WebhookRegistry):
    """Process-local registry, used in tests and single-process setups.

    Returned subscriptions are copies, so callers observe changes only by
    reading again, as with the SQL registry.
    """

    def __init__(self) -> None:
        self._subscriptions: dict[str, WebhookSubscription] = {}

    async def _insert(self, subscription: WebhookSubscription) -> None:
        self._subscriptions[subscription.id] = subscription.model_copy(deep=True)

    async def _apply_update(
        self, subscription_id: str, changes: dict[str, Any]
    ) -> WebhookSubscription | None:
        subscription = self._subscriptions.get(subscription_id)
        if subscription is None:
            return None
        for field_name, value in changes.items():
            setattr(subscription, field_name, value)
        return subscription.model_copy(deep=True)

    async def get(self, subscription_id: str) -> WebhookSubscription | None:
        subscription = self._subscriptions.get(subscription_id)
        return subscription.model_copy(deep=True) if subscription else None

    async def list_for_tenant(self, tenant_id: str) -> list[WebhookSubscription]:
        subscriptions = [
            s.model_copy(deep=True)
            for s in self._subscriptions.values()
            if s.tenant_id == tenant_id
        ]
        subscriptions.sort(key=lambda s: s.created_at, reverse=True)
        return subscriptions

    async def find_matching(
        self, tenant_id: str, event: str
    ) -> list[WebhookSubscription]:
        return [
            s.model_copy(deep=True)
            for s in self._subscriptions.values()
            if s.tenant_id == tenant_id and s.is_active and s.matches_event(event)
        ]

    async def record_delivery(
        self,
        subscription_id: str,
        *,
        transport_failed: bool,
        at: datetime | None = None,
    ) -> None:
        subscription = self._subscriptions.get(subscription_id)
        if subscription is None:
            return
        subscription.last_triggered_at = at or utc_now()
        if transport_failed:
            subscription.failure_count += 1

    async def delete(self, subscription_id: str) -> bool:
        if subscription_id in self._subscriptions:
            del self._subscriptions[subscription_id]
            logger.info("webhook_deleted", subscription_id=subscription_id)
            return True
        return False


class SQLiteWebhookRegistry(SQLiteBackend, WebhookRegistry):
    """SQLite-based webhook registry.

    Events are stored as a JSON array and matched with json_each so the
    tenant/event filter runs in the database.

    Example:
        registry = SQLiteWebhookRegistry("data/outbound.db")
        await registry.initialize()
        subscription = await registry.register("org-1", url, ["dashboard.created"])
    """

    SCHEMA = (
        """
        CREATE TABLE IF NOT EXISTS webhook_subscriptions (
            id TEXT PRIMARY KEY,
            tenant_id TEXT NOT NULL,
            name TEXT NOT NULL DEFAULT '',
            url TEXT NOT NULL,
            secret TEXT NOT NULL,
            events TEXT NOT NULL DEFAULT '["*"]',
            is_active INTEGER NOT NULL DEFAULT 1,
            failure_count INTEGER NOT NULL DEFAULT 0,
            last_triggered_at TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """,
        """
        CREATE INDEX IF NOT EXISTS idx_webhook_subscriptions_tenant
        ON webhook_subscriptions(tenant_id, is_active)
        """,
    )

    # Columns _apply_update may write
    _UPDATABLE = frozenset({"name", "url", "events", "is_active", "secret", "updated_at"})

    def __init__(self, db_path: str | Path | None = None) -> None:
        super().__init__(db_path, component="webhook_registry")

    async def _insert(self, subscription: WebhookSubscription) -> None:
        with store_errors("register_webhook"):
            await self.connection.execute(
                """
                INSERT INTO webhook_subscriptions
                (id, tenant_id, name, url, secret, events, is_active,
                 failure_count, last_triggered_at, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    subscription.id,
                    subscription.tenant_id,
                    subscription.name,
                    subscription.url,
                    subscription.secret,
                    json.dumps(subscription.events),
                    int(subscription.is_active),
                    subscription.failure_count,
                    to_db_timestamp(subscription.last_triggered_at),
                    to_db_timestamp(subscription.created_at),
                    to_db_timestamp(subscription.updated_at),
                ),
            )
            await self.connection.commit()

    async def _apply_update(
        self, subscription_id: str, changes: dict[str, Any]
    ) -> WebhookSubscription | None:
        assignments: list[str] = []
        params: list[Any] = []
        for field_name, value in changes.items():
            if field_name not in self._UPDATABLE:
                raise ValueError(f"Field {field_name} cannot be updated")
            assignments.append(f"{field_name} = ?")
            if field_name == "events":
                params.append(json.dumps(value))
            elif field_name == "is_active":
                params.append(int(value))
            elif field_name == "updated_at":
                params.append(to_db_timestamp(value))
            else:
                params.append(value)
        params.append(subscription_id)

        with store_errors("update_webhook"):
            cursor = await self.connection.execute(
                f"UPDATE webhook_subscriptions SET {', '.join(assignments)} WHERE id = ?",
                params,
            )
            await self.connection.commit()

        if cursor.rowcount == 0:
            return None
        return await self.get(subscription_id)

    async def get(self, subscription_id: str) -> WebhookSubscription | None:
        with store_errors("get_webhook"):
            cursor = await self.connection.execute(
                "SELECT * FROM webhook_subscriptions WHERE id = ?",
                (subscription_id,),
            )
            row = await cursor.fetchone()

        if row is None:
            return None
        return self._row_to_subscription(row)

    async def list_for_tenant(self, tenant_id: str) -> list[WebhookSubscription]:
        with store_errors("list_webhooks"):
            cursor = await self.connection.execute(
                """
                SELECT * FROM webhook_subscriptions
                WHERE tenant_id = ?
                ORDER BY created_at DESC
                """,
                (tenant_id,),
            )
            rows = await cursor.fetchall()

        return [self._row_to_subscription(row) for row in rows]

    async def find_matching(
        self, tenant_id: str, event: str
    ) -> list[WebhookSubscription]:
        with store_errors("find_matching_webhooks"):
            cursor = await self.connection.execute(
                """
                SELECT * FROM webhook_subscriptions
                WHERE tenant_id = ?
                  AND is_active = 1
                  AND EXISTS (
                      SELECT 1 FROM json_each(webhook_subscriptions.events)
                      WHERE json_each.value IN (?, ?)
                  )
                """,
                (tenant_id, event, WILDCARD_EVENT),
            )
            rows = await cursor.fetchall()

        return [self._row_to_subscription(row) for row in rows]

    async def record_delivery(
        self,
        subscription_id: str,
        *,
        transport_failed: bool,
        at: datetime | None = None,
    ) -> None:
        with store_errors("record_webhook_delivery"):
            await self.connection.execute(
                """
                UPDATE webhook_subscriptions
                SET last_triggered_at = ?,
                    failure_count = failure_count + ?
                WHERE id = ?
                """,
                (to_db_timestamp(at or utc_now()), int(transport_failed), subscription_id),
            )
            await self.connection.commit()

    async def delete(self, subscription_id: str) -> bool:
        with store_errors("delete_webhook"):
            cursor = await self.connection.execute(
                "DELETE FROM webhook_subscriptions WHERE id = ?",
                (subscription_id,),
            )
            await self.connection.commit()

        deleted = cursor.rowcount > 0
        if deleted:
            self._logger.info("webhook_deleted", subscription_id=subscription_id)
        return deleted

    @staticmethod
    def _row_to_subscription(row: aiosqlite.Row) -> WebhookSubscription:
        return WebhookSubscription(
            id=row["id"],
            tenant_id=row["tenant_id"],
            name=row["name"],
            url=row["url"],
            secret=row["secret"],
            events=json.loads(row["events"]),
            is_active=bool(row["is_active"]),
            failure_count=row["failure_count"],
            last_triggered_at=from_db_timestamp(row["last_triggered_at"]),
            created_at=from_db_timestamp(row["created_at"]),
            updated_at=from_db_timestamp(row["updated_at"]),
        )
