"""Webhook event names and the delivery envelope.

The envelope is serialized once per event to a canonical byte form; those
exact bytes are both signed and sent, so receivers can verify the signature
against the raw request body.
"""

import json
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

# Event pattern matching every event
WILDCARD_EVENT = "*"

# Event name used by the test delivery endpoint
TEST_EVENT = "test"


class WebhookEventType(str, Enum):
    """Event names emitted by the application.

    Subscriptions may name any string; these are the ones the API layer
    currently produces.
    """

    # Dashboard events
    DASHBOARD_CREATED = "dashboard.created"
    DASHBOARD_UPDATED = "dashboard.updated"
    DASHBOARD_DELETED = "dashboard.deleted"

    # Widget events
    WIDGET_CREATED = "widget.created"
    WIDGET_UPDATED = "widget.updated"
    WIDGET_DELETED = "widget.deleted"

    # Analytics events
    ANALYTICS_EVENT = "analytics.event"

    # Membership events
    USER_INVITED = "user.invited"
    USER_JOINED = "user.joined"
    USER_REMOVED = "user.removed"

    # Billing events
    BILLING_INVOICE = "billing.invoice"
    BILLING_PAYMENT = "billing.payment"


def format_timestamp(moment: datetime) -> str:
    """Format a timestamp as ISO-8601 UTC with milliseconds and a Z suffix.

    Example: 2024-01-01T12:00:00.000Z
    """
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=UTC)
    moment = moment.astimezone(UTC)
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def event_name(event: WebhookEventType | str) -> str:
    """Normalize an event to its wire name."""
    if isinstance(event, WebhookEventType):
        return event.value
    return event


class WebhookEnvelope(BaseModel):
    """Body of every outbound webhook delivery."""

    event: str = Field(..., description="Event name")
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        description="When the event was dispatched",
    )
    data: Any = Field(default=None, description="Event-specific payload")

    def to_json_dict(self) -> dict[str, Any]:
        """Convert to a JSON-serializable dictionary in wire key order."""
        return {
            "event": self.event,
            "timestamp": format_timestamp(self.timestamp),
            "data": self.data,
        }

    def to_bytes(self) -> bytes:
        """Serialize to the canonical byte form that is signed and sent.

        Compact separators, insertion key order, UTF-8 without ASCII
        escaping.
        """
        return json.dumps(
            self.to_json_dict(),
            separators=(",", ":"),
            ensure_ascii=False,
            default=str,
        ).encode("utf-8")


def create_envelope(
    event: WebhookEventType | str,
    data: Any,
    *,
    timestamp: datetime | None = None,
) -> WebhookEnvelope:
    """Create a webhook envelope.

    Args:
        event: Event name.
        data: Event payload.
        timestamp: Optional custom timestamp (defaults to now).

    Returns:
        WebhookEnvelope ready for serialization.
    """
    envelope = WebhookEnvelope(event=event_name(event), data=data)
    if timestamp:
        envelope.timestamp = timestamp
    return envelope
