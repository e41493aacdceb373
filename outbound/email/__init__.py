"""Queued outbound email.

This module provides:
- OutboundMessage: Queued message and its pending/sent/failed state machine
- EmailQueueStore: Persisted queue with claim-based selection
- EmailDispatcher: Periodic worker that drains the queue
- SMTP and HTTP relay senders
- Notification templates
"""

from outbound.email.dispatcher import EmailDispatcher, TickResult
from outbound.email.models import MessageStatus, OutboundMessage, new_message
from outbound.email.notifications import (
    DigestItem,
    RenderedEmail,
    alert_recipients,
    render_alert,
    render_digest,
    render_notification,
    render_welcome,
)
from outbound.email.senders import EmailSender, HttpRelayEmailSender, SmtpEmailSender
from outbound.email.store import (
    EmailQueueStore,
    InMemoryEmailQueueStore,
    SQLiteEmailQueueStore,
)

__all__ = [
    # Models
    "MessageStatus",
    "OutboundMessage",
    "new_message",
    # Store
    "EmailQueueStore",
    "InMemoryEmailQueueStore",
    "SQLiteEmailQueueStore",
    # Senders
    "EmailSender",
    "HttpRelayEmailSender",
    "SmtpEmailSender",
    # Dispatcher
    "EmailDispatcher",
    "TickResult",
    # Templates
    "DigestItem",
    "RenderedEmail",
    "alert_recipients",
    "render_alert",
    "render_digest",
    "render_notification",
    "render_welcome",
]
