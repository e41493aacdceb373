"""Outbound email message model and its delivery state machine.

    pending --(send success)--> sent                      [terminal]
    pending --(failure, attempts + 1 < max)--> pending    (retried next tick)
    pending --(failure, attempts + 1 >= max)--> failed    [terminal]
"""

import uuid
from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field

from outbound.errors import MessageValidationError
from outbound.storage import ensure_utc, utc_now

# Send attempts before a message is given up on
DEFAULT_MAX_ATTEMPTS = 3

# Stored error messages are truncated to this length
MAX_ERROR_LENGTH = 1000


class MessageStatus(str, Enum):
    """Delivery status of a queued message."""

    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


class OutboundMessage(BaseModel):
    """A queued transactional or notification email."""

    id: str = Field(
        default_factory=lambda: f"msg_{uuid.uuid4().hex}",
        description="Unique message identifier",
    )
    recipient: str = Field(
        ..., description="Destination address"
    )
    subject: str = Field(
        ..., description="Subject line"
    )
    body: str = Field(
        default="",
        description="Rendered HTML body",
    )
    status: MessageStatus = Field(
        default=MessageStatus.PENDING,
        description="Current delivery status",
    )
    attempts: int = Field(
        default=0,
        ge=0,
        description="Failed send attempts so far",
    )
    last_error: str | None = Field(
        default=None,
        description="Error from the most recent failed attempt",
    )
    scheduled_for: datetime = Field(
        default_factory=utc_now,
        description="Earliest time the message may be sent",
    )
    sent_at: datetime | None = Field(
        default=None,
        description="When the message was sent",
    )
    created_at: datetime = Field(default_factory=utc_now)

    @property
    def is_terminal(self) -> bool:
        """True once the message will not be attempted again."""
        return self.status != MessageStatus.PENDING

    def is_due(self, now: datetime, max_attempts: int = DEFAULT_MAX_ATTEMPTS) -> bool:
        """Check whether the dispatcher may select this message.

        Args:
            now: Current time.
            max_attempts: Attempt ceiling.

        Returns:
            True if pending, scheduled at or before now, and under the ceiling.
        """
        return (
            self.status == MessageStatus.PENDING
            and ensure_utc(self.scheduled_for) <= ensure_utc(now)
            and self.attempts < max_attempts
        )

    def mark_sent(self, sent_at: datetime) -> None:
        """Transition pending -> sent.

        Args:
            sent_at: Time of the successful send.
        """
        if self.status != MessageStatus.PENDING:
            return
        self.status = MessageStatus.SENT
        self.sent_at = sent_at

    def mark_failed_attempt(
        self,
        error: str,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ) -> None:
        """Record a failed attempt and fail the message at the ceiling.

        Args:
            error: Error description.
            max_attempts: Attempt ceiling.
        """
        if self.status != MessageStatus.PENDING:
            return
        self.attempts += 1
        self.last_error = error[:MAX_ERROR_LENGTH]
        if self.attempts >= max_attempts:
            self.status = MessageStatus.FAILED


def new_message(
    recipient: str,
    subject: str,
    body: str,
    scheduled_for: datetime | None = None,
) -> OutboundMessage:
    """Validate input and build a pending message.

    Args:
        recipient: Destination address.
        subject: Subject line.
        body: Rendered HTML body.
        scheduled_for: Earliest send time (defaults to now).

    Returns:
        A new pending message with zero attempts.

    Raises:
        MessageValidationError: If recipient or subject is unusable.
    """
    recipient = (recipient or "").strip()
    if not recipient:
        raise MessageValidationError("Recipient is required", field="recipient")

    local, sep, domain = recipient.rpartition("@")
    if not sep or not local or not domain or any(c.isspace() for c in recipient):
        raise MessageValidationError(
            "Recipient must be an email address",
            field="recipient",
            details={"recipient": recipient},
        )

    if not subject or not subject.strip():
        raise MessageValidationError("Subject is required", field="subject")

    if "\r" in subject or "\n" in subject:
        raise MessageValidationError(
            "Subject must be a single line", field="subject"
        )

    message = OutboundMessage(recipient=recipient, subject=subject, body=body or "")
    if scheduled_for is not None:
        message.scheduled_for = ensure_utc(scheduled_for)
    return message
