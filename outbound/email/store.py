"""Persisted email queue.

Holds pending, sent and failed messages. Selection for sending goes through
claim_due(), an atomic read-and-mark: claimed rows carry a lease and are
invisible to other claimers until the lease expires or the outcome is
recorded. A worker that dies mid-batch therefore leaves its messages
pending, and they are picked up again once the lease runs out.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from pathlib import Path

import aiosqlite
import structlog

from outbound.email.models import (
    DEFAULT_MAX_ATTEMPTS,
    MAX_ERROR_LENGTH,
    MessageStatus,
    OutboundMessage,
)
from outbound.storage import (
    SQLiteBackend,
    ensure_utc,
    from_db_timestamp,
    store_errors,
    to_db_timestamp,
)

logger = structlog.get_logger(__name__)

# How long a claim hides a message from other claimers
DEFAULT_CLAIM_LEASE_SECONDS = 600


class EmailQueueStore(ABC):
    """Mailbox of outbound messages."""

    async def initialize(self) -> None:
        """Prepare the backing store."""

    async def close(self) -> None:
        """Release the backing store."""

    @abstractmethod
    async def enqueue(self, message: OutboundMessage) -> OutboundMessage:
        """Persist a new pending message."""

    @abstractmethod
    async def get(self, message_id: str) -> OutboundMessage | None:
        """Get a message by ID."""

    @abstractmethod
    async def list_messages(
        self,
        status: MessageStatus | None = None,
        limit: int = 100,
    ) -> list[OutboundMessage]:
        """List messages, oldest scheduled first."""

    @abstractmethod
    async def claim_due(
        self,
        now: datetime,
        *,
        limit: int,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        lease_seconds: int = DEFAULT_CLAIM_LEASE_SECONDS,
    ) -> list[OutboundMessage]:
        """Atomically select and claim due messages.

        Args:
            now: Current time.
            limit: Maximum messages to claim.
            max_attempts: Attempt ceiling; messages at it are skipped.
            lease_seconds: Claim duration.

        Returns:
            Claimed messages ordered by scheduled_for ascending.
        """

    @abstractmethod
    async def mark_sent(
        self, message_id: str, sent_at: datetime
    ) -> OutboundMessage | None:
        """Transition a pending message to sent and release its claim.

        Returns:
            The updated message, or None if it was missing or not pending.
        """

    @abstractmethod
    async def record_failure(
        self,
        message_id: str,
        error: str,
        *,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ) -> OutboundMessage | None:
        """Count a failed attempt, failing the message at the ceiling.

        Returns:
            The updated message, or None if it was missing or not pending.
        """


class InMemoryEmailQueueStore(EmailQueueStore):
    """Process-local queue, used in tests and single-process setups.

    Every operation completes without yielding to the event loop, so a
    claim is atomic with respect to other coroutines.
    """

    def __init__(self) -> None:
        self._messages: dict[str, OutboundMessage] = {}
        self._claims: dict[str, datetime] = {}

    async def enqueue(self, message: OutboundMessage) -> OutboundMessage:
        self._messages[message.id] = message.model_copy(deep=True)
        return message

    async def get(self, message_id: str) -> OutboundMessage | None:
        message = self._messages.get(message_id)
        return message.model_copy(deep=True) if message else None

    async def list_messages(
        self,
        status: MessageStatus | None = None,
        limit: int = 100,
    ) -> list[OutboundMessage]:
        messages = [
            m for m in self._messages.values() if status is None or m.status == status
        ]
        messages.sort(key=lambda m: m.scheduled_for)
        return [m.model_copy(deep=True) for m in messages[:limit]]

    async def claim_due(
        self,
        now: datetime,
        *,
        limit: int,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        lease_seconds: int = DEFAULT_CLAIM_LEASE_SECONDS,
    ) -> list[OutboundMessage]:
        now = ensure_utc(now)
        due = [
            m
            for m in self._messages.values()
            if m.is_due(now, max_attempts)
            and (m.id not in self._claims or self._claims[m.id] <= now)
        ]
        due.sort(key=lambda m: m.scheduled_for)
        claimed = due[:limit]

        lease_until = now + timedelta(seconds=lease_seconds)
        for message in claimed:
            self._claims[message.id] = lease_until

        return [m.model_copy(deep=True) for m in claimed]

    async def mark_sent(
        self, message_id: str, sent_at: datetime
    ) -> OutboundMessage | None:
        message = self._messages.get(message_id)
        if message is None or message.status != MessageStatus.PENDING:
            return None
        message.mark_sent(ensure_utc(sent_at))
        self._claims.pop(message_id, None)
        return message.model_copy(deep=True)

    async def record_failure(
        self,
        message_id: str,
        error: str,
        *,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ) -> OutboundMessage | None:
        message = self._messages.get(message_id)
        if message is None or message.status != MessageStatus.PENDING:
            return None
        message.mark_failed_attempt(error, max_attempts)
        self._claims.pop(message_id, None)
        return message.model_copy(deep=True)


class SQLiteEmailQueueStore(SQLiteBackend, EmailQueueStore):
    """SQLite-based email queue.

    claim_due() is a single UPDATE ... RETURNING statement, so two workers
    sharing the database file never claim the same row.

    Example:
        store = SQLiteEmailQueueStore("data/outbound.db")
        await store.initialize()
        await store.enqueue(message)
        batch = await store.claim_due(now, limit=100)
    """

    SCHEMA = (
        """
        CREATE TABLE IF NOT EXISTS email_queue (
            id TEXT PRIMARY KEY,
            recipient TEXT NOT NULL,
            subject TEXT NOT NULL,
            body TEXT NOT NULL,
            status TEXT NOT NULL DEFAULT 'pending',
            attempts INTEGER NOT NULL DEFAULT 0,
            last_error TEXT,
            scheduled_for TEXT NOT NULL,
            sent_at TEXT,
            created_at TEXT NOT NULL,
            claimed_until TEXT
        )
        """,
        """
        CREATE INDEX IF NOT EXISTS idx_email_queue_due
        ON email_queue(status, scheduled_for)
        """,
    )

    def __init__(self, db_path: str | Path | None = None) -> None:
        super().__init__(db_path, component="email_queue_store")

    async def enqueue(self, message: OutboundMessage) -> OutboundMessage:
        with store_errors("enqueue_email"):
            await self.connection.execute(
                """
                INSERT INTO email_queue
                (id, recipient, subject, body, status, attempts, last_error,
                 scheduled_for, sent_at, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    message.id,
                    message.recipient,
                    message.subject,
                    message.body,
                    message.status.value,
                    message.attempts,
                    message.last_error,
                    to_db_timestamp(message.scheduled_for),
                    to_db_timestamp(message.sent_at),
                    to_db_timestamp(message.created_at),
                ),
            )
            await self.connection.commit()

        self._logger.debug("email_enqueued", message_id=message.id)
        return message

    async def get(self, message_id: str) -> OutboundMessage | None:
        with store_errors("get_email"):
            cursor = await self.connection.execute(
                "SELECT * FROM email_queue WHERE id = ?",
                (message_id,),
            )
            row = await cursor.fetchone()

        if row is None:
            return None
        return self._row_to_message(row)

    async def list_messages(
        self,
        status: MessageStatus | None = None,
        limit: int = 100,
    ) -> list[OutboundMessage]:
        where_clause = "status = ?" if status else "1=1"
        params: list[object] = [status.value] if status else []
        params.append(limit)

        with store_errors("list_emails"):
            cursor = await self.connection.execute(
                f"""
                SELECT * FROM email_queue
                WHERE {where_clause}
                ORDER BY scheduled_for ASC
                LIMIT ?
                """,
                params,
            )
            rows = await cursor.fetchall()

        return [self._row_to_message(row) for row in rows]

    async def claim_due(
        self,
        now: datetime,
        *,
        limit: int,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        lease_seconds: int = DEFAULT_CLAIM_LEASE_SECONDS,
    ) -> list[OutboundMessage]:
        now_db = to_db_timestamp(now)
        lease_until = to_db_timestamp(ensure_utc(now) + timedelta(seconds=lease_seconds))

        with store_errors("claim_due_emails"):
            cursor = await self.connection.execute(
                """
                UPDATE email_queue
                SET claimed_until = ?
                WHERE id IN (
                    SELECT id FROM email_queue
                    WHERE status = 'pending'
                      AND scheduled_for <= ?
                      AND attempts < ?
                      AND (claimed_until IS NULL OR claimed_until <= ?)
                    ORDER BY scheduled_for ASC
                    LIMIT ?
                )
                RETURNING *
                """,
                (lease_until, now_db, max_attempts, now_db, limit),
            )
            rows = await cursor.fetchall()
            await self.connection.commit()

        # RETURNING gives no ordering guarantee
        messages = [self._row_to_message(row) for row in rows]
        messages.sort(key=lambda m: m.scheduled_for)
        return messages

    async def mark_sent(
        self, message_id: str, sent_at: datetime
    ) -> OutboundMessage | None:
        with store_errors("mark_email_sent"):
            cursor = await self.connection.execute(
                """
                UPDATE email_queue
                SET status = 'sent', sent_at = ?, claimed_until = NULL
                WHERE id = ? AND status = 'pending'
                """,
                (to_db_timestamp(sent_at), message_id),
            )
            await self.connection.commit()

        if cursor.rowcount == 0:
            return None
        return await self.get(message_id)

    async def record_failure(
        self,
        message_id: str,
        error: str,
        *,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ) -> OutboundMessage | None:
        with store_errors("record_email_failure"):
            cursor = await self.connection.execute(
                """
                UPDATE email_queue
                SET attempts = attempts + 1,
                    last_error = ?,
                    status = CASE WHEN attempts + 1 >= ? THEN 'failed' ELSE 'pending' END,
                    claimed_until = NULL
                WHERE id = ? AND status = 'pending'
                """,
                (error[:MAX_ERROR_LENGTH], max_attempts, message_id),
            )
            await self.connection.commit()

        if cursor.rowcount == 0:
            return None
        return await self.get(message_id)

    @staticmethod
    def _row_to_message(row: aiosqlite.Row) -> OutboundMessage:
        return OutboundMessage(
            id=row["id"],
            recipient=row["recipient"],
            subject=row["subject"],
            body=row["body"],
            status=MessageStatus(row["status"]),
            attempts=row["attempts"],
            last_error=row["last_error"],
            scheduled_for=from_db_timestamp(row["scheduled_for"]),
            sent_at=from_db_timestamp(row["sent_at"]),
            created_at=from_db_timestamp(row["created_at"]),
        )
