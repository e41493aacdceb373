"""Email dispatcher worker.

Polls the email queue on a fixed interval, claims due messages, sends them
and records the outcome. Ticks never overlap: a tick requested while one is
still in flight returns immediately without touching the queue.
"""

import asyncio
import math
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from outbound.email.models import DEFAULT_MAX_ATTEMPTS, MessageStatus, OutboundMessage
from outbound.email.senders import EmailSender
from outbound.email.store import DEFAULT_CLAIM_LEASE_SECONDS, EmailQueueStore
from outbound.errors import StoreUnavailableError
from outbound.storage import utc_now
from outbound.transport import DeliveryOutcome

logger = structlog.get_logger(__name__)

# Defaults
DEFAULT_POLL_INTERVAL_SECONDS = 60.0
DEFAULT_BATCH_SIZE = 100
DEFAULT_SEND_CONCURRENCY = 10


@dataclass
class TickResult:
    """Summary of one dispatcher tick.

    Attributes:
        claimed: Messages selected for sending.
        sent: Messages that transitioned to sent.
        retrying: Messages that failed and stay pending.
        failed: Messages that reached the attempt ceiling.
        unrecorded: Messages whose outcome could not be written.
        skipped: True if another tick was still in flight.
        error: Dispatcher-level error that aborted the tick.
    """

    claimed: int = 0
    sent: int = 0
    retrying: int = 0
    failed: int = 0
    unrecorded: int = 0
    skipped: bool = False
    error: str | None = None


class EmailDispatcher:
    """Periodic worker that drains the email queue.

    Example:
        dispatcher = EmailDispatcher(store, sender)
        dispatcher.start()
        ...
        await dispatcher.stop()
    """

    def __init__(
        self,
        store: EmailQueueStore,
        sender: EmailSender,
        *,
        interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
        batch_size: int = DEFAULT_BATCH_SIZE,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        lease_seconds: int = DEFAULT_CLAIM_LEASE_SECONDS,
        concurrency: int = DEFAULT_SEND_CONCURRENCY,
        send_timeout: float | None = None,
        bookkeeping_attempts: int = 3,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        """Initialize the dispatcher.

        Args:
            store: Email queue store.
            sender: Sender making one attempt per message.
            interval_seconds: Wait between ticks.
            batch_size: Maximum messages claimed per tick.
            max_attempts: Attempt ceiling per message.
            lease_seconds: Claim lease; must exceed the longest tick.
            concurrency: Parallel sends within a tick.
            send_timeout: Deadline of one send. When given, the lease must
                outlast a full batch of sends at this deadline.
            bookkeeping_attempts: Tries for writing a message outcome.
            clock: Source of the current time.
        """
        if batch_size < 1 or concurrency < 1 or max_attempts < 1:
            raise ValueError("batch_size, concurrency and max_attempts must be positive")

        if send_timeout is not None:
            longest_tick = math.ceil(batch_size / concurrency) * send_timeout
            if lease_seconds <= longest_tick:
                raise ValueError(
                    f"lease_seconds ({lease_seconds}) must exceed the longest tick "
                    f"({longest_tick:g}s for {batch_size} sends at concurrency "
                    f"{concurrency} and a {send_timeout:g}s send timeout)"
                )

        self._store = store
        self._sender = sender
        self._interval = interval_seconds
        self._batch_size = batch_size
        self._max_attempts = max_attempts
        self._lease_seconds = lease_seconds
        self._concurrency = concurrency
        self._bookkeeping_attempts = bookkeeping_attempts
        self._clock = clock
        self._tick_lock = asyncio.Lock()
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task[None] | None = None
        self._logger = logger.bind(component="email_dispatcher")

    @property
    def is_running(self) -> bool:
        """True while the periodic loop is active."""
        return self._task is not None and not self._task.done()

    @property
    def tick_in_flight(self) -> bool:
        """True while a tick is processing a batch."""
        return self._tick_lock.locked()

    async def run_tick(self) -> TickResult:
        """Claim and send one batch of due messages.

        Never raises: store failures abort the tick with zero progress and
        per-message failures are recorded on the message.

        Returns:
            Summary of the tick.
        """
        # No await between the check and the acquire
        if self._tick_lock.locked():
            self._logger.warning("email_tick_skipped_in_flight")
            return TickResult(skipped=True)

        async with self._tick_lock:
            return await self._process_batch()

    async def _process_batch(self) -> TickResult:
        now = self._clock()

        try:
            batch = await self._store.claim_due(
                now,
                limit=self._batch_size,
                max_attempts=self._max_attempts,
                lease_seconds=self._lease_seconds,
            )
        except Exception as e:
            self._logger.error(
                "email_tick_failed",
                error_type=e.__class__.__name__,
                error=str(e),
            )
            return TickResult(error=str(e))

        result = TickResult(claimed=len(batch))
        if not batch:
            self._logger.debug("email_tick_idle")
            return result

        self._logger.info("email_tick_started", batch_size=len(batch))

        # Tasks start in scheduled_for order; completion order is not fixed
        semaphore = asyncio.Semaphore(self._concurrency)
        tasks = [
            asyncio.create_task(self._process_message(message, semaphore))
            for message in batch
        ]
        statuses = await asyncio.gather(*tasks, return_exceptions=True)

        for message, status in zip(batch, statuses, strict=True):
            if isinstance(status, BaseException):
                result.unrecorded += 1
                self._logger.error(
                    "email_processing_error",
                    message_id=message.id,
                    error=str(status),
                )
            elif status is None:
                result.unrecorded += 1
            elif status == MessageStatus.SENT:
                result.sent += 1
            elif status == MessageStatus.FAILED:
                result.failed += 1
            else:
                result.retrying += 1

        self._logger.info(
            "email_tick_completed",
            claimed=result.claimed,
            sent=result.sent,
            retrying=result.retrying,
            failed=result.failed,
            unrecorded=result.unrecorded,
        )
        return result

    async def _process_message(
        self,
        message: OutboundMessage,
        semaphore: asyncio.Semaphore,
    ) -> MessageStatus | None:
        """Send one message and record the outcome.

        Returns:
            The message's new status, or None if it could not be recorded.
        """
        async with semaphore:
            try:
                outcome = await self._sender.send(message)
            except Exception as e:
                self._logger.warning(
                    "email_sender_error",
                    message_id=message.id,
                    error_type=e.__class__.__name__,
                    error=str(e),
                )
                outcome = DeliveryOutcome.from_error(str(e) or e.__class__.__name__)

            return await self._record_outcome(message, outcome)

    async def _record_outcome(
        self,
        message: OutboundMessage,
        outcome: DeliveryOutcome,
    ) -> MessageStatus | None:
        updated: OutboundMessage | None = None

        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self._bookkeeping_attempts),
                wait=wait_exponential(multiplier=0.1, max=2),
                retry=retry_if_exception_type(StoreUnavailableError),
                reraise=True,
            ):
                with attempt:
                    if outcome.success:
                        updated = await self._store.mark_sent(message.id, self._clock())
                    else:
                        updated = await self._store.record_failure(
                            message.id,
                            outcome.error or "unknown error",
                            max_attempts=self._max_attempts,
                        )
        except StoreUnavailableError as e:
            # The claim lease expires and the message is picked up again
            self._logger.error(
                "email_outcome_not_recorded",
                message_id=message.id,
                success=outcome.success,
                error=str(e),
            )
            return None

        if updated is None:
            self._logger.warning("email_outcome_stale", message_id=message.id)
            return None

        if updated.status == MessageStatus.SENT:
            self._logger.info("email_delivered", message_id=message.id)
        elif updated.status == MessageStatus.FAILED:
            self._logger.error(
                "email_failed_permanently",
                message_id=message.id,
                attempts=updated.attempts,
                error=updated.last_error,
            )
        else:
            self._logger.warning(
                "email_send_failed",
                message_id=message.id,
                attempts=updated.attempts,
                error=updated.last_error,
            )
        return updated.status

    async def _run_loop(self) -> None:
        """Background task that runs a tick every interval."""
        while not self._stop_event.is_set():
            await self.run_tick()
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._interval)
            except TimeoutError:
                continue

    def start(self) -> None:
        """Start the periodic loop."""
        if self.is_running:
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run_loop(), name="email-dispatcher")
        self._logger.info("email_dispatcher_started", interval=self._interval)

    async def stop(self) -> None:
        """Stop the loop, letting an in-flight tick finish."""
        if self._task is None:
            return
        self._stop_event.set()
        await self._task
        self._task = None
        self._logger.info("email_dispatcher_stopped")
