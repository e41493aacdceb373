"""Tests for the email dispatcher worker."""

import asyncio
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock

import pytest

from outbound.email.dispatcher import EmailDispatcher, TickResult
from outbound.email.models import MessageStatus, new_message
from outbound.email.store import InMemoryEmailQueueStore, SQLiteEmailQueueStore
from outbound.errors import StoreUnavailableError
from outbound.transport import DeliveryOutcome

# ============================================================================
# Fixtures
# ============================================================================


class RecordingSender:
    """Sender returning scripted outcomes and recording every attempt."""

    def __init__(self, outcome: DeliveryOutcome | None = None, delay: float = 0.0) -> None:
        self.outcome = outcome or DeliveryOutcome(success=True)
        self.delay = delay
        self.sent: list[str] = []

    async def send(self, message):
        self.sent.append(message.id)
        if self.delay:
            await asyncio.sleep(self.delay)
        return self.outcome


@pytest.fixture
def now():
    return datetime(2024, 1, 1, 12, 0, 0, tzinfo=UTC)


@pytest.fixture
def store():
    return InMemoryEmailQueueStore()


@pytest.fixture
def sender():
    return RecordingSender()


@pytest.fixture
def dispatcher(store, sender, now):
    """Dispatcher with a frozen clock."""
    return EmailDispatcher(store, sender, batch_size=10, clock=lambda: now)


async def enqueue(store, scheduled_for, count=1):
    messages = []
    for i in range(count):
        message = new_message(
            f"user{i}@example.com", "Hello", "<p>Hi</p>", scheduled_for=scheduled_for
        )
        await store.enqueue(message)
        messages.append(message)
    return messages


# ============================================================================
# Tick Tests
# ============================================================================


class TestRunTick:
    """Tests for a single dispatcher tick."""

    @pytest.mark.asyncio
    async def test_sends_due_messages(self, store, sender, dispatcher, now):
        """Test due messages are sent and marked sent."""
        messages = await enqueue(store, now - timedelta(minutes=1), count=3)

        result = await dispatcher.run_tick()

        assert result.claimed == 3
        assert result.sent == 3
        assert sorted(sender.sent) == sorted(m.id for m in messages)
        for message in messages:
            stored = await store.get(message.id)
            assert stored.status == MessageStatus.SENT
            assert stored.sent_at >= stored.scheduled_for

    @pytest.mark.asyncio
    async def test_future_messages_wait(self, store, sender, dispatcher, now):
        """Test messages scheduled later are left alone."""
        await enqueue(store, now + timedelta(minutes=5))

        result = await dispatcher.run_tick()

        assert result.claimed == 0
        assert sender.sent == []

    @pytest.mark.asyncio
    async def test_batch_size_respected(self, store, sender, now):
        """Test at most batch_size messages per tick."""
        await enqueue(store, now, count=5)
        dispatcher = EmailDispatcher(store, sender, batch_size=2, clock=lambda: now)

        result = await dispatcher.run_tick()

        assert result.claimed == 2
        assert len(sender.sent) == 2

    @pytest.mark.asyncio
    async def test_failed_send_retried_next_tick(self, store, now):
        """Test a failure keeps the message pending with its error."""
        sender = RecordingSender(DeliveryOutcome.from_error("Connection error: refused"))
        dispatcher = EmailDispatcher(store, sender, clock=lambda: now)
        [message] = await enqueue(store, now)

        result = await dispatcher.run_tick()

        stored = await store.get(message.id)
        assert result.retrying == 1
        assert stored.status == MessageStatus.PENDING
        assert stored.attempts == 1
        assert stored.last_error == "Connection error: refused"

    @pytest.mark.asyncio
    async def test_three_failures_then_never_again(self, store, now):
        """Test a message failing three ticks is failed and not sent again."""
        sender = RecordingSender(DeliveryOutcome.from_status(550))
        dispatcher = EmailDispatcher(store, sender, max_attempts=3, clock=lambda: now)
        [message] = await enqueue(store, now)

        results = [await dispatcher.run_tick() for _ in range(3)]
        fourth = await dispatcher.run_tick()

        stored = await store.get(message.id)
        assert [r.retrying for r in results] == [1, 1, 0]
        assert results[2].failed == 1
        assert stored.status == MessageStatus.FAILED
        assert stored.attempts == 3
        assert stored.last_error == "HTTP 550"
        assert fourth.claimed == 0
        assert len(sender.sent) == 3

    @pytest.mark.asyncio
    async def test_sender_exception_is_a_failed_attempt(self, store, now):
        """Test that a raising sender does not abort the tick."""
        sender = AsyncMock()
        sender.send = AsyncMock(side_effect=RuntimeError("smtp exploded"))
        dispatcher = EmailDispatcher(store, sender, clock=lambda: now)
        [message] = await enqueue(store, now)

        result = await dispatcher.run_tick()

        stored = await store.get(message.id)
        assert result.retrying == 1
        assert stored.attempts == 1
        assert stored.last_error == "smtp exploded"

    @pytest.mark.asyncio
    async def test_claim_failure_aborts_tick(self, sender, now):
        """Test a store outage ends the tick with no progress and no raise."""
        store = AsyncMock()
        store.claim_due = AsyncMock(
            side_effect=StoreUnavailableError("down", operation="claim_due_emails")
        )
        dispatcher = EmailDispatcher(store, sender, clock=lambda: now)

        result = await dispatcher.run_tick()

        assert result.error is not None
        assert result.claimed == 0
        assert sender.sent == []

    @pytest.mark.asyncio
    async def test_outcome_write_retried(self, store, sender, now):
        """Test transient bookkeeping failures are retried."""
        [message] = await enqueue(store, now)
        real_mark_sent = store.mark_sent
        calls = 0

        async def flaky_mark_sent(message_id, sent_at):
            nonlocal calls
            calls += 1
            if calls == 1:
                raise StoreUnavailableError("locked", operation="mark_email_sent")
            return await real_mark_sent(message_id, sent_at)

        store.mark_sent = flaky_mark_sent
        dispatcher = EmailDispatcher(store, sender, clock=lambda: now)

        result = await dispatcher.run_tick()

        assert calls == 2
        assert result.sent == 1
        assert (await store.get(message.id)).status == MessageStatus.SENT

    @pytest.mark.asyncio
    async def test_outcome_not_recorded(self, store, sender, now):
        """Test a persistent bookkeeping failure leaves the message pending."""
        [message] = await enqueue(store, now)
        store.mark_sent = AsyncMock(
            side_effect=StoreUnavailableError("down", operation="mark_email_sent")
        )
        dispatcher = EmailDispatcher(
            store, sender, bookkeeping_attempts=2, clock=lambda: now
        )

        result = await dispatcher.run_tick()

        assert result.unrecorded == 1
        assert store.mark_sent.await_count == 2
        assert (await store.get(message.id)).status == MessageStatus.PENDING

    def test_invalid_arguments(self, store, sender):
        """Test rejecting non-positive sizes."""
        with pytest.raises(ValueError):
            EmailDispatcher(store, sender, batch_size=0)

    def test_lease_must_outlast_longest_tick(self, store, sender):
        """Test a lease no longer than a full batch of timed-out sends is rejected."""
        with pytest.raises(ValueError):
            EmailDispatcher(
                store,
                sender,
                batch_size=100,
                concurrency=10,
                send_timeout=30.0,
                lease_seconds=300,
            )

    def test_default_lease_outlasts_default_tick(self, store, sender):
        dispatcher = EmailDispatcher(
            store, sender, batch_size=100, concurrency=10, send_timeout=30.0
        )

        assert dispatcher.is_running is False


# ============================================================================
# Overlap Tests
# ============================================================================


class TestTickOverlap:
    """Tests that ticks never overlap or double-send."""

    @pytest.mark.asyncio
    async def test_overlapping_tick_is_skipped(self, store, now):
        """Test a tick requested mid-tick returns without sending."""
        sender = RecordingSender(delay=0.05)
        dispatcher = EmailDispatcher(store, sender, clock=lambda: now)
        await enqueue(store, now, count=3)

        first = asyncio.create_task(dispatcher.run_tick())
        await asyncio.sleep(0.01)
        assert dispatcher.tick_in_flight is True

        second = await dispatcher.run_tick()
        first_result = await first

        assert second == TickResult(skipped=True)
        assert first_result.sent == 3
        assert len(sender.sent) == 3
        assert len(set(sender.sent)) == 3

    @pytest.mark.asyncio
    async def test_two_dispatchers_never_double_send(self, tmp_path, now):
        """Test two workers on one database send each message once."""
        db_path = tmp_path / "email.db"
        store_a = SQLiteEmailQueueStore(db_path)
        store_b = SQLiteEmailQueueStore(db_path)
        await store_a.initialize()
        await store_b.initialize()
        sender = RecordingSender(delay=0.01)
        try:
            await enqueue(store_a, now, count=8)
            worker_a = EmailDispatcher(store_a, sender, batch_size=5, clock=lambda: now)
            worker_b = EmailDispatcher(store_b, sender, batch_size=5, clock=lambda: now)

            await asyncio.gather(worker_a.run_tick(), worker_b.run_tick())
            sent = await store_a.list_messages(MessageStatus.SENT)
        finally:
            await store_a.close()
            await store_b.close()

        assert len(sender.sent) == 8
        assert len(set(sender.sent)) == 8
        assert len(sent) == 8


# ============================================================================
# Lifecycle Tests
# ============================================================================


class TestLifecycle:
    """Tests for start and stop."""

    @pytest.mark.asyncio
    async def test_start_runs_tick_and_stop_waits(self, store, sender, now):
        """Test the loop ticks immediately and stops cleanly."""
        await enqueue(store, now, count=2)
        dispatcher = EmailDispatcher(
            store, sender, interval_seconds=60, clock=lambda: now
        )

        dispatcher.start()
        assert dispatcher.is_running is True
        for _ in range(50):
            if len(sender.sent) == 2:
                break
            await asyncio.sleep(0.01)

        await dispatcher.stop()

        assert dispatcher.is_running is False
        assert len(sender.sent) == 2

    @pytest.mark.asyncio
    async def test_start_twice_is_noop(self, dispatcher):
        """Test starting an already running dispatcher."""
        dispatcher.start()
        task = dispatcher._task
        dispatcher.start()

        assert dispatcher._task is task
        await dispatcher.stop()

    @pytest.mark.asyncio
    async def test_stop_without_start(self, dispatcher):
        """Test stopping a dispatcher that never started."""
        await dispatcher.stop()
