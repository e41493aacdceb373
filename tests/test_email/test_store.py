"""Tests for email queue store."""

from datetime import UTC, datetime, timedelta

import pytest
import pytest_asyncio

from outbound.email.models import MessageStatus, new_message
from outbound.email.store import InMemoryEmailQueueStore, SQLiteEmailQueueStore
from outbound.errors import StoreUnavailableError

# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def now():
    return datetime(2024, 1, 1, 12, 0, 0, tzinfo=UTC)


@pytest_asyncio.fixture(params=["memory", "sqlite"])
async def store(request, tmp_path):
    """Store under test, once per backend."""
    if request.param == "memory":
        queue = InMemoryEmailQueueStore()
    else:
        queue = SQLiteEmailQueueStore(tmp_path / "email.db")
    await queue.initialize()
    yield queue
    await queue.close()


def make_message(scheduled_for, recipient="ada@example.com"):
    return new_message(recipient, "Hello", "<p>Hi</p>", scheduled_for=scheduled_for)


# ============================================================================
# Basic Operations
# ============================================================================


class TestBasicOperations:
    """Tests for enqueue, get and list."""

    @pytest.mark.asyncio
    async def test_enqueue_and_get(self, store, now):
        """Test reading back a queued message."""
        message = make_message(now)

        await store.enqueue(message)
        stored = await store.get(message.id)

        assert stored is not None
        assert stored.recipient == "ada@example.com"
        assert stored.subject == "Hello"
        assert stored.body == "<p>Hi</p>"
        assert stored.status == MessageStatus.PENDING
        assert stored.attempts == 0
        assert stored.scheduled_for == now

    @pytest.mark.asyncio
    async def test_get_missing(self, store):
        """Test getting an unknown message."""
        assert await store.get("msg_missing") is None

    @pytest.mark.asyncio
    async def test_list_by_status(self, store, now):
        """Test filtering the listing by status."""
        first = make_message(now)
        second = make_message(now + timedelta(seconds=1))
        await store.enqueue(first)
        await store.enqueue(second)
        await store.mark_sent(first.id, now)

        pending = await store.list_messages(MessageStatus.PENDING)
        everything = await store.list_messages()

        assert [m.id for m in pending] == [second.id]
        assert [m.id for m in everything] == [first.id, second.id]


# ============================================================================
# Claim Tests
# ============================================================================


class TestClaimDue:
    """Tests for claim-based selection."""

    @pytest.mark.asyncio
    async def test_only_due_messages(self, store, now):
        """Test future messages are not selected."""
        due = make_message(now - timedelta(minutes=1))
        future = make_message(now + timedelta(minutes=1))
        await store.enqueue(due)
        await store.enqueue(future)

        batch = await store.claim_due(now, limit=10)

        assert [m.id for m in batch] == [due.id]

    @pytest.mark.asyncio
    async def test_ordered_by_schedule_and_limited(self, store, now):
        """Test oldest scheduled messages are claimed first."""
        messages = [make_message(now - timedelta(minutes=i)) for i in range(5)]
        for message in messages:
            await store.enqueue(message)

        batch = await store.claim_due(now, limit=3)

        expected = sorted(messages, key=lambda m: m.scheduled_for)[:3]
        assert [m.id for m in batch] == [m.id for m in expected]

    @pytest.mark.asyncio
    async def test_claimed_messages_hidden_from_second_claim(self, store, now):
        """Test that a claim makes messages invisible to other claimers."""
        for i in range(4):
            await store.enqueue(make_message(now - timedelta(seconds=i)))

        first = await store.claim_due(now, limit=10)
        second = await store.claim_due(now, limit=10)

        assert len(first) == 4
        assert second == []

    @pytest.mark.asyncio
    async def test_expired_claim_is_reclaimable(self, store, now):
        """Test crash recovery once the lease expires."""
        message = make_message(now)
        await store.enqueue(message)

        await store.claim_due(now, limit=10, lease_seconds=60)
        still_leased = await store.claim_due(now + timedelta(seconds=30), limit=10)
        reclaimed = await store.claim_due(now + timedelta(seconds=61), limit=10)

        assert still_leased == []
        assert [m.id for m in reclaimed] == [message.id]

    @pytest.mark.asyncio
    async def test_ceiling_excluded(self, store, now):
        """Test messages at the attempt ceiling are never claimed."""
        message = make_message(now)
        await store.enqueue(message)
        for _ in range(2):
            await store.claim_due(now, limit=10, max_attempts=3)
            await store.record_failure(message.id, "boom", max_attempts=3)

        # Pending with two attempts: over a ceiling of two it is never selected
        batch = await store.claim_due(now, limit=10, max_attempts=2)

        assert batch == []


# ============================================================================
# Outcome Tests
# ============================================================================


class TestOutcomes:
    """Tests for mark_sent and record_failure."""

    @pytest.mark.asyncio
    async def test_mark_sent(self, store, now):
        """Test the sent transition."""
        message = make_message(now)
        await store.enqueue(message)
        await store.claim_due(now, limit=10)

        sent_at = now + timedelta(seconds=5)
        updated = await store.mark_sent(message.id, sent_at)

        assert updated.status == MessageStatus.SENT
        assert updated.sent_at == sent_at
        assert updated.sent_at >= updated.scheduled_for
        assert await store.claim_due(now + timedelta(hours=1), limit=10) == []

    @pytest.mark.asyncio
    async def test_three_failures_fail_the_message(self, store, now):
        """Test the attempt ceiling end to end."""
        message = make_message(now)
        await store.enqueue(message)

        for attempt in range(1, 4):
            batch = await store.claim_due(now, limit=10, max_attempts=3)
            assert [m.id for m in batch] == [message.id]
            updated = await store.record_failure(
                message.id, f"boom {attempt}", max_attempts=3
            )
            assert updated.attempts == attempt

        assert updated.status == MessageStatus.FAILED
        assert updated.last_error == "boom 3"
        assert await store.claim_due(now, limit=10, max_attempts=3) == []

    @pytest.mark.asyncio
    async def test_failure_releases_claim(self, store, now):
        """Test a failed message is retried on the next claim."""
        message = make_message(now)
        await store.enqueue(message)
        await store.claim_due(now, limit=10)

        await store.record_failure(message.id, "boom")
        batch = await store.claim_due(now, limit=10)

        assert [m.id for m in batch] == [message.id]
        assert batch[0].attempts == 1

    @pytest.mark.asyncio
    async def test_terminal_messages_not_updated(self, store, now):
        """Test outcomes for terminal or unknown messages are ignored."""
        message = make_message(now)
        await store.enqueue(message)
        await store.mark_sent(message.id, now)

        assert await store.record_failure(message.id, "late") is None
        assert await store.mark_sent(message.id, now) is None
        assert await store.mark_sent("msg_missing", now) is None

        stored = await store.get(message.id)
        assert stored.status == MessageStatus.SENT
        assert stored.attempts == 0


# ============================================================================
# SQLite Backend Tests
# ============================================================================


class TestSQLiteEmailQueueStore:
    """Tests specific to the SQLite backend."""

    @pytest.mark.asyncio
    async def test_two_connections_never_claim_the_same_row(self, tmp_path, now):
        """Test claims are exclusive across connections to one database."""
        db_path = tmp_path / "email.db"
        first = SQLiteEmailQueueStore(db_path)
        second = SQLiteEmailQueueStore(db_path)
        await first.initialize()
        await second.initialize()
        try:
            for i in range(6):
                await first.enqueue(make_message(now - timedelta(seconds=i)))

            batch_a = await first.claim_due(now, limit=4)
            batch_b = await second.claim_due(now, limit=4)
        finally:
            await first.close()
            await second.close()

        ids_a = {m.id for m in batch_a}
        ids_b = {m.id for m in batch_b}
        assert len(ids_a) == 4
        assert len(ids_b) == 2
        assert ids_a.isdisjoint(ids_b)

    @pytest.mark.asyncio
    async def test_uninitialized_store_raises(self, tmp_path):
        """Test using the store before initialize()."""
        store = SQLiteEmailQueueStore(tmp_path / "email.db")

        with pytest.raises(StoreUnavailableError):
            await store.enqueue(make_message(datetime.now(UTC)))
