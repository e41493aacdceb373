"""Shared SQLite plumbing for the email queue and webhook registry.

Both stores hold one aiosqlite connection opened by initialize() and
closed by close(). Backend errors are re-raised as StoreUnavailableError
so callers deal with a single failure type.
"""

import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path

import aiosqlite
import structlog

from outbound.errors import StoreUnavailableError

logger = structlog.get_logger(__name__)

# Default database path
DEFAULT_DB_PATH = "./data/outbound.db"

IN_MEMORY_PATH = ":memory:"


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(UTC)


def ensure_utc(moment: datetime) -> datetime:
    """Treat naive datetimes as UTC and convert aware ones to UTC."""
    if moment.tzinfo is None:
        return moment.replace(tzinfo=UTC)
    return moment.astimezone(UTC)


def to_db_timestamp(moment: datetime | None) -> str | None:
    """Serialize a timestamp so that text order equals time order."""
    if moment is None:
        return None
    return ensure_utc(moment).isoformat(timespec="microseconds")


def from_db_timestamp(value: str | None) -> datetime | None:
    """Parse a timestamp written by to_db_timestamp."""
    if value is None:
        return None
    return ensure_utc(datetime.fromisoformat(value))


@contextmanager
def store_errors(operation: str) -> Iterator[None]:
    """Translate sqlite errors raised inside the block.

    Args:
        operation: Name of the store operation, for the error details.

    Raises:
        StoreUnavailableError: If the backend raised.
    """
    try:
        yield
    except sqlite3.Error as e:
        raise StoreUnavailableError(
            f"Store operation {operation} failed: {e}",
            operation=operation,
            details={"error_type": e.__class__.__name__},
        ) from e


class SQLiteBackend:
    """Owns one aiosqlite connection and the schema of a store."""

    #: CREATE statements run by initialize(); overridden by subclasses.
    SCHEMA: tuple[str, ...] = ()

    def __init__(self, db_path: str | Path | None = None, *, component: str) -> None:
        self._db_path = str(db_path or DEFAULT_DB_PATH)
        self._connection: aiosqlite.Connection | None = None
        self._logger = logger.bind(component=component)

    async def initialize(self) -> None:
        """Open the connection and create tables."""
        if self._connection is not None:
            return

        with store_errors("initialize"):
            if self._db_path != IN_MEMORY_PATH:
                Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)

            self._connection = await aiosqlite.connect(self._db_path)
            self._connection.row_factory = aiosqlite.Row

            for statement in self.SCHEMA:
                await self._connection.execute(statement)
            await self._connection.commit()

        self._logger.info("store_initialized", db_path=self._db_path)

    async def close(self) -> None:
        """Close the database connection."""
        if self._connection:
            await self._connection.close()
            self._connection = None

    @property
    def connection(self) -> aiosqlite.Connection:
        """The open connection.

        Raises:
            StoreUnavailableError: If initialize() has not been called.
        """
        if self._connection is None:
            raise StoreUnavailableError(
                "Store is not initialized",
                operation="connect",
                details={"db_path": self._db_path},
            )
        return self._connection
