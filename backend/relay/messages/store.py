"""DuckDB-based chat message storage.

This module provides the durable, append-only message collection behind the
relay. DuckDB is embedded, so the "connection string" is simply a database
file path (or ``:memory:`` for tests and throwaway runs).

Database Schema:
    messages table:
        - seq: Auto-incrementing insertion order (tie-breaker for ordering)
        - id: Opaque message identifier (uuid4 hex)
        - username: Sender display name
        - content: Trimmed message text
        - created_at: When the message was stored (UTC)
        - updated_at: Equal to created_at; rows are never updated

Thread Safety:
    The DuckDB connection is NOT thread-safe. Every statement runs under a
    single lock, which also makes created_at non-decreasing in insertion
    order. Async callers go through ``call_store`` so the blocking call runs
    in a worker thread.

Usage:
    store = MessageStore("chat.duckdb")
    message = store.append("alice", "hello")
    history = store.recent(100)
"""
import asyncio
import logging
import threading
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, List, Optional, TypeVar

import duckdb

from relay.errors import StoreError

from .schemas import DEFAULT_USER, ChatMessage, normalize_message

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Default cap for recent() when no limit is given
DEFAULT_RECENT_LIMIT = 100

_CREATE_SEQUENCE = "CREATE SEQUENCE IF NOT EXISTS messages_seq START 1"

_CREATE_TABLE = """
CREATE TABLE IF NOT EXISTS messages (
    seq        BIGINT DEFAULT nextval('messages_seq') PRIMARY KEY,
    id         VARCHAR NOT NULL UNIQUE,
    username   VARCHAR NOT NULL,
    content    VARCHAR NOT NULL,
    created_at TIMESTAMP NOT NULL,
    updated_at TIMESTAMP NOT NULL
)
"""

_INDEX = "CREATE INDEX IF NOT EXISTS idx_messages_created ON messages(created_at)"


class CommitGate:
    """Decides, exactly once, whether a timed-out write may still commit.

    The worker thread calls ``open_commit`` right before COMMIT and the
    waiting caller calls ``cancel`` when its timeout fires. Whichever comes
    first wins: a cancelled write is rolled back, and a write that already
    started committing is awaited and reported as a success.
    """

    PENDING = "pending"
    COMMITTING = "committing"
    CANCELLED = "cancelled"

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._state = self.PENDING

    @property
    def cancelled(self) -> bool:
        with self._lock:
            return self._state == self.CANCELLED

    def cancel(self) -> bool:
        """Return True if the write will not commit."""
        with self._lock:
            if self._state == self.PENDING:
                self._state = self.CANCELLED
            return self._state == self.CANCELLED

    def open_commit(self) -> bool:
        """Return True if the worker may commit."""
        with self._lock:
            if self._state == self.PENDING:
                self._state = self.COMMITTING
            return self._state == self.COMMITTING


class MessageStore:
    """Append-only chat message store backed by DuckDB.

    Attributes:
        default_limit: Number of messages recent() returns when no limit is given.
        default_user: Display name substituted for blank users.
    """

    def __init__(
        self,
        db_path: str,
        default_limit: int = DEFAULT_RECENT_LIMIT,
        default_user: str = DEFAULT_USER,
    ) -> None:
        """Open (or create) the database and its schema.

        Args:
            db_path: DuckDB database path, or ":memory:".
            default_limit: Cap used by recent() when called without a limit.
            default_user: Sentinel display name for anonymous senders.

        Raises:
            StoreError: If the database cannot be opened.
        """
        self._db_path = db_path
        self.default_limit = default_limit
        self.default_user = default_user
        self._lock = threading.Lock()
        self._last_created_at: Optional[datetime] = None
        try:
            self._connection: Optional[duckdb.DuckDBPyConnection] = duckdb.connect(db_path)
            self._initialize_db()
        except duckdb.Error as exc:
            raise StoreError(f"Could not open message store {db_path!r}: {exc}") from exc
        logger.info("[Store] Initialized with db=%s", db_path)

    def _initialize_db(self) -> None:
        """Create the sequence, table and index if they don't exist."""
        conn = self._get_connection()
        conn.execute(_CREATE_SEQUENCE)
        conn.execute(_CREATE_TABLE)
        conn.execute(_INDEX)
        row = conn.execute("SELECT max(created_at) FROM messages").fetchone()
        if row and row[0] is not None:
            self._last_created_at = _as_utc(row[0])

    def _get_connection(self) -> duckdb.DuckDBPyConnection:
        if self._connection is None:
            raise StoreError("Message store is closed")
        return self._connection

    def _next_timestamp(self) -> datetime:
        # Clamp to the previous timestamp so a clock step back never
        # reorders history. Caller holds the lock.
        now = datetime.now(timezone.utc)
        if self._last_created_at is not None and now < self._last_created_at:
            now = self._last_created_at
        self._last_created_at = now
        return now

    def append(
        self,
        user: Optional[str],
        text: Optional[str],
        gate: Optional[CommitGate] = None,
    ) -> ChatMessage:
        """Persist a new message.

        Args:
            user: Sender display name; blank or missing becomes the default user.
            text: Message text; trimmed before storage.
            gate: Optional CommitGate. When the caller cancels it before the
                  insert commits, the insert is rolled back.

        Returns:
            The stored ChatMessage with id and timestamps assigned.

        Raises:
            ValidationError: If text is blank after trimming.
            StoreError: If the backend rejects the write or the caller
                cancelled it.
        """
        user, text = normalize_message(user, text, self.default_user)
        message_id = uuid.uuid4().hex

        with self._lock:
            conn = self._get_connection()
            if gate is not None and gate.cancelled:
                raise StoreError("Message save cancelled")
            created_at = self._next_timestamp()
            stored_at = created_at.replace(tzinfo=None)
            try:
                conn.execute("BEGIN TRANSACTION")
                conn.execute(
                    """
                    INSERT INTO messages (id, username, content, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    [message_id, user, text, stored_at, stored_at],
                )
                if gate is not None and not gate.open_commit():
                    conn.execute("ROLLBACK")
                    logger.warning("[Store] Rolled back cancelled append %s", message_id)
                    raise StoreError("Message save cancelled")
                conn.execute("COMMIT")
            except duckdb.Error as exc:
                logger.error("[Store] Append failed: %s", exc)
                self._rollback(conn)
                raise StoreError(f"Message save failed: {exc}") from exc

        return ChatMessage(
            id=message_id,
            user=user,
            text=text,
            createdAt=created_at,
            updatedAt=created_at,
        )

    def _rollback(self, conn: duckdb.DuckDBPyConnection) -> None:
        try:
            conn.execute("ROLLBACK")
        except duckdb.Error as exc:
            # No transaction left open
            logger.debug("[Store] Rollback skipped: %s", exc)

    def recent(self, limit: Optional[int] = None) -> List[ChatMessage]:
        """Get the most recent messages, oldest first.

        Args:
            limit: Maximum number of messages. None uses default_limit.

        Returns:
            Up to *limit* messages in chronological order. Empty if the
            store is empty or limit is not positive.

        Raises:
            StoreError: If the backend query fails.
        """
        if limit is None:
            limit = self.default_limit
        if limit <= 0:
            return []

        with self._lock:
            conn = self._get_connection()
            try:
                rows = conn.execute(
                    """
                    SELECT id, username, content, created_at, updated_at
                    FROM (
                        SELECT seq, id, username, content, created_at, updated_at
                        FROM messages
                        ORDER BY created_at DESC, seq DESC
                        LIMIT ?
                    )
                    ORDER BY created_at ASC, seq ASC
                    """,
                    [limit],
                ).fetchall()
            except duckdb.Error as exc:
                logger.error("[Store] History query failed: %s", exc)
                raise StoreError(f"History query failed: {exc}") from exc

        return [
            ChatMessage(
                id=row[0],
                user=row[1],
                text=row[2],
                createdAt=_as_utc(row[3]),
                updatedAt=_as_utc(row[4]),
            )
            for row in rows
        ]

    def count(self) -> int:
        """Get the number of stored messages."""
        with self._lock:
            conn = self._get_connection()
            try:
                return conn.execute("SELECT count(*) FROM messages").fetchone()[0]
            except duckdb.Error as exc:
                raise StoreError(f"Count query failed: {exc}") from exc

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            if self._connection is not None:
                self._connection.close()
                self._connection = None
                logger.info("[Store] Closed db=%s", self._db_path)


def _as_utc(value: datetime) -> datetime:
    """DuckDB TIMESTAMP columns come back naive; they hold UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


async def call_store(
    func: Callable[..., T],
    *args: Any,
    timeout: Optional[float] = None,
    gate: Optional[CommitGate] = None,
) -> T:
    """Run a blocking store call in a worker thread.

    A timed-out call is reported as a StoreError. Writes pass a CommitGate
    (forwarded to *func* as ``gate=``) so that a timeout and the commit
    cannot both happen: either the write is rolled back and the caller gets
    StoreError, or the commit was already underway and its result is
    returned.

    Raises:
        StoreError: On backend failure or timeout.
    """
    name = getattr(func, "__name__", func)
    if gate is None:
        worker = asyncio.ensure_future(asyncio.to_thread(func, *args))
    else:
        worker = asyncio.ensure_future(asyncio.to_thread(func, *args, gate=gate))

    try:
        return await asyncio.wait_for(asyncio.shield(worker), timeout=timeout)
    except asyncio.TimeoutError as exc:
        if gate is not None and not gate.cancel():
            logger.warning("[Store] %s passed its %ss timeout while committing", name, timeout)
            return await worker
        # The thread keeps running; collect its outcome so it is not reported
        # as an unretrieved exception.
        worker.add_done_callback(_discard_result)
        logger.error("[Store] %s timed out after %ss", name, timeout)
        raise StoreError(f"Store call timed out after {timeout}s") from exc


def _discard_result(future: "asyncio.Future[Any]") -> None:
    if not future.cancelled() and future.exception() is not None:
        logger.debug("[Store] Abandoned store call failed: %s", future.exception())
