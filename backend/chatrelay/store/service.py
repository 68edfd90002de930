"""DuckDB-based message store.

This module provides the durable, append-only message log behind the chat
rooms. Messages are keyed by room and queried by time range; the store is
the only component that assigns message ids and creation timestamps.

Database Schema:
    messages table:
        - seq: Auto-incrementing append sequence (tie-breaker for ordering)
        - id: Globally unique message id (uuid hex)
        - room_id: Room identifier
        - user_id: Sender's user ID
        - username: Sender's display name
        - text: Trimmed message text
        - created_at: When the message was appended (UTC, naive)

Thread Safety:
    A DuckDB connection must not be used from several threads at once.
    Callers on the event loop run store methods via ``asyncio.to_thread``;
    an internal lock serializes access to the single connection.

Usage:
    store = MessageStore.get_instance()
    message = store.append(MessageCreate(roomId="r1", userId="u1", text="hi"))
    page = store.query_messages("r1", before=message.createdAt, limit=50)
"""
import logging
import threading
import uuid
from datetime import datetime, timezone
from typing import List, Optional

import duckdb

from .schemas import Message, MessageCreate

logger = logging.getLogger(__name__)

# Default page size for history queries (also the join-time seed size)
DEFAULT_PAGE_SIZE = 50

# Maximum page size to prevent abuse
MAX_PAGE_SIZE = 200


class StoreUnavailableError(Exception):
    """Raised when the message store cannot serve a read or write."""
    def __init__(self, message: str = "Message store unavailable"):
        self.message = message
        super().__init__(message)


def _to_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def clamp_limit(limit: int, maximum: int = MAX_PAGE_SIZE) -> int:
    """Clamp a requested page size into ``1..maximum``."""
    return max(1, min(limit, maximum))


class MessageStore:
    """Singleton append-only message log backed by DuckDB.

    Attributes:
        _instance: Singleton instance of the store.
        _db_path: Path to the DuckDB database file.
    """

    _instance: Optional["MessageStore"] = None
    _db_path: str = "chatrelay_messages.duckdb"

    def __init__(self, db_path: Optional[str] = None) -> None:
        """Initialize the store, creating the schema if needed.

        Args:
            db_path: Path to DuckDB file, or ``":memory:"``.
        """
        if db_path:
            self._db_path = db_path
        self._connection: Optional[duckdb.DuckDBPyConnection] = None
        self._lock = threading.Lock()
        self._initialize_db()

    @classmethod
    def get_instance(cls, db_path: Optional[str] = None) -> "MessageStore":
        """Get or create the singleton instance.

        Args:
            db_path: Optional database path (only used on first call).
        """
        if cls._instance is None:
            cls._instance = cls(db_path)
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        """Close the connection and clear the singleton (for testing)."""
        if cls._instance is not None:
            cls._instance.close()
            cls._instance = None

    def _get_connection(self) -> duckdb.DuckDBPyConnection:
        if self._connection is None:
            self._connection = duckdb.connect(self._db_path)
        return self._connection

    def _initialize_db(self) -> None:
        """Create the messages table, sequence and index (idempotent)."""
        try:
            with self._lock:
                conn = self._get_connection()
                conn.execute("CREATE SEQUENCE IF NOT EXISTS messages_seq START 1")
                conn.execute("""
                    CREATE TABLE IF NOT EXISTS messages (
                        seq BIGINT DEFAULT nextval('messages_seq') PRIMARY KEY,
                        id VARCHAR NOT NULL,
                        room_id VARCHAR NOT NULL,
                        user_id VARCHAR NOT NULL,
                        username VARCHAR NOT NULL,
                        text VARCHAR NOT NULL,
                        created_at TIMESTAMP NOT NULL
                    )
                """)
                conn.execute(
                    "CREATE INDEX IF NOT EXISTS idx_messages_room_created "
                    "ON messages (room_id, created_at)"
                )
        except duckdb.Error as e:
            logger.error(f"[Store] Failed to initialize {self._db_path}: {e}")
            raise StoreUnavailableError(f"Failed to initialize message store: {e}") from e

    def append(self, entry: MessageCreate) -> Message:
        """Append a message and return it with its assigned id and timestamp.

        Args:
            entry: Validated message input (text already trimmed).

        Returns:
            The persisted Message.

        Raises:
            StoreUnavailableError: If the write fails.
        """
        message_id = uuid.uuid4().hex
        created_at = datetime.now(timezone.utc)
        try:
            with self._lock:
                self._get_connection().execute(
                    """
                    INSERT INTO messages (id, room_id, user_id, username, text, created_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    [
                        message_id,
                        entry.roomId,
                        entry.userId,
                        entry.username,
                        entry.text,
                        _to_naive_utc(created_at),
                    ]
                )
        except duckdb.Error as e:
            logger.error(f"[Store] Append failed for room {entry.roomId}: {e}")
            raise StoreUnavailableError(f"Failed to append message: {e}") from e

        return Message(
            id=message_id,
            roomId=entry.roomId,
            userId=entry.userId,
            username=entry.username,
            text=entry.text,
            createdAt=created_at,
        )

    def query_messages(
        self,
        room_id: str,
        before: Optional[datetime] = None,
        limit: int = DEFAULT_PAGE_SIZE
    ) -> List[Message]:
        """Get up to ``limit`` messages strictly older than ``before``.

        The newest matching messages are selected, then returned in
        chronological order (oldest first) for display.

        Args:
            room_id: The room ID.
            before: Exclusive upper bound on createdAt. ``None`` means no bound.
            limit: Maximum number of messages (clamped to 1..200).

        Returns:
            List of messages, oldest first.

        Raises:
            StoreUnavailableError: If the read fails.
        """
        limit = clamp_limit(limit)
        sql = """
            SELECT id, room_id, user_id, username, text, created_at
            FROM messages
            WHERE room_id = ?
        """
        params: list = [room_id]
        if before is not None:
            sql += " AND created_at < ?"
            params.append(_to_naive_utc(before))
        sql += " ORDER BY created_at DESC, seq DESC LIMIT ?"
        params.append(limit)

        try:
            with self._lock:
                rows = self._get_connection().execute(sql, params).fetchall()
        except duckdb.Error as e:
            logger.error(f"[Store] Query failed for room {room_id}: {e}")
            raise StoreUnavailableError(f"Failed to query messages: {e}") from e

        messages = [
            Message(
                id=row[0],
                roomId=row[1],
                userId=row[2],
                username=row[3],
                text=row[4],
                createdAt=row[5].replace(tzinfo=timezone.utc),
            )
            for row in rows
        ]
        messages.reverse()
        return messages

    def recent(self, room_id: str, limit: int = DEFAULT_PAGE_SIZE) -> List[Message]:
        """Get the most recent ``limit`` messages of a room, oldest first."""
        return self.query_messages(room_id, before=None, limit=limit)

    def count(self, room_id: str) -> int:
        """Get the number of stored messages in a room."""
        try:
            with self._lock:
                row = self._get_connection().execute(
                    "SELECT COUNT(*) FROM messages WHERE room_id = ?", [room_id]
                ).fetchone()
        except duckdb.Error as e:
            raise StoreUnavailableError(f"Failed to count messages: {e}") from e
        return int(row[0]) if row else 0

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            if self._connection is not None:
                self._connection.close()
                self._connection = None
