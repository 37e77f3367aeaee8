"""DuckDB-backed persistent store for users, rooms and messages.

This module is the single source of truth for room membership and message
state. The service implements the singleton pattern to ensure only one
database connection exists per process; every mutation runs on the event
loop thread, one action at a time.

Database Schema:
    users:    id, name, room_id, is_host, joined_at, created_at
    rooms:    id, created_at
    messages: id (sequence), room_id, user_id, type, content, file_name,
              file_size, file_thumbnail, url_metadata, is_pinned,
              deleted_at, created_at

Timestamps are stored as DOUBLE seconds since the epoch, matching the ``ts``
floats used on the wire.

Referential integrity (messages -> rooms) is enforced here rather than with
DuckDB foreign keys: a message is only inserted after checking its room
inside the same transaction, and ``delete_room`` removes the room's messages
and memberships together with the room.

Usage:
    store = ChatStore.get_instance()
    with store.transaction():
        store.create_room("room-1")
        store.set_membership("user-1", "room-1", is_host=True)
"""
import json
import logging
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterator, List, Optional, Sequence

import duckdb

from myflow.errors import NotFoundError

from .schemas import (
    SYSTEM_USER_ID,
    SYSTEM_USER_NAME,
    LinkPreview,
    MessageRecord,
    MessageType,
    UserRecord,
)

logger = logging.getLogger(__name__)

_SCHEMA = (
    "CREATE SEQUENCE IF NOT EXISTS messages_seq START 1",
    """
    CREATE TABLE IF NOT EXISTS users (
        id         VARCHAR PRIMARY KEY,
        name       VARCHAR NOT NULL,
        room_id    VARCHAR,
        is_host    BOOLEAN NOT NULL DEFAULT false,
        joined_at  DOUBLE,
        created_at DOUBLE NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS rooms (
        id         VARCHAR PRIMARY KEY,
        created_at DOUBLE NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS messages (
        id             BIGINT DEFAULT nextval('messages_seq') PRIMARY KEY,
        room_id        VARCHAR NOT NULL,
        user_id        VARCHAR NOT NULL,
        type           VARCHAR NOT NULL,
        content        VARCHAR NOT NULL,
        file_name      VARCHAR,
        file_size      BIGINT,
        file_thumbnail VARCHAR,
        url_metadata   VARCHAR,
        is_pinned      BOOLEAN NOT NULL DEFAULT false,
        deleted_at     DOUBLE,
        created_at     DOUBLE NOT NULL
    )
    """,
    # Only immutable columns are indexed: DuckDB rewrites a row when an
    # indexed column is updated.
    "CREATE INDEX IF NOT EXISTS idx_messages_room_created ON messages(room_id, created_at)",
)

_USER_COLUMNS = "id, name, room_id, is_host, joined_at, created_at"

_MESSAGE_SELECT = """
    SELECT m.id, m.room_id, m.user_id, COALESCE(u.name, 'Unknown'), m.type,
           m.content, m.file_name, m.file_size, m.file_thumbnail,
           m.url_metadata, m.is_pinned, m.deleted_at, m.created_at
    FROM messages m
    LEFT JOIN users u ON u.id = m.user_id
"""


def _placeholders(values: Sequence) -> str:
    return ", ".join("?" for _ in values)


def _row_to_user(row) -> UserRecord:
    return UserRecord(
        userId=row[0],
        name=row[1],
        roomId=row[2],
        isHost=bool(row[3]),
        joinedAt=row[4],
        createdAt=row[5],
    )


def _decode_preview(raw: Optional[str]) -> Optional[LinkPreview]:
    if not raw:
        return None
    try:
        return LinkPreview(**json.loads(raw))
    except (ValueError, TypeError):
        logger.warning("Discarding unreadable url_metadata: %r", raw[:80])
        return None


def _row_to_message(row) -> MessageRecord:
    return MessageRecord(
        id=row[0],
        roomId=row[1],
        userId=row[2],
        userName=row[3],
        type=MessageType(row[4]),
        content=row[5],
        fileName=row[6],
        fileSize=row[7],
        fileThumbnail=row[8],
        urlMetadata=_decode_preview(row[9]),
        isPinned=bool(row[10]),
        deletedAt=row[11],
        createdAt=row[12],
    )


class ChatStore:
    """Singleton DuckDB store for the users, rooms and messages tables.

    Attributes:
        _instance: Singleton instance of the store.
        _db_path: Path to the DuckDB database file (":memory:" for tests).
    """

    _instance: Optional["ChatStore"] = None
    _db_path: str = "myflow.duckdb"

    def __init__(
        self,
        db_path: Optional[str] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Open the database and create the schema if needed.

        Args:
            db_path: Path to the DuckDB file. Defaults to "myflow.duckdb".
            clock: Source of "now" in seconds; injectable for tests.
        """
        if db_path:
            self._db_path = db_path
        self.clock = clock
        self._connection: Optional[duckdb.DuckDBPyConnection] = None
        self._tx_depth = 0
        self._last_message_ts = 0.0
        self._initialize_db()

    @classmethod
    def get_instance(cls, db_path: Optional[str] = None) -> "ChatStore":
        """Get or create the singleton instance.

        Args:
            db_path: Optional database path (only used on first call).
        """
        if cls._instance is None:
            cls._instance = cls(db_path)
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        """Close the singleton's connection and forget it (for testing)."""
        if cls._instance is not None:
            cls._instance.close()
            cls._instance = None

    def _get_connection(self) -> duckdb.DuckDBPyConnection:
        if self._connection is None:
            if self._db_path != ":memory:":
                Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
            self._connection = duckdb.connect(self._db_path)
        return self._connection

    def _initialize_db(self) -> None:
        """Create tables, index and the reserved system user (idempotent)."""
        conn = self._get_connection()
        for statement in _SCHEMA:
            conn.execute(statement)
        conn.execute(
            f"INSERT OR IGNORE INTO users ({_USER_COLUMNS}) VALUES (?, ?, NULL, false, NULL, ?)",
            [SYSTEM_USER_ID, SYSTEM_USER_NAME, self.clock()],
        )
        row = conn.execute("SELECT max(created_at) FROM messages").fetchone()
        self._last_message_ts = row[0] or 0.0
        logger.info(f"[Store] Initialized with db={self._db_path}")

    def close(self) -> None:
        if self._connection is not None:
            self._connection.close()
            self._connection = None

    @contextmanager
    def transaction(self) -> Iterator[duckdb.DuckDBPyConnection]:
        """Group several statements into one atomic unit.

        Nested uses join the outermost transaction.
        """
        conn = self._get_connection()
        if self._tx_depth:
            self._tx_depth += 1
            try:
                yield conn
            finally:
                self._tx_depth -= 1
            return

        conn.begin()
        self._tx_depth = 1
        try:
            yield conn
        except Exception:
            self._tx_depth = 0
            conn.rollback()
            raise
        self._tx_depth = 0
        conn.commit()

    def now(self) -> float:
        return self.clock()

    def _next_message_ts(self) -> float:
        # Keeps creation order and (created_at, id) order identical even if
        # the wall clock steps backwards.
        self._last_message_ts = max(self.clock(), self._last_message_ts)
        return self._last_message_ts

    # =========================================================================
    # Users
    # =========================================================================

    def get_user(self, user_id: str) -> Optional[UserRecord]:
        row = self._get_connection().execute(
            f"SELECT {_USER_COLUMNS} FROM users WHERE id = ?", [user_id]
        ).fetchone()
        return _row_to_user(row) if row else None

    def create_user(self, user_id: str, name: str) -> UserRecord:
        self._get_connection().execute(
            f"INSERT INTO users ({_USER_COLUMNS}) VALUES (?, ?, NULL, false, NULL, ?)",
            [user_id, name, self.clock()],
        )
        return self.get_user(user_id)

    def rename_user(self, user_id: str, name: str) -> Optional[UserRecord]:
        self._get_connection().execute(
            "UPDATE users SET name = ? WHERE id = ?", [name, user_id]
        )
        return self.get_user(user_id)

    def set_membership(
        self,
        user_id: str,
        room_id: str,
        is_host: bool,
        joined_at: Optional[float] = None,
    ) -> None:
        """Place a user in a room; room and host flag change in one statement."""
        self._get_connection().execute(
            "UPDATE users SET room_id = ?, is_host = ?, joined_at = ? WHERE id = ?",
            [room_id, is_host, joined_at if joined_at is not None else self.clock(), user_id],
        )

    def clear_membership(self, user_id: str) -> None:
        self._get_connection().execute(
            "UPDATE users SET room_id = NULL, is_host = false WHERE id = ?", [user_id]
        )

    def set_host(self, user_id: str, is_host: bool = True) -> None:
        self._get_connection().execute(
            "UPDATE users SET is_host = ? WHERE id = ?", [is_host, user_id]
        )

    def get_members(self, room_id: str) -> List[UserRecord]:
        """Members of a room by seniority: earliest joined first, then by id."""
        rows = self._get_connection().execute(
            f"""
            SELECT {_USER_COLUMNS} FROM users
            WHERE room_id = ?
            ORDER BY joined_at ASC NULLS LAST, id ASC
            """,
            [room_id],
        ).fetchall()
        return [_row_to_user(r) for r in rows]

    # =========================================================================
    # Rooms
    # =========================================================================

    def create_room(self, room_id: str) -> None:
        self._get_connection().execute(
            "INSERT INTO rooms (id, created_at) VALUES (?, ?)", [room_id, self.clock()]
        )

    def room_exists(self, room_id: str) -> bool:
        row = self._get_connection().execute(
            "SELECT 1 FROM rooms WHERE id = ?", [room_id]
        ).fetchone()
        return row is not None

    def list_room_ids(self) -> List[str]:
        rows = self._get_connection().execute(
            "SELECT id FROM rooms ORDER BY created_at ASC"
        ).fetchall()
        return [r[0] for r in rows]

    def delete_room(self, room_id: str) -> int:
        """Destroy a room together with its messages and memberships.

        Returns:
            Number of messages removed with the room.
        """
        with self.transaction() as conn:
            removed = conn.execute(
                "SELECT count(*) FROM messages WHERE room_id = ?", [room_id]
            ).fetchone()[0]
            conn.execute("DELETE FROM messages WHERE room_id = ?", [room_id])
            conn.execute(
                "UPDATE users SET room_id = NULL, is_host = false WHERE room_id = ?",
                [room_id],
            )
            conn.execute("DELETE FROM rooms WHERE id = ?", [room_id])
        return removed

    # =========================================================================
    # Messages
    # =========================================================================

    def add_message(
        self,
        room_id: str,
        user_id: str,
        message_type: MessageType,
        content: str,
        file_name: Optional[str] = None,
        file_size: Optional[int] = None,
        file_thumbnail: Optional[str] = None,
        url_metadata: Optional[LinkPreview] = None,
    ) -> MessageRecord:
        """Append a message to an existing room.

        Raises:
            NotFoundError: If the room does not exist (anymore).
        """
        metadata = json.dumps(url_metadata.model_dump()) if url_metadata else None
        with self.transaction() as conn:
            if not self.room_exists(room_id):
                raise NotFoundError(f"Room {room_id} does not exist.")
            message_id = conn.execute(
                """
                INSERT INTO messages
                    (room_id, user_id, type, content, file_name, file_size,
                     file_thumbnail, url_metadata, is_pinned, deleted_at, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, false, NULL, ?)
                RETURNING id
                """,
                [
                    room_id,
                    user_id,
                    message_type.value,
                    content,
                    file_name,
                    file_size,
                    file_thumbnail,
                    metadata,
                    self._next_message_ts(),
                ],
            ).fetchone()[0]
        return self.get_message(message_id)

    def get_message(self, message_id: int) -> Optional[MessageRecord]:
        row = self._get_connection().execute(
            f"{_MESSAGE_SELECT} WHERE m.id = ?", [message_id]
        ).fetchone()
        return _row_to_message(row) if row else None

    def get_messages(self, room_id: str, message_ids: Sequence[int]) -> List[MessageRecord]:
        """Messages of *room_id* among *message_ids*; ids elsewhere are ignored."""
        if not message_ids:
            return []
        rows = self._get_connection().execute(
            f"""
            {_MESSAGE_SELECT}
            WHERE m.room_id = ? AND m.id IN ({_placeholders(message_ids)})
            ORDER BY m.created_at ASC, m.id ASC
            """,
            [room_id, *message_ids],
        ).fetchall()
        return [_row_to_message(r) for r in rows]

    def recent_messages(self, room_id: str, limit: int) -> List[MessageRecord]:
        """Last *limit* messages of a room, oldest first."""
        rows = self._get_connection().execute(
            f"""
            SELECT * FROM (
                {_MESSAGE_SELECT}
                WHERE m.room_id = ?
                ORDER BY m.created_at DESC, m.id DESC
                LIMIT ?
            ) page
            ORDER BY page.created_at ASC, page.id ASC
            """,
            [room_id, limit],
        ).fetchall()
        return [_row_to_message(r) for r in rows]

    def messages_before(
        self, room_id: str, before: MessageRecord, limit: int
    ) -> List[MessageRecord]:
        """Up to *limit* messages strictly older than *before*, oldest first."""
        rows = self._get_connection().execute(
            f"""
            SELECT * FROM (
                {_MESSAGE_SELECT}
                WHERE m.room_id = ?
                  AND (m.created_at < ? OR (m.created_at = ? AND m.id < ?))
                ORDER BY m.created_at DESC, m.id DESC
                LIMIT ?
            ) page
            ORDER BY page.created_at ASC, page.id ASC
            """,
            [room_id, before.createdAt, before.createdAt, before.id, limit],
        ).fetchall()
        return [_row_to_message(r) for r in rows]

    def pinned_messages(self, room_id: str) -> List[MessageRecord]:
        rows = self._get_connection().execute(
            f"""
            {_MESSAGE_SELECT}
            WHERE m.room_id = ? AND m.is_pinned
            ORDER BY m.created_at ASC, m.id ASC
            """,
            [room_id],
        ).fetchall()
        return [_row_to_message(r) for r in rows]

    def set_pinned(self, message_id: int, pinned: bool) -> Optional[MessageRecord]:
        self._get_connection().execute(
            "UPDATE messages SET is_pinned = ? WHERE id = ?", [pinned, message_id]
        )
        return self.get_message(message_id)

    def soft_delete(
        self,
        room_id: str,
        message_ids: Sequence[int],
        at: Optional[float] = None,
    ) -> List[int]:
        """Stamp deleted_at on visible messages of a room.

        Already soft-deleted messages keep their original timestamp.

        Returns:
            Ids that were newly soft-deleted.
        """
        if not message_ids:
            return []
        deleted_at = at if at is not None else self.clock()
        with self.transaction() as conn:
            ids = [
                r[0] for r in conn.execute(
                    f"""
                    SELECT id FROM messages
                    WHERE room_id = ? AND deleted_at IS NULL
                      AND id IN ({_placeholders(message_ids)})
                    ORDER BY id
                    """,
                    [room_id, *message_ids],
                ).fetchall()
            ]
            if ids:
                conn.execute(
                    f"UPDATE messages SET deleted_at = ? WHERE id IN ({_placeholders(ids)})",
                    [deleted_at, *ids],
                )
        return ids

    def restore(self, room_id: str, message_ids: Sequence[int]) -> List[int]:
        """Clear deleted_at; returns the ids that were actually restored."""
        if not message_ids:
            return []
        with self.transaction() as conn:
            ids = [
                r[0] for r in conn.execute(
                    f"""
                    SELECT id FROM messages
                    WHERE room_id = ? AND deleted_at IS NOT NULL
                      AND id IN ({_placeholders(message_ids)})
                    ORDER BY id
                    """,
                    [room_id, *message_ids],
                ).fetchall()
            ]
            if ids:
                conn.execute(
                    f"UPDATE messages SET deleted_at = NULL WHERE id IN ({_placeholders(ids)})",
                    ids,
                )
        return ids

    def restore_all(self, room_id: str) -> List[int]:
        with self.transaction() as conn:
            ids = [
                r[0] for r in conn.execute(
                    "SELECT id FROM messages WHERE room_id = ? AND deleted_at IS NOT NULL ORDER BY id",
                    [room_id],
                ).fetchall()
            ]
            if ids:
                conn.execute(
                    "UPDATE messages SET deleted_at = NULL WHERE room_id = ? AND deleted_at IS NOT NULL",
                    [room_id],
                )
        return ids

    def delete_messages(self, room_id: str, message_ids: Sequence[int]) -> List[MessageRecord]:
        """Hard-delete messages of a room; returns the removed records."""
        with self.transaction() as conn:
            removed = self.get_messages(room_id, message_ids)
            if removed:
                ids = [m.id for m in removed]
                conn.execute(
                    f"DELETE FROM messages WHERE id IN ({_placeholders(ids)})", ids
                )
        return removed

    def delete_message(self, message_id: int) -> bool:
        """Hard-delete one message by id; False when it was already gone."""
        with self.transaction() as conn:
            exists = conn.execute(
                "SELECT 1 FROM messages WHERE id = ?", [message_id]
            ).fetchone()
            if exists:
                conn.execute("DELETE FROM messages WHERE id = ?", [message_id])
        return exists is not None

    def expired_messages(self, cutoff: float) -> List[MessageRecord]:
        """Soft-deleted messages (all rooms) whose deleted_at is before *cutoff*."""
        rows = self._get_connection().execute(
            f"""
            {_MESSAGE_SELECT}
            WHERE m.deleted_at IS NOT NULL AND m.deleted_at < ?
            ORDER BY m.deleted_at ASC, m.id ASC
            """,
            [cutoff],
        ).fetchall()
        return [_row_to_message(r) for r in rows]
