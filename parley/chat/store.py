"""DuckDB-backed persistence for rooms and messages.

Database Schema:
    rooms:
        - name: Room name (primary key)
        - created_at: Creation time, epoch seconds
    messages:
        - id: Server-assigned message id (primary key)
        - channel_key: Room name or DM key
        - is_private, sender_id, sender_name, sender_avatar, receiver_id
        - body: Text, NULL for file messages
        - attachment_url, attachment_name: File attachment, NULL for text
        - timestamp: Server time, epoch seconds
        - delivered: Set once fan-out succeeded
    message_reads:
        - (message_id, username) primary key, read_at
    message_reactions:
        - (message_id, symbol, username) primary key, reacted_at

Read receipts and reactions live in their own tables keyed by the set
element, so adding one is a single ``INSERT ... ON CONFLICT DO NOTHING``.
Two near-simultaneous reactions to the same message therefore both land; no
read-modify-write of a shared list ever happens.

Thread Safety:
    The DuckDB connection is NOT thread-safe. All calls are made from the
    event loop thread, and none of them await, so each call is atomic with
    respect to the other connection handlers.

Usage:
    store = ChatStore.get_instance()
    store.insert_message(message)
    store.add_reaction(message.id, "👍", "alice")
"""
import logging
import time
from typing import Dict, List, Optional, Sequence, Tuple

import duckdb

from .errors import PersistenceFailure
from .schemas import Attachment, ChatMessage, Room

logger = logging.getLogger(__name__)

_SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS rooms (
        name       VARCHAR PRIMARY KEY,
        created_at DOUBLE  NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS messages (
        id              VARCHAR PRIMARY KEY,
        channel_key     VARCHAR NOT NULL,
        is_private      BOOLEAN NOT NULL DEFAULT FALSE,
        sender_id       VARCHAR NOT NULL,
        sender_name     VARCHAR NOT NULL DEFAULT '',
        sender_avatar   VARCHAR,
        receiver_id     VARCHAR,
        body            VARCHAR,
        attachment_url  VARCHAR,
        attachment_name VARCHAR,
        timestamp       DOUBLE  NOT NULL,
        delivered       BOOLEAN NOT NULL DEFAULT FALSE
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_messages_channel ON messages(channel_key)",
    """
    CREATE TABLE IF NOT EXISTS message_reads (
        message_id VARCHAR NOT NULL,
        username   VARCHAR NOT NULL,
        read_at    DOUBLE  NOT NULL,
        PRIMARY KEY (message_id, username)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS message_reactions (
        message_id VARCHAR NOT NULL,
        symbol     VARCHAR NOT NULL,
        username   VARCHAR NOT NULL,
        reacted_at DOUBLE  NOT NULL,
        PRIMARY KEY (message_id, symbol, username)
    )
    """,
]

_MESSAGE_COLUMNS = (
    "id, channel_key, is_private, sender_id, sender_name, sender_avatar, "
    "receiver_id, body, attachment_url, attachment_name, timestamp, delivered"
)


class ChatStore:
    """Singleton store for rooms and messages.

    Every public method wraps ``duckdb.Error`` in ``PersistenceFailure`` so
    callers only deal with the chat error taxonomy.

    Attributes:
        _instance: Singleton instance of the store.
        _db_path: Path to the DuckDB database file.
    """

    _instance: Optional["ChatStore"] = None
    _db_path: str = "parley.duckdb"

    def __init__(self, db_path: Optional[str] = None) -> None:
        if db_path:
            self._db_path = db_path
        self._connection: Optional[duckdb.DuckDBPyConnection] = None
        self._initialize_db()
        logger.info("[Store] Initialized with db=%s", self._db_path)

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
        """Close the connection and drop the instance (used on shutdown and in tests)."""
        if cls._instance is not None:
            cls._instance.close()
            cls._instance = None

    def close(self) -> None:
        if self._connection is not None:
            self._connection.close()
            self._connection = None

    def _get_connection(self) -> duckdb.DuckDBPyConnection:
        if self._connection is None:
            self._connection = duckdb.connect(self._db_path)
        return self._connection

    def _initialize_db(self) -> None:
        conn = self._get_connection()
        for statement in _SCHEMA:
            conn.execute(statement)

    def _execute(self, sql: str, params: Sequence = ()) -> duckdb.DuckDBPyConnection:
        try:
            return self._get_connection().execute(sql, list(params))
        except duckdb.Error as e:
            logger.error("[Store] Query failed: %s", e)
            raise PersistenceFailure(f"Storage error: {e}") from e

    # =========================================================================
    # Rooms
    # =========================================================================

    def upsert_room(self, name: str) -> Tuple[Room, bool]:
        """Insert a room unless it exists.

        Returns:
            Tuple of (room, created) where ``created`` is True only for the
            call that actually inserted the row.
        """
        row = self._execute(
            "INSERT INTO rooms (name, created_at) VALUES (?, ?) "
            "ON CONFLICT DO NOTHING RETURNING name, created_at",
            [name, time.time()],
        ).fetchone()
        if row:
            return Room(name=row[0], createdAt=row[1]), True
        return self.get_room(name), False

    def get_room(self, name: str) -> Optional[Room]:
        row = self._execute(
            "SELECT name, created_at FROM rooms WHERE name = ?", [name]
        ).fetchone()
        if not row:
            return None
        return Room(name=row[0], createdAt=row[1])

    def list_rooms(self) -> List[Room]:
        rows = self._execute(
            "SELECT name, created_at FROM rooms ORDER BY created_at ASC, name ASC"
        ).fetchall()
        return [Room(name=r[0], createdAt=r[1]) for r in rows]

    # =========================================================================
    # Messages
    # =========================================================================

    def insert_message(self, message: ChatMessage) -> ChatMessage:
        attachment = message.attachment
        self._execute(
            f"""
            INSERT INTO messages ({_MESSAGE_COLUMNS})
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            [
                message.id,
                message.channelKey,
                message.isPrivate,
                message.senderId,
                message.senderName,
                message.senderAvatar,
                message.receiverId,
                message.body,
                attachment.url if attachment else None,
                attachment.fileName if attachment else None,
                message.timestamp,
                message.delivered,
            ],
        )
        return message

    def mark_delivered(self, message_id: str) -> None:
        self._execute("UPDATE messages SET delivered = TRUE WHERE id = ?", [message_id])

    def get_message(self, message_id: str) -> Optional[ChatMessage]:
        row = self._execute(
            f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE id = ?", [message_id]
        ).fetchone()
        if not row:
            return None
        return self._hydrate([row])[0]

    def list_messages(
        self, channel_key: Optional[str] = None, limit: int = 200
    ) -> List[ChatMessage]:
        """Return the newest ``limit`` messages, oldest first.

        Args:
            channel_key: Restrict to one room or DM channel. None means all.
            limit: Maximum number of messages.
        """
        where = "WHERE channel_key = ?" if channel_key is not None else ""
        params: list = [channel_key] if channel_key is not None else []
        rows = self._execute(
            f"""
            SELECT * FROM (
                SELECT {_MESSAGE_COLUMNS} FROM messages {where}
                ORDER BY timestamp DESC, id DESC
                LIMIT ?
            ) ORDER BY timestamp ASC, id ASC
            """,
            params + [limit],
        ).fetchall()
        return self._hydrate(rows)

    # =========================================================================
    # Append-only sets
    # =========================================================================

    def add_reader(self, message_id: str, username: str) -> bool:
        """Add ``username`` to the message's readBy set.

        Returns:
            True if the reader was added, False if already present.
        """
        return self._add_to_set(
            "message_reads",
            ("message_id", "username"),
            (message_id, username),
            "read_at",
        )

    def add_reaction(self, message_id: str, symbol: str, username: str) -> bool:
        """Add ``username`` to ``reactions[symbol]``.

        Returns:
            True if the reaction was added, False if already present.
        """
        return self._add_to_set(
            "message_reactions",
            ("message_id", "symbol", "username"),
            (message_id, symbol, username),
            "reacted_at",
        )

    def get_read_by(self, message_id: str) -> List[str]:
        return self._read_by_for([message_id]).get(message_id, [])

    def get_reactions(self, message_id: str) -> Dict[str, List[str]]:
        return self._reactions_for([message_id]).get(message_id, {})

    def _add_to_set(
        self,
        table: str,
        key_columns: Tuple[str, ...],
        key_values: Tuple[str, ...],
        time_column: str,
    ) -> bool:
        """Insert one set element. Returns False if it was already present."""
        columns = ", ".join(key_columns + (time_column,))
        placeholders = ", ".join("?" for _ in range(len(key_columns) + 1))
        added = self._execute(
            f"INSERT INTO {table} ({columns}) VALUES ({placeholders}) "
            "ON CONFLICT DO NOTHING RETURNING 1",
            list(key_values) + [time.time()],
        ).fetchone()
        return added is not None

    # =========================================================================
    # Internal
    # =========================================================================

    def _read_by_for(self, message_ids: List[str]) -> Dict[str, List[str]]:
        if not message_ids:
            return {}
        placeholders = ", ".join("?" for _ in message_ids)
        rows = self._execute(
            f"""
            SELECT message_id, username FROM message_reads
            WHERE message_id IN ({placeholders})
            ORDER BY read_at ASC, username ASC
            """,
            message_ids,
        ).fetchall()
        read_by: Dict[str, List[str]] = {}
        for message_id, username in rows:
            read_by.setdefault(message_id, []).append(username)
        return read_by

    def _reactions_for(self, message_ids: List[str]) -> Dict[str, Dict[str, List[str]]]:
        if not message_ids:
            return {}
        placeholders = ", ".join("?" for _ in message_ids)
        rows = self._execute(
            f"""
            SELECT message_id, symbol, username FROM message_reactions
            WHERE message_id IN ({placeholders})
            ORDER BY reacted_at ASC, symbol ASC, username ASC
            """,
            message_ids,
        ).fetchall()
        reactions: Dict[str, Dict[str, List[str]]] = {}
        for message_id, symbol, username in rows:
            reactions.setdefault(message_id, {}).setdefault(symbol, []).append(username)
        return reactions

    def _hydrate(self, rows: List[tuple]) -> List[ChatMessage]:
        ids = [r[0] for r in rows]
        read_by = self._read_by_for(ids)
        reactions = self._reactions_for(ids)
        messages = []
        for r in rows:
            attachment = Attachment(url=r[8], fileName=r[9]) if r[8] else None
            messages.append(ChatMessage(
                id=r[0],
                channelKey=r[1],
                isPrivate=r[2],
                senderId=r[3],
                senderName=r[4],
                senderAvatar=r[5],
                receiverId=r[6],
                body=r[7],
                attachment=attachment,
                timestamp=r[10],
                delivered=r[11],
                readBy=read_by.get(r[0], []),
                reactions=reactions.get(r[0], {}),
            ))
        return messages
