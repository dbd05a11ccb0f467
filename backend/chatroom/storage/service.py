"""DuckDB-based chat storage service.

This module is the storage collaborator of the chat engine: users, the
default group, direct conversations and message history all live in a
single embedded DuckDB database. The service implements the singleton
pattern so the whole process shares one database.

Database Schema:
    users:          id, username, email, created_at, updated_at
    groups:         id, name, description
    group_members:  group_id, user_id
    conversations:  id, type ('group' | 'dm'), group_id
    messages:       id (messages_seq), conversation_id, sender_id,
                    content, type, created_at (ISO-8601 UTC)

Uniqueness (username, membership rows, conversations) is enforced by the
service under a write lock rather than by table constraints.

Thread Safety:
    The public API is async: each call runs on a worker thread through
    ``asyncio.to_thread`` with its own cursor. Writes are serialized by a
    ``threading.Lock`` so check-then-insert sequences stay atomic.

Usage:
    store = ChatStore.get_instance()
    context = await store.ensure_group()
    message_id = await store.insert_message(context.conversation_id, user_id, "hi", "text", ts)
"""
import asyncio
import logging
import threading
import uuid
from datetime import datetime, timezone
from typing import List, Optional

import duckdb

from chatroom.identity.schemas import Identity

from .schemas import GroupContext, GroupMember, StoredMessage

logger = logging.getLogger(__name__)

DEFAULT_GROUP_NAME = "group"

# Namespace for deterministic conversation ids
CONVERSATION_NAMESPACE = uuid.uuid5(uuid.NAMESPACE_URL, "chatroom/conversations")


class DisplayNameConflict(Exception):
    """Raised when a display name is already held by another identity."""

    def __init__(self, display_name: str) -> None:
        super().__init__(f"Display name already in use: {display_name}")
        self.display_name = display_name


def group_conversation_id(group_id: str) -> str:
    """Deterministic conversation id of a group."""
    return str(uuid.uuid5(CONVERSATION_NAMESPACE, f"group:{group_id}"))


def direct_conversation_id(identity_a: str, identity_b: str) -> str:
    """Deterministic conversation id of a pair, independent of argument order."""
    low, high = sorted((identity_a, identity_b))
    return str(uuid.uuid5(CONVERSATION_NAMESPACE, f"dm:{low}:{high}"))


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


class ChatStore:
    """Singleton service persisting users, conversations and messages in DuckDB.

    Attributes:
        _instance: Singleton instance of the service.
        _db_path: Path to the DuckDB database file.
    """

    _instance: Optional["ChatStore"] = None
    _db_path: str = "chatroom.duckdb"

    def __init__(self, db_path: Optional[str] = None, group_name: str = DEFAULT_GROUP_NAME) -> None:
        """Initialize the store, creating the schema if needed.

        Args:
            db_path: Path to DuckDB file, or ":memory:". Defaults to "chatroom.duckdb".
            group_name: Name of the default group room.
        """
        if db_path:
            self._db_path = db_path
        self.group_name = group_name
        self._connection: Optional[duckdb.DuckDBPyConnection] = None
        self._write_lock = threading.Lock()
        self._initialize_db()

    @classmethod
    def get_instance(cls, db_path: Optional[str] = None, group_name: str = DEFAULT_GROUP_NAME) -> "ChatStore":
        """Get or create the singleton instance.

        Args:
            db_path: Optional database path (only used on first call).
            group_name: Name of the default group (only used on first call).
        """
        if cls._instance is None:
            cls._instance = cls(db_path, group_name=group_name)
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        """Close the database connection and clear the instance (for testing)."""
        if cls._instance is not None:
            cls._instance.close()
            cls._instance = None

    def _get_connection(self) -> duckdb.DuckDBPyConnection:
        if self._connection is None:
            self._connection = duckdb.connect(self._db_path)
        return self._connection

    def _cursor(self) -> duckdb.DuckDBPyConnection:
        """A per-call cursor; DuckDB connections must not be shared across threads."""
        return self._get_connection().cursor()

    def _initialize_db(self) -> None:
        """Create sequence and tables. Idempotent."""
        conn = self._get_connection()
        conn.execute("CREATE SEQUENCE IF NOT EXISTS messages_seq START 1")
        conn.execute("""
            CREATE TABLE IF NOT EXISTS users (
                id VARCHAR PRIMARY KEY,
                username VARCHAR NOT NULL,
                email VARCHAR,
                created_at VARCHAR NOT NULL,
                updated_at VARCHAR NOT NULL
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS groups (
                id VARCHAR PRIMARY KEY,
                name VARCHAR NOT NULL,
                description VARCHAR
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS group_members (
                group_id VARCHAR NOT NULL,
                user_id VARCHAR NOT NULL
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS conversations (
                id VARCHAR PRIMARY KEY,
                type VARCHAR NOT NULL,
                group_id VARCHAR
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS messages (
                id BIGINT PRIMARY KEY,
                conversation_id VARCHAR NOT NULL,
                sender_id VARCHAR NOT NULL,
                content VARCHAR NOT NULL,
                type VARCHAR NOT NULL,
                created_at VARCHAR NOT NULL
            )
        """)

    # =========================================================================
    # Users
    # =========================================================================

    def _ensure_user(self, display_name: str) -> str:
        with self._write_lock, self._cursor() as cur:
            row = cur.execute(
                "SELECT id FROM users WHERE username = ? LIMIT 1", [display_name]
            ).fetchone()
            if row:
                return row[0]
            user_id = str(uuid.uuid4())
            now = _utcnow()
            cur.execute(
                "INSERT INTO users (id, username, created_at, updated_at) VALUES (?, ?, ?, ?)",
                [user_id, display_name, now, now],
            )
            logger.info(f"[Store] Provisioned user {user_id} ({display_name})")
            return user_id

    def _get_user(self, identity_id: str) -> Optional[Identity]:
        with self._cursor() as cur:
            row = cur.execute(
                "SELECT id, username, email FROM users WHERE id = ? LIMIT 1", [identity_id]
            ).fetchone()
        if not row:
            return None
        return Identity(id=row[0], display_name=row[1], email=row[2])

    def _rename_user(self, identity_id: str, display_name: str) -> Identity:
        with self._write_lock, self._cursor() as cur:
            row = cur.execute(
                "SELECT email FROM users WHERE id = ? LIMIT 1", [identity_id]
            ).fetchone()
            if not row:
                raise LookupError(f"Unknown identity: {identity_id}")
            taken = cur.execute(
                "SELECT id FROM users WHERE username = ? AND id <> ? LIMIT 1",
                [display_name, identity_id],
            ).fetchone()
            if taken:
                raise DisplayNameConflict(display_name)
            cur.execute(
                "UPDATE users SET username = ?, updated_at = ? WHERE id = ?",
                [display_name, _utcnow(), identity_id],
            )
            return Identity(id=identity_id, display_name=display_name, email=row[0])

    async def ensure_user(self, display_name: str) -> str:
        """Return the id of the user holding ``display_name``, creating it if absent."""
        return await asyncio.to_thread(self._ensure_user, display_name)

    async def get_user(self, identity_id: str) -> Optional[Identity]:
        """Look up an identity by id."""
        return await asyncio.to_thread(self._get_user, identity_id)

    async def rename_user(self, identity_id: str, display_name: str) -> Identity:
        """Change a user's display name.

        Raises:
            DisplayNameConflict: Another identity already uses the name.
            LookupError: The identity does not exist.
        """
        return await asyncio.to_thread(self._rename_user, identity_id, display_name)

    # =========================================================================
    # Groups and conversations
    # =========================================================================

    def _ensure_group(self) -> GroupContext:
        with self._write_lock, self._cursor() as cur:
            row = cur.execute(
                "SELECT id FROM groups WHERE name = ? LIMIT 1", [self.group_name]
            ).fetchone()
            if row:
                group_id = row[0]
            else:
                group_id = str(uuid.uuid4())
                cur.execute(
                    "INSERT INTO groups (id, name, description) VALUES (?, ?, ?)",
                    [group_id, self.group_name, "Default group chat"],
                )
                logger.info(f"[Store] Created default group {group_id}")

            conversation_id = group_conversation_id(group_id)
            self._insert_conversation(cur, conversation_id, "group", group_id)
            return GroupContext(group_id=group_id, conversation_id=conversation_id)

    def _ensure_direct_conversation(self, identity_a: str, identity_b: str) -> str:
        conversation_id = direct_conversation_id(identity_a, identity_b)
        with self._write_lock, self._cursor() as cur:
            self._insert_conversation(cur, conversation_id, "dm", None)
        return conversation_id

    @staticmethod
    def _insert_conversation(
        cur: duckdb.DuckDBPyConnection, conversation_id: str, kind: str, group_id: Optional[str]
    ) -> None:
        exists = cur.execute(
            "SELECT 1 FROM conversations WHERE id = ? LIMIT 1", [conversation_id]
        ).fetchone()
        if not exists:
            cur.execute(
                "INSERT INTO conversations (id, type, group_id) VALUES (?, ?, ?)",
                [conversation_id, kind, group_id],
            )

    def _add_group_member(self, group_id: str, identity_id: str) -> None:
        with self._write_lock, self._cursor() as cur:
            exists = cur.execute(
                "SELECT 1 FROM group_members WHERE group_id = ? AND user_id = ? LIMIT 1",
                [group_id, identity_id],
            ).fetchone()
            if not exists:
                cur.execute(
                    "INSERT INTO group_members (group_id, user_id) VALUES (?, ?)",
                    [group_id, identity_id],
                )

    def _list_group_members(self, group_id: str) -> List[GroupMember]:
        with self._cursor() as cur:
            rows = cur.execute(
                """
                SELECT DISTINCT u.id, u.username, u.email
                FROM group_members gm
                JOIN users u ON u.id = gm.user_id
                WHERE gm.group_id = ?
                ORDER BY u.username
                """,
                [group_id],
            ).fetchall()
        return [
            GroupMember(identity_id=row[0], display_name=row[1] or row[2] or "Unknown", email=row[2])
            for row in rows
        ]

    async def ensure_group(self) -> GroupContext:
        """Return the default group, creating it and its conversation if needed."""
        return await asyncio.to_thread(self._ensure_group)

    async def ensure_direct_conversation(self, identity_a: str, identity_b: str) -> str:
        """Return the conversation id of a pair; idempotent and order independent."""
        return await asyncio.to_thread(self._ensure_direct_conversation, identity_a, identity_b)

    async def add_group_member(self, group_id: str, identity_id: str) -> None:
        """Record group membership (no-op if already recorded)."""
        await asyncio.to_thread(self._add_group_member, group_id, identity_id)

    async def list_group_members(self, group_id: str) -> List[GroupMember]:
        """All recorded members of a group, deduplicated by identity."""
        return await asyncio.to_thread(self._list_group_members, group_id)

    # =========================================================================
    # Messages
    # =========================================================================

    def _insert_message(
        self, conversation_id: str, sender_id: str, content: str, message_type: str, timestamp: str
    ) -> str:
        with self._write_lock, self._cursor() as cur:
            message_id = cur.execute("SELECT nextval('messages_seq')").fetchone()[0]
            cur.execute(
                """
                INSERT INTO messages (id, conversation_id, sender_id, content, type, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                [message_id, conversation_id, sender_id, content, message_type, timestamp],
            )
        return str(message_id)

    def _list_messages(self, conversation_id: str, limit: int) -> List[StoredMessage]:
        with self._cursor() as cur:
            rows = cur.execute(
                """
                SELECT * FROM (
                    SELECT m.id, m.conversation_id, m.sender_id, u.username,
                           m.content, m.type, m.created_at
                    FROM messages m
                    LEFT JOIN users u ON u.id = m.sender_id
                    WHERE m.conversation_id = ?
                    ORDER BY m.created_at DESC, m.id DESC
                    LIMIT ?
                ) recent
                ORDER BY created_at ASC, id ASC
                """,
                [conversation_id, limit],
            ).fetchall()
        return [
            StoredMessage(
                id=str(row[0]),
                conversation_id=row[1],
                sender_id=row[2],
                display_name=row[3] or "Unknown",
                content=row[4],
                type=row[5],
                timestamp=row[6],
            )
            for row in rows
        ]

    async def insert_message(
        self, conversation_id: str, sender_id: str, content: str, message_type: str, timestamp: str
    ) -> str:
        """Persist a message and return its id."""
        return await asyncio.to_thread(
            self._insert_message, conversation_id, sender_id, content, message_type, timestamp
        )

    async def list_messages(self, conversation_id: str, limit: int = 100) -> List[StoredMessage]:
        """The most recent ``limit`` messages of a conversation, oldest first."""
        return await asyncio.to_thread(self._list_messages, conversation_id, limit)

    # =========================================================================
    # Health
    # =========================================================================

    def _ping(self) -> None:
        with self._cursor() as cur:
            cur.execute("SELECT 1").fetchone()

    async def ping(self) -> None:
        """Raise if the database cannot answer a trivial query."""
        await asyncio.to_thread(self._ping)

    def close(self) -> None:
        """Close the database connection."""
        if self._connection is not None:
            self._connection.close()
            self._connection = None
