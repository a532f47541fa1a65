import asyncio
import logging
import sqlite3
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Any, AsyncIterator, Optional, Sequence, Union

import aiosqlite

from .errors import LockTimeout, constraint_violation, is_lock_error
from .migrations import AppliedStep, MigrationRunner, Step
from .models import MIGRATIONS, TABLES, GroupRole, MessageType, UserStatus


logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_db_time(value: datetime) -> str:
    """Format like SQLite's CURRENT_TIMESTAMP so stored times compare as text."""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value.isoformat(sep=" ", timespec="seconds")


def from_db_time(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def enum_or_raw(enum_cls: type[Enum], value: Optional[str]) -> Union[Enum, str, None]:
    """Decode a stored value, keeping values this build does not know as plain strings."""
    if value is None:
        return None
    try:
        return enum_cls(value)
    except ValueError:
        logger.warning(f"Unknown {enum_cls.__name__} value {value!r} in store")
        return value


@dataclass
class User:
    username: str
    id: Optional[int] = None
    avatar_url: Optional[str] = None
    status: Union[UserStatus, str, None] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: aiosqlite.Row) -> "User":
        return cls(
            id=row["id"],
            username=row["username"],
            avatar_url=row["avatar_url"],
            status=enum_or_raw(UserStatus, row["status"]),
            created_at=from_db_time(row["created_at"])
        )


@dataclass
class Message:
    sender_id: int
    receiver_id: int
    content: str
    id: Optional[int] = None
    message_type: Union[MessageType, str, None] = None
    timestamp: Optional[datetime] = None
    is_read: Optional[bool] = None

    @classmethod
    def from_row(cls, row: aiosqlite.Row) -> "Message":
        return cls(
            id=row["id"],
            sender_id=row["sender_id"],
            receiver_id=row["receiver_id"],
            content=row["content"],
            message_type=enum_or_raw(MessageType, row["message_type"]),
            timestamp=from_db_time(row["timestamp"]),
            is_read=bool(row["is_read"])
        )


@dataclass
class Contact:
    user_id: int
    contact_id: int
    added_at: Optional[datetime] = None
    user: Optional[User] = None


@dataclass
class AuthToken:
    user_id: int
    access_token: str
    expires_at: datetime
    refresh_token: Optional[str] = None
    id: Optional[int] = None
    created_at: Optional[datetime] = None

    @property
    def is_expired(self) -> bool:
        return self.expires_at <= utcnow()

    @classmethod
    def from_row(cls, row: aiosqlite.Row) -> "AuthToken":
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            access_token=row["access_token"],
            refresh_token=row["refresh_token"],
            expires_at=from_db_time(row["expires_at"]),
            created_at=from_db_time(row["created_at"])
        )


@dataclass
class Group:
    name: str
    created_by: int
    id: Optional[str] = None
    description: Optional[str] = None
    avatar_url: Optional[str] = None
    member_count: int = 0
    created_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: aiosqlite.Row) -> "Group":
        return cls(
            id=row["id"],
            name=row["name"],
            description=row["description"],
            avatar_url=row["avatar_url"],
            member_count=row["member_count"],
            created_by=row["created_by"],
            created_at=from_db_time(row["created_at"])
        )


@dataclass
class GroupMember:
    group_id: str
    user_id: int
    role: Union[GroupRole, str] = GroupRole.MEMBER
    joined_at: Optional[datetime] = None
    user: Optional[User] = None


@dataclass
class GroupContact:
    user_id: int
    group_id: str
    joined_at: Optional[datetime] = None
    group: Optional[Group] = None


@dataclass
class GroupMessage:
    group_id: str
    sender_id: int
    content: str
    id: Optional[int] = None
    message_type: Union[MessageType, str, None] = None
    timestamp: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: aiosqlite.Row) -> "GroupMessage":
        return cls(
            id=row["id"],
            group_id=row["group_id"],
            sender_id=row["sender_id"],
            content=row["content"],
            message_type=enum_or_raw(MessageType, row["message_type"]),
            timestamp=from_db_time(row["timestamp"])
        )


def _db_value(value: Any) -> Any:
    if isinstance(value, datetime):
        return to_db_time(value)
    if isinstance(value, (UserStatus, MessageType, GroupRole)):
        return value.value
    return value


class Repository:
    """
    Handle to the local store.

    ``connect()`` opens (or creates) the database file and migrates it to the
    latest schema before returning; the handle is unusable until it succeeds.
    Writes go through one lock and one transaction at a time, with foreign
    keys enforced on the connection. Other tasks read through a second,
    read-only connection, so they only ever see committed rows.
    """

    def __init__(
        self,
        db_path: Path,
        lock_timeout: float = 5.0,
        migrations: Optional[Sequence[Step]] = None,
    ):
        self.db_path = db_path
        self.lock_timeout = lock_timeout
        self.migrations = list(MIGRATIONS if migrations is None else migrations)
        self.schema_version = 0
        self._conn: Optional[aiosqlite.Connection] = None
        self._reader: Optional[aiosqlite.Connection] = None
        self._write_lock = asyncio.Lock()
        self._write_owner: Optional[asyncio.Task] = None

    @property
    def conn(self) -> aiosqlite.Connection:
        if not self._conn:
            raise RuntimeError("Store not connected.")
        return self._conn

    async def connect(self) -> None:
        conn = await aiosqlite.connect(self.db_path, timeout=self.lock_timeout, isolation_level=None)
        conn.row_factory = aiosqlite.Row

        reader: Optional[aiosqlite.Connection] = None
        try:
            await conn.execute("PRAGMA foreign_keys = ON")
            await conn.execute("PRAGMA journal_mode = WAL")
            runner = MigrationRunner(conn, self.lock_timeout)
            self.schema_version = await runner.run(self.migrations)

            reader = await aiosqlite.connect(self.db_path, timeout=self.lock_timeout, isolation_level=None)
            reader.row_factory = aiosqlite.Row
            await reader.execute("PRAGMA query_only = ON")
        except LockTimeout as e:
            await self._close_all(conn, reader)
            raise LockTimeout(self.lock_timeout, str(self.db_path)) from e
        except sqlite3.OperationalError as e:
            await self._close_all(conn, reader)
            if is_lock_error(e):
                raise LockTimeout(self.lock_timeout, str(self.db_path)) from e
            raise
        except BaseException:
            await self._close_all(conn, reader)
            raise

        self._conn = conn
        self._reader = reader
        logger.info(f"Opened store {self.db_path} at schema version {self.schema_version}")

    @staticmethod
    async def _close_all(*connections: Optional[aiosqlite.Connection]) -> None:
        for connection in connections:
            if connection:
                await connection.close()

    async def close(self) -> None:
        await self._close_all(self._reader, self._conn)
        self._reader = None
        self._conn = None

    async def __aenter__(self) -> "Repository":
        await self.connect()
        return self

    async def __aexit__(self, *args) -> None:
        await self.close()

    async def migration_history(self) -> list[AppliedStep]:
        return await MigrationRunner(self.conn, self.lock_timeout).history()

    async def table_names(self) -> list[str]:
        rows = await self.fetch_all(
            "SELECT name FROM sqlite_master WHERE type = 'table' "
            "AND name NOT LIKE 'sqlite_%' AND name != 'schema_migrations' ORDER BY name"
        )
        return [row["name"] for row in rows]

    # Generic query / command access

    async def _run(self, sql: str, params: Sequence[Any] = ()) -> aiosqlite.Cursor:
        try:
            return await self.conn.execute(sql, [_db_value(p) for p in params])
        except sqlite3.IntegrityError as e:
            raise constraint_violation(e, sql) from e
        except sqlite3.OperationalError as e:
            if is_lock_error(e):
                raise LockTimeout(self.lock_timeout, str(self.db_path)) from e
            raise

    def _holds_write_lock(self) -> bool:
        return self._write_owner is not None and self._write_owner is asyncio.current_task()

    @asynccontextmanager
    async def _writing(self) -> AsyncIterator[None]:
        # Re-entrant for the task that already holds the lock.
        if self._holds_write_lock():
            yield
            return

        async with self._write_lock:
            self._write_owner = asyncio.current_task()
            try:
                yield
            finally:
                self._write_owner = None

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator["Repository"]:
        """Run several writes atomically. Nested use joins the outer transaction."""
        if self._holds_write_lock() and self.conn.in_transaction:
            yield self
            return

        async with self._writing():
            try:
                await self.conn.execute("BEGIN IMMEDIATE")
            except sqlite3.OperationalError as e:
                if is_lock_error(e):
                    raise LockTimeout(self.lock_timeout, str(self.db_path)) from e
                raise

            try:
                yield self
                await self._run("COMMIT")
            except BaseException:
                if self.conn.in_transaction:
                    await self.conn.execute("ROLLBACK")
                raise

    async def execute(self, sql: str, params: Sequence[Any] = ()) -> int:
        async with self._writing():
            cursor = await self._run(sql, params)
            return cursor.rowcount

    async def insert(self, table: str, values: dict[str, Any]) -> int:
        """Insert a row, leaving omitted or None columns to their schema defaults."""
        async with self._writing():
            cursor = await self._insert(table, values)
            return cursor.lastrowid

    async def _insert(self, table: str, values: dict[str, Any]) -> aiosqlite.Cursor:
        present = {k: v for k, v in values.items() if v is not None}
        columns = ", ".join(present)
        placeholders = ", ".join("?" for _ in present)
        return await self._run(
            f"INSERT INTO {table} ({columns}) VALUES ({placeholders})",
            list(present.values())
        )

    def _read_conn(self) -> aiosqlite.Connection:
        # The writing task must see its own uncommitted rows; everyone else reads committed state.
        if self._holds_write_lock() or not self._reader:
            return self.conn
        return self._reader

    async def fetch_all(self, sql: str, params: Sequence[Any] = ()) -> list[aiosqlite.Row]:
        conn = self._read_conn()
        try:
            # Cursors are closed right away so the reader never pins an old snapshot.
            async with conn.execute(sql, [_db_value(p) for p in params]) as cursor:
                return list(await cursor.fetchall())
        except sqlite3.OperationalError as e:
            if is_lock_error(e):
                raise LockTimeout(self.lock_timeout, str(self.db_path)) from e
            raise

    async def fetch_one(self, sql: str, params: Sequence[Any] = ()) -> Optional[aiosqlite.Row]:
        rows = await self.fetch_all(sql, params)
        return rows[0] if rows else None

    async def _count(self, sql: str, params: Sequence[Any] = ()) -> int:
        row = await self.fetch_one(sql, params)
        return row["count"] if row else 0

    # Users

    async def create_user(
        self,
        username: str,
        avatar_url: Optional[str] = None,
        status: Optional[UserStatus] = None,
    ) -> User:
        user_id = await self.insert("users", {
            "username": username,
            "avatar_url": avatar_url,
            "status": status,
        })
        return await self.get_user(user_id)

    async def save_user(self, user: User) -> int:
        if user.id is None:
            return (await self.create_user(user.username, user.avatar_url, user.status)).id

        await self.execute(
            """
            INSERT INTO users (id, username, avatar_url, status, created_at)
            VALUES (?, ?, ?, COALESCE(?, 'offline'), COALESCE(?, CURRENT_TIMESTAMP))
            ON CONFLICT(id) DO UPDATE SET
                username = excluded.username,
                avatar_url = excluded.avatar_url,
                status = excluded.status
            """,
            (user.id, user.username, user.avatar_url, user.status, user.created_at)
        )
        return user.id

    async def get_user(self, user_id: int) -> Optional[User]:
        row = await self.fetch_one("SELECT * FROM users WHERE id = ?", (user_id,))
        return User.from_row(row) if row else None

    async def get_user_by_username(self, username: str) -> Optional[User]:
        row = await self.fetch_one("SELECT * FROM users WHERE username = ?", (username,))
        return User.from_row(row) if row else None

    async def get_all_users(self) -> list[User]:
        rows = await self.fetch_all("SELECT * FROM users ORDER BY username")
        return [User.from_row(row) for row in rows]

    async def update_user_status(self, user_id: int, status: UserStatus) -> bool:
        changed = await self.execute("UPDATE users SET status = ? WHERE id = ?", (status, user_id))
        return changed > 0

    async def search_users(self, query: str) -> list[User]:
        rows = await self.fetch_all(
            "SELECT * FROM users WHERE username LIKE ? ORDER BY username LIMIT 20",
            (f"%{query}%",)
        )
        return [User.from_row(row) for row in rows]

    # Messages

    async def save_message(self, message: Message) -> int:
        return await self.insert("messages", {
            "id": message.id,
            "sender_id": message.sender_id,
            "receiver_id": message.receiver_id,
            "content": message.content,
            "message_type": message.message_type,
            "timestamp": message.timestamp,
            "is_read": message.is_read,
        })

    async def get_message(self, message_id: int) -> Optional[Message]:
        row = await self.fetch_one("SELECT * FROM messages WHERE id = ?", (message_id,))
        return Message.from_row(row) if row else None

    async def get_messages(
        self,
        user_id: int,
        contact_id: int,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Message]:
        rows = await self.fetch_all(
            """
            SELECT * FROM messages
            WHERE (sender_id = ? AND receiver_id = ?) OR (sender_id = ? AND receiver_id = ?)
            ORDER BY timestamp DESC, id DESC
            LIMIT ? OFFSET ?
            """,
            (user_id, contact_id, contact_id, user_id, limit, offset)
        )
        return [Message.from_row(row) for row in rows]

    async def get_received_messages(self, user_id: int, unread_only: bool = False) -> list[Message]:
        query = "SELECT * FROM messages WHERE receiver_id = ?"
        if unread_only:
            query += " AND is_read = FALSE"
        query += " ORDER BY timestamp ASC, id ASC"

        rows = await self.fetch_all(query, (user_id,))
        return [Message.from_row(row) for row in rows]

    async def get_latest_message(self, user_id: int, contact_id: int) -> Optional[Message]:
        messages = await self.get_messages(user_id, contact_id, limit=1)
        return messages[0] if messages else None

    async def mark_message_as_read(self, message_id: int) -> bool:
        changed = await self.execute("UPDATE messages SET is_read = TRUE WHERE id = ?", (message_id,))
        return changed > 0

    async def mark_all_messages_as_read(self, user_id: int, contact_id: int) -> int:
        return await self.execute(
            "UPDATE messages SET is_read = TRUE WHERE sender_id = ? AND receiver_id = ? AND is_read = FALSE",
            (contact_id, user_id)
        )

    async def get_unread_message_count(self, user_id: int, contact_id: int) -> int:
        return await self._count(
            "SELECT COUNT(*) AS count FROM messages WHERE sender_id = ? AND receiver_id = ? AND is_read = FALSE",
            (contact_id, user_id)
        )

    async def get_total_unread_count(self, user_id: int) -> int:
        return await self._count(
            "SELECT COUNT(*) AS count FROM messages WHERE receiver_id = ? AND is_read = FALSE",
            (user_id,)
        )

    async def search_messages(self, user_id: int, contact_id: int, query: str) -> list[Message]:
        rows = await self.fetch_all(
            """
            SELECT * FROM messages
            WHERE ((sender_id = ? AND receiver_id = ?) OR (sender_id = ? AND receiver_id = ?))
            AND content LIKE ?
            ORDER BY timestamp DESC, id DESC
            LIMIT 50
            """,
            (user_id, contact_id, contact_id, user_id, f"%{query}%")
        )
        return [Message.from_row(row) for row in rows]

    async def clear_old_messages(self, days_old: int = 30) -> int:
        cutoff = utcnow() - timedelta(days=days_old)
        deleted = await self.execute("DELETE FROM messages WHERE timestamp < ?", (cutoff,))
        logger.info(f"Removed {deleted} messages older than {days_old} days")
        return deleted

    # Contacts

    async def add_contact(self, user_id: int, contact_id: int, added_at: Optional[datetime] = None) -> bool:
        changed = await self.execute(
            """
            INSERT INTO contacts (user_id, contact_id, added_at)
            VALUES (?, ?, COALESCE(?, CURRENT_TIMESTAMP))
            ON CONFLICT(user_id, contact_id) DO NOTHING
            """,
            (user_id, contact_id, added_at)
        )
        return changed > 0

    async def get_contacts(self, user_id: int) -> list[Contact]:
        rows = await self.fetch_all(
            """
            SELECT c.user_id, c.contact_id, c.added_at,
                   u.id, u.username, u.avatar_url, u.status, u.created_at
            FROM contacts c
            JOIN users u ON c.contact_id = u.id
            WHERE c.user_id = ?
            ORDER BY u.username
            """,
            (user_id,)
        )
        return [
            Contact(
                user_id=row["user_id"],
                contact_id=row["contact_id"],
                added_at=from_db_time(row["added_at"]),
                user=User.from_row(row)
            )
            for row in rows
        ]

    async def remove_contact(self, user_id: int, contact_id: int) -> bool:
        changed = await self.execute(
            "DELETE FROM contacts WHERE user_id = ? AND contact_id = ?",
            (user_id, contact_id)
        )
        return changed > 0

    async def is_contact(self, user_id: int, contact_id: int) -> bool:
        count = await self._count(
            "SELECT COUNT(*) AS count FROM contacts WHERE user_id = ? AND contact_id = ?",
            (user_id, contact_id)
        )
        return count > 0

    # Auth tokens
    # Issuing a token never touches earlier ones; invalidation is always explicit.

    async def save_auth_token(self, token: AuthToken) -> int:
        return await self.insert("auth_tokens", {
            "user_id": token.user_id,
            "access_token": token.access_token,
            "refresh_token": token.refresh_token,
            "expires_at": token.expires_at,
            "created_at": token.created_at,
        })

    async def get_auth_token(self, user_id: int) -> Optional[AuthToken]:
        row = await self.fetch_one(
            """
            SELECT * FROM auth_tokens
            WHERE user_id = ? AND expires_at > ?
            ORDER BY created_at DESC, id DESC
            LIMIT 1
            """,
            (user_id, utcnow())
        )
        return AuthToken.from_row(row) if row else None

    async def invalidate_auth_tokens(self, user_id: int) -> int:
        return await self.execute("DELETE FROM auth_tokens WHERE user_id = ?", (user_id,))

    async def remove_expired_tokens(self) -> int:
        return await self.execute("DELETE FROM auth_tokens WHERE expires_at <= ?", (utcnow(),))

    # Groups
    # member_count, group_members and group_contacts only change together, here.

    async def create_group(self, group: Group) -> Group:
        group_id = group.id or str(uuid.uuid4())

        async with self.transaction():
            await self._insert("groups", {
                "id": group_id,
                "name": group.name,
                "description": group.description,
                "avatar_url": group.avatar_url,
                "member_count": 0,
                "created_by": group.created_by,
                "created_at": group.created_at,
            })
            await self._add_member(group_id, group.created_by, GroupRole.OWNER)

        logger.info(f"Created group {group_id} ({group.name})")
        return await self.get_group(group_id)

    async def get_group(self, group_id: str) -> Optional[Group]:
        row = await self.fetch_one("SELECT * FROM groups WHERE id = ?", (group_id,))
        return Group.from_row(row) if row else None

    async def get_all_groups(self) -> list[Group]:
        rows = await self.fetch_all("SELECT * FROM groups ORDER BY name")
        return [Group.from_row(row) for row in rows]

    async def add_group_member(
        self,
        group_id: str,
        user_id: int,
        role: GroupRole = GroupRole.MEMBER,
    ) -> bool:
        async with self.transaction():
            return await self._add_member(group_id, user_id, role)

    async def remove_group_member(self, group_id: str, user_id: int) -> bool:
        async with self.transaction():
            cursor = await self._run(
                "DELETE FROM group_members WHERE group_id = ? AND user_id = ?",
                (group_id, user_id)
            )
            if cursor.rowcount == 0:
                return False
            await self._run(
                "DELETE FROM group_contacts WHERE user_id = ? AND group_id = ?",
                (user_id, group_id)
            )
            await self._refresh_member_count(group_id)
        return True

    async def _add_member(self, group_id: str, user_id: int, role: GroupRole) -> bool:
        existing = await self.fetch_one(
            "SELECT 1 FROM group_members WHERE group_id = ? AND user_id = ?",
            (group_id, user_id)
        )
        if existing:
            return False

        await self._insert("group_members", {"group_id": group_id, "user_id": user_id, "role": role})
        await self._run(
            "INSERT INTO group_contacts (user_id, group_id) VALUES (?, ?) ON CONFLICT(user_id, group_id) DO NOTHING",
            (user_id, group_id)
        )
        await self._refresh_member_count(group_id)
        return True

    async def _refresh_member_count(self, group_id: str) -> None:
        await self._run(
            """
            UPDATE groups
            SET member_count = (SELECT COUNT(*) FROM group_members WHERE group_id = ?)
            WHERE id = ?
            """,
            (group_id, group_id)
        )

    async def get_group_members(self, group_id: str) -> list[GroupMember]:
        rows = await self.fetch_all(
            """
            SELECT gm.group_id, gm.user_id, gm.role, gm.joined_at,
                   u.id, u.username, u.avatar_url, u.status, u.created_at
            FROM group_members gm
            JOIN users u ON gm.user_id = u.id
            WHERE gm.group_id = ?
            ORDER BY gm.joined_at, u.username
            """,
            (group_id,)
        )
        return [
            GroupMember(
                group_id=row["group_id"],
                user_id=row["user_id"],
                role=enum_or_raw(GroupRole, row["role"]),
                joined_at=from_db_time(row["joined_at"]),
                user=User.from_row(row)
            )
            for row in rows
        ]

    async def get_user_groups(self, user_id: int) -> list[GroupContact]:
        rows = await self.fetch_all(
            """
            SELECT gc.user_id, gc.group_id, gc.joined_at,
                   g.id, g.name, g.description, g.avatar_url, g.member_count, g.created_by, g.created_at
            FROM group_contacts gc
            JOIN groups g ON gc.group_id = g.id
            WHERE gc.user_id = ?
            ORDER BY g.name
            """,
            (user_id,)
        )
        return [
            GroupContact(
                user_id=row["user_id"],
                group_id=row["group_id"],
                joined_at=from_db_time(row["joined_at"]),
                group=Group.from_row(row)
            )
            for row in rows
        ]

    async def is_group_member(self, group_id: str, user_id: int) -> bool:
        count = await self._count(
            "SELECT COUNT(*) AS count FROM group_members WHERE group_id = ? AND user_id = ?",
            (group_id, user_id)
        )
        return count > 0

    # Group messages

    async def save_group_message(self, message: GroupMessage) -> int:
        return await self.insert("group_messages", {
            "id": message.id,
            "group_id": message.group_id,
            "sender_id": message.sender_id,
            "content": message.content,
            "message_type": message.message_type,
            "timestamp": message.timestamp,
        })

    async def get_group_messages(self, group_id: str, limit: int = 50, offset: int = 0) -> list[GroupMessage]:
        rows = await self.fetch_all(
            """
            SELECT * FROM group_messages
            WHERE group_id = ?
            ORDER BY timestamp DESC, id DESC
            LIMIT ? OFFSET ?
            """,
            (group_id, limit, offset)
        )
        return [GroupMessage.from_row(row) for row in rows]

    async def get_latest_group_message(self, group_id: str) -> Optional[GroupMessage]:
        messages = await self.get_group_messages(group_id, limit=1)
        return messages[0] if messages else None

    # Maintenance

    async def get_stats(self) -> dict[str, int]:
        stats = {}
        for table in reversed(TABLES):
            stats[table] = await self._count(f"SELECT COUNT(*) AS count FROM {table}")
        return stats

    async def clear_all_data(self) -> None:
        async with self.transaction():
            for table in TABLES:
                await self._run(f"DELETE FROM {table}")
        logger.warning(f"Cleared all data in {self.db_path}")
