"""Durable store: users, rooms, room membership and messages.

The hub only talks to :class:`ChatStore`. :class:`SqliteChatStore` is the
bundled implementation; the non-realtime side of a deployment (HTTP routes,
signup, room CRUD) is expected to share the same database file.
"""

from __future__ import annotations

import json
import logging
import os
import sqlite3
import threading
import time
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from .errors import StorageError
from .models import (
    FileRef,
    Message,
    MessageContent,
    MessageDraft,
    Reaction,
    ReadReceipt,
    UserProfile,
)


def new_object_id() -> str:
    return os.urandom(12).hex()


class ChatStore:
    """Interface consumed by the messaging core.

    Implementations raise :class:`StorageError` for any backend failure and
    must make each call atomic on their own.
    """

    def find_user_by_id(self, user_id: str) -> UserProfile | None:
        raise NotImplementedError

    def is_room_member(self, room_id: str, user_id: str) -> bool:
        raise NotImplementedError

    def save_message(self, draft: MessageDraft, *, created_at: int) -> Message:
        raise NotImplementedError

    def get_message(self, message_id: str) -> Message | None:
        raise NotImplementedError

    def update_message(self, message: Message) -> None:
        raise NotImplementedError

    def room_messages(self, room_id: str, *, limit: int, offset: int) -> list[Message]:
        """Non-deleted room messages, newest first."""
        raise NotImplementedError

    def private_messages(
        self, user_a: str, user_b: str, *, limit: int, offset: int
    ) -> list[Message]:
        """Non-deleted private messages between two users, newest first."""
        raise NotImplementedError

    def close(self) -> None:
        pass


_SCHEMA = """
CREATE TABLE IF NOT EXISTS users (
    id TEXT PRIMARY KEY,
    username TEXT NOT NULL UNIQUE,
    email TEXT,
    avatar TEXT,
    created_at INTEGER NOT NULL
);
CREATE TABLE IF NOT EXISTS rooms (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    creator_id TEXT NOT NULL,
    created_at INTEGER NOT NULL
);
CREATE TABLE IF NOT EXISTS room_members (
    room_id TEXT NOT NULL,
    user_id TEXT NOT NULL,
    joined_at INTEGER NOT NULL,
    PRIMARY KEY (room_id, user_id)
);
CREATE TABLE IF NOT EXISTS messages (
    id TEXT PRIMARY KEY,
    sender_id TEXT NOT NULL,
    room_id TEXT,
    recipient_id TEXT,
    text TEXT,
    file TEXT,
    message_type TEXT NOT NULL,
    is_private INTEGER NOT NULL DEFAULT 0,
    is_edited INTEGER NOT NULL DEFAULT 0,
    edited_at INTEGER,
    is_deleted INTEGER NOT NULL DEFAULT 0,
    deleted_at INTEGER,
    reply_to TEXT,
    read_by TEXT NOT NULL DEFAULT '[]',
    reactions TEXT NOT NULL DEFAULT '[]',
    created_at INTEGER NOT NULL,
    CHECK ((room_id IS NULL) != (recipient_id IS NULL))
);
CREATE INDEX IF NOT EXISTS idx_messages_room ON messages (room_id, created_at);
CREATE INDEX IF NOT EXISTS idx_messages_pair
    ON messages (sender_id, recipient_id, created_at);
"""

_MESSAGE_COLUMNS = (
    "m.id, m.sender_id, m.room_id, m.recipient_id, m.text, m.file, m.message_type, "
    "m.is_private, m.is_edited, m.edited_at, m.is_deleted, m.deleted_at, m.reply_to, "
    "m.read_by, m.reactions, m.created_at, u.username, u.email, u.avatar"
)


def _now_ms() -> int:
    return int(time.time() * 1000)


def _dump_file(f: FileRef | None) -> str | None:
    return json.dumps(f.to_payload()) if f is not None else None


def _row_to_message(row: sqlite3.Row) -> Message:
    file_ref = None
    if row["file"]:
        file_ref = FileRef.from_payload(json.loads(row["file"]))

    sender = None
    if row["username"] is not None:
        sender = UserProfile(
            id=row["sender_id"],
            username=row["username"],
            email=row["email"],
            avatar=row["avatar"],
        )

    return Message(
        id=row["id"],
        sender_id=row["sender_id"],
        room_id=row["room_id"],
        recipient_id=row["recipient_id"],
        content=MessageContent(text=row["text"], file=file_ref),
        message_type=row["message_type"],
        created_at=int(row["created_at"]),
        is_private=bool(row["is_private"]),
        is_edited=bool(row["is_edited"]),
        edited_at=row["edited_at"],
        is_deleted=bool(row["is_deleted"]),
        deleted_at=row["deleted_at"],
        reply_to=row["reply_to"],
        read_by=[ReadReceipt(user_id=r["user"], read_at=r["readAt"]) for r in json.loads(row["read_by"])],
        reactions=[
            Reaction(user_id=r["user"], emoji=r["emoji"], added_at=r["addedAt"])
            for r in json.loads(row["reactions"])
        ],
        sender=sender,
    )


class SqliteChatStore(ChatStore):
    """SQLite-backed store.

    One connection shared across threads, serialized by an internal lock.
    ``timeout`` bounds how long a call waits on a locked database file.
    """

    def __init__(self, path: str, *, timeout: float = 5.0) -> None:
        self.path = path
        self.log = logging.getLogger("chatd.store")
        self._lock = threading.Lock()
        try:
            self._conn = sqlite3.connect(path, timeout=timeout, check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            with self._conn:
                self._conn.executescript(_SCHEMA)
        except sqlite3.Error as e:
            raise StorageError(f"cannot open database {path}: {e}") from e

    @contextmanager
    def _tx(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            try:
                with self._conn:
                    yield self._conn
            except sqlite3.Error as e:
                self.log.warning("Store operation failed path=%s err=%s", self.path, e)
                raise StorageError(str(e)) from e

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    # Users and rooms (seeding/administration; the hub only reads these)

    def create_user(
        self,
        username: str,
        *,
        email: str | None = None,
        avatar: str | None = None,
        user_id: str | None = None,
    ) -> UserProfile:
        uid = user_id or new_object_id()
        with self._tx() as conn:
            conn.execute(
                "INSERT INTO users (id, username, email, avatar, created_at) VALUES (?, ?, ?, ?, ?)",
                (uid, username, email, avatar, _now_ms()),
            )
        return UserProfile(id=uid, username=username, email=email, avatar=avatar)

    def create_room(self, name: str, creator_id: str, *, room_id: str | None = None) -> str:
        rid = room_id or new_object_id()
        now = _now_ms()
        with self._tx() as conn:
            conn.execute(
                "INSERT INTO rooms (id, name, creator_id, created_at) VALUES (?, ?, ?, ?)",
                (rid, name, creator_id, now),
            )
            conn.execute(
                "INSERT OR IGNORE INTO room_members (room_id, user_id, joined_at) VALUES (?, ?, ?)",
                (rid, creator_id, now),
            )
        return rid

    def add_room_member(self, room_id: str, user_id: str) -> None:
        with self._tx() as conn:
            conn.execute(
                "INSERT OR IGNORE INTO room_members (room_id, user_id, joined_at) VALUES (?, ?, ?)",
                (room_id, user_id, _now_ms()),
            )

    # ChatStore

    def find_user_by_id(self, user_id: str) -> UserProfile | None:
        with self._tx() as conn:
            row = conn.execute(
                "SELECT id, username, email, avatar FROM users WHERE id = ?", (user_id,)
            ).fetchone()
        if row is None:
            return None
        return UserProfile(
            id=row["id"], username=row["username"], email=row["email"], avatar=row["avatar"]
        )

    def is_room_member(self, room_id: str, user_id: str) -> bool:
        with self._tx() as conn:
            row = conn.execute(
                "SELECT 1 FROM room_members WHERE room_id = ? AND user_id = ?",
                (room_id, user_id),
            ).fetchone()
        return row is not None

    def save_message(self, draft: MessageDraft, *, created_at: int) -> Message:
        mid = new_object_id()
        with self._tx() as conn:
            conn.execute(
                "INSERT INTO messages (id, sender_id, room_id, recipient_id, text, file, "
                "message_type, is_private, reply_to, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    mid,
                    draft.sender_id,
                    draft.room_id,
                    draft.recipient_id,
                    draft.content.text,
                    _dump_file(draft.content.file),
                    draft.message_type,
                    1 if draft.recipient_id is not None else 0,
                    draft.reply_to,
                    created_at,
                ),
            )
            row = self._select_message(conn, mid)
        if row is None:
            raise StorageError(f"message {mid} vanished after insert")
        return _row_to_message(row)

    def get_message(self, message_id: str) -> Message | None:
        with self._tx() as conn:
            row = self._select_message(conn, message_id)
        return _row_to_message(row) if row is not None else None

    def update_message(self, message: Message) -> None:
        with self._tx() as conn:
            cur = conn.execute(
                "UPDATE messages SET text = ?, file = ?, is_edited = ?, edited_at = ?, "
                "is_deleted = ?, deleted_at = ?, read_by = ?, reactions = ? WHERE id = ?",
                (
                    message.content.text,
                    _dump_file(message.content.file),
                    int(message.is_edited),
                    message.edited_at,
                    int(message.is_deleted),
                    message.deleted_at,
                    json.dumps([{"user": r.user_id, "readAt": r.read_at} for r in message.read_by]),
                    json.dumps(
                        [
                            {"user": r.user_id, "emoji": r.emoji, "addedAt": r.added_at}
                            for r in message.reactions
                        ]
                    ),
                    message.id,
                ),
            )
            if cur.rowcount != 1:
                raise StorageError(f"message {message.id} not found for update")

    def room_messages(self, room_id: str, *, limit: int, offset: int) -> list[Message]:
        with self._tx() as conn:
            rows = conn.execute(
                f"SELECT {_MESSAGE_COLUMNS} FROM messages m "
                "LEFT JOIN users u ON u.id = m.sender_id "
                "WHERE m.room_id = ? AND m.is_deleted = 0 "
                "ORDER BY m.created_at DESC, m.rowid DESC LIMIT ? OFFSET ?",
                (room_id, limit, offset),
            ).fetchall()
        return [_row_to_message(r) for r in rows]

    def private_messages(
        self, user_a: str, user_b: str, *, limit: int, offset: int
    ) -> list[Message]:
        with self._tx() as conn:
            rows = conn.execute(
                f"SELECT {_MESSAGE_COLUMNS} FROM messages m "
                "LEFT JOIN users u ON u.id = m.sender_id "
                "WHERE m.is_private = 1 AND m.is_deleted = 0 AND "
                "((m.sender_id = ? AND m.recipient_id = ?) OR "
                "(m.sender_id = ? AND m.recipient_id = ?)) "
                "ORDER BY m.created_at DESC, m.rowid DESC LIMIT ? OFFSET ?",
                (user_a, user_b, user_b, user_a, limit, offset),
            ).fetchall()
        return [_row_to_message(r) for r in rows]

    def _select_message(self, conn: sqlite3.Connection, message_id: str) -> Any:
        return conn.execute(
            f"SELECT {_MESSAGE_COLUMNS} FROM messages m "
            "LEFT JOIN users u ON u.id = m.sender_id WHERE m.id = ?",
            (message_id,),
        ).fetchone()
