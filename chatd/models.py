"""Durable records exchanged with the store, and their wire payloads."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from .constants import MSG_TEXT


@dataclass(frozen=True)
class UserProfile:
    id: str
    username: str
    email: str | None = None
    avatar: str | None = None

    def public(self) -> dict[str, Any]:
        return {"_id": self.id, "username": self.username, "avatar": self.avatar}


@dataclass(frozen=True)
class AuthenticatedUser:
    user_id: str
    username: str


@dataclass(frozen=True)
class FileRef:
    url: str
    filename: str | None = None
    original_name: str | None = None
    mimetype: str | None = None
    size: int | None = None

    def to_payload(self) -> dict[str, Any]:
        out: dict[str, Any] = {"url": self.url}
        if self.filename is not None:
            out["filename"] = self.filename
        if self.original_name is not None:
            out["originalName"] = self.original_name
        if self.mimetype is not None:
            out["mimetype"] = self.mimetype
        if self.size is not None:
            out["size"] = self.size
        return out

    @classmethod
    def from_payload(cls, data: Any) -> FileRef | None:
        if not isinstance(data, dict):
            return None
        url = data.get("url")
        if not isinstance(url, str) or not url.strip():
            return None
        size = data.get("size")
        return cls(
            url=url.strip(),
            filename=data.get("filename") if isinstance(data.get("filename"), str) else None,
            original_name=(
                data.get("originalName") if isinstance(data.get("originalName"), str) else None
            ),
            mimetype=data.get("mimetype") if isinstance(data.get("mimetype"), str) else None,
            size=size if isinstance(size, int) and size >= 0 else None,
        )


@dataclass(frozen=True)
class MessageContent:
    text: str | None = None
    file: FileRef | None = None


@dataclass(frozen=True)
class RoomTarget:
    room_id: str


@dataclass(frozen=True)
class PrivateTarget:
    recipient_id: str


@dataclass
class ReadReceipt:
    user_id: str
    read_at: int


@dataclass
class Reaction:
    user_id: str
    emoji: str
    added_at: int


@dataclass
class MessageDraft:
    sender_id: str
    content: MessageContent
    message_type: str = MSG_TEXT
    room_id: str | None = None
    recipient_id: str | None = None
    reply_to: str | None = None


@dataclass
class Message:
    id: str
    sender_id: str
    content: MessageContent
    message_type: str
    created_at: int
    room_id: str | None = None
    recipient_id: str | None = None
    is_private: bool = False
    is_edited: bool = False
    edited_at: int | None = None
    is_deleted: bool = False
    deleted_at: int | None = None
    reply_to: str | None = None
    read_by: list[ReadReceipt] = field(default_factory=list)
    reactions: list[Reaction] = field(default_factory=list)
    sender: UserProfile | None = None

    @property
    def text(self) -> str:
        return self.content.text or ""

    def is_read_by(self, user_id: str) -> bool:
        return any(r.user_id == user_id for r in self.read_by)

    def to_event(self, sender_username: str) -> dict[str, Any]:
        """Live ``room_message``/``private_message`` body."""
        body: dict[str, Any] = {
            "senderId": self.sender_id,
            "senderUsername": sender_username,
            "message": self.text,
            "messageType": self.message_type,
            "timestamp": self.created_at,
            "_id": self.id,
        }
        if self.room_id is not None:
            body["roomId"] = self.room_id
        else:
            body["recipientId"] = self.recipient_id
            body["isPrivate"] = True
        if self.content.file is not None:
            body["file"] = self.content.file.to_payload()
        if self.reply_to is not None:
            body["replyTo"] = self.reply_to
        return body

    def to_record(self) -> dict[str, Any]:
        """Full record, as returned by history queries."""
        content: dict[str, Any] = {"text": self.content.text}
        if self.content.file is not None:
            content["file"] = self.content.file.to_payload()
        return {
            "_id": self.id,
            "sender": self.sender.public() if self.sender else {"_id": self.sender_id},
            "room": self.room_id,
            "recipient": self.recipient_id,
            "content": content,
            "messageType": self.message_type,
            "isPrivate": self.is_private,
            "isEdited": self.is_edited,
            "editedAt": self.edited_at,
            "isDeleted": self.is_deleted,
            "deletedAt": self.deleted_at,
            "replyTo": self.reply_to,
            "readBy": [{"user": r.user_id, "readAt": r.read_at} for r in self.read_by],
            "reactions": [
                {"user": r.user_id, "emoji": r.emoji, "addedAt": r.added_at}
                for r in self.reactions
            ],
            "createdAt": self.created_at,
        }
