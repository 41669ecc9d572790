"""Message persistence gateway.

The only path from the live hub to durable storage. Every operation either
returns the stored record or raises a :mod:`chatd.errors` exception; callers
broadcast only after a successful return.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, replace

from .constants import DELETED_TEXT, MAX_TEXT_CHARS, MESSAGE_TYPES, MSG_FILE, MSG_IMAGE, MSG_TEXT
from .errors import AuthorizationError, NotFound, PermissionDenied, StorageError, ValidationError
from .models import (
    Message,
    MessageContent,
    MessageDraft,
    PrivateTarget,
    Reaction,
    ReadReceipt,
    RoomTarget,
)
from .store import ChatStore


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class HistoryPage:
    messages: list[Message]
    has_more: bool
    page: int = 1


class MessageGateway:
    def __init__(
        self,
        store: ChatStore,
        *,
        edit_window_s: float = 15 * 60,
        delete_window_s: float = 60 * 60,
        page_size: int = 50,
        enforce_room_membership: bool = True,
        clock=_now_ms,
    ) -> None:
        self.store = store
        self.edit_window_ms = int(edit_window_s * 1000)
        self.delete_window_ms = int(delete_window_s * 1000)
        self.page_size = page_size
        self.enforce_room_membership = enforce_room_membership
        self._clock = clock
        self.log = logging.getLogger("chatd.gateway")

    def persist(
        self,
        sender_id: str,
        target: RoomTarget | PrivateTarget,
        content: MessageContent,
        message_type: str = MSG_TEXT,
        *,
        reply_to: str | None = None,
    ) -> Message:
        """Validate and durably store one message."""
        if isinstance(target, RoomTarget):
            room_id, recipient_id = target.room_id, None
        elif isinstance(target, PrivateTarget):
            room_id, recipient_id = None, target.recipient_id
        else:
            raise ValidationError("message needs exactly one of roomId or recipientId")
        if not (room_id or recipient_id):
            raise ValidationError("message needs exactly one of roomId or recipientId")

        content = self._validate_content(content, message_type)
        if recipient_id is not None:
            if self._call(self.store.find_user_by_id, recipient_id) is None:
                raise NotFound("Recipient not found")

        draft = MessageDraft(
            sender_id=sender_id,
            content=content,
            message_type=message_type,
            room_id=room_id,
            recipient_id=recipient_id,
            reply_to=reply_to,
        )
        message = self._call(self.store.save_message, draft, created_at=self._clock())
        if message.sender is None:
            # Already stored; the event falls back to the bare sender id.
            try:
                message.sender = self._call(self.store.find_user_by_id, sender_id)
            except StorageError as e:
                self.log.warning("Sender lookup failed message=%s err=%s", message.id, e)
        self.log.debug(
            "Persisted message id=%s sender=%s room=%s recipient=%s type=%s",
            message.id,
            sender_id,
            room_id,
            recipient_id,
            message_type,
        )
        return message

    def check_room_member(self, room_id: str, user_id: str) -> None:
        if not self._call(self.store.is_room_member, room_id, user_id):
            raise AuthorizationError()

    def edit(self, message_id: str, user_id: str, text: str) -> Message:
        message = self._load(message_id)
        if message.message_type != MSG_TEXT:
            raise PermissionDenied("Cannot edit this message")
        if not self._within(message, user_id, self.edit_window_ms):
            raise PermissionDenied("Cannot edit this message")
        new_text = self._validate_text(text, required=True)

        message.content = replace(message.content, text=new_text)
        message.is_edited = True
        message.edited_at = self._clock()
        self._call(self.store.update_message, message)
        return message

    def delete(self, message_id: str, user_id: str) -> Message:
        message = self._load(message_id)
        if not self._within(message, user_id, self.delete_window_ms):
            raise PermissionDenied("Cannot delete this message")

        message.is_deleted = True
        message.deleted_at = self._clock()
        message.content = MessageContent(text=DELETED_TEXT, file=None)
        self._call(self.store.update_message, message)
        return message

    def add_reaction(self, message_id: str, user_id: str, emoji: str) -> Message:
        emoji = self._validate_emoji(emoji)
        message = self._load(message_id)
        self._check_access(message, user_id)
        if any(r.user_id == user_id and r.emoji == emoji for r in message.reactions):
            raise ValidationError("Reaction already exists")
        message.reactions.append(Reaction(user_id=user_id, emoji=emoji, added_at=self._clock()))
        self._call(self.store.update_message, message)
        return message

    def remove_reaction(self, message_id: str, user_id: str, emoji: str) -> Message:
        emoji = self._validate_emoji(emoji)
        message = self._load(message_id)
        self._check_access(message, user_id)
        before = len(message.reactions)
        message.reactions = [
            r for r in message.reactions if not (r.user_id == user_id and r.emoji == emoji)
        ]
        if len(message.reactions) != before:
            self._call(self.store.update_message, message)
        return message

    def mark_read(self, message_id: str, user_id: str) -> Message:
        message = self._load(message_id)
        self._check_access(message, user_id)
        if self._mark_read_in_place(message, user_id):
            self._call(self.store.update_message, message)
        return message

    def room_history(
        self, room_id: str, user_id: str, *, page: int = 1, limit: int | None = None
    ) -> HistoryPage:
        """One page of a room's messages, oldest first. Marks them read."""
        self.check_room_member(room_id, user_id)
        page, limit, offset = self._paging(page, limit)
        messages = self._call(self.store.room_messages, room_id, limit=limit, offset=offset)
        for m in messages:
            if self._mark_read_in_place(m, user_id):
                self._call(self.store.update_message, m)
        messages.reverse()
        return HistoryPage(messages=messages, has_more=len(messages) == limit, page=page)

    def private_history(
        self, user_id: str, other_id: str, *, page: int = 1, limit: int | None = None
    ) -> HistoryPage:
        if self._call(self.store.find_user_by_id, other_id) is None:
            raise NotFound("User not found")
        page, limit, offset = self._paging(page, limit)
        messages = self._call(
            self.store.private_messages, user_id, other_id, limit=limit, offset=offset
        )
        for m in messages:
            if m.recipient_id == user_id and self._mark_read_in_place(m, user_id):
                self._call(self.store.update_message, m)
        messages.reverse()
        return HistoryPage(messages=messages, has_more=len(messages) == limit, page=page)

    def _validate_text(self, text, *, required: bool) -> str | None:
        if text is None:
            if required:
                raise ValidationError("Message content is required")
            return None
        if not isinstance(text, str):
            raise ValidationError("message text must be a string")
        if required and not text.strip():
            raise ValidationError("Message content is required")
        if len(text) > MAX_TEXT_CHARS:
            raise ValidationError(f"message longer than {MAX_TEXT_CHARS} characters")
        return text

    def _validate_content(self, content: MessageContent, message_type: str) -> MessageContent:
        if message_type not in MESSAGE_TYPES:
            raise ValidationError(f"unknown messageType {message_type!r}")

        if message_type == MSG_TEXT:
            text = self._validate_text(content.text, required=True)
            return MessageContent(text=text, file=content.file)

        if message_type in (MSG_IMAGE, MSG_FILE):
            text = self._validate_text(content.text, required=False)
            if content.file is None and not (text and text.strip()):
                raise ValidationError(f"{message_type} message needs a file or a URL")
            return MessageContent(text=text, file=content.file)

        text = self._validate_text(content.text, required=True)
        return MessageContent(text=text, file=None)

    def _validate_emoji(self, emoji) -> str:
        if not isinstance(emoji, str) or not emoji.strip():
            raise ValidationError("Emoji is required")
        if len(emoji) > 32:
            raise ValidationError("emoji too long")
        return emoji.strip()

    def _within(self, message: Message, user_id: str, window_ms: int) -> bool:
        age = self._clock() - message.created_at
        return message.sender_id == user_id and age < window_ms and not message.is_deleted

    def _mark_read_in_place(self, message: Message, user_id: str) -> bool:
        if message.is_read_by(user_id):
            return False
        message.read_by.append(ReadReceipt(user_id=user_id, read_at=self._clock()))
        return True

    def _load(self, message_id) -> Message:
        if not isinstance(message_id, str) or not message_id:
            raise ValidationError("messageId is required")
        message = self._call(self.store.get_message, message_id)
        if message is None or message.is_deleted:
            raise NotFound()
        return message

    def _check_access(self, message: Message, user_id: str) -> None:
        if message.room_id is None:
            if user_id not in (message.sender_id, message.recipient_id):
                raise PermissionDenied()
        elif self.enforce_room_membership:
            self.check_room_member(message.room_id, user_id)

    def _paging(self, page, limit) -> tuple[int, int, int]:
        try:
            page_i = max(1, int(page))
        except (TypeError, ValueError):
            page_i = 1
        try:
            limit_i = int(limit) if limit is not None else self.page_size
        except (TypeError, ValueError):
            limit_i = self.page_size
        limit_i = max(1, min(limit_i, self.page_size))
        return page_i, limit_i, (page_i - 1) * limit_i

    def _call(self, fn, *args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except StorageError:
            raise
        except TimeoutError as e:
            raise StorageError(f"store timed out: {e}") from e
        except OSError as e:
            raise StorageError(f"store I/O error: {e}") from e
