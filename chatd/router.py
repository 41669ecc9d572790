from __future__ import annotations

import logging
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

import RNS

from . import __version__
from .constants import (
    B_HELLO_TOKEN,
    B_WELCOME_HUB,
    B_WELCOME_VER,
    DELETED_TEXT,
    K_BODY,
    K_ROOM,
    K_T,
    MSG_SYSTEM,
    MSG_TEXT,
    T_ADD_REACTION,
    T_DELETE_MESSAGE,
    T_EDIT_MESSAGE,
    T_FETCH_HISTORY,
    T_GET_ONLINE_USERS,
    T_HELLO,
    T_HISTORY,
    T_JOIN_ROOM,
    T_LEAVE_ROOM,
    T_MARK_READ,
    T_MESSAGE_DELETED,
    T_MESSAGE_EDITED,
    T_MESSAGE_REACTION,
    T_MESSAGE_READ,
    T_ONLINE_USERS,
    T_PING,
    T_PONG,
    T_PRIVATE_MESSAGE,
    T_REMOVE_REACTION,
    T_RESOURCE_ENVELOPE,
    T_ROOM_MESSAGE,
    T_TYPING_START,
    T_TYPING_STOP,
    T_USER_JOINED_ROOM,
    T_USER_LEFT_ROOM,
    T_USER_ONLINE,
    T_USER_STOP_TYPING,
    T_USER_TYPING,
    T_WELCOME,
)
from .envelope import decode_envelope, event_name
from .errors import AuthError, ChatError, StorageError, ValidationError
from .models import FileRef, Message, MessageContent, PrivateTarget, RoomTarget
from .util import link_id_hex, normalize_room_id, normalize_user_id

if TYPE_CHECKING:
    from .service import HubService

Outgoing = list[tuple[RNS.Link, bytes | None]]
FollowUp = Callable[[Outgoing], None]

# What the sender sees when the store fails; internals are only logged.
_STORAGE_FAILURE_TEXT = {
    T_ROOM_MESSAGE: "Failed to send message",
    T_PRIVATE_MESSAGE: "Failed to send private message",
    T_FETCH_HISTORY: "Failed to fetch messages",
}


class EventRouter:
    """
    Decodes inbound envelopes and dispatches them by event type.

    This class is responsible for:
    - Rate limiting and envelope validation
    - The authentication gate: HELLO first, everything else refused
    - A closed dispatch table; unknown event types get an error
    - Turning every handler failure into one ``error`` event

    ``route_packet`` runs with the hub state lock held and never touches the
    durable store. Handlers that need the store return a follow-up; the hub
    runs it after releasing the lock. The follow-up does the store call
    unlocked, then re-takes the lock and re-checks the sessions it depends on
    before queuing deliveries.
    """

    def __init__(self, hub: HubService) -> None:
        self.hub = hub
        self.log = logging.getLogger("chatd.router")
        self._handlers: dict[int, Callable[..., FollowUp | None]] = {
            T_HELLO: self._handle_re_hello,
            T_JOIN_ROOM: self._handle_join_room,
            T_LEAVE_ROOM: self._handle_leave_room,
            T_ROOM_MESSAGE: self._handle_room_message,
            T_PRIVATE_MESSAGE: self._handle_private_message,
            T_TYPING_START: self._handle_typing_start,
            T_TYPING_STOP: self._handle_typing_stop,
            T_GET_ONLINE_USERS: self._handle_get_online_users,
            T_EDIT_MESSAGE: self._handle_edit_message,
            T_DELETE_MESSAGE: self._handle_delete_message,
            T_ADD_REACTION: self._handle_add_reaction,
            T_REMOVE_REACTION: self._handle_remove_reaction,
            T_MARK_READ: self._handle_mark_read,
            T_FETCH_HISTORY: self._handle_fetch_history,
            T_RESOURCE_ENVELOPE: self._handle_resource_envelope,
        }

    def route_packet(self, link: RNS.Link, data: bytes, outgoing: Outgoing) -> FollowUp | None:
        """
        Main entry point for routing an incoming packet.

        This method should be called with the state lock held.
        """
        sess = self.hub.session_manager.sessions.get(link)
        if sess is None:
            return None

        stats = self.hub.stats_manager
        stats.inc("pkts_in")
        stats.inc("bytes_in", len(data))

        if not self.hub.session_manager.refill_and_take(link, 1.0):
            stats.inc("rate_limited")
            if self.log.isEnabledFor(logging.DEBUG):
                self.log.debug(
                    "Rate limited user=%s link_id=%s", sess.get("user_id"), link_id_hex(link)
                )
            self.hub.broadcast.error(outgoing, link, "rate limited")
            return None

        try:
            env = decode_envelope(data)
        except Exception as e:
            stats.inc("pkts_bad")
            self.log.debug(
                "Bad packet link_id=%s bytes=%s err=%s", link_id_hex(link), len(data), e
            )
            self.hub.broadcast.error(outgoing, link, f"bad message: {e}")
            return None

        t = env[K_T]

        if self.log.isEnabledFor(logging.DEBUG):
            self.log.debug(
                "RX user=%s link_id=%s t=%s room=%r bytes=%s",
                sess.get("user_id"),
                link_id_hex(link),
                event_name(t),
                env.get(K_ROOM),
                len(data),
            )

        if t == T_PONG:
            stats.inc("pongs_in")
            sess["awaiting_pong"] = None
            return None
        if t == T_PING:
            stats.inc("pings_in")
            stats.inc("pongs_out")
            self.hub.broadcast.send_to(outgoing, link, T_PONG, env.get(K_BODY))
            return None

        if not sess["authenticated"]:
            return self._handle_unauthenticated(link, sess, env, outgoing)

        self.hub.presence.touch(sess["user_id"])

        handler = self._handlers.get(t)
        if handler is None:
            self.hub.broadcast.error(outgoing, link, f"unknown event type {t}")
            return None

        try:
            return handler(link, sess, env, outgoing)
        except ChatError as e:
            self._emit_failure(outgoing, link, t, e)
        except Exception:
            self.log.exception(
                "Unhandled error in %s link_id=%s", event_name(t), link_id_hex(link)
            )
            self.hub.broadcast.error(outgoing, link, "internal error")
        return None

    # Authentication

    def _handle_unauthenticated(
        self, link: RNS.Link, sess: dict[str, Any], env: dict, outgoing: Outgoing
    ) -> FollowUp | None:
        if env[K_T] != T_HELLO:
            self._refuse(outgoing, link, AuthError("authenticate first"))
            return None
        if sess["authenticating"]:
            self.hub.broadcast.error(outgoing, link, "authentication in progress")
            return None

        body = env.get(K_BODY)
        token = None
        if isinstance(body, dict):
            token = body.get(B_HELLO_TOKEN, body.get("token"))

        sess["authenticating"] = True
        return self._authenticate(link, token)

    def _authenticate(self, link: RNS.Link, token: Any) -> FollowUp:
        hub = self.hub

        def run(outgoing: Outgoing) -> None:
            try:
                user = hub.identity_gate.authenticate(token)
            except AuthError as e:
                hub.stats_manager.inc("auth_failed")
                self.log.info("Authentication failed link_id=%s reason=%s", link_id_hex(link), e)
                with hub._state_lock:
                    if link in hub.session_manager.sessions:
                        self._refuse(outgoing, link, e)
                return
            except Exception:
                hub.stats_manager.inc("auth_failed")
                self.log.exception("Authentication crashed link_id=%s", link_id_hex(link))
                with hub._state_lock:
                    if link in hub.session_manager.sessions:
                        self._refuse(outgoing, link, AuthError("internal error"))
                return

            with hub._state_lock:
                if not hub.session_manager.bind_user(link, user):
                    return
                hub.stats_manager.inc("auth_ok")

                previous = hub.presence.register(user.user_id, link, user.username)
                if previous is not None and previous.link is not link:
                    self.log.info(
                        "Presence replaced user=%s old_link_id=%s new_link_id=%s",
                        user.user_id,
                        previous.connection_id,
                        link_id_hex(link),
                    )
                self.log.info(
                    "Authenticated user=%s username=%r link_id=%s",
                    user.user_id,
                    user.username,
                    link_id_hex(link),
                )

                hub.broadcast.send_to(
                    outgoing,
                    link,
                    T_WELCOME,
                    {
                        B_WELCOME_HUB: hub.config.hub_name,
                        B_WELCOME_VER: str(__version__),
                        "userId": user.user_id,
                        "username": user.username,
                    },
                )
                hub.broadcast.to_others(
                    outgoing,
                    T_USER_ONLINE,
                    {"userId": user.user_id, "username": user.username},
                    exclude_link=link,
                )

        return run

    def _refuse(self, outgoing: Outgoing, link: RNS.Link, err: AuthError) -> None:
        """Send one auth error, then close the link once it has been flushed."""
        self.hub.broadcast.error(outgoing, link, err.client_text())
        outgoing.append((link, None))

    def _handle_re_hello(self, link, sess, env, outgoing) -> None:
        raise ValidationError("already authenticated")

    # Rooms

    def _handle_join_room(self, link, sess, env, outgoing) -> FollowUp | None:
        room = self._room_id(self._room_arg(env))
        if self.hub.room_index.is_subscribed(link, room):
            return None
        if self.hub.room_index.subscription_count(link) >= int(
            self.hub.config.max_rooms_per_session
        ):
            raise ValidationError("too many rooms")

        if not self.hub.config.enforce_room_membership:
            self._subscribe(outgoing, link, room)
            return None

        user_id = sess["user_id"]
        gateway = self.hub.gateway
        return self._deferred(
            link,
            T_JOIN_ROOM,
            lambda: gateway.check_room_member(room, user_id),
            lambda out, _: self._subscribe(out, link, room),
        )

    def _subscribe(self, outgoing: Outgoing, link: RNS.Link, room: str) -> None:
        sess = self.hub.session_manager.get_session(link)
        if not sess or not sess.get("authenticated"):
            return
        if not self.hub.room_index.join(link, room):
            return
        self.hub.stats_manager.inc("joins")
        self.log.info(
            "JOIN user=%s room=%s link_id=%s", sess["user_id"], room, link_id_hex(link)
        )
        self.hub.broadcast.to_room_except(
            outgoing,
            room,
            T_USER_JOINED_ROOM,
            {"userId": sess["user_id"], "username": sess["username"], "roomId": room},
            exclude_link=link,
        )

    def _handle_leave_room(self, link, sess, env, outgoing) -> None:
        room = self._room_id(self._room_arg(env))
        if not self.hub.room_index.leave(link, room):
            return

        user_id, username = sess["user_id"], sess["username"]
        self.hub.stats_manager.inc("parts")
        self.log.info("LEAVE user=%s room=%s link_id=%s", user_id, room, link_id_hex(link))

        if self.hub.typing.stop(user_id, room):
            self.hub.broadcast.to_room_except(
                outgoing,
                room,
                T_USER_STOP_TYPING,
                {"userId": user_id, "username": username, "roomId": room},
                exclude_user=user_id,
            )
        self.hub.broadcast.to_room_except(
            outgoing,
            room,
            T_USER_LEFT_ROOM,
            {"userId": user_id, "username": username, "roomId": room},
            exclude_link=link,
        )

    # Messages

    def _handle_room_message(self, link, sess, env, outgoing) -> FollowUp:
        body = self._body_dict(env)
        room = self._room_id(body.get("roomId", env.get(K_ROOM)))
        content, message_type, reply_to = self._content(body)
        user_id, username = sess["user_id"], sess["username"]
        enforce = self.hub.config.enforce_room_membership
        gateway = self.hub.gateway

        def work() -> Message:
            if enforce:
                gateway.check_room_member(room, user_id)
            return gateway.persist(
                user_id, RoomTarget(room), content, message_type, reply_to=reply_to
            )

        def deliver(out: Outgoing, message: Message) -> None:
            self.hub.stats_manager.inc("room_msgs")
            self.hub.broadcast.deliver_room(out, message, username, sender_link=link)

        return self._deferred(link, T_ROOM_MESSAGE, work, deliver)

    def _handle_private_message(self, link, sess, env, outgoing) -> FollowUp:
        body = self._body_dict(env)
        recipient_id = normalize_user_id(body.get("recipientId"))
        if recipient_id is None:
            raise ValidationError("recipientId is required")
        content, message_type, reply_to = self._content(body)
        user_id, username = sess["user_id"], sess["username"]
        gateway = self.hub.gateway

        def deliver(out: Outgoing, message: Message) -> None:
            self.hub.stats_manager.inc("private_msgs")
            self.hub.broadcast.deliver_private(out, message, username, sender_link=link)

        return self._deferred(
            link,
            T_PRIVATE_MESSAGE,
            lambda: gateway.persist(
                user_id, PrivateTarget(recipient_id), content, message_type, reply_to=reply_to
            ),
            deliver,
        )

    def _handle_edit_message(self, link, sess, env, outgoing) -> FollowUp:
        body = self._body_dict(env)
        message_id = body.get("messageId")
        text = body.get("message")
        user_id = sess["user_id"]
        gateway = self.hub.gateway

        def deliver(out: Outgoing, message: Message) -> None:
            update = self._update_body(
                message, message=message.text, isEdited=True, editedAt=message.edited_at
            )
            self.hub.broadcast.deliver_update(
                out, message, T_MESSAGE_EDITED, update, actor_link=link
            )

        return self._deferred(
            link, T_EDIT_MESSAGE, lambda: gateway.edit(message_id, user_id, text), deliver
        )

    def _handle_delete_message(self, link, sess, env, outgoing) -> FollowUp:
        body = self._body_dict(env)
        message_id = body.get("messageId")
        user_id = sess["user_id"]
        gateway = self.hub.gateway

        def deliver(out: Outgoing, message: Message) -> None:
            update = self._update_body(
                message, message=DELETED_TEXT, isDeleted=True, deletedAt=message.deleted_at
            )
            self.hub.broadcast.deliver_update(
                out, message, T_MESSAGE_DELETED, update, actor_link=link
            )

        return self._deferred(
            link, T_DELETE_MESSAGE, lambda: gateway.delete(message_id, user_id), deliver
        )

    def _handle_add_reaction(self, link, sess, env, outgoing) -> FollowUp:
        return self._reaction(link, sess, env, T_ADD_REACTION)

    def _handle_remove_reaction(self, link, sess, env, outgoing) -> FollowUp:
        return self._reaction(link, sess, env, T_REMOVE_REACTION)

    def _reaction(self, link, sess, env, t: int) -> FollowUp:
        body = self._body_dict(env)
        message_id = body.get("messageId")
        emoji = body.get("emoji")
        user_id = sess["user_id"]
        gateway = self.hub.gateway
        if t == T_ADD_REACTION:
            action, op = "add", gateway.add_reaction
        else:
            action, op = "remove", gateway.remove_reaction

        def deliver(out: Outgoing, message: Message) -> None:
            update = self._update_body(
                message,
                userId=user_id,
                emoji=emoji.strip() if isinstance(emoji, str) else emoji,
                action=action,
                reactions=[
                    {"user": r.user_id, "emoji": r.emoji, "addedAt": r.added_at}
                    for r in message.reactions
                ],
            )
            self.hub.broadcast.deliver_update(
                out, message, T_MESSAGE_REACTION, update, actor_link=link
            )

        return self._deferred(link, t, lambda: op(message_id, user_id, emoji), deliver)

    def _handle_mark_read(self, link, sess, env, outgoing) -> FollowUp:
        body = self._body_dict(env)
        message_id = body.get("messageId")
        user_id = sess["user_id"]
        gateway = self.hub.gateway

        def deliver(out: Outgoing, message: Message) -> None:
            read_at = next((r.read_at for r in message.read_by if r.user_id == user_id), None)
            update = self._update_body(message, userId=user_id, readAt=read_at)
            self.hub.broadcast.deliver_update(
                out, message, T_MESSAGE_READ, update, actor_link=link
            )

        return self._deferred(
            link, T_MARK_READ, lambda: gateway.mark_read(message_id, user_id), deliver
        )

    def _handle_fetch_history(self, link, sess, env, outgoing) -> FollowUp:
        body = self._body_dict(env)
        page = body.get("page", 1)
        limit = body.get("limit")
        user_id = sess["user_id"]
        gateway = self.hub.gateway

        if body.get("roomId") is not None:
            room = self._room_id(body.get("roomId"))
            key: dict[str, Any] = {"roomId": room}

            def work():
                return gateway.room_history(room, user_id, page=page, limit=limit)

        elif body.get("userId") is not None:
            other_id = normalize_user_id(body.get("userId"))
            if other_id is None:
                raise ValidationError("invalid userId")
            key = {"userId": other_id}

            def work():
                return gateway.private_history(user_id, other_id, page=page, limit=limit)

        else:
            raise ValidationError("fetch_history needs roomId or userId")

        def deliver(out: Outgoing, result) -> None:
            if link not in self.hub.session_manager.sessions:
                return
            self.hub.broadcast.send_to(
                out,
                link,
                T_HISTORY,
                {
                    **key,
                    "messages": [m.to_record() for m in result.messages],
                    "page": result.page,
                    "hasMore": result.has_more,
                },
                room=key.get("roomId"),
            )

        return self._deferred(link, T_FETCH_HISTORY, work, deliver)

    # Typing and presence

    def _handle_typing_start(self, link, sess, env, outgoing) -> None:
        room = self._typing_room(link, env)
        user_id, username = sess["user_id"], sess["username"]
        self.hub.stats_manager.inc("typing_signals")
        if self.hub.typing.start(user_id, username, room):
            self.hub.broadcast.to_room_except(
                outgoing,
                room,
                T_USER_TYPING,
                {"userId": user_id, "username": username, "roomId": room},
                exclude_user=user_id,
            )

    def _handle_typing_stop(self, link, sess, env, outgoing) -> None:
        room = self._typing_room(link, env)
        user_id, username = sess["user_id"], sess["username"]
        self.hub.stats_manager.inc("typing_signals")
        if self.hub.typing.stop(user_id, room):
            self.hub.broadcast.to_room_except(
                outgoing,
                room,
                T_USER_STOP_TYPING,
                {"userId": user_id, "username": username, "roomId": room},
                exclude_user=user_id,
            )

    def _handle_get_online_users(self, link, sess, env, outgoing) -> None:
        self.hub.broadcast.send_to(outgoing, link, T_ONLINE_USERS, self.hub.presence.list_online())

    def _handle_resource_envelope(self, link, sess, env, outgoing) -> None:
        self.hub.transport.expect(link, env.get(K_BODY))

    # Helpers

    def _deferred(
        self,
        link: RNS.Link,
        t: int,
        work: Callable[[], Any],
        deliver: Callable[[Outgoing, Any], None],
    ) -> FollowUp:
        """Run ``work`` without the lock, then ``deliver`` with it."""
        hub = self.hub

        def run(outgoing: Outgoing) -> None:
            try:
                result = work()
            except ChatError as e:
                with hub._state_lock:
                    if link in hub.session_manager.sessions:
                        self._emit_failure(outgoing, link, t, e)
                return
            except Exception:
                self.log.exception(
                    "Unhandled error in %s link_id=%s", event_name(t), link_id_hex(link)
                )
                with hub._state_lock:
                    if link in hub.session_manager.sessions:
                        hub.broadcast.error(outgoing, link, "internal error")
                return

            with hub._state_lock:
                try:
                    deliver(outgoing, result)
                except Exception:
                    self.log.exception(
                        "Delivery failed for %s link_id=%s", event_name(t), link_id_hex(link)
                    )
                    if link in hub.session_manager.sessions:
                        hub.broadcast.error(outgoing, link, "internal error")

        return run

    def _emit_failure(self, outgoing: Outgoing, link: RNS.Link, t: int, err: ChatError) -> None:
        text = err.client_text()
        if isinstance(err, StorageError):
            self.hub.stats_manager.inc("storage_failures")
            self.log.warning(
                "Storage failure in %s link_id=%s err=%s", event_name(t), link_id_hex(link), err
            )
            text = _STORAGE_FAILURE_TEXT.get(t, text)
        elif self.log.isEnabledFor(logging.DEBUG):
            self.log.debug(
                "Rejected %s link_id=%s: %s", event_name(t), link_id_hex(link), text
            )
        self.hub.broadcast.error(outgoing, link, text)

    def _body_dict(self, env: dict) -> dict:
        body = env.get(K_BODY)
        if not isinstance(body, dict):
            raise ValidationError("event body must be a map")
        return body

    def _room_arg(self, env: dict) -> Any:
        body = env.get(K_BODY)
        if isinstance(body, str):
            return body
        if isinstance(body, dict) and "roomId" in body:
            return body.get("roomId")
        return env.get(K_ROOM)

    def _room_id(self, raw: Any) -> str:
        try:
            return normalize_room_id(raw, max_len=int(self.hub.config.max_room_id_len))
        except ValueError as e:
            raise ValidationError(str(e)) from e

    def _typing_room(self, link: RNS.Link, env: dict) -> str:
        room = self._room_id(self._room_arg(env))
        if not self.hub.room_index.is_subscribed(link, room):
            raise ValidationError(f"not in room {room}")
        return room

    def _content(self, body: dict) -> tuple[MessageContent, str, str | None]:
        message_type = body.get("messageType", MSG_TEXT)
        if not isinstance(message_type, str):
            raise ValidationError("messageType must be a string")
        if message_type == MSG_SYSTEM:
            raise ValidationError("system messages cannot be sent by clients")

        file_ref = None
        if body.get("file") is not None:
            file_ref = FileRef.from_payload(body.get("file"))
            if file_ref is None:
                raise ValidationError("invalid file reference")

        reply_to = body.get("replyTo")
        if not isinstance(reply_to, str) or not reply_to:
            reply_to = None

        return MessageContent(text=body.get("message"), file=file_ref), message_type, reply_to

    def _update_body(self, msg: Message, **fields: Any) -> dict[str, Any]:
        out: dict[str, Any] = {"messageId": msg.id}
        if msg.room_id is not None:
            out["roomId"] = msg.room_id
        else:
            out["isPrivate"] = True
        out.update(fields)
        return out
