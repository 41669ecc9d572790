from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

import RNS

from .constants import T_ERROR, T_PRIVATE_MESSAGE, T_ROOM_MESSAGE
from .envelope import encode, event_name, make_envelope
from .models import Message

if TYPE_CHECKING:
    from .service import HubService


class BroadcastRouter:
    """
    Resolves who receives an event and queues one payload per connection.

    This class is responsible for:
    - Room fan-out (every subscribed connection, sender included)
    - Private delivery (recipient if online, plus the sender's echo)
    - Presence and typing fan-out to everyone else
    - Update notifications for edits, deletes, reactions and reads

    Every method must be called with the hub state lock held. Nothing is sent
    here: ``(link, payload)`` pairs are appended to ``outgoing`` and the hub
    transmits them after the lock is released.
    """

    def __init__(self, hub: HubService) -> None:
        self.hub = hub
        self.log = logging.getLogger("chatd.broadcast")

    def payload(self, msg_type: int, body: Any, *, room: str | None = None) -> bytes:
        env = make_envelope(msg_type, src=self.hub.src_hash, room=room, body=body)
        return encode(env)

    def queue(
        self, outgoing: list[tuple[RNS.Link, bytes | None]], link: RNS.Link, payload: bytes
    ) -> None:
        outgoing.append((link, payload))

    def send_to(
        self,
        outgoing: list[tuple[RNS.Link, bytes | None]],
        link: RNS.Link,
        msg_type: int,
        body: Any,
        *,
        room: str | None = None,
    ) -> None:
        self.queue(outgoing, link, self.payload(msg_type, body, room=room))

    def error(
        self,
        outgoing: list[tuple[RNS.Link, bytes | None]],
        link: RNS.Link,
        text: str,
        *,
        room: str | None = None,
    ) -> None:
        self.hub.stats_manager.inc("errors_sent")
        self.send_to(outgoing, link, T_ERROR, {"message": text}, room=room)

    def deliver_room(
        self,
        outgoing: list[tuple[RNS.Link, bytes | None]],
        message: Message,
        sender_username: str,
        *,
        sender_link: RNS.Link | None = None,
    ) -> int:
        """Queue one ``room_message`` per subscribed connection.

        The sender's link gets the echo even when it is not subscribed, as
        long as its session is still alive.
        """
        room = message.room_id
        if room is None:
            return 0
        payload = self.payload(T_ROOM_MESSAGE, message.to_event(sender_username), room=room)

        targets = self.hub.room_index.members(room)
        if sender_link is not None and self.hub.session_manager.is_authenticated(sender_link):
            targets.add(sender_link)

        for link in targets:
            self.queue(outgoing, link, payload)
        self._count(T_ROOM_MESSAGE, len(targets))
        return len(targets)

    def deliver_private(
        self,
        outgoing: list[tuple[RNS.Link, bytes | None]],
        message: Message,
        sender_username: str,
        *,
        sender_link: RNS.Link | None = None,
    ) -> int:
        """Queue the recipient's copy (if online) and the sender's echo.

        The recipient is looked up now, not when the message was received,
        so a recipient that connected or left meanwhile is handled correctly.
        A message to oneself is delivered once.
        """
        payload = self.payload(T_PRIVATE_MESSAGE, message.to_event(sender_username))

        targets: list[RNS.Link] = []
        recipient_link = (
            self.hub.presence.lookup(message.recipient_id) if message.recipient_id else None
        )
        if recipient_link is not None:
            targets.append(recipient_link)
        if (
            sender_link is not None
            and sender_link not in targets
            and self.hub.session_manager.is_authenticated(sender_link)
        ):
            targets.append(sender_link)

        for link in targets:
            self.queue(outgoing, link, payload)
        if recipient_link is None and self.log.isEnabledFor(logging.DEBUG):
            self.log.debug(
                "Recipient offline user=%s message=%s", message.recipient_id, message.id
            )
        self._count(T_PRIVATE_MESSAGE, len(targets))
        return len(targets)

    def deliver_update(
        self,
        outgoing: list[tuple[RNS.Link, bytes | None]],
        message: Message,
        msg_type: int,
        body: dict[str, Any],
        *,
        actor_link: RNS.Link | None = None,
    ) -> int:
        """Route a change to an existing message the same way the message went."""
        targets: set[RNS.Link] = set()
        room = message.room_id
        if room is not None:
            targets |= self.hub.room_index.members(room)
        else:
            for user_id in (message.sender_id, message.recipient_id):
                link = self.hub.presence.lookup(user_id) if user_id else None
                if link is not None:
                    targets.add(link)
        if actor_link is not None and self.hub.session_manager.is_authenticated(actor_link):
            targets.add(actor_link)

        payload = self.payload(msg_type, body, room=room)
        for link in targets:
            self.queue(outgoing, link, payload)
        self._count(msg_type, len(targets))
        return len(targets)

    def to_others(
        self,
        outgoing: list[tuple[RNS.Link, bytes | None]],
        msg_type: int,
        body: Any,
        *,
        exclude_link: RNS.Link | None = None,
    ) -> int:
        """Every authenticated connection except ``exclude_link``."""
        links = [
            link
            for link in self.hub.session_manager.authenticated_links()
            if link is not exclude_link
        ]
        if not links:
            return 0
        payload = self.payload(msg_type, body)
        for link in links:
            self.queue(outgoing, link, payload)
        self._count(msg_type, len(links))
        return len(links)

    def to_room_except(
        self,
        outgoing: list[tuple[RNS.Link, bytes | None]],
        room: str,
        msg_type: int,
        body: Any,
        *,
        exclude_link: RNS.Link | None = None,
        exclude_user: str | None = None,
    ) -> int:
        """Room subscribers other than the given link and/or user."""
        links = []
        for link in self.hub.room_index.members(room):
            if link is exclude_link:
                continue
            if exclude_user is not None and self.hub.session_manager.user_id_for(link) == exclude_user:
                continue
            links.append(link)
        if not links:
            return 0
        payload = self.payload(msg_type, body, room=room)
        for link in links:
            self.queue(outgoing, link, payload)
        self._count(msg_type, len(links))
        return len(links)

    def _count(self, msg_type: int, n: int) -> None:
        self.hub.stats_manager.inc("deliveries", n)
        if self.log.isEnabledFor(logging.DEBUG):
            self.log.debug("Queued %s to %d connection(s)", event_name(msg_type), n)
