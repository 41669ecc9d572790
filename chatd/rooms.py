"""Room membership index for live fan-out.

Tracks which connections are subscribed to which rooms on this hub. This is
transport state only: durable membership lives in the store and is checked
separately when ``enforce_room_membership`` is on.
"""

from __future__ import annotations

import logging
from typing import Any


class RoomIndex:
    """Room subscriptions, indexed both ways. Mutated under the hub state lock."""

    def __init__(self) -> None:
        self.log = logging.getLogger("chatd.rooms")
        self.rooms: dict[str, set[Any]] = {}
        self._by_link: dict[Any, set[str]] = {}

    def join(self, link: Any, room: str) -> bool:
        """Subscribe ``link`` to ``room``. Returns False if it already was."""
        subscribed = self._by_link.setdefault(link, set())
        if room in subscribed:
            return False
        subscribed.add(room)
        self.rooms.setdefault(room, set()).add(link)
        return True

    def leave(self, link: Any, room: str) -> bool:
        """Unsubscribe. Returns False (and does nothing) if not subscribed."""
        subscribed = self._by_link.get(link)
        if not subscribed or room not in subscribed:
            return False
        subscribed.discard(room)
        if not subscribed:
            self._by_link.pop(link, None)
        self._discard_member(room, link)
        return True

    def remove_link(self, link: Any) -> list[str]:
        """Drop every subscription of a closing connection."""
        rooms = sorted(self._by_link.pop(link, set()))
        for room in rooms:
            self._discard_member(room, link)
        return rooms

    def members(self, room: str) -> set[Any]:
        return set(self.rooms.get(room, ()))

    def rooms_for(self, link: Any) -> set[str]:
        return set(self._by_link.get(link, ()))

    def is_subscribed(self, link: Any, room: str) -> bool:
        return room in self._by_link.get(link, ())

    def subscription_count(self, link: Any) -> int:
        return len(self._by_link.get(link, ()))

    def clear_all(self) -> None:
        self.rooms.clear()
        self._by_link.clear()

    def get_stats(self) -> dict[str, Any]:
        memberships = sum(len(v) for v in self.rooms.values())
        top_rooms = sorted(
            ((room, len(links)) for room, links in self.rooms.items()),
            key=lambda x: (-x[1], x[0]),
        )[:5]
        return {
            "rooms_total": len(self.rooms),
            "memberships": memberships,
            "top_rooms": top_rooms,
        }

    def _discard_member(self, room: str, link: Any) -> None:
        links = self.rooms.get(room)
        if links is None:
            return
        links.discard(link)
        if not links:
            self.rooms.pop(room, None)
