"""Presence registry: which user is live on which connection."""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any

from .util import link_id_hex


@dataclass
class PresenceEntry:
    link: Any
    connection_id: str
    display_name: str
    last_seen: int


def _now_ms() -> int:
    return int(time.time() * 1000)


class PresenceRegistry:
    """
    One entry per user id, last connection wins.

    Not thread-safe on its own; the hub mutates it with its state lock held.
    """

    def __init__(self, clock=_now_ms) -> None:
        self._entries: dict[str, PresenceEntry] = {}
        self._clock = clock

    def register(self, user_id: str, link: Any, display_name: str) -> PresenceEntry | None:
        """Insert or overwrite. Returns the entry that was replaced, if any."""
        previous = self._entries.get(user_id)
        self._entries[user_id] = PresenceEntry(
            link=link,
            connection_id=link_id_hex(link),
            display_name=display_name,
            last_seen=self._clock(),
        )
        return previous

    def unregister(self, user_id: str, link: Any = None) -> PresenceEntry | None:
        """Remove the entry for ``user_id``.

        With ``link`` given, only remove it if that link is the registered
        one; an orphaned older connection closing must not take down the
        newer registration.
        """
        entry = self._entries.get(user_id)
        if entry is None:
            return None
        if link is not None and entry.link is not link:
            return None
        return self._entries.pop(user_id)

    def lookup(self, user_id: str) -> Any | None:
        entry = self._entries.get(user_id)
        return entry.link if entry is not None else None

    def connection_id(self, user_id: str) -> str | None:
        entry = self._entries.get(user_id)
        return entry.connection_id if entry is not None else None

    def touch(self, user_id: str) -> None:
        entry = self._entries.get(user_id)
        if entry is not None:
            entry.last_seen = self._clock()

    def is_online(self, user_id: str) -> bool:
        return user_id in self._entries

    def list_online(self) -> list[dict[str, Any]]:
        return [
            {"userId": uid, "username": e.display_name, "lastSeen": e.last_seen}
            for uid, e in self._entries.items()
        ]

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)
