"""Typing indicators: per (user, room) idle/typing state with timeout."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

TimerFactory = Callable[[float, Callable[..., None], tuple], Any]


def _thread_timer(interval: float, fn: Callable[..., None], args: tuple) -> threading.Timer:
    t = threading.Timer(interval, fn, args=args)
    t.daemon = True
    t.name = "chatd-typing"
    return t


@dataclass
class _TypingEntry:
    username: str
    generation: int
    timer: Any


class TypingTracker:
    """
    Tracks who is typing where.

    ``start``/``stop`` return True only on a state transition, so the caller
    broadcasts once per transition. Timers call ``on_timeout``
    with ``(user_id, room, generation)``; the callback is expected to take
    the hub lock and then call :meth:`expire`, which ignores timers that
    were superseded by a renewed start.
    """

    def __init__(
        self,
        timeout_s: float,
        on_timeout: Callable[[str, str, int], None],
        *,
        timer_factory: TimerFactory | None = None,
    ) -> None:
        self.timeout_s = float(timeout_s)
        self._on_timeout = on_timeout
        self._timer_factory = timer_factory or _thread_timer
        self._entries: dict[tuple[str, str], _TypingEntry] = {}
        self._generation = 0
        self.log = logging.getLogger("chatd.typing")

    def start(self, user_id: str, username: str, room: str) -> bool:
        key = (user_id, room)
        entry = self._entries.get(key)
        was_idle = entry is None
        if entry is not None:
            self._cancel(entry)

        self._generation += 1
        timer = None
        if self.timeout_s > 0:
            timer = self._timer_factory(
                self.timeout_s, self._on_timeout, (user_id, room, self._generation)
            )
            timer.start()
        self._entries[key] = _TypingEntry(
            username=username, generation=self._generation, timer=timer
        )
        return was_idle

    def stop(self, user_id: str, room: str) -> bool:
        entry = self._entries.pop((user_id, room), None)
        if entry is None:
            return False
        self._cancel(entry)
        return True

    def expire(self, user_id: str, room: str, generation: int) -> str | None:
        """Timer callback body. Returns the username that went idle, if any."""
        entry = self._entries.get((user_id, room))
        if entry is None or entry.generation != generation:
            return None
        self._entries.pop((user_id, room), None)
        self.log.debug("Typing timed out user=%s room=%s", user_id, room)
        return entry.username

    def username_for(self, user_id: str, room: str) -> str | None:
        entry = self._entries.get((user_id, room))
        return entry.username if entry is not None else None

    def typing_users(self, room: str) -> list[str]:
        return sorted({e.username for (_, r), e in self._entries.items() if r == room})

    def is_typing(self, user_id: str, room: str) -> bool:
        return (user_id, room) in self._entries

    def clear_user(self, user_id: str, rooms: set[str] | None = None) -> list[tuple[str, str]]:
        """Drop a user's typing entries. Returns ``(room, username)`` pairs removed."""
        removed: list[tuple[str, str]] = []
        for (uid, room), entry in list(self._entries.items()):
            if uid != user_id or (rooms is not None and room not in rooms):
                continue
            self._entries.pop((uid, room), None)
            self._cancel(entry)
            removed.append((room, entry.username))
        return sorted(removed)

    def clear_all(self) -> None:
        for entry in self._entries.values():
            self._cancel(entry)
        self._entries.clear()

    def _cancel(self, entry: _TypingEntry) -> None:
        if entry.timer is not None:
            entry.timer.cancel()
