from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import RNS

from .constants import T_USER_OFFLINE, T_USER_STOP_TYPING
from .models import AuthenticatedUser
from .util import link_id_hex

if TYPE_CHECKING:
    from .service import HubService


@dataclass
class _RateState:
    """Token bucket state for rate limiting."""

    tokens: float
    last_refill: float


class SessionManager:
    """
    Manages connection lifecycle for chatd.

    This class is responsible for:
    - Session creation when a link is established
    - Binding the authenticated user to the session
    - Rate limiting with a token bucket
    - Teardown: room subscriptions, typing state, presence and the
      ``user_offline`` notification
    """

    def __init__(self, hub: HubService) -> None:
        self.hub = hub
        self.log = logging.getLogger("chatd.session")
        self.sessions: dict[RNS.Link, dict[str, Any]] = {}
        self._rate: dict[RNS.Link, _RateState] = {}

    def on_link_established(self, link: RNS.Link) -> None:
        """
        Create session state for a new link.

        Must be called with state lock held.
        """
        self.sessions[link] = {
            "authenticated": False,
            "authenticating": False,
            "user_id": None,
            "username": None,
            "created_at": time.monotonic(),
            "awaiting_pong": None,
        }

        self._rate[link] = _RateState(
            tokens=float(self.hub.config.rate_limit_msgs_per_minute),
            last_refill=time.monotonic(),
        )

        self.log.info("Session created link_id=%s", link_id_hex(link))

    def bind_user(self, link: RNS.Link, user: AuthenticatedUser) -> bool:
        """
        Attach a verified identity to the session.

        Returns False if the link closed while the credential was checked.
        Must be called with state lock held.
        """
        sess = self.sessions.get(link)
        if sess is None:
            return False
        sess["authenticated"] = True
        sess["authenticating"] = False
        sess["user_id"] = user.user_id
        sess["username"] = user.username
        return True

    def on_link_closed(
        self, link: RNS.Link, outgoing: list[tuple[RNS.Link, bytes | None]]
    ) -> tuple[str | None, str | None, list[str]]:
        """
        Drop all live state owned by a closing link.

        Returns:
            (user_id, username, rooms) for logging
        Must be called with state lock held.
        """
        sess = self.sessions.pop(link, None)
        self._rate.pop(link, None)
        rooms = self.hub.room_index.remove_link(link)

        if not sess or not sess.get("authenticated"):
            return None, None, rooms

        user_id = sess["user_id"]
        username = sess["username"]

        # Only the registered connection owns the user's presence; an older,
        # replaced connection closing leaves the newer one untouched.
        if self.hub.presence.lookup(user_id) is link:
            for room, typing_name in self.hub.typing.clear_user(user_id):
                self.hub.broadcast.to_room_except(
                    outgoing,
                    room,
                    T_USER_STOP_TYPING,
                    {"userId": user_id, "username": typing_name, "roomId": room},
                    exclude_user=user_id,
                )

        removed = self.hub.presence.unregister(user_id, link)
        if removed is not None:
            self.hub.broadcast.to_others(
                outgoing,
                T_USER_OFFLINE,
                {"userId": user_id, "username": username},
                exclude_link=link,
            )

        return user_id, username, rooms

    def refill_and_take(self, link: RNS.Link, cost: float = 1.0) -> bool:
        """
        Token bucket rate limiting.

        Refills tokens based on elapsed time and attempts to take `cost` tokens.
        Returns True if tokens were available and taken, False if rate limited.

        Must be called with state lock held.
        """
        state = self._rate.get(link)
        if state is None:
            return True

        now = time.monotonic()
        per_min = float(max(1, int(self.hub.config.rate_limit_msgs_per_minute)))
        rate_per_s = per_min / 60.0
        elapsed = max(0.0, now - state.last_refill)
        state.tokens = min(per_min, state.tokens + elapsed * rate_per_s)
        state.last_refill = now

        if state.tokens < cost:
            return False

        state.tokens -= cost
        return True

    def get_session(self, link: RNS.Link) -> dict[str, Any] | None:
        return self.sessions.get(link)

    def is_authenticated(self, link: RNS.Link) -> bool:
        sess = self.sessions.get(link)
        return bool(sess and sess.get("authenticated"))

    def user_id_for(self, link: RNS.Link) -> str | None:
        sess = self.sessions.get(link)
        return sess.get("user_id") if sess else None

    def authenticated_links(self) -> list[RNS.Link]:
        return [link for link, s in self.sessions.items() if s.get("authenticated")]

    def unauthenticated_older_than(self, max_age_s: float, *, now: float | None = None) -> list[RNS.Link]:
        """Links that have not finished authenticating within ``max_age_s``."""
        if max_age_s <= 0:
            return []
        now = time.monotonic() if now is None else now
        return [
            link
            for link, s in self.sessions.items()
            if not s.get("authenticated") and (now - float(s["created_at"])) > max_age_s
        ]

    def clear_all(self) -> list[RNS.Link]:
        """
        Clear all sessions and return list of links for teardown.

        Must be called with state lock held.
        """
        links = list(self.sessions.keys())
        self.sessions.clear()
        self._rate.clear()
        return links

    def get_stats(self) -> dict[str, Any]:
        total = len(self.sessions)
        authenticated = sum(1 for s in self.sessions.values() if s.get("authenticated"))
        return {"total": total, "authenticated": authenticated}
