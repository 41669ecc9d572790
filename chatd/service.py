from __future__ import annotations

import logging
import os
import signal
import threading
import time
from collections.abc import Callable

import RNS

from .auth import IdentityGate
from .broadcast import BroadcastRouter
from .config import HubRuntimeConfig
from .constants import T_PING, T_USER_STOP_TYPING
from .envelope import encode
from .gateway import MessageGateway
from .paths import expand_path
from .presence import PresenceRegistry
from .rooms import RoomIndex
from .router import EventRouter, FollowUp, Outgoing
from .session import SessionManager
from .stats import StatsManager
from .store import ChatStore, SqliteChatStore
from .transport import ResourceTransport
from .typing_bus import TimerFactory, TypingTracker
from .util import link_id_hex


class HubService:
    def __init__(
        self,
        config: HubRuntimeConfig,
        *,
        store: ChatStore | None = None,
        timer_factory: TimerFactory | None = None,
    ) -> None:
        self.config = config
        self.log = logging.getLogger("chatd.hub")

        # Sessions, presence, room subscriptions and typing state are touched
        # from Reticulum callbacks, typing timers and worker threads. Guard
        # them with a single re-entrant lock and never do I/O while holding it.
        self._state_lock = threading.RLock()

        self._shutdown = threading.Event()

        self.stats_manager = StatsManager(self)
        self.presence = PresenceRegistry()
        self.room_index = RoomIndex()
        self.typing = TypingTracker(
            config.typing_timeout_s,
            self._on_typing_timeout,
            timer_factory=timer_factory,
        )
        self.session_manager = SessionManager(self)
        self.broadcast = BroadcastRouter(self)
        self.router = EventRouter(self)
        self.transport = ResourceTransport(self)

        self.store: ChatStore | None = None
        self.gateway: MessageGateway | None = None
        self.identity_gate: IdentityGate | None = None
        if store is not None:
            self._attach_store(store)

        self.identity: RNS.Identity | None = None
        self.destination: RNS.Destination | None = None

        self._ping_thread: threading.Thread | None = None
        self._announce_thread: threading.Thread | None = None
        self._auth_watch_thread: threading.Thread | None = None
        self._resource_cleanup_thread: threading.Thread | None = None

    @property
    def src_hash(self) -> bytes:
        if self.identity is not None:
            return self.identity.hash
        return b""

    def _attach_store(self, store: ChatStore) -> None:
        self.store = store
        self.gateway = MessageGateway(
            store,
            edit_window_s=self.config.edit_window_s,
            delete_window_s=self.config.delete_window_s,
            page_size=self.config.history_page_size,
            enforce_room_membership=self.config.enforce_room_membership,
        )
        self.identity_gate = IdentityGate(
            store,
            secret=self.config.jwt_secret,
            algorithm=self.config.jwt_algorithm,
            user_claim=self.config.jwt_user_claim,
            banned_users=self.config.banned_users,
        )

    def start(self) -> None:
        self.stats_manager.set_start_time()

        if self.store is None:
            if not self.config.database_path:
                raise RuntimeError("database_path is not set")
            db_path = expand_path(self.config.database_path)
            self._attach_store(
                SqliteChatStore(db_path, timeout=float(self.config.storage_timeout_s))
            )
            self.log.info("Opened message store path=%s", db_path)

        if not self.config.jwt_secret:
            self.log.warning("jwt_secret is not set; every HELLO will be refused")

        self.log.info("Starting Reticulum")
        RNS.Reticulum(configdir=self.config.configdir, require_shared_instance=False)

        if not self.config.identity_path:
            raise RuntimeError("identity_path is not set")
        self.identity = self._load_identity(self.config.identity_path)

        parts = [p for p in str(self.config.dest_name).split(".") if p]
        if not parts:
            raise ValueError("dest_name must not be empty")
        app_name, aspects = parts[0], parts[1:]

        self.destination = RNS.Destination(
            self.identity,
            RNS.Destination.IN,
            RNS.Destination.SINGLE,
            app_name,
            *aspects,
        )
        self.destination.set_link_established_callback(self._on_link)

        if self.config.announce_on_start:
            self._announce_once()

        if self.config.announce_period_s and self.config.announce_period_s > 0:
            self._announce_thread = self._spawn(self._announce_loop, "chatd-announce")

        self.log.info(
            "Hub running dest_name=%s dest_hash=%s",
            self.config.dest_name,
            self.destination.hash.hex() if self.destination else "-",
        )
        self.log.info(
            "Policy enforce_room_membership=%s max_rooms=%s max_room_id_len=%s "
            "rate_limit_msgs_per_minute=%s typing_timeout_s=%s",
            self.config.enforce_room_membership,
            self.config.max_rooms_per_session,
            self.config.max_room_id_len,
            self.config.rate_limit_msgs_per_minute,
            self.config.typing_timeout_s,
        )

        if self.config.ping_interval_s and self.config.ping_interval_s > 0:
            self._ping_thread = self._spawn(self._ping_loop, "chatd-ping")

        if self.config.auth_timeout_s and self.config.auth_timeout_s > 0:
            self._auth_watch_thread = self._spawn(self._auth_watch_loop, "chatd-auth-watch")

        if self.config.enable_resource_transfer:
            self._resource_cleanup_thread = self._spawn(
                self._resource_cleanup_loop, "chatd-resource-cleanup"
            )

    def _spawn(self, target: Callable[[], None], name: str) -> threading.Thread:
        t = threading.Thread(target=target, name=name, daemon=True)
        t.start()
        return t

    def _announce_once(self) -> None:
        if self.destination is None:
            return
        try:
            self.destination.announce(
                app_data=encode({"proto": "chatd", "v": 1, "hub": self.config.hub_name})
            )
            self.stats_manager.inc("announces")
        except Exception:
            self.log.exception("Announce failed")

    def _announce_loop(self) -> None:
        while not self._shutdown.wait(float(self.config.announce_period_s)):
            self._announce_once()

    def run_forever(self) -> None:
        if self.destination is None:
            self.start()

        signal.signal(signal.SIGINT, lambda *_: self.stop())
        signal.signal(signal.SIGTERM, lambda *_: self.stop())

        while not self._shutdown.is_set():
            time.sleep(0.25)

    def stop(self) -> None:
        if self._shutdown.is_set():
            return
        self._shutdown.set()

        with self._state_lock:
            links = self.session_manager.clear_all()
            self.room_index.clear_all()
            self.typing.clear_all()
            self.presence.clear()
            self.transport.clear_all()

        for link in links:
            self._teardown(link)

        self.log.info("Hub stopped\n%s", self.stats_manager.format_stats())

        if self.store is not None:
            self.store.close()

    def _load_identity(self, path: str) -> RNS.Identity:
        p = expand_path(path)
        if not os.path.exists(p):
            raise RuntimeError(f"Identity not found at {p}")
        ident = RNS.Identity.from_file(p)
        if ident is None:
            raise RuntimeError(f"Failed to load identity from {p}")
        return ident

    # Link callbacks

    def _on_link(self, link: RNS.Link) -> None:
        with self._state_lock:
            self.session_manager.on_link_established(link)
            self.transport.on_link_established(link)

        link.set_packet_callback(lambda data, pkt: self._on_packet(link, data))
        link.set_link_closed_callback(lambda closed_link: self._on_close(closed_link))
        self.transport.configure_link_callbacks(link)

        self.log.info("Link established link_id=%s", link_id_hex(link))

    def _on_close(self, link: RNS.Link) -> None:
        outgoing: Outgoing = []
        with self._state_lock:
            self.transport.on_link_closed(link)
            user_id, username, rooms = self.session_manager.on_link_closed(link, outgoing)

        self._flush(outgoing)

        self.log.info(
            "Link closed user=%s username=%r rooms=%s link_id=%s",
            user_id,
            username,
            len(rooms),
            link_id_hex(link),
        )

    def _on_packet(self, link: RNS.Link, data: bytes) -> None:
        # Packet callbacks can run concurrently with other link callbacks and
        # worker threads. Route under the lock, send after releasing it, then
        # run any store-backed follow-up.
        outgoing: Outgoing = []
        with self._state_lock:
            follow_up = self.router.route_packet(link, data, outgoing)

        if self.log.isEnabledFor(logging.DEBUG) and outgoing:
            self.log.debug(
                "Sending %d response(s) link_id=%s", len(outgoing), link_id_hex(link)
            )
        self._flush(outgoing)

        if follow_up is not None:
            self._run_follow_up(link, follow_up)

    def _run_follow_up(self, link: RNS.Link, follow_up: FollowUp) -> None:
        outgoing: Outgoing = []
        try:
            follow_up(outgoing)
        except Exception:
            self.log.exception("Follow-up failed link_id=%s", link_id_hex(link))
        self._flush(outgoing)

    def _on_typing_timeout(self, user_id: str, room: str, generation: int) -> None:
        outgoing: Outgoing = []
        with self._state_lock:
            username = self.typing.expire(user_id, room, generation)
            if username is not None:
                self.broadcast.to_room_except(
                    outgoing,
                    room,
                    T_USER_STOP_TYPING,
                    {"userId": user_id, "username": username, "roomId": room},
                    exclude_user=user_id,
                )
        self._flush(outgoing)

    # Sending

    def _flush(self, outgoing: Outgoing) -> None:
        """Send queued payloads in order. A ``None`` payload closes the link."""
        for out_link, payload in outgoing:
            if payload is None:
                self._teardown(out_link)
                continue
            try:
                self._transmit(out_link, payload)
            except OSError as e:
                self.log.warning(
                    "Send failed link_id=%s bytes=%s err=%s",
                    link_id_hex(out_link),
                    len(payload),
                    e,
                )
            except Exception:
                self.log.debug(
                    "Send failed link_id=%s bytes=%s",
                    link_id_hex(out_link),
                    len(payload),
                    exc_info=True,
                )

    def _transmit(self, link: RNS.Link, payload: bytes) -> None:
        self.transport.send(link, payload)

    def _teardown(self, link: RNS.Link) -> None:
        try:
            link.teardown()
        except Exception:
            self.log.debug("Teardown failed link_id=%s", link_id_hex(link), exc_info=True)

    # Worker loops

    def _ping_loop(self) -> None:
        while not self._shutdown.wait(float(self.config.ping_interval_s)):
            timeout = float(self.config.ping_timeout_s)
            now = time.monotonic()
            to_teardown: list[RNS.Link] = []
            outgoing: Outgoing = []

            with self._state_lock:
                for link, sess in list(self.session_manager.sessions.items()):
                    if not sess.get("authenticated"):
                        continue

                    awaiting = sess.get("awaiting_pong")
                    if timeout > 0 and awaiting is not None and (now - float(awaiting)) > timeout:
                        to_teardown.append(link)
                        continue

                    if awaiting is None:
                        sess["awaiting_pong"] = now
                        self.stats_manager.inc("pings_out")
                        self.broadcast.send_to(outgoing, link, T_PING, int(now * 1000))

            for link in to_teardown:
                self.log.info("Ping timeout link_id=%s", link_id_hex(link))
                self._teardown(link)
            self._flush(outgoing)

    def close_unauthenticated(self, *, now: float | None = None) -> list[RNS.Link]:
        """Tear down links that never finished HELLO within ``auth_timeout_s``."""
        with self._state_lock:
            stale = self.session_manager.unauthenticated_older_than(
                float(self.config.auth_timeout_s), now=now
            )
        for link in stale:
            self.log.info("Authentication timeout link_id=%s", link_id_hex(link))
            self._teardown(link)
        return stale

    def _auth_watch_loop(self) -> None:
        period = max(1.0, float(self.config.auth_timeout_s) / 4.0)
        while not self._shutdown.wait(period):
            self.close_unauthenticated()

    def _resource_cleanup_loop(self) -> None:
        while not self._shutdown.wait(30.0):
            try:
                self.transport.cleanup_all_expired_expectations()
            except Exception:
                self.log.exception("Resource cleanup failed")
