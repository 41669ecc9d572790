"""Lifetime counters and the shutdown summary."""

from __future__ import annotations

import threading
import time
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .service import HubService


class StatsManager:
    """
    Counts what the hub did since startup.

    Counters only go up. ``inc`` has its own small lock so it can be called
    with or without the hub state lock held.
    """

    def __init__(self, hub: HubService) -> None:
        self.hub = hub
        self._lock = threading.Lock()

        self.started_wall_time: float | None = None
        self.started_monotonic: float | None = None

        self._counters: dict[str, int] = {
            "bytes_in": 0,
            "bytes_out": 0,
            "pkts_in": 0,
            "pkts_bad": 0,
            "rate_limited": 0,
            "errors_sent": 0,
            "auth_ok": 0,
            "auth_failed": 0,
            "joins": 0,
            "parts": 0,
            "room_msgs": 0,
            "private_msgs": 0,
            "deliveries": 0,
            "storage_failures": 0,
            "typing_signals": 0,
            "pings_in": 0,
            "pings_out": 0,
            "pongs_in": 0,
            "pongs_out": 0,
            "announces": 0,
            "resources_sent": 0,
            "resources_received": 0,
            "resources_rejected": 0,
        }

    def set_start_time(self) -> None:
        self.started_wall_time = time.time()
        self.started_monotonic = time.monotonic()

    def inc(self, key: str, delta: int = 1) -> None:
        with self._lock:
            self._counters[key] = self._counters.get(key, 0) + int(delta)

    def get(self, key: str) -> int:
        with self._lock:
            return self._counters.get(key, 0)

    def snapshot(self) -> dict[str, int]:
        with self._lock:
            return dict(self._counters)

    def format_stats(self) -> str:
        from . import __version__

        started_mono = self.started_monotonic
        uptime_s = (time.monotonic() - started_mono) if started_mono is not None else 0.0

        with self.hub._state_lock:
            sessions = self.hub.session_manager.get_stats()
            room_stats = self.hub.room_index.get_stats()
            online = len(self.hub.presence)
        c = self.snapshot()

        lines: list[str] = []
        lines.append(f"chatd {__version__} stats")
        lines.append(f"uptime_s={uptime_s:.1f}")
        lines.append(
            f"connections={sessions['total']} authenticated={sessions['authenticated']} "
            f"online_users={online}"
        )
        lines.append(f"rooms={room_stats['rooms_total']} memberships={room_stats['memberships']}")
        if room_stats["top_rooms"]:
            lines.append(
                "top_rooms=" + ", ".join(f"{r}:{n}" for r, n in room_stats["top_rooms"])
            )
        lines.append(
            "io: pkts_in={} pkts_bad={} bytes_in={} bytes_out={}".format(
                c["pkts_in"], c["pkts_bad"], c["bytes_in"], c["bytes_out"]
            )
        )
        lines.append(
            "auth: ok={} failed={}".format(c["auth_ok"], c["auth_failed"])
        )
        lines.append(
            "events: joins={} parts={} room_msgs={} private_msgs={} deliveries={} "
            "typing={} errors_sent={} rate_limited={} storage_failures={}".format(
                c["joins"],
                c["parts"],
                c["room_msgs"],
                c["private_msgs"],
                c["deliveries"],
                c["typing_signals"],
                c["errors_sent"],
                c["rate_limited"],
                c["storage_failures"],
            )
        )
        lines.append(
            "pings: in={} out={} pongs: in={} out={}".format(
                c["pings_in"], c["pings_out"], c["pongs_in"], c["pongs_out"]
            )
        )
        lines.append(
            "resources: sent={} received={} rejected={}".format(
                c["resources_sent"], c["resources_received"], c["resources_rejected"]
            )
        )
        return "\n".join(lines)
