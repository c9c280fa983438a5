"""Statistics tracking and reporting for the rfsd hub."""

from __future__ import annotations

import threading
import time
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .service import HubService


class StatsManager:
    """
    Counts hub activity and renders it as a one-line summary.

    Tracks:
    - Bytes and packets in/out
    - Rooms created and torn down
    - Invites, joins and disconnects
    - Uploads accepted/rejected and fetches served
    - Errors sent
    """

    def __init__(self, hub: HubService) -> None:
        self.hub = hub
        self.log = hub.log
        self._lock = threading.Lock()

        self.started_monotonic: float | None = None

        self._counters: dict[str, int] = {
            "bytes_in": 0,
            "bytes_out": 0,
            "pkts_in": 0,
            "pkts_bad": 0,
            "errors_sent": 0,
            "rooms_created": 0,
            "invites": 0,
            "joins": 0,
            "disconnects": 0,
            "uploads": 0,
            "uploads_rejected": 0,
            "upload_bytes": 0,
            "fetches": 0,
            "fetch_bytes": 0,
            "announces": 0,
        }

    def set_start_time(self) -> None:
        self.started_monotonic = time.monotonic()

    def inc(self, key: str, delta: int = 1) -> None:
        with self._lock:
            self._counters[key] = self._counters.get(key, 0) + int(delta)

    def get(self, key: str) -> int:
        with self._lock:
            return self._counters.get(key, 0)

    def format_stats(self) -> str:
        from . import __version__

        started = self.started_monotonic
        uptime_s = (time.monotonic() - started) if started is not None else 0.0

        room_stats = self.hub.core.get_stats()
        sessions_total = self.hub.session_manager.count()
        with self._lock:
            c = dict(self._counters)

        parts: list[str] = [
            f"rfsd {__version__} stats",
            f"uptime_s={uptime_s:.1f}",
            f"links={sessions_total} members={room_stats['memberships']}",
            f"rooms={room_stats['rooms_total']} torn_down={room_stats['rooms_torn_down']} "
            f"pending_invites={room_stats['pending_invites']} "
            f"files={room_stats['files']}",
        ]
        top_rooms = room_stats.get("top_rooms") or []
        if top_rooms:
            parts.append("top_rooms=" + ",".join(f"{r}:{n}" for r, n in top_rooms))
        parts.append(
            "io: pkts_in={} pkts_bad={} bytes_in={} bytes_out={}".format(
                c["pkts_in"], c["pkts_bad"], c["bytes_in"], c["bytes_out"]
            )
        )
        parts.append(
            "rooms: created={} invites={} joins={} disconnects={} errors_sent={}".format(
                c["rooms_created"],
                c["invites"],
                c["joins"],
                c["disconnects"],
                c["errors_sent"],
            )
        )
        parts.append(
            "files: uploads={} rejected={} upload_bytes={} fetches={} fetch_bytes={}".format(
                c["uploads"],
                c["uploads_rejected"],
                c["upload_bytes"],
                c["fetches"],
                c["fetch_bytes"],
            )
        )
        return " | ".join(parts)
