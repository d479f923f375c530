"""Statistics tracking and reporting for the signaling relay."""

from __future__ import annotations

import time
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .service import RelayService


class StatsManager:
    """
    Manages relay statistics collection and reporting.

    Tracks counters for:
    - Bytes and frames in/out
    - Rejected connections and abuse-guard closes
    - Room creation, joins and parts
    - Relayed and dropped negotiation messages
    - Error messages sent
    """

    def __init__(self, hub: RelayService) -> None:
        self.hub = hub

        self.started_wall_time: float | None = None
        self.started_monotonic: float | None = None

        self._counters: dict[str, int] = {
            "bytes_in": 0,
            "bytes_out": 0,
            "frames_in": 0,
            "frames_bad": 0,
            "rate_limited": 0,
            "oversized": 0,
            "rejected_connections": 0,
            "errors_sent": 0,
            "rooms_created": 0,
            "joins": 0,
            "parts": 0,
            "relayed": 0,
            "relay_dropped": 0,
            "send_overflow": 0,
        }

    def set_start_time(self) -> None:
        """Set the start time for uptime calculations."""
        self.started_wall_time = time.time()
        self.started_monotonic = time.monotonic()

    def inc(self, key: str, delta: int = 1) -> None:
        """Increment a counter by the given delta."""
        with self.hub._state_lock:
            self._counters[key] = int(self._counters.get(key, 0)) + int(delta)

    def get(self, key: str) -> int:
        with self.hub._state_lock:
            return int(self._counters.get(key, 0))

    def format_stats(self) -> str:
        """Format current statistics as a human-readable string."""
        from . import __version__

        started_mono = self.started_monotonic
        uptime_s = (time.monotonic() - started_mono) if started_mono is not None else 0.0

        with self.hub._state_lock:
            session_stats = self.hub.session_manager.get_stats()
            room_stats = self.hub.room_manager.get_stats()
            c = dict(self._counters)

        cfg = self.hub.config
        lines: list[str] = []
        lines.append(f"sigd {__version__} stats")
        lines.append(f"uptime_s={uptime_s:.1f}")
        lines.append(
            f"clients_total={session_stats['total']} "
            f"clients_in_room={session_stats['in_room']} "
            f"addresses={session_stats['addresses']}"
        )
        lines.append(
            f"rooms={room_stats['rooms_total']} memberships={room_stats['memberships']}"
        )

        top_rooms = room_stats["top_rooms"]
        if top_rooms:
            lines.append("top_rooms=" + ", ".join(f"{r}:{n}" for r, n in top_rooms))

        lines.append(
            f"limits: max_message_size={cfg.max_message_size} "
            f"max_connections_per_address={cfg.max_connections_per_address} "
            f"max_messages_per_second={cfg.max_messages_per_second}"
        )
        lines.append(
            "io: frames_in={} frames_bad={} bytes_in={} bytes_out={} send_overflow={}".format(
                c.get("frames_in", 0),
                c.get("frames_bad", 0),
                c.get("bytes_in", 0),
                c.get("bytes_out", 0),
                c.get("send_overflow", 0),
            )
        )
        lines.append(
            "guard: rejected_connections={} rate_limited={} oversized={}".format(
                c.get("rejected_connections", 0),
                c.get("rate_limited", 0),
                c.get("oversized", 0),
            )
        )
        lines.append(
            "events: rooms_created={} joins={} parts={} relayed={} relay_dropped={} errors_sent={}".format(
                c.get("rooms_created", 0),
                c.get("joins", 0),
                c.get("parts", 0),
                c.get("relayed", 0),
                c.get("relay_dropped", 0),
                c.get("errors_sent", 0),
            )
        )

        return "\n".join(lines)
