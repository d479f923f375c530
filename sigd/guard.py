from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING

from .constants import (
    CLOSE_MESSAGE_TOO_LARGE,
    CLOSE_RATE_LIMIT_EXCEEDED,
    REASON_MESSAGE_TOO_LARGE,
    REASON_RATE_LIMIT_EXCEEDED,
)

if TYPE_CHECKING:
    from .service import RelayService


@dataclass
class _RateWindow:
    """Fixed-window counter state for rate limiting."""

    count: int
    expires_at: float


def frame_size(data) -> int:
    """Total byte length of a frame, summed across chunks for a batch."""
    if isinstance(data, (list, tuple)):
        return sum(frame_size(chunk) for chunk in data)
    if isinstance(data, str):
        return len(data.encode("utf-8"))
    return len(data)


class AbuseGuard:
    """
    Per-frame abuse checks, run before any parsing.

    - Rate gate: fixed window per connection, reset lazily on the first frame
      after the window expires, so the effective window can run a little long.
    - Size gate: rejects frames whose total size exceeds ``max_message_size``.

    Each check returns ``None`` when the frame may proceed, otherwise the
    ``(close_code, reason)`` the connection must be closed with.
    Must be called with state lock held.
    """

    def __init__(
        self, hub: RelayService, clock: Callable[[], float] = time.monotonic
    ) -> None:
        self.hub = hub
        self.clock = clock
        self.log = logging.getLogger("sigd.guard")
        self._windows: dict[str, _RateWindow] = {}

    def on_connection_open(self, conn_id: str) -> None:
        self._windows[conn_id] = _RateWindow(
            count=0, expires_at=self.clock() + float(self.hub.config.rate_window_s)
        )

    def on_connection_closed(self, conn_id: str) -> None:
        self._windows.pop(conn_id, None)

    def check_rate(self, conn_id: str) -> tuple[int, str] | None:
        now = self.clock()
        window = self._windows.get(conn_id)
        if window is None:
            window = _RateWindow(
                count=0, expires_at=now + float(self.hub.config.rate_window_s)
            )
            self._windows[conn_id] = window

        if now > window.expires_at:
            window.count = 0
            window.expires_at = now + float(self.hub.config.rate_window_s)

        window.count += 1
        if window.count > int(self.hub.config.max_messages_per_second):
            self.hub.stats_manager.inc("rate_limited")
            self.log.info(
                "Rate limit exceeded conn=%s count=%s", conn_id, window.count
            )
            return CLOSE_RATE_LIMIT_EXCEEDED, REASON_RATE_LIMIT_EXCEEDED
        return None

    def check_size(self, conn_id: str, data) -> tuple[int, str] | None:
        size = frame_size(data)
        if size > int(self.hub.config.max_message_size):
            self.hub.stats_manager.inc("oversized")
            self.log.info("Message too large conn=%s bytes=%s", conn_id, size)
            return CLOSE_MESSAGE_TOO_LARGE, REASON_MESSAGE_TOO_LARGE
        return None

    def check_frame(self, conn_id: str, data) -> tuple[int, str] | None:
        return self.check_rate(conn_id) or self.check_size(conn_id, data)

    def clear_all(self) -> None:
        self._windows.clear()
