from __future__ import annotations

import logging
import threading
from collections import deque
from typing import TYPE_CHECKING

from websockets.exceptions import ConnectionClosed

if TYPE_CHECKING:
    from .session import Transport


class Outbox:
    """
    Ordered outbound queue for one connection.

    Payloads are put under the state lock, so each connection sees them in
    mutation order. They are written by ``flush`` after the state lock is
    released. At most one thread writes to the transport at a time; a thread
    that finds a write in progress leaves its payloads to that writer and
    returns at once. A peer that stops reading therefore stalls only the
    thread already writing to it, and its backlog is capped at ``limit``.
    """

    def __init__(self, transport: Transport, limit: int = 0) -> None:
        self.transport = transport
        self.limit = int(limit)
        self.dropped = 0
        self.log = logging.getLogger("sigd.outbox")
        self._pending: deque[bytes] = deque()
        self._write_lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._pending)

    def put(self, payload: bytes) -> bool:
        """Queue ``payload``. Returns False if the backlog is full and it was dropped."""
        if self.limit > 0 and len(self._pending) >= self.limit:
            if self.dropped == 0:
                self.log.warning(
                    "Outbound backlog full, dropping payloads pending=%s", len(self._pending)
                )
            self.dropped += 1
            return False
        self._pending.append(payload)
        return True

    def flush(self) -> None:
        # Re-check after releasing: a payload put while we held the lock was
        # left for us by a thread that failed to acquire it.
        while self._pending:
            if not self._write_lock.acquire(blocking=False):
                return
            try:
                while self._pending:
                    self._write(self._pending.popleft())
            finally:
                self._write_lock.release()

    def clear(self) -> None:
        self._pending.clear()

    def _write(self, payload: bytes) -> None:
        try:
            self.transport.send(payload)
        except ConnectionClosed:
            self.log.debug("Send to closed connection dropped bytes=%s", len(payload))
        except OSError as e:
            self.log.warning("Send failed bytes=%s err=%s", len(payload), e)
        except Exception:
            self.log.warning("Send failed bytes=%s", len(payload), exc_info=True)
