from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol

from .codec import encode
from .envelope import Message
from .outbox import Outbox
from .util import new_id

if TYPE_CHECKING:
    from .service import RelayService


class Transport(Protocol):
    """What the relay needs from a persistent socket connection."""

    remote_address: Any

    def send(self, message: bytes | str) -> None: ...

    def close(self, code: int = 1000, reason: str = "") -> None: ...


Outgoing = list[tuple[Outbox, bytes]]


class AdmissionResult(enum.Enum):
    ACCEPTED = "accepted"
    NO_ADDRESS = "no_address"
    TOO_MANY_CONNECTIONS = "too_many_connections"


@dataclass(eq=False)
class Session:
    id: str
    transport: Transport
    address: str
    outbox: Outbox
    room_id: str | None = None


class SessionManager:
    """
    Connection registry for the relay.

    This class is responsible for:
    - Admission control (open connections per source address)
    - Assigning connection ids and tracking live sessions
    - Best-effort delivery to a connection id
    - Session teardown, including room membership cleanup

    All methods must be called with state lock held.
    """

    def __init__(self, hub: RelayService) -> None:
        self.hub = hub
        self.log = logging.getLogger("sigd.session")
        self.sessions: dict[str, Session] = {}
        self._connection_counts: dict[str, int] = {}  # address -> open connections

    def admit(self, address: str | None) -> AdmissionResult:
        """
        Admission check for a new connection from ``address``.

        At most ``max_connections_per_address`` connections may be open per
        address at once. On success the address count is incremented and the
        caller owns one slot until ``release`` (or ``unregister``).
        """
        if not address:
            return AdmissionResult.NO_ADDRESS

        count = self._connection_counts.get(address, 0)
        if count >= int(self.hub.config.max_connections_per_address):
            return AdmissionResult.TOO_MANY_CONNECTIONS

        self._connection_counts[address] = count + 1
        return AdmissionResult.ACCEPTED

    def release(self, address: str | None) -> None:
        if not address:
            return
        count = self._connection_counts.get(address, 0) - 1
        if count <= 0:
            self._connection_counts.pop(address, None)
        else:
            self._connection_counts[address] = count

    def connection_count(self, address: str) -> int:
        return self._connection_counts.get(address, 0)

    def register(self, transport: Transport, address: str) -> Session:
        conn_id = new_id()
        while conn_id in self.sessions:
            conn_id = new_id()

        sess = Session(
            id=conn_id,
            transport=transport,
            address=address,
            outbox=Outbox(transport, int(self.hub.config.max_pending_sends)),
        )
        self.sessions[conn_id] = sess
        self.log.info("Client connected conn=%s addr=%s", conn_id, address)
        return sess

    def unregister(self, conn_id: str, outgoing: Outgoing) -> Session | None:
        """
        Remove a connection and everything that references it.

        Returns the removed session, or None if it was already gone.
        """
        sess = self.sessions.pop(conn_id, None)
        if sess is None:
            return None

        self.release(sess.address)
        self.hub.guard.on_connection_closed(conn_id)
        rooms_left = self.hub.room_manager.remove_member(conn_id, outgoing)
        sess.room_id = None
        sess.outbox.clear()

        self.log.info(
            "Client disconnected conn=%s addr=%s rooms_left=%s",
            conn_id,
            sess.address,
            rooms_left,
        )
        return sess

    def lookup(self, conn_id: str) -> Session | None:
        return self.sessions.get(conn_id)

    def send(self, outgoing: Outgoing, conn_id: str, payload: bytes) -> bool:
        """Queue ``payload`` for ``conn_id``. Unknown targets are logged and dropped."""
        sess = self.sessions.get(conn_id)
        if sess is None:
            self.log.warning("Target not found conn=%s bytes=%s", conn_id, len(payload))
            return False

        self.hub.stats_manager.inc("bytes_out", len(payload))
        outgoing.append((sess.outbox, payload))
        return True

    def send_message(self, outgoing: Outgoing, conn_id: str, message: Message) -> bool:
        return self.send(outgoing, conn_id, encode(message))

    def clear_all(self) -> list[Session]:
        """Clear all sessions and return them for teardown."""
        sessions = list(self.sessions.values())
        self.sessions.clear()
        self._connection_counts.clear()
        return sessions

    def get_stats(self) -> dict[str, Any]:
        total = len(self.sessions)
        in_room = sum(1 for s in self.sessions.values() if s.room_id is not None)
        return {
            "total": total,
            "in_room": in_room,
            "addresses": len(self._connection_counts),
        }
