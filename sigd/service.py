from __future__ import annotations

import logging
import signal
import threading
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager

from websockets.exceptions import ConnectionClosed
from websockets.sync.server import Server, serve

from .codec import decode_frames
from .config import RelayRuntimeConfig
from .constants import (
    CLOSE_INVALID_MESSAGE,
    CLOSE_TOO_MANY_CONNECTIONS,
    CLOSE_UNKNOWN_ORIGIN,
    REASON_INVALID_MESSAGE,
    REASON_TOO_MANY_CONNECTIONS,
    REASON_UNKNOWN_ORIGIN,
)
from .envelope import ClientId, DecodeError
from .guard import AbuseGuard, frame_size
from .outbox import Outbox
from .rooms import RoomManager
from .router import MessageRouter, ProtocolViolation
from .session import AdmissionResult, Outgoing, SessionManager, Transport
from .stats import StatsManager
from .util import peer_address

_REJECTIONS = {
    AdmissionResult.NO_ADDRESS: (CLOSE_UNKNOWN_ORIGIN, REASON_UNKNOWN_ORIGIN),
    AdmissionResult.TOO_MANY_CONNECTIONS: (
        CLOSE_TOO_MANY_CONNECTIONS,
        REASON_TOO_MANY_CONNECTIONS,
    ),
}


class RelayService:
    def __init__(
        self,
        config: RelayRuntimeConfig,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config
        self.log = logging.getLogger("sigd.hub")

        # Sessions and rooms are touched from one thread per connection.
        # Guard them with a single re-entrant lock.
        self._state_lock = threading.RLock()
        self._shutdown = threading.Event()

        self.stats_manager = StatsManager(self)
        self.session_manager = SessionManager(self)
        self.room_manager = RoomManager(self)
        self.guard = AbuseGuard(self, clock)
        self.router = MessageRouter(self)

        self._server: Server | None = None
        self._server_thread: threading.Thread | None = None
        self._stats_thread: threading.Thread | None = None

    @contextmanager
    def _transaction(self) -> Iterator[Outgoing]:
        """
        Run a state mutation under the state lock and deliver what it queued.

        Payloads are put into each connection's outbox before the state lock
        is released, so a later mutator cannot overtake this batch on any
        connection. Sockets are written after the lock is released. Payloads
        queued before an exception are still delivered.
        """
        outgoing: Outgoing = []
        touched: list[Outbox] = []
        try:
            with self._state_lock:
                try:
                    yield outgoing
                finally:
                    touched = self._enqueue(outgoing)
        finally:
            for outbox in touched:
                outbox.flush()

    def _enqueue(self, outgoing: Outgoing) -> list[Outbox]:
        touched: list[Outbox] = []
        for outbox, payload in outgoing:
            if not outbox.put(payload):
                self.stats_manager.inc("send_overflow")
            if outbox not in touched:
                touched.append(outbox)
        return touched

    def _deliver(self, outgoing: Outgoing) -> None:
        if self.log.isEnabledFor(logging.DEBUG) and outgoing:
            self.log.debug("Sending %d payload(s)", len(outgoing))

        for outbox in self._enqueue(outgoing):
            outbox.flush()

    def _close(self, transport: Transport, code: int, reason: str) -> None:
        try:
            transport.close(code, reason)
        except ConnectionClosed:
            pass
        except Exception:
            self.log.debug("Close failed code=%s", code, exc_info=True)

    def on_connect(self, transport: Transport) -> str | None:
        """
        Admit and register a new connection.

        Sends the assigned id to the client. Returns the connection id, or
        None if the connection was rejected (and closed).
        """
        address = peer_address(getattr(transport, "remote_address", None))

        conn_id: str | None = None
        result = AdmissionResult.NO_ADDRESS
        with self._transaction() as outgoing:
            result = self.session_manager.admit(address)
            if result is AdmissionResult.ACCEPTED:
                sess = self.session_manager.register(transport, address or "")
                self.guard.on_connection_open(sess.id)
                self.session_manager.send_message(outgoing, sess.id, ClientId.assign(sess.id))
                conn_id = sess.id
            else:
                self.stats_manager.inc("rejected_connections")

        if conn_id is None:
            code, reason = _REJECTIONS[result]
            self.log.warning(
                "Connection rejected addr=%s reason=%s", address, result.value
            )
            self._close(transport, code, reason)
        return conn_id

    def on_frame(self, conn_id: str, data) -> bool:
        """
        Handle one inbound frame (text, binary, or a batch of binary chunks).

        Returns False if the connection was closed (or is already gone) and
        no further frames should be read from it.
        """
        close_with: tuple[int, str] | None = None
        with self._transaction() as outgoing:
            sess = self.session_manager.lookup(conn_id)
            if sess is None:
                return False

            self.stats_manager.inc("frames_in")
            self.stats_manager.inc("bytes_in", frame_size(data))

            close_with = self.guard.check_frame(conn_id, data)
            if close_with is None:
                try:
                    messages = decode_frames(data)
                except DecodeError as e:
                    self.stats_manager.inc("frames_bad")
                    self.log.info("Bad frame conn=%s err=%s", conn_id, e)
                    close_with = (CLOSE_INVALID_MESSAGE, REASON_INVALID_MESSAGE)
                else:
                    try:
                        for message in messages:
                            self.router.route_message(conn_id, message, outgoing)
                    except ProtocolViolation as e:
                        self.stats_manager.inc("frames_bad")
                        self.log.info(
                            "Protocol violation conn=%s type=%s", conn_id, message.msg_type
                        )
                        close_with = (e.code, e.reason)

        if close_with is not None:
            self._close(sess.transport, *close_with)
            return False
        return True

    def on_close(self, conn_id: str) -> None:
        with self._transaction() as outgoing:
            self.session_manager.unregister(conn_id, outgoing)

    def handle_connection(self, transport) -> None:
        """Per-connection handler run by the WebSocket server thread."""
        conn_id = self.on_connect(transport)
        if conn_id is None:
            return

        try:
            for data in transport:
                if not self.on_frame(conn_id, data):
                    break
        except ConnectionClosed as e:
            self.log.debug("Connection lost conn=%s err=%s", conn_id, e)
        finally:
            self.on_close(conn_id)

    @property
    def bound_port(self) -> int | None:
        """The listening port, resolved when the config asks for port 0."""
        if self._server is None:
            return None
        return int(self._server.socket.getsockname()[1])

    def start(self) -> None:
        self.stats_manager.set_start_time()

        cfg = self.config
        self._server = serve(
            self.handle_connection,
            cfg.host,
            int(cfg.port),
            max_size=int(cfg.transport_max_size) or None,
            ping_interval=float(cfg.ping_interval_s) or None,
            ping_timeout=float(cfg.ping_timeout_s) or None,
        )
        self._server_thread = threading.Thread(
            target=self._server.serve_forever, name="sigd-server", daemon=True
        )
        self._server_thread.start()

        self.log.info("Relay listening host=%s port=%s", cfg.host, self.bound_port)
        self.log.info(
            "Policy max_message_size=%s max_connections_per_address=%s "
            "max_messages_per_second=%s room_code_length=%s",
            cfg.max_message_size,
            cfg.max_connections_per_address,
            cfg.max_messages_per_second,
            cfg.room_code_length,
        )

        if cfg.stats_interval_s and cfg.stats_interval_s > 0:
            self._stats_thread = threading.Thread(
                target=self._stats_loop, name="sigd-stats", daemon=True
            )
            self._stats_thread.start()

    def _stats_loop(self) -> None:
        while not self._shutdown.wait(float(self.config.stats_interval_s)):
            self.log.info("%s", self.stats_manager.format_stats())

    def run_forever(self) -> None:
        if self._server is None:
            self.start()

        signal.signal(signal.SIGINT, lambda *_: self.stop())
        signal.signal(signal.SIGTERM, lambda *_: self.stop())

        while not self._shutdown.is_set():
            self._shutdown.wait(0.25)

    def stop(self) -> None:
        if self._shutdown.is_set():
            return
        self._shutdown.set()
        self.log.info("Shutting down")

        if self._server is not None:
            self._server.shutdown()

        with self._state_lock:
            sessions = self.session_manager.clear_all()
            self.room_manager.clear_all()
            self.guard.clear_all()

        for sess in sessions:
            sess.outbox.clear()
            self._close(sess.transport, 1001, "Server shutting down.")

        self.log.info("%s", self.stats_manager.format_stats())
