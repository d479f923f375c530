from __future__ import annotations

import logging
from collections.abc import Iterator
from dataclasses import replace
from typing import Any

from websockets.sync.client import ClientConnection, connect

from .codec import decode, encode
from .envelope import (
    Answer,
    ClientId,
    CreateRoom,
    IceCandidate,
    JoinOrCreate,
    JoinRoom,
    LeaveRoom,
    Message,
    Offer,
)


class SignalingClient:
    """
    Blocking client for a sigd relay.

    ``connect`` opens the WebSocket and waits for the relay to assign an id.
    Outbound messages get that id as their sender unless one is set.
    """

    def __init__(self, url: str, *, open_timeout: float = 10.0) -> None:
        self.url = url
        self.open_timeout = open_timeout
        self.client_id: str | None = None
        self.log = logging.getLogger("sigd.client")
        self._ws: ClientConnection | None = None

    def connect(self) -> str:
        self._ws = connect(self.url, open_timeout=self.open_timeout)
        first = self.recv(timeout=self.open_timeout)
        if not isinstance(first, ClientId):
            self.close()
            raise ConnectionError(f"expected ClientId, got type {first.msg_type}")
        self.client_id = first.client_id
        self.log.info("Connected url=%s id=%s", self.url, self.client_id)
        return self.client_id

    def close(self) -> None:
        if self._ws is not None:
            self._ws.close()
            self._ws = None

    def __enter__(self) -> SignalingClient:
        self.connect()
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    def _conn(self) -> ClientConnection:
        if self._ws is None:
            raise ConnectionError("not connected")
        return self._ws

    def send(self, message: Message) -> None:
        if not message.sender_id and self.client_id:
            message = replace(message, sender_id=self.client_id)
        self._conn().send(encode(message))

    def recv(self, timeout: float | None = None) -> Message:
        """Next message from the relay; raises TimeoutError if none arrives in time."""
        return decode(self._conn().recv(timeout))

    def __iter__(self) -> Iterator[Message]:
        for data in self._conn():
            yield decode(data)

    def create_room(self, room_code: str) -> None:
        self.send(CreateRoom(room_code=room_code))

    def join_room(self, room_code: str) -> None:
        self.send(JoinRoom(room_code=room_code))

    def join_or_create(self, room_id: str) -> None:
        self.send(JoinOrCreate(room_id=room_id))

    def leave_room(self) -> None:
        self.send(LeaveRoom())

    def offer(self, target_id: str, offer: Any) -> None:
        self.send(Offer(target_id=target_id, offer=offer))

    def answer(self, target_id: str, answer: Any) -> None:
        self.send(Answer(target_id=target_id, answer=answer))

    def ice_candidate(self, target_id: str, candidate: Any) -> None:
        self.send(IceCandidate(target_id=target_id, ice_candidate=candidate))
