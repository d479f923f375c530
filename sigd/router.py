from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from .codec import encode
from .constants import CLOSE_INVALID_MESSAGE, REASON_INVALID_MESSAGE_TYPE
from .envelope import (
    Answer,
    CreateRoom,
    ErrorMessage,
    IceCandidate,
    JoinOrCreate,
    JoinRoom,
    LeaveRoom,
    Message,
    Offer,
)
from .rooms import RoomError

if TYPE_CHECKING:
    from .service import RelayService
    from .session import Outgoing, Session


class ProtocolViolation(Exception):
    """A message the protocol does not allow; the connection must be closed."""

    def __init__(self, code: int, reason: str) -> None:
        super().__init__(reason)
        self.code = code
        self.reason = reason


class MessageRouter:
    """
    Dispatches decoded messages by type.

    This class is responsible for:
    - Checking that the sender is a registered connection
    - Room operations (create, join, join-or-create, leave)
    - Relaying offers, answers and ICE candidates to their target
    - Turning recoverable room errors into targeted Error messages

    Server-authored types (ClientId, PeerList, Error) are never accepted
    inbound and raise ProtocolViolation.
    """

    def __init__(self, hub: RelayService) -> None:
        self.hub = hub
        self.log = logging.getLogger("sigd.router")

    def route_message(self, conn_id: str, message: Message, outgoing: Outgoing) -> None:
        """
        Route one message received on connection ``conn_id``.

        This method should be called with the state lock held.
        """
        sender = self.hub.session_manager.lookup(message.sender_id)
        if sender is None or sender.id != conn_id:
            # Unknown or forged sender: drop without telling anyone.
            if self.log.isEnabledFor(logging.DEBUG):
                self.log.debug(
                    "Dropping message with unknown sender conn=%s sender=%r type=%s",
                    conn_id,
                    message.sender_id,
                    message.msg_type,
                )
            return

        if isinstance(message, CreateRoom):
            self._handle_create_room(sender, message, outgoing)
        elif isinstance(message, JoinRoom):
            self._handle_join_room(sender, message, outgoing)
        elif isinstance(message, JoinOrCreate):
            self._handle_join_or_create(sender, message, outgoing)
        elif isinstance(message, LeaveRoom):
            self.hub.room_manager.leave_room(sender.id, outgoing)
        elif isinstance(message, (Offer, Answer, IceCandidate)):
            self._relay(sender, message, outgoing)
        else:
            raise ProtocolViolation(CLOSE_INVALID_MESSAGE, REASON_INVALID_MESSAGE_TYPE)

    def _handle_create_room(
        self, sender: Session, message: CreateRoom, outgoing: Outgoing
    ) -> None:
        result = self.hub.room_manager.create_room(message.room_code, sender.id, outgoing)
        if isinstance(result, RoomError):
            self._room_error(sender, result, message.room_code, outgoing)

    def _handle_join_room(
        self, sender: Session, message: JoinRoom, outgoing: Outgoing
    ) -> None:
        result = self.hub.room_manager.join_room(message.room_code, sender.id, outgoing)
        if isinstance(result, RoomError):
            self._room_error(sender, result, message.room_code, outgoing)

    def _handle_join_or_create(
        self, sender: Session, message: JoinOrCreate, outgoing: Outgoing
    ) -> None:
        result = self.hub.room_manager.join_or_create_room(
            message.room_id, sender.id, outgoing
        )
        if isinstance(result, RoomError):
            self._room_error(sender, result, message.room_id, outgoing)

    def _relay(self, sender: Session, message: Message, outgoing: Outgoing) -> None:
        if self.hub.session_manager.send(outgoing, message.target_id, encode(message)):
            self.hub.stats_manager.inc("relayed")
            if self.log.isEnabledFor(logging.DEBUG):
                self.log.debug(
                    "Relayed type=%s from=%s to=%s",
                    message.msg_type,
                    sender.id,
                    message.target_id,
                )
        else:
            self.hub.stats_manager.inc("relay_dropped")

    def _room_error(
        self, sender: Session, error: RoomError, ref: str, outgoing: Outgoing
    ) -> None:
        if error is RoomError.ROOM_NOT_FOUND:
            reply = ErrorMessage.room_not_found(ref, sender.id)
        elif error is RoomError.ROOM_ALREADY_EXISTS:
            reply = ErrorMessage.room_already_exists(ref, sender.id)
        elif error is RoomError.CODE_SPACE_EXHAUSTED:
            reply = ErrorMessage.to(sender.id, f"Unable to allocate a code for room {ref}.")
        else:
            return

        self.log.info("Room error conn=%s ref=%r error=%s", sender.id, ref, error.value)
        self.hub.stats_manager.inc("errors_sent")
        self.hub.session_manager.send_message(outgoing, sender.id, reply)
