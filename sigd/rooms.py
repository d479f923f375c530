"""Room directory for the signaling relay.

This module handles all room-related functionality including:
- Room membership tracking (join order preserved)
- The bidirectional room code <-> room id mapping
- Room creation, joining, leaving and teardown
- Peer list broadcasts after every membership change
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from .codec import encode
from .envelope import PeerList
from .util import generate_room_code, new_id

if TYPE_CHECKING:
    from .service import RelayService
    from .session import Outgoing, Session


class RoomError(enum.Enum):
    ROOM_NOT_FOUND = "room_not_found"
    ROOM_ALREADY_EXISTS = "room_already_exists"
    CODE_SPACE_EXHAUSTED = "code_space_exhausted"
    CLIENT_NOT_FOUND = "client_not_found"


@dataclass(eq=False)
class Room:
    id: str
    code: str
    members: list[str] = field(default_factory=list)


class RoomManager:
    """
    Owns room membership and the code <-> id mapping.

    A room exists only while it has members: whichever operation empties it
    also deletes it, along with both directions of its code mapping. A
    connection is a member of at most one room at a time.

    All methods must be called with state lock held.
    """

    def __init__(self, hub: RelayService) -> None:
        self.hub = hub
        self.log = logging.getLogger("sigd.rooms")
        self.rooms: dict[str, Room] = {}  # room id -> room
        self._code_to_id: dict[str, str] = {}

    def clear_all(self) -> None:
        """Clear all room state. Called during shutdown."""
        self.rooms.clear()
        self._code_to_id.clear()

    def get_room(self, room_id: str) -> Room | None:
        return self.rooms.get(room_id)

    def get_room_by_code(self, code: str) -> Room | None:
        room_id = self._code_to_id.get(code)
        if room_id is None:
            return None
        return self.rooms.get(room_id)

    def get_room_members(self, room_id: str) -> list[str]:
        room = self.rooms.get(room_id)
        return list(room.members) if room is not None else []

    def create_room(
        self, code: str, founder_id: str, outgoing: Outgoing
    ) -> Room | RoomError:
        """Create a room under a caller-chosen code with ``founder_id`` as its only member."""
        if code in self._code_to_id:
            return RoomError.ROOM_ALREADY_EXISTS

        sess = self.hub.session_manager.lookup(founder_id)
        if sess is None:
            return RoomError.CLIENT_NOT_FOUND

        self._leave_current(sess, outgoing)

        room_id = new_id()
        while room_id in self.rooms:
            room_id = new_id()

        room = self._add_room(room_id, code)
        self.hub.stats_manager.inc("rooms_created")
        self.log.info("Room created room=%s code=%s founder=%s", room_id, code, founder_id)

        self._join(room, sess, outgoing)
        return room

    def join_room(self, code: str, joiner_id: str, outgoing: Outgoing) -> Room | RoomError:
        """Join an existing room by code. Never creates a room."""
        room = self.get_room_by_code(code)
        if room is None:
            return RoomError.ROOM_NOT_FOUND

        sess = self.hub.session_manager.lookup(joiner_id)
        if sess is None:
            return RoomError.CLIENT_NOT_FOUND

        self._join(room, sess, outgoing)
        return room

    def join_or_create_room(
        self, room_id: str, joiner_id: str, outgoing: Outgoing
    ) -> Room | RoomError:
        """
        Join the room with id ``room_id``, creating it first if it does not exist.

        The id comes from the client and is used as-is; the client is trusted
        to pick one that does not collide. A new room gets a freshly generated
        code for display.
        """
        sess = self.hub.session_manager.lookup(joiner_id)
        if sess is None:
            return RoomError.CLIENT_NOT_FOUND

        room = self.rooms.get(room_id)
        if room is None:
            code = self._allocate_code()
            if code is None:
                self.log.warning("Unable to allocate a room code room=%s", room_id)
                return RoomError.CODE_SPACE_EXHAUSTED

            # Leave first so the new room is never observed empty.
            self._leave_current(sess, outgoing)
            room = self._add_room(room_id, code)
            self.hub.stats_manager.inc("rooms_created")
            self.log.info("Room created room=%s code=%s founder=%s", room_id, code, joiner_id)

        self._join(room, sess, outgoing)
        return room

    def leave_room(self, conn_id: str, outgoing: Outgoing) -> bool:
        """
        Leave the sender's current room, if any.

        Clears the connection's room reference. Returns True if the
        connection was removed from a room.
        """
        sess = self.hub.session_manager.lookup(conn_id)
        if sess is None:
            return False
        return self._leave_current(sess, outgoing)

    def remove_member(self, conn_id: str, outgoing: Outgoing) -> int:
        """
        Remove ``conn_id`` from every room it appears in.

        Used on disconnect. Emptied rooms are deleted; surviving rooms get an
        updated peer list. Returns the number of rooms the id was removed from.
        """
        changed = [room for room in self.rooms.values() if conn_id in room.members]
        for room in changed:
            room.members = [m for m in room.members if m != conn_id]
            self.hub.stats_manager.inc("parts")
            if room.members:
                self.broadcast_peer_list(room.id, outgoing)
            else:
                self._delete_room(room)
        return len(changed)

    def broadcast_peer_list(self, room_id: str, outgoing: Outgoing) -> int:
        """Send the room's current peer list to every member. Returns the number queued."""
        room = self.rooms.get(room_id)
        if room is None:
            self.log.error("Room not found for peer list room=%s", room_id)
            return 0

        message = PeerList(
            peer_list=tuple(room.members), room_code=room.code, room_id=room.id
        )
        payload = encode(message)

        sent = 0
        for member in room.members:
            if self.hub.session_manager.send(outgoing, member, payload):
                sent += 1
        return sent

    def get_stats(self) -> dict[str, Any]:
        """Get room statistics for hub stats."""
        rooms_total = len(self.rooms)
        memberships = sum(len(r.members) for r in self.rooms.values())
        top_rooms = sorted(
            ((room.code, len(room.members)) for room in self.rooms.values()),
            key=lambda x: (-x[1], x[0]),
        )[:5]
        return {
            "rooms_total": rooms_total,
            "memberships": memberships,
            "top_rooms": top_rooms,
        }

    def _allocate_code(self) -> str | None:
        cfg = self.hub.config
        for _ in range(max(1, int(cfg.room_code_max_attempts))):
            code = generate_room_code(int(cfg.room_code_length), str(cfg.room_code_alphabet))
            if code not in self._code_to_id:
                return code
        return None

    def _add_room(self, room_id: str, code: str) -> Room:
        room = Room(id=room_id, code=code)
        self.rooms[room_id] = room
        self._code_to_id[code] = room_id
        return room

    def _delete_room(self, room: Room) -> None:
        self.rooms.pop(room.id, None)
        if self._code_to_id.get(room.code) == room.id:
            self._code_to_id.pop(room.code, None)
        self.log.info("Room closed room=%s code=%s", room.id, room.code)

    def _join(self, room: Room, sess: Session, outgoing: Outgoing) -> None:
        if sess.room_id is not None and sess.room_id != room.id:
            self._leave_current(sess, outgoing)

        if sess.id not in room.members:
            room.members.append(sess.id)
            self.hub.stats_manager.inc("joins")
            self.log.info(
                "Joined room=%s code=%s conn=%s members=%s",
                room.id,
                room.code,
                sess.id,
                len(room.members),
            )
        sess.room_id = room.id

        self.broadcast_peer_list(room.id, outgoing)

    def _leave_current(self, sess: Session, outgoing: Outgoing) -> bool:
        room_id = sess.room_id
        sess.room_id = None
        if room_id is None:
            return False

        room = self.rooms.get(room_id)
        if room is None or sess.id not in room.members:
            return False

        room.members.remove(sess.id)
        self.hub.stats_manager.inc("parts")
        self.log.info("Left room=%s code=%s conn=%s", room.id, room.code, sess.id)

        if room.members:
            self.broadcast_peer_list(room.id, outgoing)
        else:
            self._delete_room(room)
        return True
