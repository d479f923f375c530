from __future__ import annotations

from dataclasses import dataclass
from typing import Any, ClassVar

from .constants import (
    K_ANSWER,
    K_CLIENT_ID,
    K_ERROR_MESSAGE,
    K_ICE_CANDIDATE,
    K_OFFER,
    K_PEER_LIST,
    K_ROOM_CODE,
    K_ROOM_ID,
    K_SENDER,
    K_TARGET,
    K_TYPE,
    T_ANSWER,
    T_CLIENT_ID,
    T_CREATE_ROOM,
    T_ERROR,
    T_ICE_CANDIDATE,
    T_JOIN_OR_CREATE,
    T_JOIN_ROOM,
    T_LEAVE_ROOM,
    T_OFFER,
    T_PEER_LIST,
)

# Body field kinds: opaque payloads are forwarded as-is, the rest are checked.
_OPAQUE = "opaque"
_STR = "str"
_STR_LIST = "str_list"


class DecodeError(ValueError):
    """Raised when a frame does not hold a valid signaling message."""


def _check_field(key: str, value: Any, kind: str) -> Any:
    if kind == _STR:
        if not isinstance(value, str):
            raise DecodeError(f"{key} must be a string")
        return value
    if kind == _STR_LIST:
        if not isinstance(value, (list, tuple)):
            raise DecodeError(f"{key} must be a list")
        for item in value:
            if not isinstance(item, str):
                raise DecodeError(f"{key} entries must be strings")
        return tuple(value)
    return value


def _optional_str(content: dict, key: str) -> str:
    value = content.get(key)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise DecodeError(f"{key} must be a string")
    return value


@dataclass(frozen=True, kw_only=True)
class Message:
    """Base of all signaling messages.

    Every variant carries the routing pair ``target_id``/``sender_id``; the
    variant's own fields are listed in ``body_keys`` as
    ``(wire key, attribute, kind)`` triples.
    """

    msg_type: ClassVar[int]
    body_keys: ClassVar[tuple[tuple[str, str, str], ...]] = ()

    target_id: str = ""
    sender_id: str = ""

    def to_content(self) -> dict[str, Any]:
        env: dict[str, Any] = {
            K_TYPE: self.msg_type,
            K_TARGET: self.target_id,
            K_SENDER: self.sender_id,
        }
        for key, attr, _kind in self.body_keys:
            value = getattr(self, attr)
            env[key] = list(value) if isinstance(value, tuple) else value
        return env

    @classmethod
    def from_content(cls, content: dict) -> Message:
        t = content.get(K_TYPE)
        if t != cls.msg_type:
            raise DecodeError(f"expected message type {cls.msg_type}, got {t!r}")

        kwargs: dict[str, Any] = {
            "target_id": _optional_str(content, K_TARGET),
            "sender_id": _optional_str(content, K_SENDER),
        }
        for key, attr, kind in cls.body_keys:
            value = content.get(key)
            if value is None:
                raise DecodeError(f"{key} is required")
            kwargs[attr] = _check_field(key, value, kind)
        return cls(**kwargs)


@dataclass(frozen=True, kw_only=True)
class Offer(Message):
    msg_type: ClassVar[int] = T_OFFER
    body_keys: ClassVar[tuple[tuple[str, str, str], ...]] = ((K_OFFER, "offer", _OPAQUE),)

    offer: Any


@dataclass(frozen=True, kw_only=True)
class Answer(Message):
    msg_type: ClassVar[int] = T_ANSWER
    body_keys: ClassVar[tuple[tuple[str, str, str], ...]] = ((K_ANSWER, "answer", _OPAQUE),)

    answer: Any


@dataclass(frozen=True, kw_only=True)
class IceCandidate(Message):
    msg_type: ClassVar[int] = T_ICE_CANDIDATE
    body_keys: ClassVar[tuple[tuple[str, str, str], ...]] = (
        (K_ICE_CANDIDATE, "ice_candidate", _OPAQUE),
    )

    ice_candidate: Any


@dataclass(frozen=True, kw_only=True)
class ClientId(Message):
    msg_type: ClassVar[int] = T_CLIENT_ID
    body_keys: ClassVar[tuple[tuple[str, str, str], ...]] = ((K_CLIENT_ID, "client_id", _STR),)

    client_id: str

    @classmethod
    def assign(cls, client_id: str) -> ClientId:
        return cls(target_id=client_id, sender_id="", client_id=client_id)


@dataclass(frozen=True, kw_only=True)
class PeerList(Message):
    msg_type: ClassVar[int] = T_PEER_LIST
    body_keys: ClassVar[tuple[tuple[str, str, str], ...]] = (
        (K_PEER_LIST, "peer_list", _STR_LIST),
        (K_ROOM_CODE, "room_code", _STR),
        (K_ROOM_ID, "room_id", _STR),
    )

    peer_list: tuple[str, ...]
    room_code: str
    room_id: str


@dataclass(frozen=True, kw_only=True)
class CreateRoom(Message):
    msg_type: ClassVar[int] = T_CREATE_ROOM
    body_keys: ClassVar[tuple[tuple[str, str, str], ...]] = ((K_ROOM_CODE, "room_code", _STR),)

    room_code: str


@dataclass(frozen=True, kw_only=True)
class JoinRoom(Message):
    msg_type: ClassVar[int] = T_JOIN_ROOM
    body_keys: ClassVar[tuple[tuple[str, str, str], ...]] = ((K_ROOM_CODE, "room_code", _STR),)

    room_code: str


@dataclass(frozen=True, kw_only=True)
class LeaveRoom(Message):
    msg_type: ClassVar[int] = T_LEAVE_ROOM


@dataclass(frozen=True, kw_only=True)
class ErrorMessage(Message):
    msg_type: ClassVar[int] = T_ERROR
    body_keys: ClassVar[tuple[tuple[str, str, str], ...]] = (
        (K_ERROR_MESSAGE, "error_message", _STR),
    )

    error_message: str

    @classmethod
    def to(cls, target_id: str, text: str) -> ErrorMessage:
        return cls(target_id=target_id, sender_id="", error_message=text)

    @classmethod
    def room_not_found(cls, room_code: str, target_id: str) -> ErrorMessage:
        return cls.to(target_id, f"Room {room_code} does not exist.")

    @classmethod
    def room_already_exists(cls, room_code: str, target_id: str) -> ErrorMessage:
        return cls.to(target_id, f"Room {room_code} already exists.")


@dataclass(frozen=True, kw_only=True)
class JoinOrCreate(Message):
    msg_type: ClassVar[int] = T_JOIN_OR_CREATE
    body_keys: ClassVar[tuple[tuple[str, str, str], ...]] = ((K_ROOM_ID, "room_id", _STR),)

    room_id: str


MESSAGE_TYPES: dict[int, type[Message]] = {
    cls.msg_type: cls
    for cls in (
        Offer,
        Answer,
        IceCandidate,
        ClientId,
        PeerList,
        CreateRoom,
        JoinRoom,
        LeaveRoom,
        ErrorMessage,
        JoinOrCreate,
    )
}


def make_envelope(message: Message) -> dict[str, Any]:
    return message.to_content()


def validate_envelope(env: Any) -> None:
    if not isinstance(env, dict):
        raise DecodeError("envelope must be a JSON object")

    t = env.get(K_TYPE)
    if t is None:
        raise DecodeError("message type is required")
    # bool is an int subclass; true/false are not message types.
    if isinstance(t, bool) or not isinstance(t, int):
        raise DecodeError("message type must be an integer")
    if t not in MESSAGE_TYPES:
        raise DecodeError(f"invalid message type {t}")


def parse_envelope(env: Any) -> Message:
    validate_envelope(env)
    return MESSAGE_TYPES[env[K_TYPE]].from_content(env)
