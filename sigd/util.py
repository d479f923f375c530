from __future__ import annotations

import os
import secrets
import uuid

from .constants import ROOM_CODE_ALPHABET, ROOM_CODE_LENGTH


def expand_path(p: str) -> str:
    return os.path.expanduser(os.path.expandvars(p))


def new_id() -> str:
    return str(uuid.uuid4())


def generate_room_code(
    length: int = ROOM_CODE_LENGTH, alphabet: str = ROOM_CODE_ALPHABET
) -> str:
    """Draw a short human-enterable room code.

    Each character is drawn independently and uniformly from ``alphabet``.
    Uniqueness is the caller's problem.
    """
    if length <= 0:
        raise ValueError("room code length must be positive")
    if not alphabet:
        raise ValueError("room code alphabet must not be empty")
    return "".join(secrets.choice(alphabet) for _ in range(length))


def peer_address(remote_address) -> str | None:
    """Reduce a transport remote address to the host used for admission."""
    if remote_address is None:
        return None
    if isinstance(remote_address, (tuple, list)):
        if not remote_address:
            return None
        remote_address = remote_address[0]

    s = str(remote_address).strip()
    return s or None
