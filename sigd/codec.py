from __future__ import annotations

import json

from .envelope import DecodeError, Message, make_envelope, parse_envelope


def encode(message: Message) -> bytes:
    return json.dumps(
        make_envelope(message), separators=(",", ":"), ensure_ascii=False
    ).encode("utf-8")


def decode(data: bytes | bytearray | memoryview | str) -> Message:
    if isinstance(data, str):
        text = data
    else:
        try:
            text = bytes(data).decode("utf-8")
        except UnicodeDecodeError as e:
            raise DecodeError(f"frame is not valid UTF-8: {e}") from e

    try:
        env = json.loads(text)
    except ValueError as e:
        raise DecodeError(f"frame is not valid JSON: {e}") from e
    except RecursionError as e:
        raise DecodeError("frame is nested too deeply") from e

    return parse_envelope(env)


def decode_frames(data) -> list[Message]:
    """Decode one inbound frame into messages.

    A text or binary frame holds exactly one message. A batch (list) of
    binary chunks holds one complete message per chunk, returned in order.
    """
    if isinstance(data, (list, tuple)):
        return [decode(chunk) for chunk in data]
    return [decode(data)]
