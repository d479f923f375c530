from __future__ import annotations

import tomllib
from dataclasses import dataclass, fields, replace
from typing import Any

from .constants import (
    DEFAULT_PORT,
    MAX_CONNECTIONS_PER_ADDRESS,
    MAX_MESSAGE_SIZE,
    MAX_MESSAGES_PER_SECOND,
    MAX_PENDING_SENDS,
    ROOM_CODE_ALPHABET,
    ROOM_CODE_LENGTH,
    ROOM_CODE_MAX_ATTEMPTS,
)


@dataclass(frozen=True)
class RelayRuntimeConfig:
    config_path: str | None = None
    host: str = "0.0.0.0"
    port: int = DEFAULT_PORT
    max_message_size: int = MAX_MESSAGE_SIZE
    max_connections_per_address: int = MAX_CONNECTIONS_PER_ADDRESS
    max_messages_per_second: int = MAX_MESSAGES_PER_SECOND
    rate_window_s: float = 1.0
    room_code_length: int = ROOM_CODE_LENGTH
    room_code_alphabet: str = ROOM_CODE_ALPHABET
    room_code_max_attempts: int = ROOM_CODE_MAX_ATTEMPTS
    max_pending_sends: int = MAX_PENDING_SENDS
    transport_max_size: int = 1 << 20
    ping_interval_s: float = 20.0
    ping_timeout_s: float = 20.0
    stats_interval_s: float = 0.0
    log_level: str = "INFO"
    log_websockets_level: str = "WARNING"
    log_console: bool = True
    log_file: str | None = None
    log_format: str = "%(asctime)s %(levelname)s %(name)s[%(threadName)s]: %(message)s"
    log_datefmt: str | None = None


# [logging] table keys -> config fields
_LOGGING_KEYS = {
    "level": "log_level",
    "websockets_level": "log_websockets_level",
    "console": "log_console",
    "file": "log_file",
    "format": "log_format",
    "datefmt": "log_datefmt",
}

_OPTIONAL_STR = ("log_file", "log_datefmt")


def load_toml(path: str) -> dict:
    with open(path, "rb") as f:
        return tomllib.load(f)


def _coerce(name: str, value: Any, default: Any) -> Any:
    if name in _OPTIONAL_STR:
        if value is None or str(value) == "":
            return None
        return str(value)
    if isinstance(default, bool):
        if isinstance(value, str):
            return value.strip().lower() in ("1", "true", "yes", "on")
        return bool(value)
    if isinstance(default, int):
        return int(value)
    if isinstance(default, float):
        return float(value)
    if isinstance(default, str):
        return str(value)
    return value


def apply_config_data(cfg: RelayRuntimeConfig, data: dict) -> RelayRuntimeConfig:
    """Overlay TOML data on ``cfg``.

    Accepts top-level keys, a ``[relay]`` table and a ``[logging]`` table.
    Unknown keys are ignored.
    """
    if not isinstance(data, dict):
        return cfg

    relay = data.get("relay")
    if isinstance(relay, dict):
        data = {**data, **relay}

    log_table = data.get("logging")
    if isinstance(log_table, dict):
        mapped = {
            field: log_table[key] for key, field in _LOGGING_KEYS.items() if key in log_table
        }
        data = {**data, **mapped}

    defaults = {f.name: f.default for f in fields(cfg)}
    # This identifies where the config came from; do not let the file override it.
    defaults.pop("config_path", None)

    updates: dict[str, Any] = {}
    for name, value in data.items():
        if name not in defaults:
            continue
        try:
            updates[name] = _coerce(name, value, defaults[name])
        except (TypeError, ValueError) as e:
            raise ValueError(f"invalid value for {name}: {value!r}") from e

    return replace(cfg, **updates) if updates else cfg


def load_config(path: str, base: RelayRuntimeConfig | None = None) -> RelayRuntimeConfig:
    cfg = base or RelayRuntimeConfig()
    cfg = replace(cfg, config_path=path)
    return apply_config_data(cfg, load_toml(path))
