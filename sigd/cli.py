from __future__ import annotations

import argparse
import os
import sys
from dataclasses import replace
from pathlib import Path

from .config import RelayRuntimeConfig, load_config
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
from .logging_config import configure_logging
from .paths import default_config_path, ensure_private_dir
from .service import RelayService
from .util import expand_path


def _write_default_config(config_path: str) -> None:
    cfg_dir = os.path.dirname(config_path)
    if cfg_dir:
        ensure_private_dir(Path(cfg_dir))

    content = f"""# sigd configuration (TOML)
#
# This file was created on first run. The defaults are usable as-is.

[relay]

# Address and port to accept WebSocket connections on.
host = "0.0.0.0"
port = {DEFAULT_PORT}

# Abuse limits.
#
# max_message_size: largest accepted frame in bytes (summed across chunks).
#   Larger frames close the connection with code 1009.
# max_connections_per_address: concurrent connections allowed per source
#   address. Further connections are closed with code 4029.
# max_messages_per_second: frames allowed per connection per rate window.
#   Exceeding it closes the connection with code 4030.
max_message_size = {MAX_MESSAGE_SIZE}
max_connections_per_address = {MAX_CONNECTIONS_PER_ADDRESS}
max_messages_per_second = {MAX_MESSAGES_PER_SECOND}
rate_window_s = 1.0

# Room codes are drawn from this alphabet. Collisions with active rooms are
# re-drawn up to room_code_max_attempts times.
room_code_length = {ROOM_CODE_LENGTH}
room_code_alphabet = "{ROOM_CODE_ALPHABET}"
room_code_max_attempts = {ROOM_CODE_MAX_ATTEMPTS}

# Outbound payloads queued per connection while its socket is busy. A peer
# that stops reading loses payloads beyond this backlog (0 = unbounded).
max_pending_sends = {MAX_PENDING_SENDS}

# Hard frame size cap enforced by the WebSocket layer itself.
transport_max_size = 1048576

# WebSocket keepalive (0 disables).
ping_interval_s = 20.0
ping_timeout_s = 20.0

# Log a statistics summary every N seconds (0 disables).
stats_interval_s = 0.0

[logging]

# Log level for sigd itself.
level = "INFO"

# Log level for the websockets library.
websockets_level = "WARNING"

# Log to stderr (systemd/journald friendly).
console = true

# Optional file path for logs (leave empty to disable).
file = ""

# Log format and optional date format.
format = "%(asctime)s %(levelname)s %(name)s[%(threadName)s]: %(message)s"
datefmt = ""
"""

    with open(config_path, "w", encoding="utf-8") as f:
        f.write(content)


def _build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="sigd", description="Run a WebRTC signaling relay")

    p.add_argument(
        "--config",
        default=str(default_config_path()),
        help="Path to a TOML config file (created on first run)",
    )
    p.add_argument("--host", default=None, help="Listen address")
    p.add_argument("--port", type=int, default=None, help="Listen port")

    p.add_argument(
        "--max-message-size",
        type=int,
        default=None,
        help="Maximum frame size in bytes",
    )
    p.add_argument(
        "--max-connections-per-address",
        type=int,
        default=None,
        help="Concurrent connections allowed per source address",
    )
    p.add_argument(
        "--max-messages-per-second",
        type=int,
        default=None,
        help="Per-connection message rate limit",
    )
    p.add_argument(
        "--room-code-length", type=int, default=None, help="Generated room code length"
    )
    p.add_argument(
        "--stats-interval",
        type=float,
        default=None,
        help="Seconds between statistics log lines (0 disables)",
    )

    p.add_argument(
        "--log-level",
        default=None,
        help="Logging level override (DEBUG, INFO, WARNING, ERROR). Default comes from config.",
    )
    p.add_argument(
        "--log-file",
        default=None,
        help="Log file path override (empty disables file logging). Default comes from config.",
    )

    return p


def build_config(args: argparse.Namespace) -> RelayRuntimeConfig:
    cfg = RelayRuntimeConfig()

    config_path = expand_path(str(args.config)) if args.config else ""
    if config_path:
        if not os.path.exists(config_path):
            _write_default_config(config_path)
            print(f"Created default sigd config: {config_path}", file=sys.stderr)
        cfg = load_config(config_path, cfg)

    if args.host is not None:
        cfg = replace(cfg, host=str(args.host))
    if args.port is not None:
        cfg = replace(cfg, port=int(args.port))

    if args.max_message_size is not None:
        cfg = replace(cfg, max_message_size=int(args.max_message_size))
    if args.max_connections_per_address is not None:
        cfg = replace(
            cfg, max_connections_per_address=int(args.max_connections_per_address)
        )
    if args.max_messages_per_second is not None:
        cfg = replace(cfg, max_messages_per_second=int(args.max_messages_per_second))
    if args.room_code_length is not None:
        cfg = replace(cfg, room_code_length=int(args.room_code_length))
    if args.stats_interval is not None:
        cfg = replace(cfg, stats_interval_s=float(args.stats_interval))

    if args.log_level is not None:
        cfg = replace(cfg, log_level=str(args.log_level))
    if args.log_file is not None:
        cfg = replace(cfg, log_file=str(args.log_file) if str(args.log_file) else None)

    return cfg


def main(argv: list[str] | None = None) -> None:
    args = _build_arg_parser().parse_args(sys.argv[1:] if argv is None else argv)

    cfg = build_config(args)

    configure_logging(cfg, override_level=args.log_level, override_file=args.log_file)

    svc = RelayService(cfg)
    svc.start()
    svc.run_forever()


if __name__ == "__main__":
    main()
