"""Server configuration and CLI argument parsing."""

import argparse
import os
from dataclasses import dataclass
from typing import Optional


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    return int(value) if value is not None else default


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    return float(value) if value is not None else default


def _env_str(name: str, default: Optional[str]) -> Optional[str]:
    value = os.getenv(name)
    return value if value else default


MAX_BODY_BYTES = _env_int("USER_SITES_MAX_BODY_BYTES", 5 * 1024 * 1024)
MAX_HEADER_BYTES = _env_int("USER_SITES_MAX_HEADER_BYTES", 64 * 1024)
DEFAULT_HOST = _env_str("USER_SITES_HOST", "0.0.0.0")
DEFAULT_HOME_ROOT = _env_str("USER_SITES_HOME_ROOT", None)
DEFAULT_SOCKET_TIMEOUT = _env_int("USER_SITES_SOCKET_TIMEOUT", 60)
DEFAULT_SHUTDOWN_GRACE_SECONDS = _env_int("USER_SITES_SHUTDOWN_GRACE_SECONDS", 30)
DEFAULT_HANDLER_TIMEOUT = _env_float("USER_SITES_HANDLER_TIMEOUT", 30.0)

HEADER_DELIMITER = b"\r\n\r\n"
ALLOWED_METHODS = {"GET", "POST"}

DEFAULT_HEADERS = {
    "X-Content-Type-Options": "nosniff",
}


@dataclass
class ServerConfig:
    """Timeouts and shutdown settings shared by the transport layer."""

    socket_timeout: int
    shutdown_grace_seconds: int
    handler_timeout: float = DEFAULT_HANDLER_TIMEOUT


def port_number(value: str) -> int:
    """argparse type accepting a TCP port between 1 and 65535."""
    try:
        port = int(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"invalid port: {value!r}") from exc
    if not 1 <= port <= 65535:
        raise argparse.ArgumentTypeError(f"port out of range: {port}")
    return port


def parse_cli_args(argv: list[str]) -> argparse.Namespace:
    """Return parsed CLI arguments for server configuration."""
    parser = argparse.ArgumentParser(description="Per-user web site server")
    parser.add_argument("port", type=port_number, help="TCP port to listen on")
    parser.add_argument("--host", default=DEFAULT_HOST)
    parser.add_argument(
        "--home-root",
        default=DEFAULT_HOME_ROOT,
        help="Directory holding one home per user (default: password database)",
    )
    default_log_level = os.getenv("USER_SITES_LOG_LEVEL", "INFO").upper()
    default_destination = os.getenv("USER_SITES_LOG_DESTINATION", "stdout")
    default_log_format = os.getenv("USER_SITES_LOG_FORMAT", "json").lower()
    parser.add_argument(
        "--log-level",
        default=default_log_level,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        type=str.upper,
    )
    parser.add_argument(
        "--log-destination",
        default=default_destination,
        help="stdout or a file path",
    )
    parser.add_argument(
        "--log-format",
        default=default_log_format,
        choices=["json", "text"],
        type=str.lower,
        help="json for one object per line, text for a human-readable line",
    )
    parser.add_argument(
        "--socket-timeout",
        type=int,
        default=DEFAULT_SOCKET_TIMEOUT,
        help="Socket timeout in seconds for request processing",
    )
    parser.add_argument(
        "--shutdown-grace-seconds",
        type=int,
        default=DEFAULT_SHUTDOWN_GRACE_SECONDS,
        help="Grace period in seconds for graceful shutdown",
    )
    parser.add_argument(
        "--handler-timeout",
        type=float,
        default=DEFAULT_HANDLER_TIMEOUT,
        help="Seconds an executable handler may run before it is killed",
    )
    return parser.parse_args(argv)
