"""Listening socket creation."""

import argparse
import socket
import sys

from user_sites.domain.correlation_id import get_logger

SOCKET_LOGGER = get_logger("socket")

LISTEN_BACKLOG = 128
ACCEPT_POLL_SECONDS = 0.5


def create_server_socket(args: argparse.Namespace) -> socket.socket:
    """Bind the plain-TCP listening socket; TLS terminates at the proxy."""
    try:
        server_socket = socket.create_server(
            (args.host, args.port), backlog=LISTEN_BACKLOG, reuse_port=True
        )
    except OSError as error:
        SOCKET_LOGGER.critical(
            "Failed to bind listening socket",
            extra={
                "event": "bind_failed",
                "host": args.host,
                "port": args.port,
                "error_type": type(error).__name__,
            },
        )
        sys.exit(1)
    server_socket.settimeout(ACCEPT_POLL_SECONDS)
    return server_socket
