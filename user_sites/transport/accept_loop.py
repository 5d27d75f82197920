"""Listening socket loop: one worker thread per accepted connection."""

import argparse
import logging
import socket
import threading
import time
from typing import Optional

from user_sites.bootstrap.config import DEFAULT_HEADERS, ServerConfig
from user_sites.bootstrap.socket_factory import create_server_socket
from user_sites.domain.correlation_id import get_logger
from user_sites.domain.response_builders import draining_response
from user_sites.domain.sandbox import HomeLookup, HomeRoot, PasswdHomes
from user_sites.lifecycle.state import ServerLifecycle
from user_sites.pipeline.io import RECV_SIZE, send_response
from user_sites.transport.context import WorkerContext
from user_sites.transport.worker import handle_client

ACCEPT_LOGGER = get_logger("transport.accept")
REFUSE_READ_SECONDS = 1.0

Accepted = tuple[socket.socket, tuple[str, int]]


def create_home_lookup(args: argparse.Namespace) -> HomeLookup:
    """Use the configured home root, or the password database when unset."""
    if args.home_root:
        return HomeRoot(args.home_root)
    return PasswdHomes()


def _accept_next(
    server_socket: socket.socket, lifecycle: ServerLifecycle
) -> Optional[Accepted]:
    """Wait one poll interval for a client; None when nothing arrived."""
    try:
        return server_socket.accept()
    except socket.timeout:
        return None
    except OSError as error:
        if not lifecycle.should_stop():
            ACCEPT_LOGGER.error(
                "Socket accept failed",
                extra={"event": "accept_error", "error_type": type(error).__name__},
            )
        return None


def _refuse(client_socket: socket.socket) -> None:
    client_socket.settimeout(REFUSE_READ_SECONDS)
    try:
        # Read the request first so closing does not reset the connection.
        client_socket.recv(RECV_SIZE)
        send_response(client_socket, draining_response(DEFAULT_HEADERS))
    except OSError:
        pass
    finally:
        client_socket.close()


def _refuse_while_busy(
    server_socket: socket.socket, lifecycle: ServerLifecycle, deadline: float
) -> None:
    """Answer new clients with 503 until the last worker finishes or time runs out."""
    while lifecycle.active_worker_count() and time.monotonic() < deadline:
        accepted = _accept_next(server_socket, lifecycle)
        if accepted is not None:
            _refuse(accepted[0])


def _start_worker(accepted: Accepted, context: WorkerContext) -> threading.Thread:
    client_socket, client_address = accepted
    if ACCEPT_LOGGER.logger.isEnabledFor(logging.DEBUG):
        ACCEPT_LOGGER.debug(
            "Client connection accepted",
            extra={
                "event": "client_accepted",
                "client": f"{client_address[0]}:{client_address[1]}",
            },
        )
    thread = threading.Thread(
        target=handle_client,
        args=(client_socket, client_address, context),
        name=f"worker-{client_address[0]}:{client_address[1]}",
        daemon=False,
    )
    thread.start()
    return thread


def run_server(
    args: argparse.Namespace, config: ServerConfig, lifecycle: ServerLifecycle
) -> None:
    """Serve until draining begins, then wait out the shutdown grace period."""
    server_socket = create_server_socket(args)
    context = WorkerContext(
        homes=create_home_lookup(args), lifecycle=lifecycle, config=config
    )
    ACCEPT_LOGGER.info(
        "Server listening for connections",
        extra={"event": "server_listening", "host": args.host, "port": args.port},
    )

    deadline = None
    try:
        while not lifecycle.should_stop():
            accepted = _accept_next(server_socket, lifecycle)
            if accepted is not None:
                _start_worker(accepted, context)
        deadline = time.monotonic() + config.shutdown_grace_seconds
        _refuse_while_busy(server_socket, lifecycle, deadline)
    finally:
        server_socket.close()
        if deadline is None:
            deadline = time.monotonic() + config.shutdown_grace_seconds
        ACCEPT_LOGGER.info(
            "Waiting for active connections to complete",
            extra={
                "event": "shutdown_waiting",
                "count": lifecycle.active_worker_count(),
                "shutdown_grace_seconds": config.shutdown_grace_seconds,
            },
        )
        clean = lifecycle.wait_for_workers(max(0.0, deadline - time.monotonic()))
        ACCEPT_LOGGER.info(
            "Server shutdown complete",
            extra={"event": "server_stopped", "reason": "clean" if clean else "forced"},
        )
