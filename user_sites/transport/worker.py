"""Per-connection worker: reads requests, routes them and writes responses."""

import logging
import select
import socket
import threading
import time
from dataclasses import dataclass
from typing import Optional

from user_sites.bootstrap.config import (
    ALLOWED_METHODS,
    DEFAULT_HEADERS,
    DEFAULT_SOCKET_TIMEOUT,
    MAX_BODY_BYTES,
)
from user_sites.domain.correlation_id import (
    clear_correlation_id,
    generate_correlation_id,
    get_logger,
    set_correlation_id,
)
from user_sites.domain.errors import HandlerCancelled
from user_sites.domain.http_types import HttpRequest, HttpResponse
from user_sites.domain.response_builders import (
    bad_request_response,
    draining_response,
    entity_too_large_response,
)
from user_sites.lifecycle.state import ServerLifecycle
from user_sites.pipeline.io import receive_request, send_response
from user_sites.pipeline.router import route_request
from user_sites.pipeline.validation import RequestEntityTooLarge, validate_request
from user_sites.transport.context import WorkerContext

WORKER_LOGGER = get_logger("transport.worker")
IDLE_POLL_SECONDS = 0.5


def peer_closed(client_socket: socket.socket) -> bool:
    """Return True once the client has hung up on the connection."""
    try:
        readable, _, _ = select.select([client_socket], [], [], 0)
        if not readable:
            return False
        return client_socket.recv(1, socket.MSG_PEEK) == b""
    except (OSError, ValueError):
        return True


@dataclass
class Connection:
    """One accepted client socket and the bytes read ahead on it."""

    sock: socket.socket
    client: str
    buffer: bytes = b""

    def send_final(self, response: HttpResponse) -> None:
        """Send the last response of the connection."""
        send_response(self.sock, response)
        self.buffer = b""

    def close(self) -> None:
        try:
            self.sock.shutdown(socket.SHUT_WR)
        except OSError:
            pass
        self.sock.close()


def _next_request(connection: Connection) -> Optional[HttpRequest]:
    """Read the next request; None means the connection is finished."""
    try:
        request, connection.buffer = receive_request(connection.sock, connection.buffer)
    except RequestEntityTooLarge:
        WORKER_LOGGER.warning(
            "Request exceeded size limits",
            extra={
                "event": "body_size_exceeded",
                "client": connection.client,
                "count": MAX_BODY_BYTES,
            },
        )
        connection.send_final(entity_too_large_response(DEFAULT_HEADERS))
        return None
    except ValueError as error:
        WORKER_LOGGER.warning(
            "Malformed request received",
            extra={
                "event": "malformed_request",
                "client": connection.client,
                "error_type": type(error).__name__,
                "detail": str(error),
            },
        )
        connection.send_final(bad_request_response(None, DEFAULT_HEADERS))
        return None

    if request is None and WORKER_LOGGER.logger.isEnabledFor(logging.DEBUG):
        WORKER_LOGGER.debug(
            "Client closed the connection",
            extra={"event": "client_disconnected", "client": connection.client},
        )
    return request


def _answer(
    request: HttpRequest, context: WorkerContext, connection: Connection
) -> bool:
    """Answer one request; returns True when the connection must close."""
    response = validate_request(request, ALLOWED_METHODS, MAX_BODY_BYTES, DEFAULT_HEADERS)
    if response is None:
        try:
            response = route_request(
                request, context, cancel_check=lambda: peer_closed(connection.sock)
            )
        except HandlerCancelled:
            WORKER_LOGGER.info(
                "Client went away while its handler was running",
                extra={
                    "event": "handler_cancelled",
                    "client": connection.client,
                    "route": request.path,
                },
            )
            return True
    send_response(connection.sock, response)
    return response.close_connection


def _wait_for_data(
    connection: Connection, lifecycle: Optional[ServerLifecycle], idle_timeout: float
) -> bool:
    """Block until the client sends more bytes; False once draining begins."""
    deadline = time.monotonic() + idle_timeout
    while not connection.buffer:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise TimeoutError("idle connection")
        readable, _, _ = select.select(
            [connection.sock], [], [], min(IDLE_POLL_SECONDS, remaining)
        )
        if readable:
            return True
        if lifecycle is not None and lifecycle.is_draining():
            return False
    return True


def _serve(connection: Connection, context: WorkerContext) -> None:
    lifecycle = context.lifecycle
    idle_timeout = (
        context.config.socket_timeout if context.config else DEFAULT_SOCKET_TIMEOUT
    )
    while _wait_for_data(connection, lifecycle, idle_timeout):
        set_correlation_id(generate_correlation_id())
        request = _next_request(connection)
        if request is None:
            return
        if lifecycle is not None and lifecycle.is_draining():
            connection.send_final(draining_response(DEFAULT_HEADERS))
            return
        try:
            if _answer(request, context, connection):
                return
        finally:
            clear_correlation_id()


def handle_client(
    client_socket: socket.socket,
    client_address: tuple[str, int],
    context: WorkerContext,
) -> None:
    """Serve requests on ``client_socket`` until either side ends the connection."""
    connection = Connection(client_socket, f"{client_address[0]}:{client_address[1]}")
    thread = threading.current_thread()
    if context.lifecycle is not None:
        context.lifecycle.register_worker(thread)
    if context.config is not None:
        client_socket.settimeout(context.config.socket_timeout)

    try:
        _serve(connection, context)
    except TimeoutError:
        WORKER_LOGGER.info(
            "Idle connection timed out",
            extra={"event": "connection_timeout", "client": connection.client},
        )
    except (ConnectionError, OSError, UnicodeDecodeError) as error:
        WORKER_LOGGER.error(
            "Error handling client connection",
            extra={
                "event": "connection_error",
                "client": connection.client,
                "error_type": type(error).__name__,
            },
        )
    except Exception as error:  # pylint: disable=broad-except
        WORKER_LOGGER.error(
            "Unexpected error in worker",
            extra={
                "event": "worker_error",
                "client": connection.client,
                "error_type": type(error).__name__,
            },
            exc_info=True,
        )
    finally:
        if context.lifecycle is not None:
            context.lifecycle.cleanup_worker(thread)
        connection.close()
        clear_correlation_id()
        if WORKER_LOGGER.logger.isEnabledFor(logging.DEBUG):
            WORKER_LOGGER.debug(
                "Socket closed",
                extra={"event": "socket_closed", "client": connection.client},
            )
