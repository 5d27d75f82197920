"""Reading requests off a socket and writing responses back."""

import logging
import socket
import urllib.parse
from typing import Iterable, Optional, Tuple

from user_sites.bootstrap.config import HEADER_DELIMITER, MAX_BODY_BYTES, MAX_HEADER_BYTES
from user_sites.domain.correlation_id import (
    adopt_correlation_id,
    get_correlation_id,
    get_logger,
)
from user_sites.domain.http_types import HTTP_10, HTTP_11, HttpRequest, HttpResponse
from user_sites.pipeline.validation import RequestEntityTooLarge

IO_LOGGER = get_logger("pipeline.io")
RECV_SIZE = 4096
SUPPORTED_VERSIONS = (HTTP_10, HTTP_11)
BODYLESS_STATUSES = ("HTTP/1.1 304", "HTTP/1.1 204")


def parse_headers(lines: list[str]) -> dict[str, str]:
    """Lowercase header names; repeated headers are joined with a comma."""
    parsed: dict[str, str] = {}
    for line in lines:
        name, separator, value = line.partition(":")
        if not separator or not name.strip():
            continue
        key = name.strip().lower()
        value = value.strip()
        parsed[key] = f"{parsed[key]}, {value}" if key in parsed else value
    return parsed


def parse_request_line(request_line: str) -> Tuple[str, str, str, str]:
    """Split a request line into method, decoded path, raw query and version."""
    parts = request_line.split(" ")
    if len(parts) != 3 or not all(parts):
        raise ValueError("Invalid request line")
    method, target, version = parts
    if version not in SUPPORTED_VERSIONS:
        raise ValueError(f"Unsupported protocol version {version!r}")

    split_target = urllib.parse.urlsplit(target)
    path = urllib.parse.unquote(split_target.path, errors="surrogateescape")
    return method, path, split_target.query, version


def determine_content_length(method: str, headers: dict[str, str]) -> int:
    """Return the declared body length, requiring one for POST."""
    declared = headers.get("content-length")
    if declared is None:
        if method == "POST" and "transfer-encoding" not in headers:
            raise ValueError("Missing Content-Length")
        return 0
    if not declared.isdigit():
        raise ValueError("Invalid Content-Length")
    content_length = int(declared)
    if content_length > MAX_BODY_BYTES:
        raise RequestEntityTooLarge
    return content_length


def _read_head(
    client_socket: socket.socket, buffer: bytes
) -> Tuple[Optional[bytes], bytes]:
    while HEADER_DELIMITER not in buffer:
        if len(buffer) > MAX_HEADER_BYTES:
            raise RequestEntityTooLarge
        chunk = client_socket.recv(RECV_SIZE)
        if not chunk:
            return None, b""
        buffer += chunk
    head, rest = buffer.split(HEADER_DELIMITER, 1)
    if len(head) > MAX_HEADER_BYTES:
        raise RequestEntityTooLarge
    return head, rest


def receive_request(
    client_socket: socket.socket, buffer: bytes
) -> Tuple[Optional[HttpRequest], bytes]:
    """Read one request from the socket.

    ``buffer`` holds bytes left over from the previous request on the
    connection. Returns the request and the bytes that follow it, or
    ``(None, b"")`` when the client closes before a full request arrives.
    """
    head, rest = _read_head(client_socket, buffer)
    if head is None:
        return None, b""

    lines = head.decode("iso-8859-1").split("\r\n")
    method, path, query, version = parse_request_line(lines[0])
    headers = parse_headers(lines[1:])
    adopt_correlation_id(headers.get("x-request-id"))

    content_length = determine_content_length(method, headers)
    while len(rest) < content_length:
        chunk = client_socket.recv(RECV_SIZE)
        if not chunk:
            return None, b""
        rest += chunk

    request = HttpRequest(method, path, headers, rest[:content_length], query, version)
    if IO_LOGGER.logger.isEnabledFor(logging.DEBUG):
        IO_LOGGER.debug(
            "Parsed request",
            extra={
                "event": "request_parsed",
                "method": method,
                "path": path,
                "bytes_in": content_length,
            },
        )
    return request, rest[content_length:]


def serialize_head(response: HttpResponse) -> bytes:
    """Render the status line and headers, adding framing headers."""
    headers = dict(response.headers)
    correlation_id = get_correlation_id()
    if correlation_id:
        headers["X-Request-ID"] = correlation_id
    if response.use_chunked:
        headers["Transfer-Encoding"] = "chunked"
    elif not response.status_line.startswith(BODYLESS_STATUSES):
        headers["Content-Length"] = str(len(response.body))
    if response.close_connection:
        headers["Connection"] = "close"

    lines = [response.status_line]
    lines.extend(f"{name}: {value}" for name, value in headers.items())
    return ("\r\n".join(lines) + "\r\n\r\n").encode("latin-1", errors="replace")


def write_chunked(client_socket: socket.socket, chunks: Iterable[bytes]) -> int:
    """Send ``chunks`` using chunked transfer coding; returns body bytes sent."""
    sent = 0
    for chunk in chunks:
        if not chunk:
            continue
        client_socket.sendall(b"%X\r\n%s\r\n" % (len(chunk), chunk))
        sent += len(chunk)
    client_socket.sendall(b"0\r\n\r\n")
    return sent


def send_response(client_socket: socket.socket, response: HttpResponse) -> None:
    """Write ``response`` to the socket."""
    head = serialize_head(response)
    if response.use_chunked and response.body_iter is not None:
        client_socket.sendall(head)
        bytes_out = write_chunked(client_socket, response.body_iter)
    else:
        client_socket.sendall(head + response.body)
        bytes_out = len(response.body)
    if IO_LOGGER.logger.isEnabledFor(logging.DEBUG):
        IO_LOGGER.debug(
            "Sent response",
            extra={"status_code": response.status_code, "bytes_out": bytes_out},
        )
