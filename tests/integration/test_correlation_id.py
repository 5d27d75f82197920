"""Integration tests for request correlation ID end-to-end flow."""

from __future__ import annotations

import json
import re
import socket
import threading
from pathlib import Path
from typing import TYPE_CHECKING

import pytest
import requests

from tests.utils.http import read_http_response
from user_sites.bootstrap.config import MAX_BODY_BYTES

pytestmark = pytest.mark.integration

if TYPE_CHECKING:
    from tests.conftest import ServerProcessInfo

UUID_PATTERN = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-4[0-9a-f]{3}-[0-9a-f]{4}-[0-9a-f]{12}$"
)


def _log_records(server_process: ServerProcessInfo) -> list[dict]:
    log_file = Path(server_process["log_file"])
    return [
        json.loads(line)
        for line in log_file.read_text(encoding="utf-8").splitlines()
        if line.strip()
    ]


def test_server_generates_correlation_id_when_not_provided(base_url: str) -> None:
    """Server should generate UUID correlation IDs by default."""
    response = requests.get(f"{base_url}/", timeout=5)
    assert response.status_code == 200
    assert UUID_PATTERN.match(response.headers["X-Request-ID"])


def test_server_accepts_incoming_correlation_id(base_url: str) -> None:
    """Server should echo back provided correlation IDs."""
    custom_correlation_id = "custom-request-id-12345"
    response = requests.get(
        f"{base_url}/alice/hello.txt",
        headers={"X-Request-ID": custom_correlation_id},
        timeout=5,
    )
    assert response.status_code == 200
    assert response.headers["X-Request-ID"] == custom_correlation_id


def test_unsafe_correlation_id_is_replaced(base_url: str) -> None:
    """IDs with characters unfit for logs are swapped for a generated one."""
    response = requests.get(
        f"{base_url}/", headers={"X-Request-ID": "bad id;drop"}, timeout=5
    )
    assert UUID_PATTERN.match(response.headers["X-Request-ID"])


def test_correlation_id_reaches_handler_logs(
    base_url: str, server_process: ServerProcessInfo
) -> None:
    """Log records written while serving a request carry its id."""
    custom_correlation_id = "greet-correlation-id"
    response = requests.get(
        f"{base_url}/alice/greet/",
        params={"name": "x"},
        headers={"X-Request-ID": custom_correlation_id},
        timeout=5,
    )
    assert response.status_code == 200

    events = {
        record.get("event")
        for record in _log_records(server_process)
        if record.get("correlation_id") == custom_correlation_id
    }
    assert {"handler_started", "request_served"} <= events


def test_different_requests_have_different_correlation_ids(base_url: str) -> None:
    """Separate requests must receive unique IDs."""
    first = requests.get(f"{base_url}/", timeout=5).headers["X-Request-ID"]
    second = requests.get(f"{base_url}/", timeout=5).headers["X-Request-ID"]
    assert first != second


def test_correlation_id_isolated_across_concurrent_requests(base_url: str) -> None:
    """Concurrent requests keep their provided IDs."""
    results = {}

    def make_request(request_id: str):
        response = requests.get(
            f"{base_url}/alice/greet/",
            headers={"X-Request-ID": f"concurrent-{request_id}"},
            timeout=5,
        )
        results[request_id] = response.headers.get("X-Request-ID")

    threads = [threading.Thread(target=make_request, args=(str(i),)) for i in range(10)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert results == {str(i): f"concurrent-{i}" for i in range(10)}


def test_correlation_id_with_error_responses(base_url: str) -> None:
    """Error responses should still echo correlation IDs."""
    response = requests.get(
        f"{base_url}/mallory/",
        headers={"X-Request-ID": "error-test-correlation"},
        timeout=5,
    )
    assert response.status_code == 404
    assert response.headers["X-Request-ID"] == "error-test-correlation"


def test_payload_too_large_response_includes_correlation_id(
    server_process: ServerProcessInfo,
) -> None:
    """Oversized payload rejections must still include correlation IDs."""
    host = server_process["host"]
    port = server_process["port"]
    request = (
        "POST /alice/form/ HTTP/1.1\r\n"
        f"Host: {host}:{port}\r\n"
        "Content-Type: application/x-www-form-urlencoded\r\n"
        f"Content-Length: {MAX_BODY_BYTES + 1}\r\n"
        "\r\n"
    )

    with socket.create_connection((host, port), timeout=5) as client:
        client.sendall(request.encode("ascii"))
        response = read_http_response(client)

    assert response.status_line.startswith("HTTP/1.1 413"), response.status_line
    assert response.headers["connection"] == "close"
    assert response.headers.get("x-request-id")
