"""Unit tests for the connection worker and the accept loop."""

import argparse
import logging
import socket
import threading
import time
from unittest.mock import MagicMock, patch

import pytest

from tests.utils.sites import write_executable, write_file
from user_sites.bootstrap.config import MAX_BODY_BYTES, ServerConfig
from user_sites.domain.errors import HandlerCancelled
from user_sites.domain.sandbox import PasswdHomes
from user_sites.lifecycle.state import ServerLifecycle
from user_sites.transport.accept_loop import create_home_lookup, run_server
from user_sites.transport.context import WorkerContext
from user_sites.transport.worker import handle_client, peer_closed

CLIENT = ("127.0.0.1", 54321)


@pytest.fixture(name="lifecycle")
def lifecycle_fixture() -> ServerLifecycle:
    """A fresh lifecycle per test."""
    return ServerLifecycle()


@pytest.fixture(name="context")
def context_fixture(homes, lifecycle) -> WorkerContext:
    """Worker context with short timeouts."""
    config = ServerConfig(socket_timeout=2, shutdown_grace_seconds=1, handler_timeout=10)
    return WorkerContext(homes=homes, lifecycle=lifecycle, config=config)


@pytest.fixture(name="sockets")
def sockets_fixture():
    """A connected (server side, client side) socket pair."""
    server_side, client_side = socket.socketpair()
    client_side.settimeout(5)
    yield server_side, client_side
    server_side.close()
    client_side.close()


def read_all(sock: socket.socket) -> bytes:
    """Read until the peer closes."""
    data = b""
    while True:
        chunk = sock.recv(65536)
        if not chunk:
            return data
        data += chunk


def serve_once(sockets, context, payload: bytes) -> bytes:
    """Send ``payload``, half-close, run the worker and return what it wrote."""
    server_side, client_side = sockets
    client_side.sendall(payload)
    client_side.shutdown(socket.SHUT_WR)
    handle_client(server_side, CLIENT, context)
    return read_all(client_side)


def _events(caplog) -> list[str]:
    return [r.event for r in caplog.records if hasattr(r, "event")]


def test_worker_serves_pipelined_requests_on_one_connection(sockets, context, site_root):
    """Keep-alive connections answer every request in order."""
    write_file(site_root / "a.html", "<p>A</p>")
    write_file(site_root / "b.html", "<p>B</p>")
    raw = serve_once(
        sockets,
        context,
        b"GET /alice/a.html HTTP/1.1\r\nHost: x\r\n\r\n"
        b"GET /alice/b.html HTTP/1.1\r\nHost: x\r\n\r\n",
    )
    assert raw.count(b"HTTP/1.1 200 OK") == 2
    assert raw.index(b"<p>A</p>") < raw.index(b"<p>B</p>")
    assert b"Connection: close" not in raw


def test_worker_stops_after_connection_close(sockets, context, site_root):
    """A request asking to close is the last one answered."""
    write_file(site_root / "a.html", "<p>A</p>")
    raw = serve_once(
        sockets,
        context,
        b"GET /alice/a.html HTTP/1.1\r\nHost: x\r\nConnection: close\r\n\r\n"
        b"GET /alice/a.html HTTP/1.1\r\nHost: x\r\n\r\n",
    )
    assert raw.count(b"HTTP/1.1 200 OK") == 1
    assert b"Connection: close" in raw


def test_worker_closes_http10_connections_by_default(sockets, context, site_root):
    """HTTP/1.0 clients get one response unless they ask for keep-alive."""
    write_file(site_root / "a.html", "<p>A</p>")
    raw = serve_once(
        sockets,
        context,
        b"GET /alice/a.html HTTP/1.0\r\n\r\nGET /alice/a.html HTTP/1.0\r\n\r\n",
    )
    assert raw.count(b"200 OK") == 1


def test_worker_answers_malformed_request_with_400(sockets, context, caplog):
    """Garbage request lines are 400 and end the connection."""
    caplog.set_level(logging.WARNING)
    raw = serve_once(sockets, context, b"NONSENSE\r\n\r\n")
    assert raw.startswith(b"HTTP/1.1 400 Bad Request")
    assert "malformed_request" in _events(caplog)


def test_worker_answers_oversized_body_with_413(sockets, context, caplog):
    """Declared bodies above the limit are refused before being read."""
    caplog.set_level(logging.WARNING)
    head = (
        "POST /alice/form/ HTTP/1.1\r\nHost: x\r\n"
        f"Content-Length: {MAX_BODY_BYTES + 1}\r\n\r\n"
    )
    raw = serve_once(sockets, context, head.encode())
    assert raw.startswith(b"HTTP/1.1 413 Payload Too Large")
    record = next(r for r in caplog.records if getattr(r, "event", None) == "body_size_exceeded")
    assert record.client == "127.0.0.1:54321"


def test_worker_validates_before_routing(sockets, context):
    """Unsupported methods never reach a site."""
    raw = serve_once(sockets, context, b"DELETE /alice/ HTTP/1.1\r\nHost: x\r\n\r\n")
    assert raw.startswith(b"HTTP/1.1 405 Method Not Allowed")
    assert b"Allow: GET, POST" in raw


def test_worker_answers_503_while_draining(sockets, context, lifecycle, site_root):
    """Requests read after draining began are refused."""
    write_file(site_root / "a.html", "<p>A</p>")
    lifecycle.begin_draining()
    raw = serve_once(sockets, context, b"GET /alice/a.html HTTP/1.1\r\nHost: x\r\n\r\n")
    assert raw.startswith(b"HTTP/1.1 503 Service Unavailable")
    assert b"Connection: close" in raw


def test_worker_closes_idle_connection_when_draining(sockets, context, lifecycle):
    """An idle keep-alive connection is closed quietly once draining starts."""
    server_side, client_side = sockets
    worker = threading.Thread(target=handle_client, args=(server_side, CLIENT, context))
    worker.start()
    time.sleep(0.2)
    assert lifecycle.active_worker_count() == 1
    lifecycle.begin_draining()
    worker.join(timeout=5)
    assert not worker.is_alive()
    assert read_all(client_side) == b""
    assert lifecycle.active_worker_count() == 0


def test_worker_times_out_idle_connections(sockets, homes, caplog):
    """Clients that send nothing are dropped after the socket timeout."""
    caplog.set_level(logging.INFO)
    config = ServerConfig(socket_timeout=1, shutdown_grace_seconds=1)
    server_side, client_side = sockets
    start = time.monotonic()
    handle_client(server_side, CLIENT, WorkerContext(homes=homes, config=config))
    assert 0.9 <= time.monotonic() - start < 3
    assert read_all(client_side) == b""
    assert "connection_timeout" in _events(caplog)


def test_worker_does_not_answer_cancelled_handlers(sockets, context, site_root, caplog):
    """A client that hangs up while its handler runs gets no response."""
    caplog.set_level(logging.INFO)
    write_executable(site_root / "slow" / "index_executable", "sleep 20\n")
    start = time.monotonic()
    raw = serve_once(sockets, context, b"GET /alice/slow/ HTTP/1.1\r\nHost: x\r\n\r\n")
    assert raw == b""
    assert time.monotonic() - start < 10
    assert "handler_cancelled" in _events(caplog)


def test_worker_logs_route_cancellation(sockets, context, caplog):
    """HandlerCancelled from routing closes the connection."""
    caplog.set_level(logging.INFO)
    with patch(
        "user_sites.transport.worker.route_request", side_effect=HandlerCancelled("gone")
    ):
        raw = serve_once(sockets, context, b"GET /alice/ HTTP/1.1\r\nHost: x\r\n\r\n")
    assert raw == b""
    record = next(r for r in caplog.records if getattr(r, "event", None) == "handler_cancelled")
    assert record.route == "/alice/"


def test_worker_echoes_request_id(sockets, context, site_root):
    """A client-supplied X-Request-ID comes back on the response."""
    write_file(site_root / "a.html", "<p>A</p>")
    raw = serve_once(
        sockets,
        context,
        b"GET /alice/a.html HTTP/1.1\r\nHost: x\r\nX-Request-ID: trace-42\r\n\r\n",
    )
    assert b"X-Request-ID: trace-42\r\n" in raw


def test_worker_logs_unexpected_errors(sockets, context, caplog):
    """Bugs are logged with a traceback and the socket is still closed."""
    caplog.set_level(logging.ERROR)
    with patch("user_sites.transport.worker.route_request", side_effect=RuntimeError("x")):
        raw = serve_once(sockets, context, b"GET /alice/ HTTP/1.1\r\nHost: x\r\n\r\n")
    assert raw == b""
    record = next(r for r in caplog.records if getattr(r, "event", None) == "worker_error")
    assert record.error_type == "RuntimeError"
    assert record.exc_info is not None


def test_peer_closed_detects_hangup(sockets):
    """Pending data is not a hangup; EOF is."""
    server_side, client_side = sockets
    assert not peer_closed(server_side)
    client_side.sendall(b"x")
    assert not peer_closed(server_side)
    assert server_side.recv(1) == b"x"
    client_side.shutdown(socket.SHUT_WR)
    assert peer_closed(server_side)


def test_peer_closed_treats_closed_socket_as_gone(sockets):
    """A socket that is already closed counts as hung up."""
    server_side, _ = sockets
    server_side.close()
    assert peer_closed(server_side)


def test_create_home_lookup_prefers_home_root(home_root):
    """--home-root selects a directory-based lookup."""
    (home_root / "alice").mkdir()
    lookup = create_home_lookup(argparse.Namespace(home_root=str(home_root)))
    assert lookup.home_for("alice") == home_root / "alice"


def test_create_home_lookup_defaults_to_password_database():
    """Without --home-root, homes come from the password database."""
    lookup = create_home_lookup(argparse.Namespace(home_root=None))
    assert isinstance(lookup, PasswdHomes)


def _accept_script(steps):
    """Build an accept() replacement that runs one step per call."""
    remaining = list(steps)

    def fake_accept():
        step = remaining.pop(0) if remaining else None
        if step is None:
            raise socket.timeout
        return step()

    return fake_accept


def test_accept_loop_starts_workers_and_shuts_down(home_root, caplog):
    """Accepted clients get a worker; draining ends the loop cleanly."""
    caplog.set_level(logging.DEBUG, logger="user_sites")
    lifecycle = ServerLifecycle()
    client_sock = MagicMock()
    args = argparse.Namespace(host="127.0.0.1", port=8080, home_root=str(home_root))
    config = ServerConfig(socket_timeout=1, shutdown_grace_seconds=1)

    def drain():
        lifecycle.begin_draining()
        raise socket.timeout

    server_sock = MagicMock()
    server_sock.accept.side_effect = _accept_script(
        [lambda: (client_sock, ("127.0.0.1", 12345)), drain]
    )
    with patch(
        "user_sites.transport.accept_loop.create_server_socket", return_value=server_sock
    ), patch("user_sites.transport.accept_loop.threading.Thread") as thread_cls:
        run_server(args, config, lifecycle)

    thread_cls.return_value.start.assert_called_once()
    assert thread_cls.call_args.kwargs["args"][0] is client_sock
    server_sock.close.assert_called_once()
    events = _events(caplog)
    for event in ("server_listening", "client_accepted", "shutdown_waiting", "server_stopped"):
        assert event in events
    stopped = next(r for r in caplog.records if getattr(r, "event", None) == "server_stopped")
    assert stopped.reason == "clean"


def test_accept_loop_refuses_new_clients_while_workers_finish(home_root):
    """During draining, new connections get 503 until the last worker is done."""
    lifecycle = ServerLifecycle()
    release = threading.Event()
    busy_worker = threading.Thread(target=release.wait)
    busy_worker.start()
    lifecycle.register_worker(busy_worker)
    late_client = MagicMock()
    args = argparse.Namespace(host="127.0.0.1", port=8080, home_root=str(home_root))
    config = ServerConfig(socket_timeout=1, shutdown_grace_seconds=5)

    def drain():
        lifecycle.begin_draining()
        raise socket.timeout

    def finish_worker():
        release.set()
        busy_worker.join()
        lifecycle.cleanup_worker(busy_worker)
        raise socket.timeout

    server_sock = MagicMock()
    server_sock.accept.side_effect = _accept_script(
        [drain, lambda: (late_client, ("127.0.0.1", 2222)), finish_worker]
    )
    with patch(
        "user_sites.transport.accept_loop.create_server_socket", return_value=server_sock
    ):
        run_server(args, config, lifecycle)

    sent = late_client.sendall.call_args.args[0]
    assert sent.startswith(b"HTTP/1.1 503 Service Unavailable")
    late_client.close.assert_called_once()
    assert lifecycle.active_worker_count() == 0
