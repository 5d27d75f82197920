"""Shared pytest fixtures for integration and unit tests."""

from __future__ import annotations

import subprocess
import sys
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Iterator, Optional, Sequence, TypedDict

import pytest

from tests.utils.http import reserve_port, wait_for_port
from tests.utils.sites import make_site, write_executable, write_file

if TYPE_CHECKING:
    from _pytest.tmpdir import TempPathFactory

PROJECT_ROOT = Path(__file__).resolve().parent.parent
SERVER_ENTRYPOINT = PROJECT_ROOT / "main.py"


class ServerProcessInfo(TypedDict):
    """Metadata describing a running server fixture instance."""

    base_url: str
    host: str
    port: int
    home_root: Path
    process: subprocess.Popen[bytes]
    log_file: Optional[Path]


def populate_home_root(home_root: Path) -> None:
    """Lay out the users and sites the integration tests talk to.

    ``alice`` publishes a site with static pages, handlers and transclusion;
    ``bob`` has a home but no ``www``.
    """

    site = make_site(home_root, "alice")
    write_file(site / "hello.txt", "hello world\n")
    write_file(site / "my_page" / "index.html", "<p>my page</p>\n")
    write_file(site / "blob.bin", b"\x00\x01" * 50_000)

    write_file(site / "layout" / "index.html", "<main>{header.html}body</main>")
    write_file(site / "layout" / "header.html", "<h1>Header</h1>")
    write_file(site / "loop" / "index.html", "<div>{index.html}</div>")

    listing = site / "listing"
    for number in range(1, 26):
        write_file(listing / f"entry{number:02d}.txt", str(number))

    write_executable(
        site / "greet" / "index_executable",
        'printf "<p>hello %s%s</p>" "$name" "$evil"\n',
    )
    write_file(site / "greet" / "allowed_variables", "name\n")

    write_executable(
        site / "form" / "form_executable",
        'printf "<p>got %s</p>" "$a"\n',
    )
    write_file(site / "form" / "allowed_variables", "a\n")

    write_executable(site / "upload" / "form_executable", "cat\n")

    write_executable(site / "broken" / "index_executable", "exit 3\n")
    write_executable(site / "slow" / "index_executable", "sleep 30\n")

    (home_root / "bob").mkdir()


@contextmanager
def running_server(
    home_root: Path,
    extra_args: Sequence[str] = (),
    log_file: Optional[Path] = None,
    host: str = "127.0.0.1",
) -> Iterator[ServerProcessInfo]:
    """Run ``main.py`` against ``home_root`` until the block exits.

    On startup failure the server's output is attached to the raised error.
    """

    port = reserve_port(host)
    command = [sys.executable, str(SERVER_ENTRYPOINT), str(port)]
    command += ["--home-root", str(home_root), "--host", host]
    if log_file is not None:
        command += ["--log-destination", str(log_file)]
    command += list(extra_args)

    with subprocess.Popen(
        command,
        cwd=PROJECT_ROOT,
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
    ) as process:
        try:
            wait_for_port(host, port)
        except RuntimeError as error:
            process.kill()
            output, _ = process.communicate(timeout=5)
            raise RuntimeError(output.decode(errors="replace")) from error

        try:
            yield {
                "base_url": f"http://{host}:{port}",
                "host": host,
                "port": port,
                "home_root": home_root,
                "process": process,
                "log_file": log_file,
            }
        finally:
            if process.poll() is None:
                process.terminate()
                try:
                    process.wait(timeout=5)
                except subprocess.TimeoutExpired:
                    process.kill()


@pytest.fixture(name="server_process")
def _server_process(
    tmp_path_factory: "TempPathFactory",
) -> Iterator[ServerProcessInfo]:
    """Launch the server in a background process for integration tests."""

    home_root = tmp_path_factory.mktemp("homes")
    populate_home_root(home_root)
    with running_server(
        home_root,
        ["--handler-timeout", "2", "--shutdown-grace-seconds", "2"],
        log_file=tmp_path_factory.mktemp("logs") / "server.log",
    ) as info:
        yield info


@pytest.fixture()
def base_url(server_process: ServerProcessInfo) -> str:
    """Expose the running server base URL to integration tests."""

    return server_process["base_url"]
