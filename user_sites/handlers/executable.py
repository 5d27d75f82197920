"""Running ``index_executable`` and ``form_executable`` request handlers.

A handler is started with an empty environment that only holds the request
variables whitelisted by the ``allowed_variables`` file next to it. Its first
argument is its own path; a plaintext form body is passed as the second
argument and a multipart body is written to its standard input. Standard
output becomes the response body. Standard error is only logged.
"""

import logging
import os
import signal
import subprocess
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Mapping, Optional

from user_sites.domain.correlation_id import get_logger
from user_sites.domain.errors import HandlerCancelled, HandlerExecutionFailed
from user_sites.domain.form_data import FormPayload, Multipart, Plaintext, UrlEncoded
from user_sites.domain.targets import FormExecutable, IndexExecutable

EXECUTABLE_LOGGER = get_logger("handlers.executable")

RESERVED_QUERY_KEYS = frozenset({"p", "n"})
DEFAULT_HANDLER_TIMEOUT = 30.0
POLL_INTERVAL = 0.1
STDERR_LOG_LIMIT = 2048

CancelCheck = Callable[[], bool]


@dataclass
class ProcessSpec:
    """Everything needed to start one handler process."""

    program: Path
    args: list[str]
    env: dict[str, str]
    cwd: Path
    stdin: Optional[bytes] = None

    @property
    def argv(self) -> list[str]:
        """Full argument vector, program first."""
        return [str(self.program), *self.args]


@dataclass
class ProcessResult:
    """Captured outcome of a finished handler."""

    stdout: bytes
    stderr: bytes = b""
    exit_code: int = 0
    duration_ms: float = 0.0


def is_executable_file(path: Path) -> bool:
    """Return True for a regular file the server may execute."""
    return path.is_file() and os.access(path, os.X_OK)


def read_allowed_variables(path: Optional[Path]) -> list[str]:
    """Read newline-delimited variable names; a missing file allows nothing."""
    if path is None:
        return []
    try:
        text = path.read_text(encoding="utf-8", errors="replace")
    except FileNotFoundError:
        return []
    except OSError as error:
        EXECUTABLE_LOGGER.warning(
            "Unable to read allowed variables",
            extra={
                "event": "allowed_variables_unreadable",
                "path": path.as_posix(),
                "error_type": type(error).__name__,
            },
        )
        return []
    names = []
    for line in text.splitlines():
        name = line.strip()
        if name and name not in names:
            names.append(name)
    return names


def _is_acceptable_name(name: str) -> bool:
    if not name or "=" in name or "\x00" in name:
        return False
    # Names without lowercase letters (PATH, LD_PRELOAD, ...) are reserved.
    return name != name.upper()


def filter_environment(
    candidates: Mapping[str, str], allowed: list[str]
) -> dict[str, str]:
    """Keep only whitelisted, well-formed request variables."""
    allowed_set = set(allowed)
    return {
        name: value
        for name, value in candidates.items()
        if name in allowed_set and _is_acceptable_name(name) and "\x00" not in value
    }


def build_index_spec(target: IndexExecutable, query: Mapping[str, str]) -> ProcessSpec:
    """Describe a GET handler run for the given query parameters."""
    candidates = {
        key: value for key, value in query.items() if key not in RESERVED_QUERY_KEYS
    }
    env = filter_environment(candidates, read_allowed_variables(target.allowed_variables))
    return ProcessSpec(
        program=target.path,
        args=[str(target.path)],
        env=env,
        cwd=target.path.parent,
    )


def build_form_spec(
    target: FormExecutable, payload: Optional[FormPayload]
) -> ProcessSpec:
    """Describe a POST handler run for the submitted form."""
    args = [str(target.path)]
    candidates: dict[str, str] = {}
    stdin = None
    if isinstance(payload, UrlEncoded):
        candidates = payload.fields
    elif isinstance(payload, Plaintext):
        candidates = payload.fields
        args.append(payload.text)
    elif isinstance(payload, Multipart):
        stdin = payload.raw
    env = filter_environment(candidates, read_allowed_variables(target.allowed_variables))
    return ProcessSpec(
        program=target.path,
        args=args,
        env=env,
        cwd=target.path.parent,
        stdin=stdin,
    )


def _stdin_source(data: Optional[bytes]):
    """Spool a request body to a temporary file the handler reads as stdin."""
    if data is None:
        return subprocess.DEVNULL
    source = tempfile.TemporaryFile()  # pylint: disable=consider-using-with
    source.write(data)
    source.seek(0)
    return source


def _reap(process: subprocess.Popen) -> None:
    """Kill the handler's process group, close its pipes, wait.

    The group is killed even when the handler already exited so nothing it
    left running in the background outlives the request.
    """
    try:
        os.killpg(process.pid, signal.SIGKILL)
    except (ProcessLookupError, PermissionError):
        if process.poll() is None:
            process.kill()
    for stream in (process.stdin, process.stdout, process.stderr):
        if stream is not None:
            try:
                stream.close()
            except OSError:
                pass
    process.wait()


def run_process(
    spec: ProcessSpec,
    timeout: float = DEFAULT_HANDLER_TIMEOUT,
    cancel_check: Optional[CancelCheck] = None,
    on_start: Optional[Callable[[subprocess.Popen], None]] = None,
    on_exit: Optional[Callable[[subprocess.Popen], None]] = None,
) -> ProcessResult:
    """Run a handler to completion and return its captured output.

    The process is killed and reaped on every early exit: timeout,
    cancellation reported by ``cancel_check``, or an exception in the caller's
    thread. Raises HandlerExecutionFailed for spawn failures, timeouts and
    non-zero exit codes, and HandlerCancelled when the client went away.
    """
    # pylint: disable=too-many-branches
    started = time.monotonic()
    deadline = started + timeout
    stdin_source = _stdin_source(spec.stdin)
    try:
        process = subprocess.Popen(  # pylint: disable=consider-using-with
            spec.argv,
            cwd=spec.cwd,
            env=spec.env,
            stdin=stdin_source,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            close_fds=True,
            start_new_session=True,
        )
    except (OSError, ValueError) as error:
        EXECUTABLE_LOGGER.error(
            "Handler spawn failed",
            extra={
                "event": "handler_spawn_failed",
                "path": spec.program.as_posix(),
                "error_type": type(error).__name__,
            },
        )
        raise HandlerExecutionFailed(f"Unable to start {spec.program}") from error
    finally:
        if stdin_source is not subprocess.DEVNULL:
            stdin_source.close()

    EXECUTABLE_LOGGER.info(
        "Handler started",
        extra={
            "event": "handler_started",
            "path": spec.program.as_posix(),
            "pid": process.pid,
        },
    )

    try:
        if on_start is not None:
            on_start(process)
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                EXECUTABLE_LOGGER.warning(
                    "Handler timed out",
                    extra={
                        "event": "handler_timeout",
                        "path": spec.program.as_posix(),
                        "timeout_seconds": timeout,
                    },
                )
                raise HandlerExecutionFailed(f"{spec.program} timed out")
            if cancel_check is not None and cancel_check():
                EXECUTABLE_LOGGER.info(
                    "Client disconnected, cancelling handler",
                    extra={"event": "handler_cancelled", "path": spec.program.as_posix()},
                )
                raise HandlerCancelled(f"{spec.program} cancelled")
            try:
                stdout, stderr = process.communicate(
                    timeout=min(POLL_INTERVAL, remaining)
                )
            except subprocess.TimeoutExpired:
                # Output read so far is kept for the next call.
                continue
            break
    finally:
        _reap(process)
        if on_exit is not None:
            on_exit(process)

    duration_ms = (time.monotonic() - started) * 1000
    exit_code = process.returncode
    if stderr:
        EXECUTABLE_LOGGER.warning(
            "Handler wrote to stderr",
            extra={
                "event": "handler_stderr",
                "path": spec.program.as_posix(),
                "stderr": stderr[:STDERR_LOG_LIMIT].decode("utf-8", errors="replace"),
            },
        )
    if exit_code != 0:
        EXECUTABLE_LOGGER.warning(
            "Handler exited with failure",
            extra={
                "event": "handler_failed",
                "path": spec.program.as_posix(),
                "exit_code": exit_code,
                "duration_ms": round(duration_ms, 2),
            },
        )
        raise HandlerExecutionFailed(f"{spec.program} exited with {exit_code}", exit_code)

    if EXECUTABLE_LOGGER.logger.isEnabledFor(logging.DEBUG):
        EXECUTABLE_LOGGER.debug(
            "Handler finished",
            extra={
                "event": "handler_finished",
                "path": spec.program.as_posix(),
                "bytes_out": len(stdout),
                "duration_ms": round(duration_ms, 2),
            },
        )
    return ProcessResult(stdout, stderr, exit_code, duration_ms)
