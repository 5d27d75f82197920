"""Server lifecycle state: draining, worker threads and handler processes."""

import os
import signal
import subprocess
import threading
import time
from typing import Callable, Generic, Iterable, TypeVar

from user_sites.domain.correlation_id import get_logger

LIFECYCLE_LOGGER = get_logger("lifecycle")
JOIN_SLICE_SECONDS = 0.1

T = TypeVar("T")


class TrackedSet(Generic[T]):
    """A lock-guarded set of live objects."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._items: set[T] = set()

    def add(self, item: T) -> None:
        with self._lock:
            self._items.add(item)

    def discard(self, item: T) -> None:
        with self._lock:
            self._items.discard(item)

    def prune(self, alive: Callable[[T], bool]) -> list[T]:
        """Drop items ``alive`` rejects and return a snapshot of the rest."""
        with self._lock:
            self._items = {item for item in self._items if alive(item)}
            return list(self._items)

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)


def _kill_group(process: subprocess.Popen) -> None:
    try:
        os.killpg(process.pid, signal.SIGKILL)
    except (ProcessLookupError, PermissionError):
        process.kill()


class ServerLifecycle:
    """Draining flag plus the workers and handler processes shutdown waits on.

    Draining stops the accept loop and makes workers answer 503 instead
    of reading another request. Handler processes still running after the
    grace period are killed so their workers can finish.
    """

    def __init__(self) -> None:
        self._draining = threading.Event()
        self._workers: TrackedSet[threading.Thread] = TrackedSet()
        self._processes: TrackedSet[subprocess.Popen] = TrackedSet()

    def is_draining(self) -> bool:
        return self._draining.is_set()

    # The accept loop stops exactly when draining starts.
    should_stop = is_draining

    def begin_draining(self) -> None:
        if self._draining.is_set():
            return
        self._draining.set()
        LIFECYCLE_LOGGER.info(
            "Draining: no new connections will be served",
            extra={"event": "draining", "count": len(self._workers)},
        )

    def register_worker(self, thread: threading.Thread) -> None:
        self._workers.add(thread)

    def cleanup_worker(self, thread: threading.Thread) -> None:
        self._workers.discard(thread)

    def active_worker_count(self) -> int:
        return len(self._workers)

    def register_process(self, process: subprocess.Popen) -> None:
        self._processes.add(process)

    def release_process(self, process: subprocess.Popen) -> None:
        self._processes.discard(process)

    def active_process_count(self) -> int:
        return len(self._processes)

    def kill_processes(self) -> int:
        """SIGKILL the process group of every running handler.

        Returns how many were signalled; their workers still reap them.
        """
        running = self._processes.prune(lambda process: process.poll() is None)
        for process in running:
            _kill_group(process)
        if running:
            LIFECYCLE_LOGGER.warning(
                "Killed running handlers at shutdown",
                extra={"event": "handlers_killed", "count": len(running)},
            )
        return len(running)

    def wait_for_workers(self, timeout: float) -> bool:
        """Join workers until none remain or ``timeout`` seconds pass.

        Returns True when every worker finished in time.
        """
        deadline = time.monotonic() + timeout
        while True:
            alive = self._workers.prune(threading.Thread.is_alive)
            if not alive:
                return True
            if time.monotonic() >= deadline:
                LIFECYCLE_LOGGER.warning(
                    "Shutdown grace period exceeded",
                    extra={"event": "shutdown_timeout", "count": len(alive)},
                )
                self.kill_processes()
                return False
            _join_some(alive, deadline)


def _join_some(threads: Iterable[threading.Thread], deadline: float) -> None:
    for thread in threads:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            return
        thread.join(timeout=min(JOIN_SLICE_SECONDS, remaining))
