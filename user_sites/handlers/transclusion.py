"""Expansion of ``{file-path}`` inclusion markers in HTML payloads.

A marker names a file, absolute or relative to the directory of the file
being expanded, whose contents replace the marker. Included files are scanned
for markers of their own, depth-first. Expansion runs on an explicit stack so
the depth bound, the cycle check and the output size cap hold no matter what
the files contain.

``\\{``, ``\\}`` and ``\\\\`` produce a literal brace or backslash. A marker that
cannot be expanded is left in the output exactly as written.
"""

import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path

from user_sites.domain.correlation_id import get_logger
from user_sites.domain.errors import TransclusionUnresolved
from user_sites.domain.sandbox import is_contained

TRANSCLUSION_LOGGER = get_logger("handlers.transclusion")

MAX_TRANSCLUDE_DEPTH = 10
MAX_MARKER_LENGTH = 4096
MAX_EXPANDED_BYTES = 1024 * 1024

MARKER_START = b"{"
MARKER_END = b"}"
ESCAPE = b"\\"
ESCAPABLE = frozenset({MARKER_START, MARKER_END, ESCAPE})

_SPECIAL_BYTE = re.compile(rb"[{\\]")


@dataclass
class _Frame:
    data: bytes
    path: Path
    position: int = 0


class TransclusionEngine:
    """Expands markers for files that live under a single site root."""

    def __init__(
        self,
        site_root: Path,
        max_depth: int = MAX_TRANSCLUDE_DEPTH,
        max_bytes: int = MAX_EXPANDED_BYTES,
    ) -> None:
        self.site_root = site_root.resolve()
        self.max_depth = max_depth
        self.max_bytes = max_bytes

    def expand(self, html: bytes, origin: Path) -> bytes:
        """Return ``html`` with every resolvable marker substituted.

        ``origin`` is the file the HTML came from; relative marker paths are
        taken from its directory. Once the output reaches ``max_bytes`` no
        further files are included and the remaining markers stay as written.
        """
        output = bytearray()
        limited = False
        stack = [_Frame(html, Path(origin).resolve())]

        while stack:
            frame = stack[-1]
            data = frame.data
            match = _SPECIAL_BYTE.search(data, frame.position)
            if match is None:
                output += data[frame.position :]
                stack.pop()
                continue

            start = match.start()
            output += data[frame.position : start]

            if data[start : start + 1] == ESCAPE:
                following = data[start + 1 : start + 2]
                if following in ESCAPABLE:
                    output += following
                    frame.position = start + 2
                else:
                    output += ESCAPE
                    frame.position = start + 1
                continue

            end = data.find(MARKER_END, start + 1)
            reference = _marker_reference(data, start, end)
            if reference is None:
                output += MARKER_START
                frame.position = start + 1
                continue

            try:
                if len(output) >= self.max_bytes:
                    if not limited:
                        TRANSCLUSION_LOGGER.warning(
                            "Transclusion output limit reached",
                            extra={
                                "event": "transclusion_size_limit",
                                "path": frame.path.as_posix(),
                                "bytes_out": len(output),
                            },
                        )
                        limited = True
                    raise TransclusionUnresolved(f"{reference}: output limit reached")
                included = self._load(reference, stack)
            except TransclusionUnresolved as error:
                TRANSCLUSION_LOGGER.debug(
                    "Transclusion marker left unexpanded",
                    extra={
                        "event": "transclusion_unresolved",
                        "path": frame.path.as_posix(),
                        "reason": str(error),
                    },
                )
                output += data[start : end + 1]
                frame.position = end + 1
                continue

            frame.position = end + 1
            stack.append(included)

        return bytes(output)

    def _load(self, reference: str, stack: list[_Frame]) -> _Frame:
        """Read the file a marker refers to, enforcing every bound."""
        candidate = Path(reference)
        if not candidate.is_absolute():
            candidate = stack[-1].path.parent / candidate
        target = candidate.resolve()

        if not is_contained(self.site_root, target):
            TRANSCLUSION_LOGGER.warning(
                "Transclusion outside site root refused",
                extra={"event": "transclusion_outside_site", "path": target.as_posix()},
            )
            raise TransclusionUnresolved(f"{reference}: outside site")
        if not target.is_file():
            raise TransclusionUnresolved(f"{reference}: not a file")
        if any(frame.path == target for frame in stack):
            TRANSCLUSION_LOGGER.warning(
                "Transclusion cycle detected",
                extra={"event": "transclusion_cycle", "path": target.as_posix()},
            )
            raise TransclusionUnresolved(f"{reference}: cycle")
        if len(stack) >= self.max_depth:
            TRANSCLUSION_LOGGER.warning(
                "Transclusion depth limit reached",
                extra={"event": "transclusion_depth", "depth": len(stack)},
            )
            raise TransclusionUnresolved(f"{reference}: too deep")

        try:
            data = target.read_bytes()
        except OSError as exc:
            raise TransclusionUnresolved(f"{reference}: unreadable") from exc
        if TRANSCLUSION_LOGGER.logger.isEnabledFor(logging.DEBUG):
            TRANSCLUSION_LOGGER.debug(
                "Transcluding file",
                extra={"event": "transclusion_included", "path": target.as_posix()},
            )
        return _Frame(data, target)


def _marker_reference(data: bytes, start: int, end: int):
    """Return the path inside the marker at ``start``, or None if it is not one."""
    if end == -1:
        return None
    inner = data[start + 1 : end]
    if len(inner) > MAX_MARKER_LENGTH:
        return None
    if MARKER_START in inner or b"\n" in inner or b"\r" in inner or b"\x00" in inner:
        return None
    inner = inner.strip()
    if not inner:
        return None
    return os.fsdecode(inner)


def expand_html(html: bytes, origin: Path, site_root: Path) -> bytes:
    """Expand markers in ``html`` using a fresh engine for ``site_root``."""
    return TransclusionEngine(site_root).expand(html, origin)
