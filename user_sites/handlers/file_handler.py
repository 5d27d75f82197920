"""Static file serving with Last-Modified validation."""

import logging
import mimetypes
import os
from email.utils import formatdate, parsedate_to_datetime
from pathlib import Path
from typing import BinaryIO, Iterator, Optional

from user_sites.domain.correlation_id import get_logger
from user_sites.domain.errors import NotFound
from user_sites.domain.http_types import Payload

FILE_LOGGER = get_logger("handlers.file")

STATIC_CACHE_CONTROL = "max-age=30"
CHUNK_SIZE = 64 * 1024
NOT_MODIFIED = "HTTP/1.1 304 Not Modified"


def stream_file(file_handle: BinaryIO, chunk_size: int = CHUNK_SIZE) -> Iterator[bytes]:
    """Yield an open file in fixed-size chunks and close it afterwards."""
    with file_handle:
        while True:
            chunk = file_handle.read(chunk_size)
            if not chunk:
                break
            yield chunk


def content_type_for_path(filepath: Path) -> str:
    mime_type, _ = mimetypes.guess_type(filepath.as_posix())
    return mime_type or "application/octet-stream"


def _client_copy_is_current(if_modified_since: Optional[str], mtime: float) -> bool:
    """HTTP dates have one-second resolution; unparsable dates never match."""
    if not if_modified_since:
        return False
    try:
        since = parsedate_to_datetime(if_modified_since)
    except (TypeError, ValueError):
        return False
    if since.tzinfo is None:
        return False
    return int(mtime) <= since.timestamp()


def static_file_payload(filepath: Path, request_headers: dict[str, str]) -> Payload:
    """Serve a file, answering 304 when the client's copy is still current.

    HTML is read whole so it can be expanded; anything else is streamed.
    """
    try:
        file_handle = open(filepath, "rb")  # pylint: disable=consider-using-with
    except (FileNotFoundError, IsADirectoryError) as exc:
        raise NotFound(filepath.as_posix()) from exc

    mtime = os.fstat(file_handle.fileno()).st_mtime
    content_type = content_type_for_path(filepath)
    headers = {
        "Last-Modified": formatdate(mtime, usegmt=True),
        "Cache-Control": STATIC_CACHE_CONTROL,
    }

    if _client_copy_is_current(request_headers.get("if-modified-since"), mtime):
        file_handle.close()
        if FILE_LOGGER.logger.isEnabledFor(logging.DEBUG):
            FILE_LOGGER.debug(
                "File not modified",
                extra={"event": "file_not_modified", "path": filepath.as_posix()},
            )
        return Payload(b"", content_type, headers, status_line=NOT_MODIFIED)

    if content_type == "text/html":
        with file_handle:
            return Payload(file_handle.read(), content_type, headers)
    return Payload(b"", content_type, headers, body_iter=stream_file(file_handle))
