"""Request, response and handler payload records shared across layers."""

from dataclasses import dataclass, field
from typing import Iterable, Optional

HTTP_10 = "HTTP/1.0"
HTTP_11 = "HTTP/1.1"


@dataclass
class HttpRequest:
    """A parsed request; header names are lowercase."""

    method: str
    path: str
    headers: dict[str, str]
    body: bytes
    query: str = ""
    version: str = HTTP_11


@dataclass
class HttpResponse:
    status_line: str
    headers: dict[str, str]
    body: bytes
    close_connection: bool
    body_iter: Optional[Iterable[bytes]] = None
    use_chunked: bool = False

    @property
    def status_code(self) -> int:
        return int(self.status_line.split(" ", 2)[1])


@dataclass
class Payload:
    """Body produced by a content handler before it becomes a response."""

    body: bytes
    content_type: str
    headers: dict[str, str] = field(default_factory=dict)
    status_line: str = "HTTP/1.1 200 OK"
    body_iter: Optional[Iterable[bytes]] = None

    @property
    def is_html(self) -> bool:
        return self.content_type.split(";", 1)[0].strip().lower() == "text/html"


def wants_close(request: HttpRequest) -> bool:
    """Whether the client expects the connection to end after this exchange.

    HTTP/1.1 connections persist unless ``Connection: close`` is sent;
    HTTP/1.0 connections end unless ``Connection: keep-alive`` is sent.
    """
    tokens = {
        token.strip().lower()
        for token in request.headers.get("connection", "").split(",")
    }
    if request.version == HTTP_10:
        return "keep-alive" not in tokens
    return "close" in tokens
