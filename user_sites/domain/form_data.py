"""Query string and form body decoding."""

import urllib.parse
from dataclasses import dataclass
from typing import Optional, Union

from user_sites.domain.errors import MalformedBody

URLENCODED = "application/x-www-form-urlencoded"
PLAINTEXT = "text/plain"
MULTIPART = "multipart/form-data"


@dataclass(frozen=True)
class UrlEncoded:
    """``application/x-www-form-urlencoded`` body as key/value pairs."""

    fields: dict[str, str]


@dataclass(frozen=True)
class Plaintext:
    """``text/plain`` body kept as the raw submitted text."""

    text: str

    @property
    def fields(self) -> dict[str, str]:
        """Key/value pairs from ``key=value`` lines of the text."""
        return parse_plaintext_fields(self.text)


@dataclass(frozen=True)
class Multipart:
    """``multipart/form-data`` body forwarded untouched."""

    raw: bytes
    content_type: str


FormPayload = Union[UrlEncoded, Plaintext, Multipart]


def parse_query(query: str) -> dict[str, str]:
    """Decode a query string into a mapping, keeping blank values.

    Later occurrences of a key replace earlier ones.
    """
    if not query:
        return {}
    return dict(urllib.parse.parse_qsl(query, keep_blank_values=True))


def parse_plaintext_fields(text: str) -> dict[str, str]:
    """Read ``key=value`` lines, skipping lines without a separator."""
    fields = {}
    for line in text.splitlines():
        key, separator, value = line.partition("=")
        if separator and key:
            fields[key] = value
    return fields


def media_type(content_type: str) -> str:
    """Return the lowercase media type without parameters."""
    return content_type.split(";", 1)[0].strip().lower()


def _decode_text(body: bytes) -> str:
    try:
        return body.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise MalformedBody("Body is not valid UTF-8") from exc


def parse_form_payload(headers: dict[str, str], body: bytes) -> Optional[FormPayload]:
    """Select the payload variant from the request's declared content type.

    Returns None for a missing or unsupported content type.
    """
    content_type = headers.get("content-type", "")
    kind = media_type(content_type)
    if kind == URLENCODED:
        return UrlEncoded(parse_query(_decode_text(body)))
    if kind == PLAINTEXT:
        text = _decode_text(body)
        if "\x00" in text:
            raise MalformedBody("Plaintext body contains NUL")
        return Plaintext(text)
    if kind == MULTIPART:
        return Multipart(body, content_type)
    return None
