"""Checks applied to every parsed request before it is routed."""

from typing import Optional

from user_sites.domain.http_types import HTTP_11, HttpRequest, HttpResponse
from user_sites.domain.response_builders import (
    bad_request_response,
    entity_too_large_response,
    method_not_allowed_response,
    not_implemented_response,
)


class RequestEntityTooLarge(Exception):
    """Raised when a request head or body exceeds configured limits."""


def enforce_allowed_method(
    request: HttpRequest,
    allowed_methods: set[str],
    default_headers: dict[str, str],
) -> Optional[HttpResponse]:
    if request.method in allowed_methods:
        return None
    return method_not_allowed_response(request, default_headers, allowed_methods)


def enforce_wellformed_path(
    request: HttpRequest, default_headers: dict[str, str]
) -> Optional[HttpResponse]:
    """Reject request targets that are not absolute or carry NUL bytes.

    Traversal is not judged here; the resolver checks containment on the
    canonical filesystem path.
    """
    if not request.path.startswith("/") or "\x00" in request.path:
        return bad_request_response(request, default_headers)
    return None


def enforce_host_header(
    request: HttpRequest, default_headers: dict[str, str]
) -> Optional[HttpResponse]:
    """HTTP/1.1 requests must name a Host."""
    if request.version == HTTP_11 and not request.headers.get("host", "").strip():
        return bad_request_response(request, default_headers)
    return None


def enforce_body_framing(
    request: HttpRequest,
    max_body_bytes: int,
    default_headers: dict[str, str],
) -> Optional[HttpResponse]:
    """Only Content-Length framed bodies within the size limit are accepted."""
    if "transfer-encoding" in request.headers:
        return not_implemented_response(request, default_headers)
    if len(request.body) > max_body_bytes:
        return entity_too_large_response(default_headers)
    return None


def validate_request(
    request: HttpRequest,
    allowed_methods: set[str],
    max_body_bytes: int,
    default_headers: dict[str, str],
) -> Optional[HttpResponse]:
    """Return the first error response the request earns, or None."""
    return (
        enforce_allowed_method(request, allowed_methods, default_headers)
        or enforce_wellformed_path(request, default_headers)
        or enforce_host_header(request, default_headers)
        or enforce_body_framing(request, max_body_bytes, default_headers)
    )
