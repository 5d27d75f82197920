"""Pure HTTP response builders."""

from typing import Iterable, Optional

from user_sites.domain.errors import MethodNotAllowed, SiteError
from user_sites.domain.html_pages import error_page
from user_sites.domain.http_types import HttpRequest, HttpResponse, Payload, wants_close

HTML_CONTENT_TYPE = "text/html; charset=utf-8"


def _close_preference(request: Optional[HttpRequest]) -> bool:
    return wants_close(request) if request is not None else True


def payload_response(
    payload: Payload, request: HttpRequest, default_headers: dict[str, str]
) -> HttpResponse:
    """Turn a handler payload into a response, streaming when it has an iterator."""
    headers = {"Content-Type": payload.content_type, **payload.headers, **default_headers}
    if payload.body_iter is not None:
        return HttpResponse(
            payload.status_line,
            headers,
            b"",
            wants_close(request),
            body_iter=payload.body_iter,
            use_chunked=True,
        )
    return HttpResponse(payload.status_line, headers, payload.body, wants_close(request))


def error_response(
    status_code: int,
    reason: str,
    request: Optional[HttpRequest],
    default_headers: dict[str, str],
    extra_headers: Optional[dict[str, str]] = None,
    close_connection: Optional[bool] = None,
) -> HttpResponse:
    """Return an error status with a minimal HTML body."""
    # pylint: disable=too-many-arguments, too-many-positional-arguments
    headers = {
        "Content-Type": HTML_CONTENT_TYPE,
        **(extra_headers or {}),
        **default_headers,
    }
    if close_connection is None:
        close_connection = _close_preference(request)
    return HttpResponse(
        f"HTTP/1.1 {status_code} {reason}",
        headers,
        error_page(status_code, reason),
        close_connection,
    )


def site_error_response(
    error: SiteError, request: HttpRequest, default_headers: dict[str, str]
) -> HttpResponse:
    """Map a request-terminating error onto its HTTP status."""
    if isinstance(error, MethodNotAllowed):
        return method_not_allowed_response(request, default_headers, error.allowed)
    return error_response(error.status_code, error.reason, request, default_headers)


def forbidden_response(
    request: Optional[HttpRequest], default_headers: dict[str, str]
) -> HttpResponse:
    """Produce a 403 response honoring the caller's connection preference."""
    return error_response(403, "Forbidden", request, default_headers)


def bad_request_response(
    request: Optional[HttpRequest], default_headers: dict[str, str]
) -> HttpResponse:
    """Produce a 400 response honoring the caller's connection preference."""
    return error_response(400, "Bad Request", request, default_headers)


def method_not_allowed_response(
    request: HttpRequest, default_headers: dict[str, str], allowed_methods: Iterable[str]
) -> HttpResponse:
    """Produce a 405 response enumerating the supported HTTP methods."""
    allow_header = ", ".join(sorted(allowed_methods))
    return error_response(
        405,
        "Method Not Allowed",
        request,
        default_headers,
        extra_headers={"Allow": allow_header},
    )


def internal_error_response(
    request: HttpRequest, default_headers: dict[str, str]
) -> HttpResponse:
    """Produce a 500 response for failures that escaped the handlers."""
    return error_response(500, "Internal Server Error", request, default_headers)


def entity_too_large_response(default_headers: dict[str, str]) -> HttpResponse:
    """Produce a 413 response that always closes the connection."""
    return error_response(
        413, "Payload Too Large", None, default_headers, close_connection=True
    )


def draining_response(default_headers: dict[str, str]) -> HttpResponse:
    """Produce a 503 response indicating the server is draining."""
    return error_response(
        503,
        "Service Unavailable",
        None,
        default_headers,
        extra_headers={"Connection": "close"},
        close_connection=True,
    )


def not_implemented_response(
    request: HttpRequest, default_headers: dict[str, str]
) -> HttpResponse:
    """Produce a 501 for request framing the server does not speak."""
    return error_response(
        501, "Not Implemented", request, default_headers, close_connection=True
    )
