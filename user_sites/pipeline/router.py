"""Request routing: ``/`` lists people, ``/<username>/<path...>`` serves a site."""

import logging
from typing import Optional

from user_sites.bootstrap.config import DEFAULT_HANDLER_TIMEOUT, DEFAULT_HEADERS
from user_sites.domain.correlation_id import get_logger
from user_sites.domain.errors import HandlerCancelled, PathTraversal, SiteError
from user_sites.domain.form_data import parse_query
from user_sites.domain.http_types import HttpRequest, HttpResponse, Payload
from user_sites.domain.response_builders import (
    forbidden_response,
    internal_error_response,
    method_not_allowed_response,
    payload_response,
    site_error_response,
)
from user_sites.domain.sandbox import resolve_request_path
from user_sites.handlers.auto_index import generate_people_index
from user_sites.handlers.dispatcher import (
    HTML_CONTENT_TYPE,
    INDEX_CACHE_CONTROL,
    DispatchOptions,
    serve_resolved,
)
from user_sites.handlers.executable import CancelCheck
from user_sites.transport.context import WorkerContext

ROUTER_LOGGER = get_logger("pipeline.router")


def split_site_path(path: str) -> tuple[str, str]:
    """Split ``/<username>/<rest>`` into the username and the remaining path."""
    username, _, rest = path.lstrip("/").partition("/")
    return username, rest


def _people_response(request: HttpRequest, context: WorkerContext) -> HttpResponse:
    if request.method != "GET":
        return method_not_allowed_response(request, DEFAULT_HEADERS, {"GET"})
    body = generate_people_index(context.homes, parse_query(request.query))
    payload = Payload(body, HTML_CONTENT_TYPE, {"Cache-Control": INDEX_CACHE_CONTROL})
    return payload_response(payload, request, DEFAULT_HEADERS)


def route_request(
    request: HttpRequest,
    context: WorkerContext,
    cancel_check: Optional[CancelCheck] = None,
) -> HttpResponse:
    """Resolve the request against its user's site and build the response.

    Every request-terminating error becomes its HTTP status here, except
    HandlerCancelled, which is re-raised so the worker can drop the
    connection without answering.
    """
    if request.path == "/":
        if ROUTER_LOGGER.logger.isEnabledFor(logging.DEBUG):
            ROUTER_LOGGER.debug(
                "Route matched", extra={"event": "route_matched", "route": "/"}
            )
        return _people_response(request, context)

    username, rest = split_site_path(request.path)
    handler_timeout = (
        context.config.handler_timeout
        if context.config is not None
        else DEFAULT_HANDLER_TIMEOUT
    )
    options = DispatchOptions(
        handler_timeout=handler_timeout,
        cancel_check=cancel_check,
        lifecycle=context.lifecycle,
    )
    try:
        resolved = resolve_request_path(username, rest, context.homes)
        payload = serve_resolved(resolved, request, options)
    except HandlerCancelled:
        raise
    except PathTraversal as error:
        ROUTER_LOGGER.warning(
            "Path escaping the site root blocked",
            extra={
                "event": "path_traversal",
                "username": username,
                "route": request.path,
                "method": request.method,
            },
        )
        return site_error_response(error, request, DEFAULT_HEADERS)
    except SiteError as error:
        ROUTER_LOGGER.info(
            "Request could not be served",
            extra={
                "event": "request_failed",
                "username": username,
                "route": request.path,
                "method": request.method,
                "status_code": error.status_code,
                "error_type": type(error).__name__,
            },
        )
        return site_error_response(error, request, DEFAULT_HEADERS)
    except PermissionError:
        ROUTER_LOGGER.warning(
            "Filesystem permission denied",
            extra={"event": "permission_denied", "route": request.path},
        )
        return forbidden_response(request, DEFAULT_HEADERS)
    except OSError as error:
        ROUTER_LOGGER.error(
            "Filesystem error while serving request",
            extra={
                "event": "filesystem_error",
                "route": request.path,
                "error_type": type(error).__name__,
            },
            exc_info=True,
        )
        return internal_error_response(request, DEFAULT_HEADERS)

    ROUTER_LOGGER.info(
        "Request served",
        extra={
            "event": "request_served",
            "username": username,
            "route": request.path,
            "method": request.method,
            "status_code": payload.status_line.split(" ", 2)[1],
        },
    )
    return payload_response(payload, request, DEFAULT_HEADERS)
