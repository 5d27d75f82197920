"""Choosing and running the one handler that serves a resolved path."""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from user_sites.domain.correlation_id import get_logger
from user_sites.domain.errors import MethodNotAllowed, NotFound
from user_sites.domain.form_data import parse_form_payload, parse_query
from user_sites.domain.http_types import HttpRequest, Payload
from user_sites.domain.sandbox import ResolvedPath, contained_file
from user_sites.domain.targets import (
    ALLOWED_VARIABLES,
    FORM_EXECUTABLE,
    HANDLER_FILES,
    INDEX_DOCUMENT,
    INDEX_EXECUTABLE,
    Directory,
    FormExecutable,
    IndexExecutable,
    ResolvedTarget,
    StaticFile,
)
from user_sites.handlers.auto_index import generate_index
from user_sites.handlers.executable import (
    DEFAULT_HANDLER_TIMEOUT,
    CancelCheck,
    build_form_spec,
    build_index_spec,
    is_executable_file,
    run_process,
)
from user_sites.handlers.file_handler import static_file_payload
from user_sites.handlers.transclusion import expand_html
from user_sites.lifecycle.state import ServerLifecycle

DISPATCH_LOGGER = get_logger("handlers.dispatcher")

HTML_CONTENT_TYPE = "text/html; charset=utf-8"
EXECUTABLE_CACHE_CONTROL = "no-cache"
INDEX_CACHE_CONTROL = "max-age=30"


@dataclass
class DispatchOptions:
    """Per-request knobs for running handlers."""

    handler_timeout: float = DEFAULT_HANDLER_TIMEOUT
    cancel_check: Optional[CancelCheck] = None
    lifecycle: Optional[ServerLifecycle] = None


def _executable_in_site(path: Path, site_root: Path) -> Optional[Path]:
    program = contained_file(path, site_root)
    if program is None or not is_executable_file(program):
        return None
    return program


def select_target(resolved: ResolvedPath, method: str) -> ResolvedTarget:
    """Pick the handling strategy for a resolved path.

    Directories follow a fixed priority: form handler for POST, then
    ``index.html``, then ``index_executable``, then a generated listing.
    Fixed-name files whose real location is outside the site count as absent.
    """
    path = resolved.path
    if not resolved.is_directory:
        if path.name in HANDLER_FILES:
            raise NotFound(resolved.url_path)
        if method == "POST":
            raise MethodNotAllowed({"GET"})
        return StaticFile(path)

    site_root = resolved.site_root
    allowed_variables = contained_file(path / ALLOWED_VARIABLES, site_root)
    form_executable = _executable_in_site(path / FORM_EXECUTABLE, site_root)
    if method == "POST":
        if form_executable is not None:
            return FormExecutable(form_executable, allowed_variables)
        raise MethodNotAllowed({"GET"})

    index_document = contained_file(path / INDEX_DOCUMENT, site_root)
    if index_document is not None:
        return StaticFile(index_document)
    index_executable = _executable_in_site(path / INDEX_EXECUTABLE, site_root)
    if index_executable is not None:
        return IndexExecutable(index_executable, allowed_variables)
    if form_executable is not None:
        raise MethodNotAllowed({"POST"})
    return Directory(path)


def _origin_for(target: ResolvedTarget) -> Path:
    if isinstance(target, Directory):
        return target.path / INDEX_DOCUMENT
    return target.path


def _run_executable(spec, options: DispatchOptions) -> Payload:
    lifecycle = options.lifecycle
    result = run_process(
        spec,
        timeout=options.handler_timeout,
        cancel_check=options.cancel_check,
        on_start=lifecycle.register_process if lifecycle is not None else None,
        on_exit=lifecycle.release_process if lifecycle is not None else None,
    )
    return Payload(
        result.stdout, HTML_CONTENT_TYPE, {"Cache-Control": EXECUTABLE_CACHE_CONTROL}
    )


def dispatch(
    target: ResolvedTarget,
    resolved: ResolvedPath,
    request: HttpRequest,
    options: DispatchOptions,
) -> Payload:
    """Run the selected handler and return its raw payload."""
    if isinstance(target, StaticFile):
        return static_file_payload(target.path, request.headers)
    if isinstance(target, IndexExecutable):
        spec = build_index_spec(target, parse_query(request.query))
        return _run_executable(spec, options)
    if isinstance(target, FormExecutable):
        spec = build_form_spec(target, parse_form_payload(request.headers, request.body))
        return _run_executable(spec, options)
    body = generate_index(
        target.path, resolved.base_href, parse_query(request.query), resolved.site_root
    )
    return Payload(body, HTML_CONTENT_TYPE, {"Cache-Control": INDEX_CACHE_CONTROL})


def serve_resolved(
    resolved: ResolvedPath, request: HttpRequest, options: DispatchOptions
) -> Payload:
    """Select, run and post-process the handler for a resolved request."""
    target = select_target(resolved, request.method)
    if DISPATCH_LOGGER.logger.isEnabledFor(logging.DEBUG):
        DISPATCH_LOGGER.debug(
            "Handler selected",
            extra={
                "event": "handler_selected",
                "target": type(target).__name__,
                "path": target.path.as_posix(),
            },
        )
    payload = dispatch(target, resolved, request, options)
    if payload.is_html and payload.body_iter is None and payload.body:
        payload.body = expand_html(
            payload.body, _origin_for(target), resolved.site_root
        )
    return payload
