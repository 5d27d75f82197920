"""Error taxonomy for request resolution and content generation."""

from typing import Iterable, Optional


class SiteError(Exception):
    """Base class for errors that terminate a single request."""

    status_code = 500
    reason = "Internal Server Error"

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.reason)


class UnknownUser(SiteError):
    """Raised when the username does not resolve to a home directory."""

    status_code = 404
    reason = "Not Found"


class NoSite(SiteError):
    """Raised when the user's home has no ``www`` directory."""

    status_code = 404
    reason = "Not Found"


class PathTraversal(SiteError):
    """Raised when a request path escapes the site root."""

    status_code = 403
    reason = "Forbidden"


class NotFound(SiteError):
    """Raised when the requested file or directory does not exist."""

    status_code = 404
    reason = "Not Found"


class MethodNotAllowed(SiteError):
    """Raised when no handler accepts the request method."""

    status_code = 405
    reason = "Method Not Allowed"

    def __init__(self, allowed: Iterable[str], message: str = "") -> None:
        super().__init__(message)
        self.allowed = sorted(set(allowed))


class MalformedBody(SiteError):
    """Raised when a form body cannot be decoded for its declared type."""

    status_code = 400
    reason = "Bad Request"


class HandlerExecutionFailed(SiteError):
    """Raised when an executable handler cannot be run to completion."""

    status_code = 500
    reason = "Internal Server Error"

    def __init__(self, message: str = "", exit_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.exit_code = exit_code


class HandlerCancelled(HandlerExecutionFailed):
    """Raised when the client went away while a handler was running."""


class TransclusionUnresolved(SiteError):
    """A transclusion marker that could not be expanded.

    Never propagated to the client; the marker is left in place.
    """

    status_code = 200
    reason = "OK"
