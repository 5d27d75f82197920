"""Per-request correlation ids and the logger adapter that stamps them."""

import contextvars
import logging
import re
import uuid
from typing import Any, MutableMapping, Optional

ROOT_LOGGER_PREFIX = "user_sites."
MAX_INCOMING_ID_LENGTH = 128

# Visible ASCII without separators that could split a header or a log line.
_ACCEPTABLE_ID = re.compile(r"[A-Za-z0-9._:@/+=-]+")

_current_id: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "correlation_id", default=None
)


def generate_correlation_id() -> str:
    return str(uuid.uuid4())


def get_correlation_id() -> Optional[str]:
    return _current_id.get()


def set_correlation_id(correlation_id: str) -> None:
    _current_id.set(correlation_id)


def clear_correlation_id() -> None:
    _current_id.set(None)


def adopt_correlation_id(candidate: Optional[str]) -> str:
    """Use the client's ``X-Request-ID`` when it is sane, else keep ours.

    The id bound at the start of the request stays in place when the
    candidate is missing, too long, or carries unexpected characters.
    """
    if (
        candidate
        and len(candidate) <= MAX_INCOMING_ID_LENGTH
        and _ACCEPTABLE_ID.fullmatch(candidate)
    ):
        set_correlation_id(candidate)
        return candidate
    current = get_correlation_id()
    if current is None:
        current = generate_correlation_id()
        set_correlation_id(current)
    return current


def get_logger(name: str) -> "CorrelationLoggerAdapter":
    """Adapter for ``user_sites.<name>``; ``name`` becomes the component."""
    return CorrelationLoggerAdapter(logging.getLogger(ROOT_LOGGER_PREFIX + name), {})


class CorrelationLoggerAdapter(logging.LoggerAdapter):
    """Adds ``correlation_id`` and ``component`` to every record's extras."""

    def process(
        self, msg: str, kwargs: MutableMapping[str, Any]
    ) -> tuple[str, MutableMapping[str, Any]]:
        extra = dict(kwargs.get("extra") or {})
        extra["correlation_id"] = get_correlation_id() or "-"
        name = self.logger.name
        extra["component"] = (
            name[len(ROOT_LOGGER_PREFIX) :] if name.startswith(ROOT_LOGGER_PREFIX) else name
        )
        kwargs["extra"] = extra
        return msg, kwargs
