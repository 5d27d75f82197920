"""Logging configuration for the user sites server."""

import json
import logging
import re
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

from user_sites.domain.correlation_id import CorrelationLoggerAdapter

LOGGER_NAME = "user_sites"
TEXT_FORMAT = (
    "%(asctime)s %(levelname)-8s [%(correlation_id)s] %(component)s"
    " %(event)s :: %(message)s"
)
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
MAX_BYTES = 10 * 1024 * 1024
BACKUP_COUNT = 5
REDACTED = "[REDACTED]"

SENSITIVE_PATTERNS = [
    re.compile(r"(?i)(authorization|token|signature|password|secret|api[_-]?key)"),
    re.compile(r"\b[A-Fa-f0-9]{32,}\b"),
    re.compile(r"\b[A-Za-z0-9+/]{32,}={0,2}\b"),
]

EXTRA_KEYS = [
    "client",
    "method",
    "route",
    "username",
    "path",
    "target",
    "status_code",
    "reason",
    "pid",
    "exit_code",
    "timeout_seconds",
    "stderr",
    "detail",
    "entries",
    "paginated",
    "depth",
    "count",
    "bytes_in",
    "bytes_out",
    "duration_ms",
    "error_type",
    "host",
    "port",
    "home_root",
    "log_destination",
    "log_level",
    "log_format",
    "socket_timeout",
    "shutdown_grace_seconds",
    "handler_timeout",
    "signal",
]

# Filesystem locations and account names stay readable in logs; a long
# hex or base64 run in a file name is not a credential.
REDACT_EXEMPT_KEYS = frozenset({"path", "route", "username", "target", "home_root"})


def redact_sensitive(value: str) -> str:
    """Replace the whole value when any part of it looks like a secret."""
    if value and any(pattern.search(value) for pattern in SENSITIVE_PATTERNS):
        return REDACTED
    return value


def _scrub(key: str, value):
    if isinstance(value, str) and key not in REDACT_EXEMPT_KEYS:
        return redact_sensitive(value)
    return value


class RecordDefaultsFilter(logging.Filter):  # pylint: disable=too-few-public-methods
    """Fill in the fields the formatters expect on records from plain loggers."""

    def filter(self, record: logging.LogRecord) -> bool:
        for name, default in (("correlation_id", "-"), ("component", record.name)):
            if not hasattr(record, name):
                setattr(record, name, default)
        if not hasattr(record, "event"):
            record.event = "-"
        return True


class JsonFormatter(logging.Formatter):
    """One JSON object per record with sorted keys."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "correlation_id": getattr(record, "correlation_id", "-"),
            "component": getattr(record, "component", record.name),
            "message": record.getMessage(),
        }
        event = getattr(record, "event", "-")
        if event != "-":
            log_data["event"] = event

        log_data.update(
            (key, _scrub(key, getattr(record, key)))
            for key in EXTRA_KEYS
            if hasattr(record, key)
        )

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, sort_keys=True, default=str)


def _resolve_level(level_name: str) -> int:
    level = logging.getLevelName(level_name.upper())
    return level if isinstance(level, int) else logging.INFO


def _build_formatter(use_json: bool) -> logging.Formatter:
    if use_json:
        return JsonFormatter(datefmt=DATE_FORMAT)
    return logging.Formatter(TEXT_FORMAT, DATE_FORMAT)


def _build_handler(destination: Optional[str]) -> logging.Handler:
    """stdout, or a rotating file that is created along with its directory."""
    if not destination or destination.lower() == "stdout":
        return logging.StreamHandler(sys.stdout)
    target_path = Path(destination)
    target_path.parent.mkdir(parents=True, exist_ok=True)
    return RotatingFileHandler(target_path, maxBytes=MAX_BYTES, backupCount=BACKUP_COUNT)


def configure_logging(
    level: str = "INFO", destination: Optional[str] = None, use_json: bool = True
) -> CorrelationLoggerAdapter:
    """Replace the handlers of the ``user_sites`` logger and return an adapter.

    Calling it again swaps the previous handler out, closing it first.
    """
    logger = logging.getLogger(LOGGER_NAME)
    numeric_level = _resolve_level(level)
    logger.setLevel(numeric_level)
    logger.propagate = False

    for old_handler in list(logger.handlers):
        logger.removeHandler(old_handler)
        old_handler.close()

    handler = _build_handler(destination)
    handler.setLevel(numeric_level)
    handler.setFormatter(_build_formatter(use_json))
    handler.addFilter(RecordDefaultsFilter())
    logger.addHandler(handler)

    adapter = CorrelationLoggerAdapter(logger, {})
    adapter.debug(
        "Logging configured",
        extra={
            "event": "logging_configured",
            "log_level": logging.getLevelName(numeric_level),
            "log_destination": destination or "stdout",
            "log_format": "json" if use_json else "text",
        },
    )
    return adapter
