"""Logging configuration utilities for the static file server."""

import json
import logging
import re
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

from static_server.domain.correlation_id import NO_REQUEST_ID, CorrelationLoggerAdapter

LOGGER_NAME = "static_server"
TEXT_FORMAT = (
    "%(asctime)s %(levelname)-7s %(component)s [%(correlation_id)s] %(message)s"
)
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
ROTATE_AT_BYTES = 10 * 1024 * 1024
ROTATED_FILES_KEPT = 5
REDACTED = "[REDACTED]"

# Credentials, Authorization values and anything that looks like a digest.
SENSITIVE_PATTERNS = (
    re.compile(r"(?i)(authorization|token|key|signature|password|secret)"),
    re.compile(r"(?i)\bbasic\s+[A-Za-z0-9+/=]+"),
    re.compile(r"\b[A-Fa-f0-9]{32,}\b"),
    re.compile(r"\b[A-Za-z0-9+/]{32,}={0,2}\b"),
)

STRUCTURED_FIELDS = (
    "event",
    "client",
    "method",
    "route",
    "range",
    "status",
    "status_code",
    "bytes_out",
    "duration_ms",
    "auth",
    "realm",
    "reason",
    "error_type",
    "error",
    "port",
    "directory",
    "idle_timeout_ms",
    "shutdown_grace_seconds",
    "remaining_connections",
    "signal",
    "destination",
    "log_destination",
    "log_level",
    "use_json",
)


def redact_sensitive(value: str) -> str:
    """Mask a log value that could carry a secret."""
    if value and any(pattern.search(value) for pattern in SENSITIVE_PATTERNS):
        return REDACTED
    return value


class CorrelationIdFilter(logging.Filter):  # pylint: disable=too-few-public-methods
    """Give records logged outside the adapter the fields formatters expect."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "correlation_id"):
            record.correlation_id = NO_REQUEST_ID
        if not hasattr(record, "component"):
            record.component = record.name
        return True


class JsonFormatter(logging.Formatter):
    """One JSON object per line, keys sorted, string fields redacted."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "correlation_id": getattr(record, "correlation_id", NO_REQUEST_ID),
            "component": getattr(record, "component", "unknown"),
            "message": record.getMessage(),
        }
        for field in STRUCTURED_FIELDS:
            if not hasattr(record, field):
                continue
            value = getattr(record, field)
            payload[field] = redact_sensitive(value) if isinstance(value, str) else value
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, sort_keys=True, default=str)


def _resolve_level(level_name: str) -> int:
    level = logging.getLevelName(level_name.upper())
    return level if isinstance(level, int) else logging.INFO


def _open_destination(destination: Optional[str]) -> logging.Handler:
    if not destination or destination.lower() == "stdout":
        return logging.StreamHandler(sys.stdout)
    log_path = Path(destination)
    log_path.parent.mkdir(parents=True, exist_ok=True)
    return RotatingFileHandler(
        log_path, maxBytes=ROTATE_AT_BYTES, backupCount=ROTATED_FILES_KEPT
    )


def _build_handler(
    destination: Optional[str], level: int, use_json: bool = True
) -> logging.Handler:
    """Create the single handler the project logger writes through."""
    handler = _open_destination(destination)
    handler.setLevel(level)
    handler.setFormatter(
        JsonFormatter(datefmt=DATE_FORMAT)
        if use_json
        else logging.Formatter(TEXT_FORMAT, DATE_FORMAT)
    )
    handler.addFilter(CorrelationIdFilter())
    return handler


def configure_logging(
    level: str = "INFO", destination: Optional[str] = None, use_json: bool = True
) -> CorrelationLoggerAdapter:
    """Route the ``static_server`` logger tree to one stdout or file handler.

    Existing handlers are closed and replaced, so calling this again
    reconfigures rather than duplicates output.
    """
    logger = logging.getLogger(LOGGER_NAME)
    numeric_level = _resolve_level(level)
    logger.setLevel(numeric_level)
    logger.propagate = False

    for handler in logger.handlers[:]:
        logger.removeHandler(handler)
        handler.close()
    logger.addHandler(_build_handler(destination, numeric_level, use_json))

    adapter = CorrelationLoggerAdapter(logger, {})
    adapter.info(
        "Logging configured",
        extra={
            "event": "logging_configured",
            "destination": destination or "stdout",
            "use_json": use_json,
        },
    )
    return adapter
