"""Per-request correlation IDs carried in a context variable."""

import contextvars
import logging
import re
import uuid
from typing import Any, MutableMapping, Optional

REQUEST_ID_HEADER = "X-Request-ID"
MAX_REQUEST_ID_LENGTH = 128
COMPONENT_PREFIX = "static_server."
NO_REQUEST_ID = "-"

_REQUEST_ID_PATTERN = re.compile(r"[A-Za-z0-9._:@/+=-]+")

_request_id_var: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "request_id", default=None
)


def generate_correlation_id() -> str:
    return str(uuid.uuid4())


def get_correlation_id() -> Optional[str]:
    return _request_id_var.get()


def set_correlation_id(correlation_id: str) -> None:
    _request_id_var.set(correlation_id)


def clear_correlation_id() -> None:
    _request_id_var.set(None)


def adopt_incoming_correlation_id(value: Optional[str]) -> bool:
    """Use a client-supplied X-Request-ID for the current request.

    The value is echoed back in a response header, so only short tokens
    made of URL-safe characters are accepted. Returns True when adopted.
    """
    if not value:
        return False
    value = value.strip()
    if len(value) > MAX_REQUEST_ID_LENGTH or not _REQUEST_ID_PATTERN.fullmatch(value):
        return False
    set_correlation_id(value)
    return True


def component_for(logger_name: str) -> str:
    """Strip the project prefix from a logger name."""
    if logger_name.startswith(COMPONENT_PREFIX):
        return logger_name[len(COMPONENT_PREFIX) :]
    return logger_name


class CorrelationLoggerAdapter(logging.LoggerAdapter):
    """Stamp records with the current request ID and the emitting component."""

    def process(
        self, msg: str, kwargs: MutableMapping[str, Any]
    ) -> tuple[str, MutableMapping[str, Any]]:
        extra = dict(kwargs.get("extra") or {})
        extra["correlation_id"] = get_correlation_id() or NO_REQUEST_ID
        extra["component"] = component_for(self.logger.name)
        kwargs["extra"] = extra
        return msg, kwargs
