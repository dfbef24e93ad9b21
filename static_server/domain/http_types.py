"""Shared HTTP type definitions to avoid circular imports."""

from dataclasses import dataclass
from typing import Iterable, Optional


@dataclass
class HttpRequest:
    """Represents a parsed HTTP request."""

    method: str
    path: str
    headers: dict[str, str]
    body: bytes
    version: str = "HTTP/1.1"


@dataclass
class HttpResponse:
    """Represents an HTTP response to be sent to a client.

    When ``body_iter`` is set the payload is streamed from it and
    ``content_length`` announces its size. ``content_length`` without an
    iterator describes an entity whose body is omitted (HEAD, 304).
    """

    status_line: str
    headers: dict[str, str]
    body: bytes
    close_connection: bool
    body_iter: Optional[Iterable[bytes]] = None
    content_length: Optional[int] = None

    @property
    def status_code(self) -> int:
        """Numeric status parsed from the status line."""
        return int(self.status_line.split(" ", 2)[1])


def should_close(request: HttpRequest) -> bool:
    """Determine whether the connection should be closed after responding."""
    connection = request.headers.get("connection", "").lower()
    if request.version == "HTTP/1.0":
        return connection != "keep-alive"
    return connection == "close"
