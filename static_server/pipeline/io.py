"""HTTP Input/Output operations."""

import email.utils
import logging
import socket
import urllib.parse
from typing import Callable, Iterable, Optional, Tuple

from static_server.bootstrap.config import (
    HEADER_DELIMITER,
    MAX_BODY_BYTES,
    MAX_HEADER_BYTES,
)
from static_server.domain.correlation_id import (
    CorrelationLoggerAdapter,
    adopt_incoming_correlation_id,
    get_correlation_id,
)
from static_server.domain.http_types import HttpRequest, HttpResponse
from static_server.pipeline.validation import (
    RequestEntityTooLarge,
    RequestHeadersTooLarge,
)

IO_LOGGER = CorrelationLoggerAdapter(logging.getLogger("static_server.io"), {})

SUPPORTED_VERSIONS = {"HTTP/1.0", "HTTP/1.1"}
BODYLESS_STATUS_CODES = {204, 304}
RECV_SIZE = 4096


def parse_headers(lines: Iterable[str]) -> dict[str, str]:
    """Convert raw header lines into a lowercase-keyed dictionary.

    Repeated fields are folded into one comma-separated value.
    """
    parsed: dict[str, str] = {}
    for line in lines:
        name, separator, value = line.partition(":")
        name = name.strip().lower()
        if not separator or not name or " " in name:
            continue
        value = value.strip()
        parsed[name] = f"{parsed[name]}, {value}" if name in parsed else value
    return parsed


def parse_request_line(request_line: str) -> Tuple[str, str, str]:
    """Parse the HTTP method, decoded path and protocol version."""
    try:
        method, target, version = request_line.split(" ")
    except ValueError as exc:
        raise ValueError("Invalid request line") from exc
    if version not in SUPPORTED_VERSIONS:
        raise ValueError(f"Unsupported protocol version: {version}")

    parsed_target = urllib.parse.urlsplit(target)
    path = urllib.parse.unquote(parsed_target.path)
    return method, path, version


def determine_content_length(headers: dict[str, str]) -> int:
    """Validate and return the declared Content-Length for the request."""
    if "transfer-encoding" in headers:
        raise ValueError("Request Transfer-Encoding is not supported")
    header_value = headers.get("content-length")
    if header_value is None:
        return 0
    try:
        content_length = int(header_value)
    except ValueError as exc:
        raise ValueError("Invalid Content-Length") from exc
    if content_length < 0:
        raise ValueError("Negative Content-Length")
    if content_length > MAX_BODY_BYTES:
        raise RequestEntityTooLarge
    return content_length


def receive_request(
    client_socket: socket.socket,
    buffer: bytes,
    recv: Optional[Callable[[], bytes]] = None,
) -> Tuple[Optional[HttpRequest], bytes]:
    """Read bytes from the socket until a complete request is available.

    ``recv`` overrides how bytes are pulled from the socket; it defaults to
    a plain ``recv`` call. Returns ``(None, b"")`` when the peer closes first.
    """
    if recv is None:

        def recv() -> bytes:
            return client_socket.recv(RECV_SIZE)

    buffer = buffer.lstrip(b"\r\n")
    while HEADER_DELIMITER not in buffer:
        if len(buffer) > MAX_HEADER_BYTES:
            raise RequestHeadersTooLarge
        chunk = recv()
        if not chunk:
            return None, b""
        buffer = (buffer + chunk).lstrip(b"\r\n")

    header_block, remainder = buffer.split(HEADER_DELIMITER, 1)
    if len(header_block) > MAX_HEADER_BYTES:
        raise RequestHeadersTooLarge
    header_lines = header_block.decode("iso-8859-1").split("\r\n")
    method, path, version = parse_request_line(header_lines[0])
    headers = parse_headers(header_lines[1:])

    adopt_incoming_correlation_id(headers.get("x-request-id"))

    content_length = determine_content_length(headers)

    while len(remainder) < content_length:
        chunk = recv()
        if not chunk:
            return None, b""
        remainder += chunk

    body = remainder[:content_length]
    leftover = remainder[content_length:]
    IO_LOGGER.debug("Parsed request", extra={"method": method, "path": path})
    return HttpRequest(method, path, headers, body, version), leftover


def _announced_length(response: HttpResponse) -> Optional[int]:
    if response.status_code in BODYLESS_STATUS_CODES:
        return None
    if response.content_length is not None:
        return response.content_length
    return len(response.body)


def _stream_body(
    client_socket: socket.socket, header_block: bytes, response: HttpResponse
) -> int:
    """Send the headers and then the streamed body, closing the body either way."""
    sent = 0
    try:
        client_socket.sendall(header_block)
        for chunk in response.body_iter:
            if not chunk:
                continue
            client_socket.sendall(chunk)
            sent += len(chunk)
    finally:
        close = getattr(response.body_iter, "close", None)
        if close is not None:
            close()
    return sent


def send_response(client_socket: socket.socket, response: HttpResponse) -> None:
    """Serialize and send the HTTP response over the socket."""
    headers = {"Date": email.utils.formatdate(usegmt=True)}
    headers.update(response.headers)

    correlation_id = get_correlation_id()
    if correlation_id:
        headers["X-Request-ID"] = correlation_id

    announced_length = _announced_length(response)
    if announced_length is not None:
        headers["Content-Length"] = str(announced_length)
    if response.close_connection:
        headers["Connection"] = "close"
    header_lines = [response.status_line]
    header_lines.extend(f"{name}: {value}" for name, value in headers.items())
    header_block = "\r\n".join(header_lines).encode("iso-8859-1") + HEADER_DELIMITER

    if response.body_iter is not None:
        sent = _stream_body(client_socket, header_block, response)
        if sent != announced_length:
            raise ConnectionAbortedError(
                f"Body ended after {sent} of {announced_length} bytes"
            )
    else:
        client_socket.sendall(header_block + response.body)
    IO_LOGGER.debug(
        "Sent response",
        extra={"status": response.status_line, "bytes_out": announced_length},
    )
