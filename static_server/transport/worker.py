"""Request handling for one readable connection, run on the worker pool."""

import logging
import socket
import time
from typing import Optional, Protocol

from static_server.domain.correlation_id import (
    CorrelationLoggerAdapter,
    clear_correlation_id,
    generate_correlation_id,
    set_correlation_id,
)
from static_server.domain.http_types import HttpRequest, HttpResponse
from static_server.domain.response_builders import (
    bad_request_response,
    entity_too_large_response,
    headers_too_large_response,
    internal_error_response,
)
from static_server.pipeline.io import RECV_SIZE, receive_request, send_response
from static_server.pipeline.validation import (
    RequestEntityTooLarge,
    RequestHeadersTooLarge,
    validate_request,
)
from static_server.transport.context import WorkerContext

WORKER_LOGGER = CorrelationLoggerAdapter(
    logging.getLogger("static_server.transport.worker"), {}
)

NS_PER_SECOND = 1_000_000_000


def _recv_with_deadline(client_socket: socket.socket, deadline_ns: int) -> bytes:
    """Read one chunk, giving up with TimeoutError once ``deadline_ns`` passes."""
    remaining_ns = deadline_ns - time.monotonic_ns()
    if remaining_ns <= 0:
        raise TimeoutError("Idle timeout exceeded")
    client_socket.settimeout(remaining_ns / NS_PER_SECOND)
    return client_socket.recv(RECV_SIZE)


class ClientConnection:
    """State for one accepted socket: its peer label and unparsed bytes."""

    def __init__(
        self,
        client_socket: socket.socket,
        client_address: tuple[str, int],
        context: WorkerContext,
    ) -> None:
        self.sock = client_socket
        self.peer = f"{client_address[0]}:{client_address[1]}"
        self.context = context
        self.pending = b""
        self.idle_timeout_ns = context.config.idle_timeout_ms * 1_000_000
        self.idle_deadline_ns = 0

    def _recv(self) -> bytes:
        return _recv_with_deadline(self.sock, time.monotonic_ns() + self.idle_timeout_ns)

    def _draining(self) -> bool:
        lifecycle = self.context.lifecycle
        return lifecycle is not None and lifecycle.is_draining()

    def _reject(self, response: HttpResponse, message: str, **fields) -> None:
        WORKER_LOGGER.warning(message, extra={"client": self.peer, **fields})
        send_response(self.sock, response)

    def next_request(self) -> Optional[HttpRequest]:
        """Parse the next request, answering and returning None on failure."""
        try:
            request, self.pending = receive_request(self.sock, self.pending, self._recv)
        except RequestEntityTooLarge:
            self._reject(
                entity_too_large_response(),
                "Request body size exceeded limit",
                event="body_size_exceeded",
            )
            return None
        except RequestHeadersTooLarge:
            self._reject(
                headers_too_large_response(),
                "Request headers exceeded limit",
                event="headers_size_exceeded",
            )
            return None
        except ValueError as error:
            self._reject(
                bad_request_response(None),
                "Malformed request received",
                event="malformed_request",
                reason=str(error),
            )
            return None

        if request is None:
            WORKER_LOGGER.debug(
                "Client disconnected during request",
                extra={"event": "client_disconnected", "client": self.peer},
            )
        return request

    def respond(self, request: HttpRequest) -> bool:
        """Answer ``request``; True means the connection must close afterwards."""
        started = time.perf_counter()
        response = self._build_response(request)

        if self._draining():
            response.close_connection = True
        if request.version == "HTTP/1.0" and not response.close_connection:
            response.headers["Connection"] = "keep-alive"

        self.sock.settimeout(self.context.config.idle_timeout_seconds)
        send_response(self.sock, response)

        bytes_out = (
            len(response.body)
            if response.content_length is None
            else response.content_length
        )
        WORKER_LOGGER.info(
            "Request handled",
            extra={
                "event": "request_complete",
                "client": self.peer,
                "method": request.method,
                "route": request.path,
                "status_code": response.status_code,
                "bytes_out": bytes_out,
                "duration_ms": round((time.perf_counter() - started) * 1000, 3),
            },
        )
        return response.close_connection

    def _build_response(self, request: HttpRequest) -> HttpResponse:
        rejection = validate_request(request)
        if rejection is not None:
            return rejection
        try:
            return self.context.handler.serve(request)
        except Exception as error:  # pylint: disable=broad-except
            WORKER_LOGGER.error(
                "Request handler failed",
                extra={
                    "event": "handler_error",
                    "route": request.path,
                    "error_type": type(error).__name__,
                },
                exc_info=True,
            )
            failure = internal_error_response(request)
            failure.close_connection = True
            return failure

    def serve_ready(self) -> bool:
        """Serve requests while bytes are available.

        Returns True when the connection is idle and should be parked for
        its next request, False when it has to be closed.
        """
        if not self.pending:
            self.pending = self._recv()
            if not self.pending:
                return False
        # Stray CRLFs between requests are not the start of a new one.
        self.pending = self.pending.lstrip(b"\r\n")
        while self.pending:
            set_correlation_id(generate_correlation_id())
            WORKER_LOGGER.debug(
                "Request processing started",
                extra={"event": "request_started", "client": self.peer},
            )
            request = self.next_request()
            if request is None:
                return False
            WORKER_LOGGER.debug(
                "Request line parsed",
                extra={
                    "event": "request_line_parsed",
                    "method": request.method,
                    "route": request.path,
                },
            )
            must_close = self.respond(request)
            clear_correlation_id()
            if must_close:
                return False
            self.pending = self.pending.lstrip(b"\r\n")
        return not self._draining()

    def close(self) -> None:
        try:
            self.sock.shutdown(socket.SHUT_WR)
        except OSError:
            pass
        self.sock.close()
        WORKER_LOGGER.debug(
            "Socket closed", extra={"event": "socket_closed", "client": self.peer}
        )
        clear_correlation_id()


class Parker(Protocol):  # pylint: disable=too-few-public-methods
    def park(self, connection: ClientConnection) -> None: ...


def serve_connection(connection: ClientConnection, parker: Parker) -> None:
    """Serve what is readable on ``connection``, then park or close it."""
    keep_open = False
    try:
        keep_open = connection.serve_ready()
    except TimeoutError:
        WORKER_LOGGER.debug(
            "Connection stalled mid-request",
            extra={
                "event": "idle_timeout",
                "client": connection.peer,
                "idle_timeout_ms": connection.context.config.idle_timeout_ms,
            },
        )
    except OSError as error:
        WORKER_LOGGER.error(
            "Error handling client connection",
            extra={
                "event": "connection_error",
                "client": connection.peer,
                "error_type": type(error).__name__,
            },
        )
    except Exception as error:  # pylint: disable=broad-except
        WORKER_LOGGER.error(
            "Unexpected error in worker",
            extra={
                "event": "worker_error",
                "client": connection.peer,
                "error_type": type(error).__name__,
                "error": str(error),
            },
            exc_info=True,
        )
    finally:
        if keep_open:
            parker.park(connection)
        else:
            connection.close()
