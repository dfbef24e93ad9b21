"""Listening loop that hands accepted sockets to the connection parker."""

import logging
import socket
from concurrent.futures import ThreadPoolExecutor
from typing import Optional

from static_server.bootstrap.config import WORKER_THREAD_PREFIX
from static_server.domain.correlation_id import CorrelationLoggerAdapter
from static_server.domain.response_builders import draining_response
from static_server.lifecycle.state import ServerLifecycle
from static_server.pipeline.io import send_response
from static_server.transport.context import WorkerContext
from static_server.transport.parking import ConnectionParker
from static_server.transport.worker import ClientConnection

ACCEPT_LOGGER = CorrelationLoggerAdapter(
    logging.getLogger("static_server.transport.accept"), {}
)


def create_worker_pool() -> ThreadPoolExecutor:
    """Worker pool sized by the executor's own default."""
    return ThreadPoolExecutor(thread_name_prefix=WORKER_THREAD_PREFIX)


def _accept(
    server_socket: socket.socket, lifecycle: ServerLifecycle
) -> tuple[Optional[socket.socket], Optional[tuple[str, int]], bool]:
    """Return ``(client, address, stop)``; the client is None when nothing arrived."""
    try:
        client_socket, client_address = server_socket.accept()
    except socket.timeout:
        return None, None, lifecycle.should_stop()
    except OSError as error:
        if lifecycle.should_stop():
            return None, None, True
        ACCEPT_LOGGER.error(
            "Socket accept failed",
            extra={"event": "accept_error", "error_type": type(error).__name__},
        )
        return None, None, False
    return client_socket, client_address, False


def _refuse(client_socket: socket.socket) -> None:
    """Answer a connection that arrived after draining started, then drop it."""
    try:
        send_response(client_socket, draining_response())
    except OSError:
        pass
    client_socket.close()


def _admit(
    client_socket: socket.socket,
    client_address: tuple[str, int],
    parker: ConnectionParker,
    context: WorkerContext,
) -> None:
    connection = ClientConnection(client_socket, client_address, context)
    ACCEPT_LOGGER.debug(
        "Client connection accepted",
        extra={"event": "client_accepted", "client": connection.peer},
    )
    # Workers are only taken once the first request bytes arrive.
    parker.park(connection)


def _drain(pool: ThreadPoolExecutor, lifecycle: ServerLifecycle, grace_seconds: int) -> None:
    ACCEPT_LOGGER.info(
        "Waiting for active connections to complete",
        extra={
            "event": "shutdown_waiting",
            "shutdown_grace_seconds": grace_seconds,
            "remaining_connections": lifecycle.active_connection_count(),
        },
    )
    if not lifecycle.wait_for_connections(grace_seconds):
        lifecycle.abort_connections()
    pool.shutdown(wait=True, cancel_futures=True)


def run_server(
    server_socket: socket.socket,
    context: WorkerContext,
    pool: Optional[ThreadPoolExecutor] = None,
    parker: Optional[ConnectionParker] = None,
) -> None:
    """Accept connections until the lifecycle stops, then drain and release."""
    if context.lifecycle is None:
        context.lifecycle = ServerLifecycle()
    lifecycle = context.lifecycle
    if pool is None:
        pool = create_worker_pool()
    if parker is None:
        parker = ConnectionParker(pool, context)
    parker.start()
    config = context.config

    ACCEPT_LOGGER.info(
        "Server listening for connections",
        extra={
            "event": "server_listening",
            "port": config.port,
            "directory": config.root_directory,
            "idle_timeout_ms": config.idle_timeout_ms,
        },
    )

    try:
        stop = False
        while not stop:
            client_socket, client_address, stop = _accept(server_socket, lifecycle)
            if client_socket is None:
                continue
            if lifecycle.is_draining():
                _refuse(client_socket)
            else:
                _admit(client_socket, client_address, parker, context)
    finally:
        server_socket.close()
        parker.stop()
        _drain(pool, lifecycle, config.shutdown_grace_seconds)
        ACCEPT_LOGGER.info("Server shutdown complete", extra={"event": "server_stopped"})
