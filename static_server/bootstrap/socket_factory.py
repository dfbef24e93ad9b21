"""Listener socket creation."""

import logging
import socket

from static_server.bootstrap.config import BIND_HOST, ServerConfig
from static_server.domain.correlation_id import CorrelationLoggerAdapter

SOCKET_LOGGER = CorrelationLoggerAdapter(
    logging.getLogger("static_server.socket"), {}
)

ACCEPT_POLL_SECONDS = 0.5


def create_server_socket(config: ServerConfig) -> socket.socket:
    """Bind the listening socket; a port already in use raises OSError."""
    server_socket = socket.create_server((BIND_HOST, config.port))
    server_socket.settimeout(ACCEPT_POLL_SECONDS)
    SOCKET_LOGGER.debug(
        "Listener bound",
        extra={"event": "listener_bound", "port": config.port},
    )
    return server_socket
