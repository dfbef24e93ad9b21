"""Server lifecycle state management."""

import concurrent.futures
import logging
import socket
import threading

from static_server.domain.correlation_id import CorrelationLoggerAdapter

LIFECYCLE_LOGGER = CorrelationLoggerAdapter(
    logging.getLogger("static_server.lifecycle"), {}
)


class ServerLifecycle:
    """Manages server lifecycle state and tracks in-flight connections."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._draining_event = threading.Event()
        self._connections: dict[concurrent.futures.Future, socket.socket] = {}

    def should_stop(self) -> bool:
        """Check if the server should stop accepting new connections."""
        return self._stop_event.is_set()

    def is_draining(self) -> bool:
        """Check if the server is in draining mode."""
        return self._draining_event.is_set()

    def track_connection(
        self, future: concurrent.futures.Future, client_socket: socket.socket
    ) -> None:
        """Track a submitted connection until its worker finishes."""
        with self._lock:
            self._connections[future] = client_socket
        future.add_done_callback(self._release_connection)

    def _release_connection(self, future: concurrent.futures.Future) -> None:
        with self._lock:
            self._connections.pop(future, None)

    def active_connection_count(self) -> int:
        """Return the number of connections still being served."""
        with self._lock:
            return len(self._connections)

    def begin_draining(self) -> None:
        """Signal the server to begin graceful shutdown."""
        self._draining_event.set()
        self._stop_event.set()
        LIFECYCLE_LOGGER.info(
            "Beginning graceful shutdown", extra={"event": "draining_started"}
        )

    def wait_for_connections(self, timeout: float) -> bool:
        """Wait for tracked connections to finish within the timeout."""
        with self._lock:
            pending = list(self._connections)
        if not pending:
            return True
        _, not_done = concurrent.futures.wait(pending, timeout=timeout)
        if not_done:
            LIFECYCLE_LOGGER.warning(
                "Shutdown timeout exceeded",
                extra={
                    "event": "shutdown_timeout",
                    "remaining_connections": len(not_done),
                },
            )
            return False
        return True

    def abort_connections(self) -> None:
        """Shut down the sockets of connections that outlived the grace period."""
        with self._lock:
            sockets = list(self._connections.values())
        for client_socket in sockets:
            try:
                client_socket.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass
