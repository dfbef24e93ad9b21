"""Idle connection parking on a selector, off the worker pool."""

import logging
import queue
import selectors
import socket
import threading
import time
from concurrent.futures import Executor

from static_server.domain.correlation_id import CorrelationLoggerAdapter
from static_server.transport.context import WorkerContext
from static_server.transport.worker import ClientConnection, serve_connection

PARKING_LOGGER = CorrelationLoggerAdapter(
    logging.getLogger("static_server.transport.parking"), {}
)

POLL_SECONDS = 0.5
PARKER_THREAD_NAME = "static-server-parker"


class ConnectionParker:
    """Hold connections between requests until they become readable.

    A parked connection costs a selector registration, not a worker
    thread. When bytes arrive it is submitted to the pool; when its idle
    deadline passes, or the server starts draining, it is closed here.
    Each connection is owned either by the parker or by one worker task.
    """

    def __init__(self, pool: Executor, context: WorkerContext) -> None:
        self._pool = pool
        self._context = context
        self._selector = selectors.DefaultSelector()
        self._arrivals: "queue.SimpleQueue[ClientConnection]" = queue.SimpleQueue()
        self._stopped = threading.Event()
        self._wake_reader, self._wake_writer = socket.socketpair()
        self._wake_reader.setblocking(False)
        self._selector.register(self._wake_reader, selectors.EVENT_READ)
        self._thread = threading.Thread(
            target=self._run, name=PARKER_THREAD_NAME, daemon=True
        )

    def start(self) -> None:
        self._thread.start()

    def park(self, connection: ClientConnection) -> None:
        """Wait for the next request on ``connection`` without a worker."""
        if self._stopped.is_set():
            connection.close()
            return
        connection.idle_deadline_ns = time.monotonic_ns() + connection.idle_timeout_ns
        self._arrivals.put(connection)
        self._wake()

    def stop(self) -> None:
        """Close every parked connection and end the selector thread."""
        self._stopped.set()
        self._wake()
        if self._thread.is_alive():
            self._thread.join()
        self._release_all("shutdown")
        self._selector.close()
        self._wake_reader.close()
        self._wake_writer.close()

    def _wake(self) -> None:
        try:
            self._wake_writer.send(b"\0")
        except OSError:
            pass

    def _run(self) -> None:
        while not self._stopped.is_set():
            self._register_arrivals()
            for key, _ in self._selector.select(timeout=POLL_SECONDS):
                if key.fileobj is self._wake_reader:
                    self._clear_wakeups()
                else:
                    self._selector.unregister(key.fileobj)
                    self._dispatch(key.data)
            lifecycle = self._context.lifecycle
            if lifecycle is not None and lifecycle.is_draining():
                self._release_all("draining")
            else:
                self._expire_idle(time.monotonic_ns())

    def _register_arrivals(self) -> None:
        while True:
            try:
                connection = self._arrivals.get_nowait()
            except queue.Empty:
                return
            try:
                self._selector.register(
                    connection.sock, selectors.EVENT_READ, data=connection
                )
            except (OSError, ValueError):
                connection.close()

    def _clear_wakeups(self) -> None:
        try:
            while self._wake_reader.recv(512):
                pass
        except BlockingIOError:
            pass

    def _dispatch(self, connection: ClientConnection) -> None:
        try:
            future = self._pool.submit(serve_connection, connection, self)
        except RuntimeError:
            # Pool already shut down.
            connection.close()
            return
        if self._context.lifecycle is not None:
            self._context.lifecycle.track_connection(future, connection.sock)

    def _parked(self) -> list[ClientConnection]:
        return [
            key.data
            for key in self._selector.get_map().values()
            if key.fileobj is not self._wake_reader
        ]

    def _expire_idle(self, now_ns: int) -> None:
        for connection in self._parked():
            if connection.idle_deadline_ns > now_ns:
                continue
            self._selector.unregister(connection.sock)
            PARKING_LOGGER.debug(
                "Idle connection closed",
                extra={
                    "event": "idle_timeout",
                    "client": connection.peer,
                    "idle_timeout_ms": self._context.config.idle_timeout_ms,
                },
            )
            connection.close()

    def _release_all(self, reason: str) -> None:
        self._register_arrivals()
        released = self._parked()
        for connection in released:
            self._selector.unregister(connection.sock)
            connection.close()
        if released:
            PARKING_LOGGER.info(
                "Released parked connections",
                extra={
                    "event": "parked_released",
                    "reason": reason,
                    "remaining_connections": len(released),
                },
            )

