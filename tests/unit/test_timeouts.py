"""Unit tests for idle timeouts, connection parking and lifecycle tracking."""

import socket
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from unittest.mock import MagicMock, Mock, patch

import pytest

from static_server.bootstrap.config import ServerConfig
from static_server.lifecycle.state import ServerLifecycle
from static_server.transport.context import WorkerContext
from static_server.transport.parking import ConnectionParker
from static_server.transport.worker import (
    ClientConnection,
    _recv_with_deadline,
    serve_connection,
)


def _context(lifecycle=None) -> WorkerContext:
    config = ServerConfig(port=8080, root_directory=".", idle_timeout_ms=300)
    return WorkerContext(handler=MagicMock(), config=config, lifecycle=lifecycle)


class TestRecvWithDeadline:
    """Tests for _recv_with_deadline helper function."""

    def test_recv_before_deadline(self):
        """Data is returned and the socket timeout follows the deadline."""
        mock_socket = Mock(spec=socket.socket)
        mock_socket.recv.return_value = b"test data"

        result = _recv_with_deadline(mock_socket, time.monotonic_ns() + 500_000_000)

        assert result == b"test data"
        timeout_arg = mock_socket.settimeout.call_args[0][0]
        assert 0.4 < timeout_arg <= 0.5

    def test_recv_after_deadline_expired(self):
        """An expired deadline raises before touching the socket."""
        mock_socket = Mock(spec=socket.socket)

        with pytest.raises(TimeoutError, match="Idle timeout exceeded"):
            _recv_with_deadline(mock_socket, time.monotonic_ns() - 1)
        mock_socket.recv.assert_not_called()


def _wait_until(predicate, timeout=3.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return predicate()


def _peer_closed(peer: socket.socket, timeout: float = 3.0) -> bool:
    peer.settimeout(timeout)
    try:
        return peer.recv(1) == b""
    except ConnectionResetError:
        return True
    except socket.timeout:
        return False


@pytest.fixture(name="socket_pair")
def fixture_socket_pair():
    server_side, client_side = socket.socketpair()
    yield server_side, client_side
    server_side.close()
    client_side.close()


class TestConnectionParker:
    """Idle connections wait on the selector, not on a worker thread."""

    def test_silent_connection_never_reaches_the_pool(self, socket_pair):
        """Parking costs no worker until bytes arrive."""
        server_side, client_side = socket_pair
        pool = MagicMock()
        context = _context()
        parker = ConnectionParker(pool, context)
        parker.start()
        connection = ClientConnection(server_side, ("127.0.0.1", 1), context)
        try:
            parker.park(connection)
            time.sleep(0.1)
            pool.submit.assert_not_called()

            client_side.sendall(b"GET / HTTP/1.1\r\n\r\n")

            assert _wait_until(lambda: pool.submit.called)
            assert pool.submit.call_args.args == (serve_connection, connection, parker)
        finally:
            parker.stop()

    def test_dispatched_connection_is_tracked(self, socket_pair):
        """Work submitted for a readable connection counts as in flight."""
        server_side, client_side = socket_pair
        lifecycle = ServerLifecycle()
        context = _context(lifecycle)
        release = threading.Event()
        with ThreadPoolExecutor(max_workers=1) as pool:
            parker = ConnectionParker(pool, context)
            parker.start()
            with patch(
                "static_server.transport.parking.serve_connection",
                side_effect=lambda *_: release.wait(),
            ):
                parker.park(ClientConnection(server_side, ("127.0.0.1", 1), context))
                client_side.sendall(b"G")
                assert _wait_until(lambda: lifecycle.active_connection_count() == 1)
                release.set()
                assert lifecycle.wait_for_connections(timeout=2.0)
            parker.stop()

    def test_idle_connection_is_closed_after_timeout(self, socket_pair):
        """A parked connection with no new request is closed at its deadline."""
        server_side, client_side = socket_pair
        pool = MagicMock()
        context = _context()
        parker = ConnectionParker(pool, context)
        parker.start()
        try:
            started = time.monotonic()
            parker.park(ClientConnection(server_side, ("127.0.0.1", 1), context))

            assert _peer_closed(client_side)
            assert 0.25 < time.monotonic() - started < 2.0
            pool.submit.assert_not_called()
        finally:
            parker.stop()

    def test_draining_releases_parked_connections(self, socket_pair):
        """Idle keep-alive connections end once draining begins."""
        server_side, client_side = socket_pair
        lifecycle = ServerLifecycle()
        context = WorkerContext(
            handler=MagicMock(),
            config=ServerConfig(port=8080, root_directory=".", idle_timeout_ms=60_000),
            lifecycle=lifecycle,
        )
        parker = ConnectionParker(MagicMock(), context)
        parker.start()
        try:
            parker.park(ClientConnection(server_side, ("127.0.0.1", 1), context))
            time.sleep(0.1)
            lifecycle.begin_draining()

            assert _peer_closed(client_side, timeout=2.0)
        finally:
            parker.stop()

    def test_stop_closes_parked_and_late_connections(self, socket_pair):
        """Stopping closes what is parked and anything parked afterwards."""
        server_side, client_side = socket_pair
        late_server, late_client = socket.socketpair()
        context = WorkerContext(
            handler=MagicMock(),
            config=ServerConfig(port=8080, root_directory=".", idle_timeout_ms=60_000),
        )
        parker = ConnectionParker(MagicMock(), context)
        parker.start()
        parker.park(ClientConnection(server_side, ("127.0.0.1", 1), context))

        parker.stop()
        parker.park(ClientConnection(late_server, ("127.0.0.1", 2), context))

        assert _peer_closed(client_side, timeout=1.0)
        assert _peer_closed(late_client, timeout=1.0)
        late_client.close()

    def test_more_idle_connections_than_workers(self):
        """A pool of one still serves new clients while others sit idle."""
        context = WorkerContext(
            handler=MagicMock(),
            config=ServerConfig(port=8080, root_directory=".", idle_timeout_ms=60_000),
        )
        pairs = [socket.socketpair() for _ in range(4)]
        served = []
        with ThreadPoolExecutor(max_workers=1) as pool:
            parker = ConnectionParker(pool, context)
            parker.start()
            with patch(
                "static_server.transport.parking.serve_connection",
                side_effect=lambda connection, _parker: served.append(connection.peer),
            ):
                for index, (server_side, _) in enumerate(pairs):
                    parker.park(
                        ClientConnection(server_side, ("127.0.0.1", index), context)
                    )
                pairs[-1][1].sendall(b"GET / HTTP/1.1\r\n\r\n")

                assert _wait_until(lambda: served == ["127.0.0.1:3"], timeout=1.0)
            parker.stop()
        for server_side, client_side in pairs:
            server_side.close()
            client_side.close()


class TestServerLifecycle:
    """Tests for ServerLifecycle state management."""

    def test_initial_state(self):
        """Lifecycle starts neither draining nor stopped."""
        lifecycle = ServerLifecycle()
        assert not lifecycle.should_stop()
        assert not lifecycle.is_draining()

    def test_begin_draining_sets_flags(self):
        """begin_draining sets both draining and stop flags."""
        lifecycle = ServerLifecycle()
        lifecycle.begin_draining()
        assert lifecycle.should_stop()
        assert lifecycle.is_draining()

    def test_track_connection_until_done(self):
        """Connections are released when their worker finishes."""
        lifecycle = ServerLifecycle()
        release = threading.Event()
        with ThreadPoolExecutor(max_workers=1) as pool:
            future = pool.submit(release.wait)
            lifecycle.track_connection(future, MagicMock())
            assert lifecycle.active_connection_count() == 1
            release.set()
            assert lifecycle.wait_for_connections(timeout=2.0) is True
        assert lifecycle.active_connection_count() == 0

    def test_wait_for_connections_returns_true_when_empty(self):
        """Nothing in flight means nothing to wait for."""
        assert ServerLifecycle().wait_for_connections(timeout=0.1) is True

    def test_wait_times_out_and_abort_shuts_sockets(self):
        """Stragglers past the grace period have their sockets shut down."""
        lifecycle = ServerLifecycle()
        release = threading.Event()
        client_socket = MagicMock()
        with ThreadPoolExecutor(max_workers=1) as pool:
            future = pool.submit(release.wait)
            lifecycle.track_connection(future, client_socket)
            started = time.monotonic()
            assert lifecycle.wait_for_connections(timeout=0.3) is False
            assert 0.2 < time.monotonic() - started < 1.0
            lifecycle.abort_connections()
            release.set()
        client_socket.shutdown.assert_called_once_with(socket.SHUT_RDWR)
