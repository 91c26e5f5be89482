"""
Integration tests for EchoServer over real localhost sockets.
"""

import logging
import os
import signal
import socket
import threading
import time

import pytest

from echoserver import EchoServer, ServerConfig, ServerState, create_server


class FlakyAcceptSocket:
    """Listening socket whose first accept() fails like an exhausted fd table."""

    def __init__(self, sock: socket.socket, failures: int = 1):
        self._sock = sock
        self.failures = failures

    def accept(self):
        if self.failures:
            self.failures -= 1
            raise OSError(24, "Too many open files")
        return self._sock.accept()

    def __getattr__(self, name):
        return getattr(self._sock, name)


class FlakyAcceptServer(EchoServer):
    def _create_socket(self):
        self.listen_socket = FlakyAcceptSocket(super()._create_socket())
        return self.listen_socket


class TestEcho:
    """Tests for the wire protocol as seen by a client."""

    def test_hello(self, connect):
        """Test the basic echo."""
        client = connect()
        assert client.request("hello") == "Echo: hello"

    def test_many_messages_in_order(self, connect):
        """Test that responses come back in request order."""
        client = connect()
        for i in range(50):
            assert client.request(f"message {i}") == f"Echo: message {i}"

    @pytest.mark.parametrize("command", ["bye", "BYE", " bye ", "Bye"])
    def test_bye_variants(self, connect, command):
        """Test goodbye followed by the server closing the connection."""
        client = connect()
        assert client.request(command) == "Goodbye!"
        assert client.receive() is None

    def test_bye_now_is_echoed(self, connect):
        """Test that 'bye now' keeps the connection open."""
        client = connect()
        assert client.request("bye now") == "Echo: bye now"
        assert client.request("still here") == "Echo: still here"

    def test_empty_line(self, connect):
        """Test that an empty line is echoed."""
        client = connect()
        assert client.request("") == "Echo: "

    def test_pipelined_lines(self, connect):
        """Test lines sent in one burst before reading any response."""
        client = connect()
        client.socket.sendall(b"one\ntwo\r\nthree\n")
        assert [client.receive() for _ in range(3)] == [
            "Echo: one",
            "Echo: two",
            "Echo: three",
        ]

    def test_client_disconnect_frees_session(self, running_server, connect):
        """Test that a client vanishing does not disturb the server."""
        first = connect()
        first.request("hello")
        first.close()

        second = connect()
        assert second.request("after") == "Echo: after"


class TestConcurrency:
    """Tests for many simultaneous clients."""

    def test_concurrent_clients_no_cross_talk(self, running_server, connect):
        """Test 12 clients talking at once each get only their own echoes."""
        num_clients = 12
        messages_per_client = 20
        clients = [connect() for _ in range(num_clients)]
        errors = []
        barrier = threading.Barrier(num_clients)

        def talk(index, client):
            try:
                barrier.wait(5)
                for n in range(messages_per_client):
                    text = f"client-{index} msg-{n}"
                    response = client.request(text)
                    if response != f"Echo: {text}":
                        errors.append((index, n, response))
                if client.request("bye") != "Goodbye!":
                    errors.append((index, "bye"))
            except Exception as e:
                errors.append((index, repr(e)))

        threads = [
            threading.Thread(target=talk, args=(i, c)) for i, c in enumerate(clients)
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join(10)

        assert errors == []
        assert not any(t.is_alive() for t in threads)

    def test_idle_client_does_not_block_others(self, connect):
        """Test that a silent connection does not hold up other sessions."""
        idle = connect()
        busy = connect()
        assert busy.request("ping") == "Echo: ping"
        assert idle.request("late") == "Echo: late"


class TestLifecycle:
    """Tests for start/stop behavior."""

    def test_states(self, free_port):
        """Test the lifecycle state transitions."""
        server = EchoServer(free_port)
        assert server.state == ServerState.STOPPED
        assert not server.is_running

        server.serve_in_background()
        assert server.state == ServerState.RUNNING
        assert server.is_running
        assert server.address == ("127.0.0.1", free_port)

        server.stop()
        assert server.state == ServerState.STOPPED
        assert not server.is_running

    def test_int_config(self, free_port):
        """Test that a bare port is accepted as configuration."""
        assert EchoServer(free_port).config.port == free_port

    def test_invalid_port(self):
        """Test that construction fails fast on a bad port."""
        with pytest.raises(ValueError):
            EchoServer(80)
        with pytest.raises(ValueError):
            EchoServer(49151)

    def test_create_server(self, free_port):
        """Test the convenience constructor."""
        server = create_server(free_port, max_workers=8)
        assert server.config.max_workers == 8

    def test_start_twice(self, running_server):
        """Test that a running server cannot be started again."""
        with pytest.raises(RuntimeError):
            running_server.start()

    def test_no_restart_after_stop(self, free_port):
        """Test that a stopped server stays stopped."""
        server = EchoServer(free_port)
        server.serve_in_background()
        server.stop()

        with pytest.raises(RuntimeError):
            server.start()

    def test_stop_before_start(self, free_port):
        """Test that stopping an unstarted server is harmless."""
        server = EchoServer(free_port)
        report = server.stop()

        assert report.forced is False
        assert server.state == ServerState.STOPPED
        with pytest.raises(RuntimeError):
            server.start()

    def test_stop_idempotent(self, free_port):
        """Test that repeated stop() calls return the same report."""
        server = EchoServer(free_port)
        server.serve_in_background()

        first = server.stop()
        second = server.stop()

        assert first is second
        assert server.wait_for_shutdown(0)

    def test_concurrent_stop(self, free_port):
        """Test stop() racing from several threads."""
        server = EchoServer(free_port)
        server.serve_in_background()

        reports = []
        threads = [
            threading.Thread(target=lambda: reports.append(server.stop()))
            for _ in range(4)
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join(10)

        assert len(reports) == 4
        assert all(r is reports[0] for r in reports)
        assert server.state == ServerState.STOPPED

    def test_context_manager(self, free_port, open_client):
        """Test `with EchoServer(...)` serves and then stops."""
        with EchoServer(free_port) as server:
            client = open_client(free_port)
            assert client.request("hi") == "Echo: hi"
            assert client.request("bye") == "Goodbye!"
        assert server.state == ServerState.STOPPED


class TestBinding:
    """Tests for port binding."""

    def test_port_conflict(self, running_server):
        """Test that a second live server on the same port fails to start."""
        port = running_server.address[1]
        second = EchoServer(port)

        with pytest.raises(OSError):
            second.serve_in_background()

        assert second.state == ServerState.STOPPED
        # The first server is unaffected
        assert running_server.is_running

    def test_port_conflict_blocking_start(self, running_server):
        """Test that start() itself propagates the bind error."""
        second = EchoServer(running_server.address[1])
        with pytest.raises(OSError):
            second.start()
        assert second.state == ServerState.STOPPED

    def test_sequential_rebind(self, free_port, open_client):
        """Test that a port can be reused right after a server stopped."""
        first = EchoServer(free_port)
        first.serve_in_background()
        client = open_client(free_port)
        assert client.request("one") == "Echo: one"
        assert client.request("bye") == "Goodbye!"
        first.stop()

        second = EchoServer(free_port)
        second.serve_in_background()
        try:
            assert open_client(free_port).request("two") == "Echo: two"
        finally:
            second.stop()


class TestShutdown:
    """Tests for graceful and forced shutdown."""

    def test_refuses_connections_after_stop(self, free_port):
        """Test that the port is closed once stop() returns."""
        server = EchoServer(free_port)
        server.serve_in_background()
        server.stop()

        with pytest.raises(OSError):
            socket.create_connection(("127.0.0.1", free_port), timeout=2)

    def test_stop_is_bounded_with_idle_clients(self, free_port, open_client):
        """Test that idle sessions are force-closed after the grace period."""
        grace = 0.5
        server = EchoServer(ServerConfig(port=free_port, shutdown_grace_period=grace))
        server.serve_in_background()

        clients = [open_client(free_port) for _ in range(5)]
        for client in clients:
            assert client.request("hello") == "Echo: hello"

        started = time.monotonic()
        report = server.stop()
        elapsed = time.monotonic() - started

        assert report.forced is True
        assert elapsed < grace + 1.5
        for client in clients:
            assert client.receive() is None
        assert server.dispatch.worker_count == 0

    def test_graceful_stop_lets_session_finish(self, free_port, open_client):
        """Test that an active session is still served during the grace period."""
        server = EchoServer(ServerConfig(port=free_port, shutdown_grace_period=5.0))
        server.serve_in_background()
        client = open_client(free_port)
        assert client.request("before") == "Echo: before"

        result = {}
        stopper = threading.Thread(target=lambda: result.update(report=server.stop()))
        stopper.start()

        # Listener goes away first; the session keeps going
        deadline = time.monotonic() + 5
        while server.is_running and time.monotonic() < deadline:
            time.sleep(0.01)
        assert client.request("during") == "Echo: during"
        assert client.request("bye") == "Goodbye!"

        stopper.join(5)
        assert not stopper.is_alive()
        assert result["report"].forced is False
        assert result["report"].duration < 5.0

    def test_stop_without_clients(self, running_server):
        """Test that an idle server stops gracefully and quickly."""
        report = running_server.stop()
        assert report.forced is False
        assert report.duration < 2.0

    def test_grace_period_override(self, free_port, open_client):
        """Test that stop(grace_period=...) overrides the configured value."""
        server = EchoServer(ServerConfig(port=free_port, shutdown_grace_period=30.0))
        server.serve_in_background()
        open_client(free_port).request("hello")

        started = time.monotonic()
        report = server.stop(grace_period=0.2)

        assert report.forced is True
        assert time.monotonic() - started < 3.0

    @pytest.mark.skipif(not hasattr(signal, "SIGTERM"), reason="requires SIGTERM")
    def test_sigterm_stops_server(self, free_port):
        """Test that SIGTERM triggers a graceful stop."""
        previous = signal.getsignal(signal.SIGTERM)
        server = EchoServer(free_port)
        server.install_signal_handlers()
        server.serve_in_background()

        os.kill(os.getpid(), signal.SIGTERM)

        assert server.wait_for_shutdown(5)
        assert server.state == ServerState.STOPPED
        assert signal.getsignal(signal.SIGTERM) is previous


class TestAcceptErrors:
    """Tests for accept() failures while the server is running."""

    def test_accept_error_is_logged_and_loop_continues(self, free_port, open_client, caplog):
        """Test that a failed accept() is logged and later clients are served."""
        caplog.set_level(logging.ERROR, logger="echoserver.server")
        server = FlakyAcceptServer(free_port)
        server.serve_in_background()
        try:
            client = open_client(free_port)
            assert client.request("still serving") == "Echo: still serving"
            assert client.request("bye") == "Goodbye!"

            assert server.listen_socket.failures == 0
            assert server.is_running
            errors = [
                r for r in caplog.records
                if r.levelno == logging.ERROR and r.name == "echoserver.server"
            ]
            assert any("Accept error" in r.getMessage() for r in errors)
        finally:
            server.stop()
