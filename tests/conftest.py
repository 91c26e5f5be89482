"""
pytest configuration and fixtures.
"""

import logging
import random
import socket
from typing import Generator
import pytest

# Add src to path for imports
import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from echoserver import EchoServer, ServerConfig
from echoserver.config import SERVER_PORT_MIN, SERVER_PORT_MAX
from echoserver.protocol import LineStream


def find_free_port() -> int:
    """
    Find a free port inside the server's allowed range.

    Binding to port 0 is not enough here: the OS may hand out an ephemeral
    port above 49150, which ServerConfig rejects.
    """
    candidates = random.sample(range(20000, 40000), 200)
    for port in candidates:
        assert SERVER_PORT_MIN <= port <= SERVER_PORT_MAX
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
            try:
                s.bind(("127.0.0.1", port))
            except OSError:
                continue
            return port
    raise RuntimeError("No free port found")


@pytest.fixture(autouse=True)
def restore_package_logger():
    """Undo setup_logging() calls so log capture works in later tests."""
    logger = logging.getLogger("echoserver")
    saved = (list(logger.handlers), logger.level, logger.propagate)
    yield
    logger.handlers[:] = saved[0]
    logger.setLevel(saved[1])
    logger.propagate = saved[2]


@pytest.fixture
def free_port() -> int:
    """Get a free port for testing."""
    return find_free_port()


class LineClient:
    """Minimal blocking test client speaking the line protocol."""

    def __init__(self, port: int, timeout: float = 5.0):
        self.socket = socket.create_connection(("127.0.0.1", port), timeout=timeout)
        self.stream = LineStream(self.socket)

    def send(self, line: str) -> None:
        self.stream.write_line(line)

    def receive(self):
        return self.stream.read_line()

    def request(self, line: str):
        """Send one line and return the single response line."""
        self.send(line)
        return self.receive()

    def close(self):
        self.socket.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False


@pytest.fixture
def running_server(free_port: int) -> Generator[EchoServer, None, None]:
    """An EchoServer serving in a background thread, stopped afterwards."""
    server = EchoServer(ServerConfig(
        port=free_port,
        shutdown_grace_period=1.0,
        worker_idle_timeout=5.0,
    ))
    server.serve_in_background()

    yield server

    server.stop()


@pytest.fixture
def open_client() -> Generator:
    """Factory for LineClients to a given port; all closed afterwards."""
    clients = []

    def _open(port: int) -> LineClient:
        client = LineClient(port)
        clients.append(client)
        return client

    yield _open

    for client in clients:
        client.close()


@pytest.fixture
def connect(running_server: EchoServer, open_client):
    """Factory for LineClients connected to running_server."""
    return lambda: open_client(running_server.address[1])
