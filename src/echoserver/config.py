"""
=============================================================================
SERVER AND CLIENT CONFIGURATION
=============================================================================

Centralized, immutable configuration for the echo server and the
interactive client.

=============================================================================
WHY FROZEN DATACLASSES?
=============================================================================

Configuration is created once and read from many threads (the accept loop,
every worker, the shutdown path). Making it immutable means nobody has to
wonder whether a value changed under their feet:

    config = ServerConfig(port=9000)
    config.port = 9001     # dataclasses.FrozenInstanceError

Need a variation? Build a new object:

    dataclasses.replace(config, port=9001)

=============================================================================
FAIL-FAST VALIDATION
=============================================================================

Every value is checked in __post_init__, i.e. at construction time, before
any socket exists. A typo in a port number surfaces as a ValueError on the
line that built the config, not as a confusing bind error later.

    ┌─────────────────────────────────────────────────────────────────────┐
    │                         PORT RANGES                                  │
    ├─────────────────────────────────────────────────────────────────────┤
    │                                                                      │
    │   0 ─────── 1023     Well-known ports (root only on Unix)            │
    │   1024 ──── 49151    Registered ports                                │
    │   49152 ─── 65535    Dynamic/ephemeral (OS picks these)              │
    │                                                                      │
    │   Server bind port:    1025 - 49150                                  │
    │   Client target port:  1024 - 49151                                  │
    │                                                                      │
    └─────────────────────────────────────────────────────────────────────┘

=============================================================================
"""

from dataclasses import dataclass
from typing import Optional


SERVER_PORT_MIN = 1025
SERVER_PORT_MAX = 49150

CLIENT_PORT_MIN = 1024
CLIENT_PORT_MAX = 49151

DEMO_PORT = 8080
"""Hard-coded port used by the demo entry point."""

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
LOG_FORMATS = ("text", "json")


def _check_port(port: int, low: int, high: int) -> None:
    # bool is an int subclass; True is not a port
    if isinstance(port, bool) or not isinstance(port, int):
        raise ValueError(f"Invalid port: {port!r}. Must be an integer.")
    if not low <= port <= high:
        raise ValueError(f"Invalid port: {port}. Must be {low}-{high}.")


@dataclass(frozen=True)
class ServerConfig:
    """
    Configuration for the echo server.

    =========================================================================
    CONFIGURATION GROUPS
    =========================================================================

    NETWORK SETTINGS
    - host, port, backlog

    PROTOCOL SETTINGS
    - max_line_length, encoding

    CONCURRENCY SETTINGS
    - max_workers, worker_idle_timeout, shutdown_grace_period

    LOGGING
    - log_level, log_format

    =========================================================================
    """

    # ─────────────────────────────────────────────────────────────────────
    # NETWORK SETTINGS
    # ─────────────────────────────────────────────────────────────────────

    port: int = DEMO_PORT
    """
    The port number to listen on (1025-49150).
    """

    host: str = "127.0.0.1"
    """
    The IP address to bind to.
    - "127.0.0.1" - Localhost only (development)
    - "0.0.0.0" - All network interfaces
    """

    backlog: int = 50
    """
    Maximum number of connections the OS queues before accept() picks
    them up. When the queue is full, new connections are refused.
    """

    # ─────────────────────────────────────────────────────────────────────
    # PROTOCOL SETTINGS
    # ─────────────────────────────────────────────────────────────────────

    max_line_length: int = 64 * 1024
    """
    Longest request line accepted, in bytes. A client that streams more
    without a newline gets its session closed.
    """

    encoding: str = "utf-8"

    # ─────────────────────────────────────────────────────────────────────
    # CONCURRENCY SETTINGS
    # ─────────────────────────────────────────────────────────────────────

    max_workers: int = 256
    """
    Upper bound on worker threads. Sessions accepted while every worker is
    busy wait in the dispatch queue until one frees up.
    """

    worker_idle_timeout: float = 60.0
    """
    Seconds an idle worker waits for a new session before exiting.
    """

    shutdown_grace_period: float = 5.0
    """
    Seconds stop() waits for in-flight sessions before force-closing them.
    """

    # ─────────────────────────────────────────────────────────────────────
    # LOGGING
    # ─────────────────────────────────────────────────────────────────────

    log_level: str = "INFO"
    log_format: str = "text"
    """'text' for humans, 'json' for log aggregators."""

    def __post_init__(self):
        self.validate()

    def validate(self) -> None:
        """
        Validate configuration values.

        Raises:
            ValueError: On the first invalid value found.
        """
        _check_port(self.port, SERVER_PORT_MIN, SERVER_PORT_MAX)

        if not isinstance(self.host, str) or not self.host.strip():
            raise ValueError("host must be a non-empty string")

        if self.backlog < 1:
            raise ValueError("backlog must be >= 1")

        if self.max_line_length < 1:
            raise ValueError("max_line_length must be >= 1")

        if self.max_workers < 1:
            raise ValueError("max_workers must be >= 1")

        if self.worker_idle_timeout <= 0:
            raise ValueError("worker_idle_timeout must be > 0")

        if self.shutdown_grace_period < 0:
            raise ValueError("shutdown_grace_period must be >= 0")

        if self.log_level.upper() not in LOG_LEVELS:
            raise ValueError(f"Invalid log_level: {self.log_level}")

        if self.log_format not in LOG_FORMATS:
            raise ValueError(f"Invalid log_format: {self.log_format}. Use 'text' or 'json'.")


@dataclass(frozen=True)
class ClientConfig:
    """
    Target of the interactive client.

    Attributes:
        host: Server host name or IP literal. Must not be blank.
        port: Server port (1024-49151).
        connect_timeout: Seconds to wait for the TCP handshake. Once
                         connected, reads block without a timeout.
    """

    host: str
    port: int
    connect_timeout: Optional[float] = 5.0
    encoding: str = "utf-8"

    def __post_init__(self):
        if not isinstance(self.host, str) or not self.host.strip():
            raise ValueError("host must not be empty")
        _check_port(self.port, CLIENT_PORT_MIN, CLIENT_PORT_MAX)
        if self.connect_timeout is not None and self.connect_timeout <= 0:
            raise ValueError("connect_timeout must be > 0")
