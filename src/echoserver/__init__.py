"""
=============================================================================
ECHOSERVER - Multi-threaded TCP Line Echo Server
=============================================================================

A small request/response network service built on raw Python sockets: the
server echoes every line a client sends, says goodbye to "bye", and shuts
down gracefully within a bounded time.

=============================================================================
PROJECT OVERVIEW
=============================================================================

    ┌─────────────────────────────────────────────────────────────────────┐
    │                      ECHOSERVER ARCHITECTURE                         │
    ├─────────────────────────────────────────────────────────────────────┤
    │                                                                      │
    │   client ──"hello\\n"──►  EchoServer (accept loop)                   │
    │                              │                                       │
    │                              ▼                                       │
    │                          WorkerDispatch ──► ConnectionSession        │
    │                                                 │                    │
    │   client ◄──"Echo: hello\\n"────────────────────┘                    │
    │                                                                      │
    │   stop() ──► ShutdownCoordinator: close listener, grace period,      │
    │              then force-close what is left                           │
    │                                                                      │
    └─────────────────────────────────────────────────────────────────────┘

=============================================================================
PACKAGE STRUCTURE
=============================================================================

    echoserver/
    ├── __init__.py          # This file - package exports
    ├── __main__.py          # CLI entry point (python -m echoserver)
    ├── server.py            # EchoServer: bind, accept loop, stop()
    ├── client.py            # InteractiveClient
    ├── protocol.py          # Line framing, "bye", response text
    ├── config.py            # ServerConfig / ClientConfig dataclasses
    ├── logging_config.py    # Text and JSON log output
    └── core/
        ├── session.py       # One connection's echo loop
        ├── dispatch.py      # Elastic worker pool
        ├── state.py         # Lifecycle enum, runtime state
        └── shutdown.py      # Ordered, bounded shutdown

=============================================================================
QUICK START
=============================================================================

    from echoserver import EchoServer, InteractiveClient

    server = EchoServer(9000)
    server.serve_in_background()

    InteractiveClient("127.0.0.1", 9000).run()

    server.stop()

=============================================================================
"""

__version__ = "1.0.0"

from .config import ServerConfig, ClientConfig
from .server import EchoServer, create_server
from .client import InteractiveClient
from .core import ServerState, ShutdownReport
from .logging_config import setup_logging

__all__ = [
    "EchoServer",
    "create_server",
    "InteractiveClient",
    "ServerConfig",
    "ClientConfig",
    "ServerState",
    "ShutdownReport",
    "setup_logging",
    "__version__",
]
