"""
Server lifecycle states and the mutable runtime state owned by the server.

    STOPPED ──► STARTING ──► RUNNING ──► STOPPING ──► STOPPED
                   │                                     ▲
                   └──────────── bind failed ────────────┘

One start/stop cycle per server instance; there is no restart.
"""

import socket
import logging
import threading
from enum import Enum
from dataclasses import dataclass, field
from typing import Optional

from .dispatch import WorkerDispatch


logger = logging.getLogger(__name__)


class ServerState(Enum):
    """Server lifecycle states."""
    STOPPED = "stopped"
    STARTING = "starting"    # Binding the listening socket
    RUNNING = "running"      # Accept loop active
    STOPPING = "stopping"    # Shutdown in progress


@dataclass
class ServerRuntimeState:
    """
    Process-wide mutable state of one server.

    Attributes:
        dispatch: Worker pool that runs the sessions.
        running: Set while the accept loop should keep going. A
                 threading.Event, so a clear() from the shutdown thread is
                 seen by the accept thread without extra locking.
        listen_socket: Bound listening socket; None before start and
                       after stop.
        lifecycle: Current ServerState.
        lock: Guards lifecycle transitions and listen_socket.
    """

    dispatch: WorkerDispatch
    running: threading.Event = field(default_factory=threading.Event)
    listen_socket: Optional[socket.socket] = None
    lifecycle: ServerState = ServerState.STOPPED
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    @property
    def is_running(self) -> bool:
        return self.running.is_set()

    def close_listen_socket(self) -> bool:
        """
        Shut down and close the listening socket, if still open.

        shutdown() comes first: on Linux that is what wakes a thread blocked
        in accept(); close() alone leaves it sleeping until the next
        connection arrives.

        Returns:
            True if a socket was closed by this call.
        """
        with self.lock:
            sock, self.listen_socket = self.listen_socket, None

        if sock is None:
            return False

        try:
            sock.shutdown(socket.SHUT_RDWR)
        except OSError as e:
            # Not supported on listening sockets on some platforms
            logger.debug(f"shutdown() on listening socket failed: {e}")

        try:
            sock.close()
        except OSError as e:
            logger.warning(f"Error closing listening socket: {e}")

        return True
