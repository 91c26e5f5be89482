"""
=============================================================================
CONNECTION SESSION
=============================================================================

A ConnectionSession owns ONE accepted client socket and runs the echo
conversation on it until the conversation ends.

=============================================================================
ONE THREAD, ONE SESSION
=============================================================================

Each session is executed by exactly one worker thread. Sessions share no
mutable state with each other, so there is nothing to lock between them:

    Worker-0 ──► Session a1b2c3d4  (127.0.0.1:50312)
    Worker-1 ──► Session 9f8e7d6c  (127.0.0.1:50318)
    Worker-2 ──► Session 0badc0de  (10.0.0.7:41022)

A crash in one of them never reaches the others or the accept loop.

=============================================================================
SESSION STATE MACHINE
=============================================================================

    NEW ──────► CONNECTED ──┬── peer EOF ─────────┐
                  ▲   │     ├── "bye" + Goodbye! ──┤
                  │   │     ├── I/O error ─────────┤
                  └───┘     └── cancel() ──────────┤
               echo a line                         ▼
                                                CLOSING
                                                   │
                                                   ▼  socket.close() (once)
                                                CLOSED

Whatever path leads to CLOSING, the socket is closed exactly once.

=============================================================================
FORCED CANCELLATION
=============================================================================

A worker blocked in recv() cannot be interrupted from another thread, and
closing a socket another thread is reading from does not wake it up on
Linux. What DOES work is shutdown(SHUT_RDWR): the blocked recv() returns
b"" immediately, the session loop sees end-of-stream and winds down on its
own thread, which then performs the single close().

    shutdown thread                 worker thread
         │                               │
         │                         recv() ... blocked
         │  cancel()                     │
         ├──► shutdown(SHUT_RDWR) ──────►│ recv() → b""
         │                               │ CLOSING → close() → CLOSED

=============================================================================
"""

import socket
import time
import logging
import threading
import uuid
from enum import Enum
from dataclasses import dataclass, field
from typing import Optional

from ..protocol import LineStream, ProtocolError, build_response, DEFAULT_MAX_LINE_LENGTH


logger = logging.getLogger(__name__)


class SessionState(Enum):
    """Session lifecycle states."""
    NEW = "new"                # Accepted, not picked up by a worker yet
    CONNECTED = "connected"    # Read/respond loop running
    CLOSING = "closing"        # Loop finished, releasing the socket
    CLOSED = "closed"          # Socket closed


@dataclass
class ConnectionSession:
    """
    Server-side handler for one accepted TCP connection.

    Attributes:
        socket: The accepted client socket. Owned by the session.
        address: Client's (ip, port) tuple.
        id: Short unique identifier (for logging).
        state: Current session state.
        created_at: Timestamp when the connection was accepted.
        messages_handled: Number of request lines answered.
        cancelled: True once cancel() was called by the shutdown path.
    """

    socket: socket.socket
    address: tuple

    id: str = field(default_factory=lambda: str(uuid.uuid4())[:8])
    state: SessionState = SessionState.NEW
    created_at: float = field(default_factory=time.time)
    messages_handled: int = 0
    cancelled: bool = False

    encoding: str = "utf-8"
    max_line_length: int = DEFAULT_MAX_LINE_LENGTH

    _stream: Optional[LineStream] = field(default=None, init=False, repr=False)
    _state_lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    def __post_init__(self):
        # Sessions block without a timeout until the peer speaks or leaves
        self.socket.settimeout(None)
        self._stream = LineStream(
            self.socket,
            encoding=self.encoding,
            max_line_length=self.max_line_length,
        )

    @property
    def remote(self) -> str:
        """Textual remote address, e.g. '127.0.0.1:50312'."""
        if isinstance(self.address, tuple) and len(self.address) >= 2:
            return f"{self.address[0]}:{self.address[1]}"
        return str(self.address)

    @property
    def is_closed(self) -> bool:
        return self.state == SessionState.CLOSED

    @property
    def duration(self) -> float:
        """Seconds since the connection was accepted."""
        return time.time() - self.created_at

    # =========================================================================
    # THE SESSION LOOP
    # =========================================================================

    def run(self):
        """
        Run the echo conversation until it ends, then close the socket.

        ┌─────────────────────────────────────────────────────────────────┐
        │                        run() Flow                                │
        ├─────────────────────────────────────────────────────────────────┤
        │                                                                  │
        │   while True:                                                    │
        │       line = read_line()        ← BLOCKS                         │
        │       None?  → peer closed      → break                          │
        │       "bye"? → send Goodbye!    → break                          │
        │       else   → send "Echo: " + line                              │
        │                                                                  │
        │   OSError / ProtocolError → log with remote address → break     │
        │   finally (via `with self`) → close()                            │
        │                                                                  │
        └─────────────────────────────────────────────────────────────────┘

        Never raises OSError: I/O failures end this session only.
        """
        with self._state_lock:
            if self.state != SessionState.NEW:
                # Cancelled while still queued; the socket is already gone
                return
            self.state = SessionState.CONNECTED

        with self:
            logger.info(f"[{self.id}] Client connected: {self.remote}")

            try:
                self._converse()
            except (OSError, ProtocolError) as e:
                if self.cancelled:
                    logger.debug(f"[{self.id}] {self.remote} I/O after cancel: {e}")
                else:
                    logger.warning(f"[{self.id}] Error handling client {self.remote}: {e}")

    def _converse(self):
        while True:
            line = self._stream.read_line()
            if line is None:
                if self.cancelled:
                    logger.info(f"[{self.id}] Session with {self.remote} cancelled by shutdown")
                else:
                    logger.info(f"[{self.id}] {self.remote} closed the connection")
                return

            logger.debug(f"[{self.id}] Received from {self.remote}: {line}")
            response, terminate = build_response(line)
            self._stream.write_line(response)
            self.messages_handled += 1

            if terminate:
                logger.info(f"[{self.id}] {self.remote} sent the termination command")
                return

    # =========================================================================
    # CLOSING
    # =========================================================================

    def cancel(self):
        """
        Force a running session to finish (called from another thread).

        Shuts the socket down in both directions so a blocked read returns
        end-of-stream. The owning worker thread still performs close().
        A session that never started running is closed right away.
        """
        with self._state_lock:
            self.cancelled = True
            never_started = self.state == SessionState.NEW
            if never_started:
                self.state = SessionState.CLOSING

        if never_started:
            self._release()
            return

        try:
            self.socket.shutdown(socket.SHUT_RDWR)
        except OSError as e:
            # Already disconnected or already closed
            logger.debug(f"[{self.id}] shutdown() during cancel failed: {e}")

    def close(self):
        """
        Close the session socket. Safe to call more than once; only the
        first call closes.
        """
        with self._state_lock:
            if self.state in (SessionState.CLOSING, SessionState.CLOSED):
                return
            self.state = SessionState.CLOSING

        self._release()

    def _release(self):
        try:
            self.socket.close()
        except OSError as e:
            logger.warning(f"[{self.id}] Error closing socket for {self.remote}: {e}")

        self.state = SessionState.CLOSED
        logger.info(
            f"[{self.id}] Client disconnected: {self.remote} "
            f"({self.messages_handled} messages in {self.duration:.2f}s)"
        )

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit - ensure the socket is closed."""
        self.close()
        return False
