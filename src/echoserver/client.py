"""
=============================================================================
INTERACTIVE CLIENT
=============================================================================

A terminal front-end for the echo server: every line the operator types is
sent to the server, and the single response line is printed back.

    $ python -m echoserver client --host 127.0.0.1 --port 8080
    Connected to server 127.0.0.1:8080
    Enter messages ('bye' to quit):
    hello
    Server response: Echo: hello
    bye
    Server response: Goodbye!

=============================================================================
FAILURES ARE REPORTED, NOT RAISED
=============================================================================

The client talks to a human. A stack trace for "connection refused" helps
nobody, so connection problems become one readable line on stderr and
run() returns False:

    ┌─────────────────────────────────────────────────────────────────────┐
    │   socket.gaierror     → "Unknown host: <host>"                       │
    │   other OSError       → "Failed to connect to server: <error>"       │
    │   EOF from server     → "Server closed the connection."              │
    │   oversized response  → "Protocol error: <error>"                    │
    └─────────────────────────────────────────────────────────────────────┘

Invalid arguments are the exception: a blank host or an out-of-range port
is a programming error and raises ValueError from the constructor, before
any socket exists.

=============================================================================
"""

import sys
import socket
import logging
from typing import Optional, TextIO

from .config import ClientConfig
from .protocol import (
    DEFAULT_MAX_LINE_LENGTH,
    ECHO_PREFIX,
    LineStream,
    ProtocolError,
    is_termination,
)


logger = logging.getLogger(__name__)


class InteractiveClient:
    """
    Line-oriented client for the echo server.

    Args:
        host: Server host name or IP address.
        port: Server port (1024-49151).
        stdin: Where operator lines come from (default sys.stdin).
        stdout: Where responses are printed (default sys.stdout).
        connect_timeout: Seconds to wait for the TCP handshake.

    Raises:
        ValueError: If host is blank or port is out of range.
    """

    def __init__(
        self,
        host: str,
        port: int,
        stdin: Optional[TextIO] = None,
        stdout: Optional[TextIO] = None,
        connect_timeout: Optional[float] = 5.0,
    ):
        self.config = ClientConfig(host=host, port=port, connect_timeout=connect_timeout)
        self.stdin = stdin
        self.stdout = stdout
        self.messages_sent = 0

    @property
    def host(self) -> str:
        return self.config.host

    @property
    def port(self) -> int:
        return self.config.port

    def run(self) -> bool:
        """
        Connect and relay operator lines until 'bye' or end of input.

        Returns:
            True if a session with the server took place, False if the
            connection could not be established.
        """
        # Resolved here, not in __init__, so pytest's capsys swaps apply
        stdin = self.stdin if self.stdin is not None else sys.stdin
        stdout = self.stdout if self.stdout is not None else sys.stdout

        try:
            sock = socket.create_connection(
                (self.config.host, self.config.port),
                timeout=self.config.connect_timeout,
            )
        except socket.gaierror as e:
            logger.debug(f"Name resolution failed for {self.config.host}: {e}")
            print(f"Unknown host: {self.config.host}", file=sys.stderr)
            return False
        except OSError as e:
            logger.debug(f"Connection to {self.config.host}:{self.config.port} failed: {e}")
            print(f"Failed to connect to server: {e}", file=sys.stderr)
            return False

        with sock:
            # Timeout was for the handshake only; replies may take their time
            sock.settimeout(None)
            # The echo of a maximum-length line is longer than the line
            stream = LineStream(
                sock,
                encoding=self.config.encoding,
                max_line_length=DEFAULT_MAX_LINE_LENGTH + len(ECHO_PREFIX),
            )

            print(f"Connected to server {self.config.host}:{self.config.port}", file=stdout)
            print("Enter messages ('bye' to quit):", file=stdout)
            stdout.flush()

            try:
                self._relay(stream, stdin, stdout)
            except OSError as e:
                print(f"Connection error: {e}", file=sys.stderr)
            except ProtocolError as e:
                print(f"Protocol error: {e}", file=sys.stderr)

        logger.debug(f"Client disconnected after {self.messages_sent} message(s)")
        return True

    def _relay(self, stream: LineStream, stdin: TextIO, stdout: TextIO):
        for raw in stdin:
            line = raw.rstrip("\r\n")

            stream.write_line(line)
            self.messages_sent += 1

            response = stream.read_line()
            if response is None:
                print("Server closed the connection.", file=stdout)
                stdout.flush()
                return

            print(f"Server response: {response}", file=stdout)
            stdout.flush()

            if is_termination(line):
                return
