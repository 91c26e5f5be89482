"""
=============================================================================
LINE-ORIENTED ECHO PROTOCOL
=============================================================================

This module defines the wire format spoken between the echo server and its
clients, plus the buffered line reader both sides use on top of a raw TCP
socket.

=============================================================================
THE WIRE FORMAT
=============================================================================

Every message is ONE line of UTF-8 text terminated by "\\n" ("\\r\\n" is
accepted too). Client and server strictly alternate:

    Client                                  Server
       │                                       │
       │   hello\\n  ─────────────────────────► │
       │                                       │
       │ ◄───────────────────────  Echo: hello\\n
       │                                       │
       │   BYE\\n  ───────────────────────────► │
       │                                       │
       │ ◄───────────────────────────  Goodbye!\\n
       │                                       │
       │ ◄──────────────────────────────── FIN │  (server closes)

TERMINATION KEYWORD:
────────────────────
A line that equals "bye" after trimming surrounding whitespace, compared
case-insensitively, ends the session. "bye", "BYE" and "  Bye  " all
terminate. "bye now" does NOT - it is an ordinary line and gets echoed.

=============================================================================
WHY A LINE BUFFER?
=============================================================================

TCP is a byte stream. One recv() can return half a line, or three lines at
once:

    recv() → b"hel"
    recv() → b"lo\\nsecond li"
    recv() → b"ne\\n"

LineStream accumulates bytes in a buffer and hands out exactly one line per
read_line() call, keeping leftovers for the next call.

=============================================================================
"""

import socket
import logging
from typing import Optional


logger = logging.getLogger(__name__)


TERMINATION_KEYWORD = "bye"
"""Reserved client input that ends a session."""

ECHO_PREFIX = "Echo: "
"""Prefix the server puts in front of every echoed line."""

GOODBYE_MESSAGE = "Goodbye!"
"""Closing acknowledgement sent in reply to the termination keyword."""

DEFAULT_ENCODING = "utf-8"
DEFAULT_MAX_LINE_LENGTH = 64 * 1024  # 64 KiB


class ProtocolError(Exception):
    """Raised when the peer violates the line protocol."""


class LineTooLongError(ProtocolError):
    """Raised when a line grows past the configured maximum length."""

    def __init__(self, length: int, limit: int):
        super().__init__(f"Line too long: {length} bytes (limit {limit})")
        self.length = length
        self.limit = limit


def is_termination(line: str) -> bool:
    """
    Check whether a line is the termination keyword.

    Surrounding whitespace is ignored and the comparison is
    case-insensitive. Extra tokens ("bye now") do not count.
    """
    return line.strip().lower() == TERMINATION_KEYWORD


def echo_response(line: str) -> str:
    """Build the server's reply for an ordinary request line."""
    return f"{ECHO_PREFIX}{line}"


def build_response(line: str) -> tuple[str, bool]:
    """
    Compute the server reply for one request line.

    Returns:
        (response, terminate) - terminate is True when the line was the
        termination keyword and the connection must be closed after the
        response is written.
    """
    if is_termination(line):
        return GOODBYE_MESSAGE, True
    return echo_response(line), False


def _strip_cr(data: bytes) -> bytes:
    # Accept "\r\n" terminated lines from telnet-style clients
    return data[:-1] if data.endswith(b"\r") else data


class LineStream:
    """
    Buffered newline-delimited reader/writer over a connected socket.

    ┌─────────────────────────────────────────────────────────────────────┐
    │                        LineStream Internals                          │
    ├─────────────────────────────────────────────────────────────────────┤
    │                                                                      │
    │   read_line()                                                        │
    │       │                                                              │
    │       ├──► while no "\\n" in _buffer:                                │
    │       │        recv() → _buffer          (BLOCKS)                    │
    │       │        empty recv → EOF                                      │
    │       │                                                              │
    │       └──► split at first "\\n", keep the rest for next call         │
    │                                                                      │
    │   write_line(text)                                                   │
    │       └──► sendall(text + "\\n")        (BLOCKS until all sent)      │
    │                                                                      │
    └─────────────────────────────────────────────────────────────────────┘

    The stream does not own the socket: closing it is the caller's job.
    """

    def __init__(
        self,
        sock: socket.socket,
        encoding: str = DEFAULT_ENCODING,
        buffer_size: int = 4096,
        max_line_length: int = DEFAULT_MAX_LINE_LENGTH,
    ):
        self.socket = sock
        self.encoding = encoding
        self.buffer_size = buffer_size
        self.max_line_length = max_line_length
        self._buffer = b""

    def read_line(self) -> Optional[str]:
        """
        Read one line from the socket.

        Returns:
            The line without its terminator, or None when the peer closed
            the connection and nothing is left in the buffer. A trailing
            fragment that arrives without "\\n" before EOF is returned as a
            final line.

        Raises:
            LineTooLongError: If a line exceeds max_line_length bytes.
            OSError: On socket errors other than a peer reset.
        """
        while b"\n" not in self._buffer:
            chunk = self._recv()
            if not chunk:
                if not self._buffer:
                    return None
                # Peer closed mid-line: deliver what we have
                data, self._buffer = self._buffer, b""
                return self._decode(_strip_cr(data))

            self._buffer += chunk

            # One extra byte: a "\r" may still be waiting for its "\n"
            if b"\n" not in self._buffer and len(self._buffer) > self.max_line_length + 1:
                raise LineTooLongError(len(self._buffer), self.max_line_length)

        line, _, self._buffer = self._buffer.partition(b"\n")
        line = _strip_cr(line)
        if len(line) > self.max_line_length:
            raise LineTooLongError(len(line), self.max_line_length)
        return self._decode(line)

    def write_line(self, text: str) -> None:
        """
        Send one line to the peer.

        sendall() blocks until every byte is handed to the kernel, so a
        response is fully written before the next request is read.
        """
        self.socket.sendall(f"{text}\n".encode(self.encoding))

    def _recv(self) -> bytes:
        """Receive a chunk, treating an abrupt peer reset as end-of-stream."""
        try:
            return self.socket.recv(self.buffer_size)
        except ConnectionResetError:
            return b""

    def _decode(self, data: bytes) -> str:
        return data.decode(self.encoding, errors="replace")
