"""
Unit tests for the line protocol.
"""

import socket

import pytest

from echoserver.protocol import (
    GOODBYE_MESSAGE,
    LineStream,
    LineTooLongError,
    build_response,
    echo_response,
    is_termination,
)


@pytest.fixture
def socket_pair():
    """Two connected sockets; closed after the test."""
    left, right = socket.socketpair()
    left.settimeout(5.0)
    right.settimeout(5.0)
    yield left, right
    left.close()
    right.close()


class TestTermination:
    """Tests for the 'bye' command detection."""

    @pytest.mark.parametrize("line", ["bye", "BYE", "Bye", " bye ", "\tbye", "bYe  "])
    def test_bye_variants(self, line):
        """Test that bye is matched trimmed and case-insensitively."""
        assert is_termination(line)

    @pytest.mark.parametrize("line", ["bye now", "goodbye", "by", "", "b ye"])
    def test_not_termination(self, line):
        """Test that anything else is an ordinary message."""
        assert not is_termination(line)


class TestResponses:
    """Tests for response text."""

    def test_echo_response(self):
        """Test the echo prefix."""
        assert echo_response("hello") == "Echo: hello"

    def test_echo_keeps_whitespace(self):
        """Test that the echoed line is not trimmed."""
        assert echo_response("  padded  ") == "Echo:   padded  "

    def test_echo_empty_line(self):
        """Test that an empty line still gets a response."""
        assert echo_response("") == "Echo: "

    def test_build_response_echo(self):
        """Test that ordinary lines do not terminate."""
        assert build_response("hello") == ("Echo: hello", False)

    def test_build_response_bye(self):
        """Test that bye yields the goodbye and terminates."""
        assert build_response(" BYE ") == (GOODBYE_MESSAGE, True)
        assert GOODBYE_MESSAGE == "Goodbye!"

    def test_bye_now_is_echoed(self):
        """Test that a line merely starting with bye is echoed."""
        assert build_response("bye now") == ("Echo: bye now", False)


class TestLineStream:
    """Tests for LineStream framing."""

    def test_read_single_line(self, socket_pair):
        """Test reading one newline-terminated line."""
        left, right = socket_pair
        right.sendall(b"hello\n")

        assert LineStream(left).read_line() == "hello"

    def test_read_multiple_lines_from_one_chunk(self, socket_pair):
        """Test that lines arriving together are returned one at a time."""
        left, right = socket_pair
        right.sendall(b"one\ntwo\nthree\n")
        stream = LineStream(left)

        assert stream.read_line() == "one"
        assert stream.read_line() == "two"
        assert stream.read_line() == "three"

    def test_read_line_split_across_chunks(self, socket_pair):
        """Test buffering until the terminator arrives."""
        left, right = socket_pair
        stream = LineStream(left, buffer_size=4)
        right.sendall(b"hello wor")
        right.sendall(b"ld\n")

        assert stream.read_line() == "hello world"

    def test_crlf_stripped(self, socket_pair):
        """Test that telnet-style CRLF endings are accepted."""
        left, right = socket_pair
        right.sendall(b"hello\r\n")

        assert LineStream(left).read_line() == "hello"

    @pytest.mark.parametrize("terminator", [b"\n", b"\r\n"])
    def test_limit_excludes_terminator(self, socket_pair, terminator):
        """Test that a line of exactly max_line_length bytes fits with either ending."""
        left, right = socket_pair
        right.sendall(b"abcde" + terminator)

        assert LineStream(left, max_line_length=5, buffer_size=4).read_line() == "abcde"

    @pytest.mark.parametrize("terminator", [b"\n", b"\r\n"])
    def test_limit_exceeded_with_either_ending(self, socket_pair, terminator):
        """Test that one byte over the limit is rejected with either ending."""
        left, right = socket_pair
        right.sendall(b"abcdef" + terminator)

        with pytest.raises(LineTooLongError):
            LineStream(left, max_line_length=5, buffer_size=4).read_line()

    def test_eof_returns_none(self, socket_pair):
        """Test that end-of-stream with an empty buffer yields None."""
        left, right = socket_pair
        right.close()

        assert LineStream(left).read_line() is None

    def test_trailing_fragment_before_eof(self, socket_pair):
        """Test that an unterminated last line is still delivered."""
        left, right = socket_pair
        right.sendall(b"partial")
        right.shutdown(socket.SHUT_WR)
        stream = LineStream(left)

        assert stream.read_line() == "partial"
        assert stream.read_line() is None

    def test_invalid_utf8_replaced(self, socket_pair):
        """Test that undecodable bytes do not raise."""
        left, right = socket_pair
        right.sendall(b"caf\xff\n")

        assert LineStream(left).read_line() == "caf�"

    def test_unicode_round_trip(self, socket_pair):
        """Test that non-ASCII text survives write and read."""
        left, right = socket_pair
        LineStream(right).write_line("héllo wörld ✓")

        assert LineStream(left).read_line() == "héllo wörld ✓"

    def test_write_line_appends_newline(self, socket_pair):
        """Test the wire format of write_line."""
        left, right = socket_pair
        LineStream(left).write_line("Echo: hi")

        assert right.recv(100) == b"Echo: hi\n"

    def test_line_too_long(self, socket_pair):
        """Test that an overlong line raises instead of buffering forever."""
        left, right = socket_pair
        right.sendall(b"x" * 100)
        stream = LineStream(left, max_line_length=10, buffer_size=16)

        with pytest.raises(LineTooLongError) as exc_info:
            stream.read_line()
        assert exc_info.value.limit == 10
        assert exc_info.value.length > 10
