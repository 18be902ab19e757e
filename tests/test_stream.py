"""Tests for the binary stream over a duplex byte channel"""

import io
import socket
import struct

import pytest

from boxlink.errors import ChannelClosedError, ChannelError, PayloadTooLargeError, ValueDecodeError
from boxlink.wire.stream import BinaryStream, SIZE_WIDTH


# TEST001: int32 is written in native byte order and width
def test_int32_uses_native_layout():
    stream = BinaryStream.buffer()
    stream.write_int32(-5)
    assert stream.getvalue() == struct.pack("@i", -5)
    assert len(stream.getvalue()) == 4


# TEST002: size prefix matches the platform size_t
def test_size_prefix_width_matches_platform():
    stream = BinaryStream.buffer()
    stream.write_size(3)
    assert SIZE_WIDTH == struct.calcsize("@N")
    assert len(stream.getvalue()) == SIZE_WIDTH


# TEST003: Strings are a size prefix followed by raw UTF-8 without terminator
def test_string_layout():
    stream = BinaryStream.buffer()
    stream.write_string("hé")
    data = stream.getvalue()
    assert data == struct.pack("@N", 3) + "hé".encode("utf-8")


# TEST004: Fixed-width values read back what was written
def test_primitive_read_back():
    out = BinaryStream.buffer()
    out.write_int8(-3)
    out.write_uint8(250)
    out.write_int32(-2147483648)
    out.write_uint32(4294967295)
    out.write_float32(1.5)
    out.write_size(12345)
    out.write_string("")
    out.write_bytes(b"\x00\xff")

    stream = BinaryStream.buffer(out.getvalue())
    assert stream.read_int8() == -3
    assert stream.read_uint8() == 250
    assert stream.read_int32() == -2147483648
    assert stream.read_uint32() == 4294967295
    assert stream.read_float32() == 1.5
    assert stream.read_size() == 12345
    assert stream.read_string() == ""
    assert stream.read_bytes() == b"\x00\xff"


# TEST005: A short read raises ChannelClosedError
def test_short_read_raises_channel_closed():
    stream = BinaryStream.buffer(b"\x01\x02")
    with pytest.raises(ChannelClosedError):
        stream.read_int32()


# TEST006: Reading from an empty channel raises ChannelClosedError
def test_read_on_eof_raises_channel_closed():
    stream = BinaryStream.buffer(b"")
    with pytest.raises(ChannelClosedError):
        stream.read_uint8()


# TEST007: Length prefix above max_payload is rejected before reading the body
def test_oversized_length_prefix_rejected():
    out = BinaryStream.buffer()
    out.write_size(1025)
    stream = BinaryStream.buffer(out.getvalue(), max_payload=1024)
    with pytest.raises(PayloadTooLargeError) as exc_info:
        stream.read_bytes()
    assert exc_info.value.size == 1025
    assert exc_info.value.max == 1024


# TEST008: Closed stream refuses reads and writes
def test_closed_stream_refuses_io():
    stream = BinaryStream.buffer(b"\x00\x00\x00\x00")
    stream.close()
    assert stream.closed
    with pytest.raises(ChannelClosedError):
        stream.read_int32()
    with pytest.raises(ChannelClosedError):
        stream.write(b"x")


# TEST009: close() is idempotent
def test_close_idempotent():
    stream = BinaryStream.buffer()
    stream.close()
    stream.close()


# TEST010: Socket-backed streams carry bytes in both directions
def test_socket_stream_roundtrip():
    a, b = socket.socketpair()
    left = BinaryStream.from_socket(a)
    right = BinaryStream.from_socket(b)
    try:
        left.write_string("ping")
        left.flush()
        assert right.read_string() == "ping"

        right.write_int32(42)
        # read_exact flushes pending writes of its own side first
        right.flush()
        assert left.read_int32() == 42
    finally:
        left.close()
        right.close()


# TEST011: Closing an owned socket makes the peer see EOF
def test_closing_socket_stream_signals_peer():
    a, b = socket.socketpair()
    b.settimeout(5)
    left = BinaryStream.from_socket(a)
    right = BinaryStream.from_socket(b)
    left.close()
    with pytest.raises(ChannelError):
        right.read_uint8()
    right.close()


# TEST012: Writer errors surface as ChannelError
def test_write_failure_is_channel_error():
    class BrokenWriter(io.RawIOBase):
        def writable(self):
            return True

        def write(self, data):
            raise BrokenPipeError("gone")

    stream = BinaryStream(io.BytesIO(), BrokenWriter())
    with pytest.raises(ChannelError):
        stream.write(b"abc")


# TEST013: Invalid UTF-8 is a decode error once the string is consumed
def test_invalid_utf8_string():
    out = BinaryStream.buffer()
    out.write_bytes(b"ab\xff")
    out.write_int32(7)

    stream = BinaryStream.buffer(out.getvalue())
    with pytest.raises(ValueDecodeError):
        stream.read_string()
    assert stream.read_int32() == 7

    lenient = BinaryStream.buffer(out.getvalue())
    assert lenient.read_string(errors="replace") == "ab�"
