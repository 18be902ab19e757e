"""Binary stream over a duplex byte channel

Primitive values are written as their native binary representation
(host byte order, host word size). Both ends of a session must run on the
same kind of machine.

## Wire Layout

```
int8 / uint8     1 byte
int32 / uint32   4 bytes
float32          4 bytes (IEEE single precision)
size             platform size_t (8 bytes on 64-bit hosts)
bytes / string   size prefix + raw bytes, no terminator
```
"""

import io
import socket
import struct
from typing import BinaryIO, Optional

from boxlink.errors import (
    ChannelClosedError,
    ChannelError,
    PayloadTooLargeError,
    ValueDecodeError,
)


# Default upper bound for a single length-prefixed payload (16 MB)
DEFAULT_MAX_PAYLOAD = 16 * 1024 * 1024

_INT8 = struct.Struct("@b")
_UINT8 = struct.Struct("@B")
_INT32 = struct.Struct("@i")
_UINT32 = struct.Struct("@I")
_FLOAT32 = struct.Struct("@f")
_SIZE = struct.Struct("@N")

SIZE_WIDTH = _SIZE.size


class BinaryStream:
    """Blocking read-exact / write stream used by both session sides.

    Writes are buffered by the underlying writer and flushed before every
    blocking read, so a side never waits for an answer to bytes that are
    still sitting in its own buffer.
    """

    def __init__(
        self,
        reader: BinaryIO,
        writer: BinaryIO,
        max_payload: int = DEFAULT_MAX_PAYLOAD,
        sock: Optional[socket.socket] = None,
    ):
        """Create a stream from a pair of binary file objects

        Args:
            reader: Binary input stream
            writer: Binary output stream
            max_payload: Largest accepted length prefix in bytes
            sock: Socket owned by this stream (closed with it)
        """
        self.reader = reader
        self.writer = writer
        self.max_payload = max_payload
        self._sock = sock
        self._closed = False

    @classmethod
    def from_socket(cls, sock: socket.socket, max_payload: int = DEFAULT_MAX_PAYLOAD) -> "BinaryStream":
        """Wrap a connected stream socket. The stream takes ownership of it."""
        return cls(sock.makefile("rb"), sock.makefile("wb"), max_payload=max_payload, sock=sock)

    @classmethod
    def buffer(cls, data: bytes = b"", max_payload: int = DEFAULT_MAX_PAYLOAD) -> "BinaryStream":
        """Create an in-memory stream (reads from `data`, writes to a buffer)"""
        return cls(io.BytesIO(data), io.BytesIO(), max_payload=max_payload)

    def getvalue(self) -> bytes:
        """Return everything written so far (in-memory streams only)"""
        return self.writer.getvalue()

    @property
    def closed(self) -> bool:
        return self._closed

    # -----------------------------------------------------------------
    # Raw I/O
    # -----------------------------------------------------------------

    def read_exact(self, length: int) -> bytes:
        """Read exactly `length` bytes

        Raises:
            ChannelClosedError: If the channel ends before `length` bytes arrive
            ChannelError: If the read fails
        """
        if self._closed:
            raise ChannelClosedError("stream is closed")
        self.flush()
        if length == 0:
            return b""

        chunks = []
        remaining = length
        while remaining > 0:
            try:
                chunk = self.reader.read(remaining)
            except (OSError, ValueError) as e:
                raise ChannelError(f"Read failed: {e}")
            if not chunk:
                raise ChannelClosedError(
                    f"channel closed after {length - remaining} of {length} bytes"
                )
            chunks.append(chunk)
            remaining -= len(chunk)
        return b"".join(chunks)

    def write(self, data: bytes) -> None:
        """Write raw bytes

        Raises:
            ChannelError: If the write fails
        """
        if self._closed:
            raise ChannelClosedError("stream is closed")
        try:
            self.writer.write(data)
        except (OSError, ValueError) as e:
            raise ChannelError(f"Write failed: {e}")

    def flush(self) -> None:
        """Push buffered writes to the channel"""
        try:
            self.writer.flush()
        except (OSError, ValueError) as e:
            raise ChannelError(f"Flush failed: {e}")

    def close(self) -> None:
        """Close the stream and, when owned, its socket"""
        if self._closed:
            return
        self._closed = True
        try:
            self.writer.flush()
        except (OSError, ValueError):
            pass  # peer already gone
        for f in (self.reader, self.writer):
            try:
                f.close()
            except (OSError, ValueError):
                pass
        if self._sock is not None:
            try:
                self._sock.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass
            self._sock.close()

    # -----------------------------------------------------------------
    # Fixed-width primitives
    # -----------------------------------------------------------------

    def _read_struct(self, fmt: struct.Struct):
        return fmt.unpack(self.read_exact(fmt.size))[0]

    def read_int8(self) -> int:
        return self._read_struct(_INT8)

    def write_int8(self, value: int) -> None:
        self.write(_INT8.pack(value))

    def read_uint8(self) -> int:
        return self._read_struct(_UINT8)

    def write_uint8(self, value: int) -> None:
        self.write(_UINT8.pack(value))

    def read_int32(self) -> int:
        return self._read_struct(_INT32)

    def write_int32(self, value: int) -> None:
        self.write(_INT32.pack(value))

    def read_uint32(self) -> int:
        return self._read_struct(_UINT32)

    def write_uint32(self, value: int) -> None:
        self.write(_UINT32.pack(value))

    def read_float32(self) -> float:
        return self._read_struct(_FLOAT32)

    def write_float32(self, value: float) -> None:
        self.write(_FLOAT32.pack(value))

    def read_size(self) -> int:
        return self._read_struct(_SIZE)

    def write_size(self, value: int) -> None:
        self.write(_SIZE.pack(value))

    # -----------------------------------------------------------------
    # Length-prefixed values
    # -----------------------------------------------------------------

    def read_count(self) -> int:
        """Read a size prefix and check it against the payload limit"""
        count = self.read_size()
        if count > self.max_payload:
            raise PayloadTooLargeError(count, self.max_payload)
        return count

    def read_bytes(self) -> bytes:
        return self.read_exact(self.read_count())

    def write_bytes(self, data: bytes) -> None:
        self.write_size(len(data))
        self.write(bytes(data))

    def read_string(self, errors: str = "strict") -> str:
        """Read a length-prefixed UTF-8 string

        The whole string is consumed before it is decoded, so a
        ValueDecodeError leaves the stream in sync. Pass errors="replace"
        for diagnostic text that should never fail.
        """
        data = self.read_bytes()
        try:
            return data.decode("utf-8", errors=errors)
        except UnicodeDecodeError as e:
            raise ValueDecodeError(f"invalid UTF-8 in string: {e}")

    def write_string(self, value: str) -> None:
        self.write_bytes(value.encode("utf-8"))
