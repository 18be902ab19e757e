"""Command and reply framing

## Session bootstrap

The controller writes a 4-byte magic number as the very first bytes on the
channel. The worker reads and validates it before reading any command.

## Message format

```
┌──────────────────────────────────────────┐
│  1 byte: Command or Reply tag            │
├──────────────────────────────────────────┤
│  N bytes: arguments / payload (optional) │
└──────────────────────────────────────────┘
```

Exactly one command is in flight at a time. OK, VALUE and ERROR end the
command that provoked them; CALLBACK_INVOKE opens a nested exchange that
must be answered before the original command's terminal reply is read.
"""

from enum import IntEnum
from typing import Optional

from boxlink.errors import ContractError, HandshakeError, ProtocolError
from boxlink.wire.stream import BinaryStream


# "BLNK" as a native int32
MAGIC_NUMBER = 0x424C4E4B


class Command(IntEnum):
    """Command tag discriminator"""
    EXIT = 1
    RUN_SCRIPT = 2
    SET_VALUE = 3
    GET_VALUE = 4
    SET_CALLBACK = 5
    GET_CONSOLE_OUTPUT = 6
    INIT_PLOT = 7
    GET_PLOT = 8

    @classmethod
    def from_u8(cls, v: int) -> Optional["Command"]:
        """Convert u8 to Command, returns None if invalid"""
        try:
            return cls(v)
        except ValueError:
            return None


class Reply(IntEnum):
    """Reply tag discriminator"""
    OK = 1
    VALUE = 2
    ERROR = 3
    CALLBACK_INVOKE = 4  # Non-terminal: starts a nested callback exchange

    @classmethod
    def from_u8(cls, v: int) -> Optional["Reply"]:
        """Convert u8 to Reply, returns None if invalid"""
        try:
            return cls(v)
        except ValueError:
            return None

    def is_terminal(self) -> bool:
        return self != Reply.CALLBACK_INVOKE


class SendPermit:
    """The may-send flag of one session side.

    A side may only write a new command (controller) or reply (worker)
    while the permit is allowed. Writing consumes it.
    """

    def __init__(self, allowed: bool = False):
        self._allowed = allowed

    @property
    def allowed(self) -> bool:
        return self._allowed

    def allow(self) -> None:
        self._allowed = True

    def revoke(self) -> None:
        self._allowed = False

    def consume(self, what: str) -> None:
        """Take the permit for one write

        Raises:
            ContractError: If sending is not allowed right now
        """
        if not self._allowed:
            raise ContractError(f"cannot send {what} at this time")
        self._allowed = False


# =========================================================================
# Handshake
# =========================================================================

def send_handshake(stream: BinaryStream, magic: int = MAGIC_NUMBER) -> None:
    """Write the magic number (controller side)"""
    stream.write_int32(magic)
    stream.flush()


def accept_handshake(stream: BinaryStream, magic: int = MAGIC_NUMBER) -> None:
    """Read and validate the magic number (worker side)

    Raises:
        HandshakeError: If the peer sent the wrong magic number
        ChannelError: If the channel fails before 4 bytes arrive
    """
    received = stream.read_int32()
    if received != magic:
        raise HandshakeError(
            f"peer sent the wrong magic number: {received:#x} (expected {magic:#x})"
        )


# =========================================================================
# Tags
# =========================================================================

def write_command(stream: BinaryStream, command: Command, payload: bytes = b"") -> None:
    """Write a command tag followed by its pre-encoded arguments"""
    stream.write(bytes([int(command)]) + payload)
    stream.flush()


def read_command(stream: BinaryStream) -> Command:
    """Read a command tag

    Raises:
        ProtocolError: If the tag is not a known command
    """
    raw = stream.read_uint8()
    command = Command.from_u8(raw)
    if command is None:
        raise ProtocolError(f"peer sent unknown command: {raw}")
    return command


def write_reply(stream: BinaryStream, reply: Reply, payload: bytes = b"") -> None:
    """Write a reply tag followed by its pre-encoded payload"""
    stream.write(bytes([int(reply)]) + payload)
    stream.flush()


def read_reply(stream: BinaryStream) -> Reply:
    """Read a reply tag

    Raises:
        ProtocolError: If the tag is not a known reply
    """
    raw = stream.read_uint8()
    reply = Reply.from_u8(raw)
    if reply is None:
        raise ProtocolError(f"peer sent unknown reply: {raw}")
    return reply
