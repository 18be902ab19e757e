"""Error types for boxlink sessions.

Errors fall into three families:

- ContractError: the caller used a session or registry incorrectly. Raised
  before anything is written to the channel.
- RecoverableError: a single command failed. The session is left ready for
  the next command.
- FatalError: the byte stream can no longer be trusted (disconnect, framing
  violation, unknown type tag). The session must be torn down.
"""


class BoxlinkError(Exception):
    """Base class for all boxlink errors"""
    pass


# =========================================================================
# Contract errors
# =========================================================================

class ContractError(BoxlinkError):
    """Session or registry used outside its contract"""
    pass


class RegistryError(ContractError):
    """Invalid type registration"""
    pass


# =========================================================================
# Recoverable (per-command) errors
# =========================================================================

class RecoverableError(BoxlinkError):
    """A command failed but the session remains usable"""
    pass


class RemoteError(RecoverableError):
    """The worker answered a command with an ERROR reply"""

    def __init__(self, message: str):
        super().__init__(f"Error in worker: {message}")
        self.remote_message = message


class EngineError(RecoverableError):
    """The execution engine failed to evaluate, bind or look up a value"""
    pass


class ValueEncodeError(RecoverableError):
    """A value could not be encoded as the requested type tag"""
    pass


class ValueDecodeError(RecoverableError):
    """A fully received payload could not be interpreted"""
    pass


class CallbackError(RecoverableError):
    """The controller answered a callback invocation with an ERROR reply"""
    pass


# =========================================================================
# Fatal (session-ending) errors
# =========================================================================

class FatalError(BoxlinkError):
    """The session cannot continue"""
    pass


class ChannelError(FatalError):
    """I/O failure on the byte channel"""
    pass


class ChannelClosedError(ChannelError):
    """The peer closed the channel"""

    def __init__(self, message: str = "channel closed by peer"):
        super().__init__(message)


class PayloadTooLargeError(FatalError):
    """A length prefix exceeds the configured payload limit"""

    def __init__(self, size: int, max_size: int):
        super().__init__(f"Payload too large: {size} bytes (max {max_size})")
        self.size = size
        self.max = max_size


class HandshakeError(FatalError):
    """Magic number mismatch during session bootstrap"""
    pass


class ProtocolError(FatalError):
    """Unexpected command, reply or payload shape"""
    pass


class UnknownTypeTagError(FatalError):
    """A type tag on the wire has no registered decoder"""

    def __init__(self, tag: int):
        super().__init__(f"Unknown type tag on the wire: {tag}")
        self.tag = tag
