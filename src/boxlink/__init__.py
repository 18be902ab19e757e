"""boxlink - drive a sandboxed worker process over a binary byte stream

A controller issues commands (run a script, set or get a value, install a
callback, fetch console output or a rendered plot) to a worker that owns
the execution engine. Values cross the process boundary through an
extensible type registry; the worker can call back into the controller in
the middle of a script.
"""

from boxlink.errors import (
    BoxlinkError,
    ContractError,
    RegistryError,
    RecoverableError,
    RemoteError,
    EngineError,
    ValueEncodeError,
    ValueDecodeError,
    CallbackError,
    FatalError,
    ChannelError,
    ChannelClosedError,
    PayloadTooLargeError,
    HandshakeError,
    ProtocolError,
    UnknownTypeTagError,
)

from boxlink.config import SessionConfig

from boxlink.wire.stream import BinaryStream, DEFAULT_MAX_PAYLOAD
from boxlink.wire.typetag import TypeTag
from boxlink.wire.registry import (
    EncodingKind,
    TypeCodec,
    TypedValue,
    TypeRegistry,
    default_registry,
)
from boxlink.wire.cbor_types import register_cbor_type
from boxlink.wire.frame import MAGIC_NUMBER, Command, Reply, SendPermit

from boxlink.engine import (
    ExecutionEngine,
    ConsoleCapture,
    GraphicsCapture,
    PythonEngine,
)

from boxlink.controller import ControllerSession, CallbackRegistration
from boxlink.worker import WorkerSession, WorkerState, CallbackStub, split_script
