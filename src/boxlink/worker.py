"""Worker-side session: the command dispatch loop.

The worker owns the sandboxed execution engine. It reads one command at a
time from the controller, runs it against the engine and answers with a
terminal reply (OK, VALUE or ERROR).

Callbacks installed with SET_CALLBACK make the worker a client of the
controller for a while: when script code calls one, the worker sends
CALLBACK_INVOKE plus the encoded arguments and blocks on the controller's
answer before the script continues.

```
controller                      worker
    │ ── RUN_SCRIPT ──────────────▶ │  evaluate...
    │ ◀────────── CALLBACK_INVOKE ─ │    cb(5)
    │ ── VALUE(-1, 10) ───────────▶ │    ...returns 10
    │ ◀────────────────────── OK ── │  done
```

Usage:
```python
from boxlink.engine import PythonEngine
from boxlink.wire.stream import BinaryStream
from boxlink.worker import WorkerSession

worker = WorkerSession(BinaryStream.from_socket(sock), PythonEngine())
worker.run()
```
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, List, Optional

from boxlink.config import SessionConfig
from boxlink.engine import ConsoleCapture, ExecutionEngine, GraphicsCapture
from boxlink.errors import (
    CallbackError,
    ContractError,
    FatalError,
    ProtocolError,
    ValueDecodeError,
)
from boxlink.wire.frame import (
    Command,
    Reply,
    SendPermit,
    accept_handshake,
    read_command,
    read_reply,
    write_reply,
)
from boxlink.wire.registry import TypeRegistry, TypedValue, default_registry
from boxlink.wire.stream import BinaryStream
from boxlink.wire.typetag import TypeTag, tag_name


logger = logging.getLogger(__name__)

SCRIPT_SEGMENT_DELIMITER = "\n\n"


class WorkerState(Enum):
    AWAITING_COMMAND = "awaiting_command"
    EXECUTING = "executing"
    AWAITING_CALLBACK_REPLY = "awaiting_callback_reply"
    CLOSED = "closed"


@dataclass
class _PendingCallback:
    """One open callback exchange on the worker's stack"""
    callback_id: int
    name: str


def split_script(code: str) -> List[str]:
    """Split a script into segments on blank lines.

    Windows line endings are normalised first. There is always at least one
    segment.
    """
    return code.replace("\r\n", "\n").split(SCRIPT_SEGMENT_DELIMITER)


class CallbackStub:
    """Callable bound in the engine that forwards calls to the controller."""

    def __init__(
        self,
        session: "WorkerSession",
        name: str,
        callback_id: int,
        result_type: int,
        param_types: List[int],
    ):
        self.session = session
        self.name = name
        self.callback_id = callback_id
        self.result_type = result_type
        self.param_types = list(param_types)

    def __call__(self, *args: Any) -> Any:
        if len(args) != len(self.param_types):
            raise TypeError(
                f"{self.name}() takes {len(self.param_types)} arguments but {len(args)} were given"
            )
        return self.session._invoke_callback(self, args)

    def __repr__(self):
        return f"<callback {self.name} id={self.callback_id}>"


class WorkerSession:
    """Dispatch loop for one controller connection.

    Exactly one command is processed at a time. Recoverable failures (engine
    errors, bad values) are answered with ERROR; protocol and channel
    failures close the session and propagate out of `run()`.
    """

    def __init__(
        self,
        stream: BinaryStream,
        engine: ExecutionEngine,
        registry: Optional[TypeRegistry] = None,
        config: Optional[SessionConfig] = None,
        console: Optional[ConsoleCapture] = None,
        graphics: Optional[GraphicsCapture] = None,
    ):
        """Create a worker session

        Args:
            stream: Connected channel to the controller
            engine: Execution engine commands are run against
            registry: Type registry (frozen on construction)
            config: Session configuration
            console: Console capture (defaults to the engine)
            graphics: Graphics capture (defaults to the engine)
        """
        self.stream = stream
        self.engine = engine
        self.registry = (registry if registry is not None else default_registry()).freeze()
        self.config = config if config is not None else SessionConfig()
        self.console = console if console is not None else engine
        self.graphics = graphics if graphics is not None else engine
        self.stream.max_payload = self.config.max_payload

        self._permit = SendPermit()
        self._callbacks: List[_PendingCallback] = []
        self._fatal_error: Optional[FatalError] = None
        self._input_error: Optional[ValueDecodeError] = None
        self._state = WorkerState.AWAITING_COMMAND

    @property
    def state(self) -> WorkerState:
        return self._state

    @property
    def callback_depth(self) -> int:
        """Number of callback exchanges currently open"""
        return len(self._callbacks)

    # -----------------------------------------------------------------
    # Main loop
    # -----------------------------------------------------------------

    def run(self) -> None:
        """Validate the handshake and serve commands until EXIT

        Raises:
            FatalError: On handshake mismatch, protocol violation or channel failure
        """
        try:
            accept_handshake(self.stream, self.config.magic_number)
            while True:
                self._state = WorkerState.AWAITING_COMMAND
                command = read_command(self.stream)
                logger.debug("Requested command: %s", command.name)
                if command == Command.EXIT:
                    return
                self._dispatch(command)
        except FatalError as e:
            logger.warning("Worker session failed: %s", e)
            raise
        finally:
            self._close()

    def _dispatch(self, command: Command) -> None:
        self._input_error = None
        if command == Command.SET_VALUE:
            name = self._read_string()
            typed = self._read_typed()
            self._guarded(lambda: self._set_value(name, typed.value))

        elif command == Command.GET_VALUE:
            name = self._read_string()
            type_tag = self.stream.read_int32()
            self._guarded(lambda: self._get_value(name, type_tag))

        elif command == Command.SET_CALLBACK:
            name = self._read_string()
            callback_id = self.stream.read_uint32()
            result_type = self.stream.read_int32()
            param_count = self.stream.read_count()
            param_types = [self.stream.read_int32() for _ in range(param_count)]
            self._guarded(lambda: self._set_callback(name, callback_id, result_type, param_types))

        elif command == Command.RUN_SCRIPT:
            code = self._read_string()
            result_type = self.stream.read_int32()
            self._guarded(lambda: self._run_script(code, result_type))

        elif command == Command.GET_CONSOLE_OUTPUT:
            self._guarded(self._get_console_output)

        elif command == Command.INIT_PLOT:
            width = self.stream.read_uint32()
            height = self.stream.read_uint32()
            self._guarded(lambda: self._init_plot(width, height))

        elif command == Command.GET_PLOT:
            self._guarded(self._get_plot)

        else:
            raise ProtocolError(f"unhandled command: {command}")

    def _guarded(self, action: Callable[[], None]) -> None:
        """Run a command body once all of its input has been read.

        Fatal errors propagate. Anything else becomes an ERROR reply, unless a
        callback already hit a fatal error underneath it. An argument that
        failed to decode fails the command here.
        """
        self._permit.allow()
        self._state = WorkerState.EXECUTING
        try:
            if self._input_error is not None:
                raise self._input_error
            action()
        except FatalError:
            raise
        except Exception as e:
            if self._fatal_error is not None:
                raise self._fatal_error from e
            message = str(e) or type(e).__name__
            logger.info("Command failed: %s", message)
            self._send_error(message)
            return
        if self._fatal_error is not None:
            # Script code swallowed the failure; the stream is still unusable
            raise self._fatal_error

    def _read_string(self) -> str:
        try:
            return self.stream.read_string()
        except ValueDecodeError as e:
            self._defer_input_error(e)
            return ""

    def _read_typed(self) -> Optional[TypedValue]:
        try:
            return self.registry.read_typed(self.stream)
        except ValueDecodeError as e:
            self._defer_input_error(e)
            return None

    def _defer_input_error(self, error: ValueDecodeError) -> None:
        # Bytes were consumed in full; keep reading so the stream stays in sync
        if self._input_error is None:
            self._input_error = error

    # -----------------------------------------------------------------
    # Commands
    # -----------------------------------------------------------------

    def _set_value(self, name: str, value: Any) -> None:
        self.engine.bind(name, value)
        self._send_reply(Reply.OK)

    def _get_value(self, name: str, type_tag: int) -> None:
        value = self.engine.lookup(name)
        self._send_value(type_tag, value)

    def _set_callback(self, name: str, callback_id: int, result_type: int, param_types: List[int]) -> None:
        for tag in [result_type] + param_types:
            if tag != TypeTag.VOID and not self.registry.is_registered(tag):
                raise ContractError(f"callback {name} uses unregistered {tag_name(tag)}")
        if TypeTag.VOID in param_types:
            raise ContractError(f"callback {name} declares a void parameter")
        stub = CallbackStub(self, name, callback_id, result_type, param_types)
        self.engine.bind(name, stub)
        self._send_reply(Reply.OK)
        logger.debug("Callback %s initialized (id %d)", name, callback_id)

    def _run_script(self, code: str, result_type: int) -> None:
        segments = split_script(code)
        for segment in segments[:-1]:
            logger.debug("src: %s", segment)
            self.engine.evaluate(segment)
        logger.debug("src: %s", segments[-1])
        result = self.engine.evaluate(segments[-1])

        if result_type == TypeTag.VOID:
            self._send_reply(Reply.OK)
        else:
            logger.debug("Sending reply for type %d", result_type)
            self._send_value(result_type, result)

    def _get_console_output(self) -> None:
        output = self.console.drain_output()
        self._send_value(TypeTag.STRING, output)

    def _init_plot(self, width: int, height: int) -> None:
        self.graphics.begin_capture(width, height)
        self._send_reply(Reply.OK)

    def _get_plot(self) -> None:
        data = self.graphics.end_capture()
        self._send_value(TypeTag.BYTES, data)

    # -----------------------------------------------------------------
    # Callbacks
    # -----------------------------------------------------------------

    def _invoke_callback(self, stub: CallbackStub, args: tuple) -> Any:
        """Run one nested CALLBACK_INVOKE exchange and return its result"""
        if self._fatal_error is not None:
            raise self._fatal_error
        if self._state == WorkerState.CLOSED:
            raise ContractError(f"callback {stub.name} called after the session closed")

        # Encode everything first so a bad argument never reaches the wire
        payload = BinaryStream.buffer()
        payload.write_uint32(stub.callback_id)
        for tag, value in zip(stub.param_types, args):
            payload.write(self.registry.encode_typed(tag, value))

        self._permit.consume(f"callback {stub.name}")
        outer_state = self._state
        self._callbacks.append(_PendingCallback(stub.callback_id, stub.name))
        self._state = WorkerState.AWAITING_CALLBACK_REPLY
        logger.debug("Callback %s called (id %d)", stub.name, stub.callback_id)
        try:
            write_reply(self.stream, Reply.CALLBACK_INVOKE, payload.getvalue())
            return self._read_callback_result(stub)
        except FatalError as e:
            self._fatal_error = e
            raise
        finally:
            self._callbacks.pop()
            self._state = outer_state
            if self._fatal_error is None:
                self._permit.allow()

    def _read_callback_result(self, stub: CallbackStub) -> Any:
        reply = read_reply(self.stream)
        if reply == Reply.OK:
            if stub.result_type != TypeTag.VOID:
                raise ProtocolError(f"callback {stub.name} returned no value, expected {tag_name(stub.result_type)}")
            return None
        if reply == Reply.VALUE:
            if stub.result_type == TypeTag.VOID:
                raise ProtocolError(f"callback {stub.name} returned a value, expected none")
            tag = self.stream.read_int32()
            if tag != stub.result_type:
                raise ProtocolError(
                    f"callback {stub.name} returned {tag_name(tag)}, expected {tag_name(stub.result_type)}"
                )
            return self.registry.decode(self.stream, tag)
        if reply == Reply.ERROR:
            raise CallbackError(self.stream.read_string(errors="replace"))
        raise ProtocolError(f"unexpected {reply.name} while waiting for callback {stub.name}")

    # -----------------------------------------------------------------
    # Replies
    # -----------------------------------------------------------------

    def _send_reply(self, reply: Reply, payload: bytes = b"") -> None:
        self._permit.consume(f"{reply.name} reply")
        write_reply(self.stream, reply, payload)

    def _send_value(self, type_tag: int, value: Any) -> None:
        payload = self.registry.encode_typed(type_tag, value)
        self._send_reply(Reply.VALUE, payload)

    def _send_error(self, message: str) -> None:
        buf = BinaryStream.buffer()
        buf.write_string(message)
        self._send_reply(Reply.ERROR, buf.getvalue())

    def _close(self) -> None:
        self._state = WorkerState.CLOSED
        self._permit.revoke()
        self.stream.close()
