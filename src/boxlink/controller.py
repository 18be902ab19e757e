"""Controller-side session.

The controller drives a sandboxed worker: it issues one command at a time
and blocks until the worker's terminal reply arrives. While a RUN_SCRIPT is
outstanding the worker may call back into the controller; those
CALLBACK_INVOKE requests are serviced transparently by locally registered
handlers.

Usage:
```python
from boxlink.controller import ControllerSession
from boxlink.wire.stream import BinaryStream
from boxlink.wire.typetag import TypeTag

with ControllerSession(BinaryStream.from_socket(sock)) as session:
    session.set_callback("double", lambda x: 2 * x, TypeTag.INT32, [TypeTag.INT32])
    result = session.run_script("double(21)", TypeTag.INT32)
```
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from boxlink.config import SessionConfig
from boxlink.errors import (
    ContractError,
    FatalError,
    ProtocolError,
    RemoteError,
    ValueDecodeError,
)
from boxlink.wire.frame import (
    Command,
    Reply,
    SendPermit,
    read_reply,
    send_handshake,
    write_command,
    write_reply,
)
from boxlink.wire.registry import TypeRegistry, default_registry
from boxlink.wire.stream import BinaryStream
from boxlink.wire.typetag import UINT32_MAX, TypeTag, tag_name


logger = logging.getLogger(__name__)


@dataclass
class CallbackRegistration:
    """A controller-local function callable from the worker"""
    callback_id: int
    name: str
    handler: Callable[..., Any]
    result_type: int
    param_types: List[int]


@dataclass
class _CallbackFrame:
    """One callback exchange being serviced"""
    callback_id: int
    name: str


class ControllerSession:
    """Issues commands to a worker over one byte channel.

    Not thread-safe: callers must serialise access to one session.
    """

    def __init__(
        self,
        stream: BinaryStream,
        registry: Optional[TypeRegistry] = None,
        config: Optional[SessionConfig] = None,
    ):
        """Create a session and send the handshake

        Args:
            stream: Connected channel to the worker
            registry: Type registry (frozen on construction)
            config: Session configuration
        """
        self.stream = stream
        self.registry = (registry if registry is not None else default_registry()).freeze()
        self.config = config if config is not None else SessionConfig()
        self.stream.max_payload = self.config.max_payload

        self._callbacks: Dict[int, CallbackRegistration] = {}
        self._next_callback_id = 1
        self._callback_stack: List[_CallbackFrame] = []
        self._had_unrecoverable_error = False
        self._permit = SendPermit()

        send_handshake(self.stream, self.config.magic_number)
        self._permit.allow()

    def __enter__(self) -> "ControllerSession":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    @property
    def can_send_command(self) -> bool:
        return self._permit.allowed and not self._had_unrecoverable_error

    @property
    def had_unrecoverable_error(self) -> bool:
        return self._had_unrecoverable_error

    @property
    def callback_depth(self) -> int:
        """Number of callback exchanges currently being serviced"""
        return len(self._callback_stack)

    def callbacks(self) -> List[CallbackRegistration]:
        return list(self._callbacks.values())

    # -----------------------------------------------------------------
    # Commands
    # -----------------------------------------------------------------

    def write_command(self, command: Command, payload: bytes = b"") -> None:
        """Write a command and its pre-encoded arguments

        Raises:
            ContractError: If a previous command is still outstanding or the
                session had an unrecoverable error. Nothing is written.
        """
        self._check_can_send()
        self._permit.consume(f"command {command.name}")
        try:
            write_command(self.stream, command, payload)
        except FatalError as e:
            self._mark_unrecoverable(e)
            raise

    def run_script(self, code: str, result_type: int = TypeTag.VOID) -> Any:
        """Run a script in the worker and return its last value

        Callback invocations arriving before the terminal reply are
        dispatched to their registered handlers.

        Args:
            code: Script source; blank lines separate segments
            result_type: Type tag of the expected result, VOID for none

        Returns:
            The decoded result, or None when result_type is VOID

        Raises:
            RemoteError: If the script failed in the worker (recoverable)
        """
        self._check_can_send()
        args = BinaryStream.buffer()
        args.write_string(code)
        args.write_int32(result_type)
        self.write_command(Command.RUN_SCRIPT, args.getvalue())
        return self._read_terminal_reply(result_type, allow_callbacks=True)

    def set_value(self, name: str, value: Any, type_tag: int) -> None:
        """Bind a value under `name` in the worker's engine"""
        self._check_can_send()
        args = BinaryStream.buffer()
        args.write_string(name)
        args.write(self.registry.encode_typed(type_tag, value))
        self.write_command(Command.SET_VALUE, args.getvalue())
        self._read_terminal_reply(TypeTag.VOID)

    def get_value(self, name: str, type_tag: int) -> Any:
        """Fetch the value bound under `name`, encoded as `type_tag`"""
        if type_tag == TypeTag.VOID:
            raise ContractError("get_value() needs a non-void type tag")
        self._check_can_send()
        args = BinaryStream.buffer()
        args.write_string(name)
        args.write_int32(type_tag)
        self.write_command(Command.GET_VALUE, args.getvalue())
        return self._read_terminal_reply(type_tag)

    def set_callback(
        self,
        name: str,
        handler: Callable[..., Any],
        result_type: int,
        param_types: List[int],
        callback_id: Optional[int] = None,
    ) -> int:
        """Install `name` in the worker as a function that calls `handler`

        Args:
            name: Name bound in the worker's engine
            handler: Local function receiving the decoded arguments
            result_type: Type tag of the handler's result, VOID for none
            param_types: Type tags of the parameters, in order
            callback_id: Explicit id; assigned automatically when omitted

        Returns:
            The callback id
        """
        self._check_can_send()
        for tag in [result_type] + list(param_types):
            if tag != TypeTag.VOID and not self.registry.is_registered(tag):
                raise ContractError(f"callback {name} uses unregistered {tag_name(tag)}")
        if callback_id is None:
            callback_id = self._next_callback_id
            while callback_id in self._callbacks:
                callback_id += 1
        if callback_id < 0 or callback_id > UINT32_MAX:
            raise ContractError(f"callback id {callback_id} does not fit in uint32")
        if callback_id in self._callbacks:
            raise ContractError(f"callback id {callback_id} already registered")

        args = BinaryStream.buffer()
        args.write_string(name)
        args.write_uint32(callback_id)
        args.write_int32(result_type)
        args.write_size(len(param_types))
        for tag in param_types:
            args.write_int32(tag)
        self.write_command(Command.SET_CALLBACK, args.getvalue())
        self._read_terminal_reply(TypeTag.VOID)

        self._callbacks[callback_id] = CallbackRegistration(
            callback_id=callback_id,
            name=name,
            handler=handler,
            result_type=result_type,
            param_types=list(param_types),
        )
        self._next_callback_id = max(self._next_callback_id, callback_id + 1)
        return callback_id

    def get_console_output(self) -> str:
        """Drain the worker's captured console output"""
        self.write_command(Command.GET_CONSOLE_OUTPUT)
        return self._read_terminal_reply(TypeTag.STRING)

    def init_plot(self, width: int, height: int) -> None:
        """Start capturing graphics output at the given size"""
        for v in (width, height):
            if v < 0 or v > UINT32_MAX:
                raise ContractError(f"plot dimension {v} does not fit in uint32")
        self._check_can_send()
        args = BinaryStream.buffer()
        args.write_uint32(width)
        args.write_uint32(height)
        self.write_command(Command.INIT_PLOT, args.getvalue())
        self._read_terminal_reply(TypeTag.VOID)

    def get_plot(self) -> bytes:
        """Finish the graphics capture and return the rendered image"""
        self.write_command(Command.GET_PLOT)
        return self._read_terminal_reply(TypeTag.BYTES)

    def close(self) -> None:
        """Send EXIT if the session is healthy, then close the stream.

        Never raises.
        """
        if self.can_send_command:
            self._permit.revoke()
            try:
                write_command(self.stream, Command.EXIT)
            except Exception as e:
                logger.debug("Failed to send EXIT: %s", e)
        self._permit.revoke()
        try:
            self.stream.close()
        except Exception as e:
            logger.debug("Failed to close stream: %s", e)

    # -----------------------------------------------------------------
    # Replies
    # -----------------------------------------------------------------

    def _check_can_send(self) -> None:
        if self._had_unrecoverable_error:
            raise ContractError("session cannot continue due to previous unrecoverable errors")
        if not self._permit.allowed:
            raise ContractError("session cannot send a command at this time")

    def _mark_unrecoverable(self, error: BaseException) -> None:
        if not self._had_unrecoverable_error:
            logger.warning("Session marked unrecoverable: %s", error)
        self._had_unrecoverable_error = True
        self._permit.revoke()

    def _read_terminal_reply(self, result_type: int, allow_callbacks: bool = False) -> Any:
        """Read replies until a terminal one arrives

        Raises:
            RemoteError: On an ERROR reply (session stays usable)
            FatalError: On any protocol or channel failure (session unusable)
            Exception: Whatever a callback handler raised (session unusable)
        """
        try:
            while True:
                reply = read_reply(self.stream)

                if reply == Reply.CALLBACK_INVOKE:
                    if not allow_callbacks:
                        raise ProtocolError("worker sent a callback outside of a script")
                    self._service_callback()
                    continue

                if reply == Reply.ERROR:
                    message = self.stream.read_string(errors="replace")
                    self._permit.allow()
                    raise RemoteError(message)

                if reply == Reply.OK:
                    if result_type != TypeTag.VOID:
                        raise ProtocolError(
                            f"worker did not return a value when {tag_name(result_type)} was requested"
                        )
                    self._permit.allow()
                    return None

                # Reply.VALUE
                if result_type == TypeTag.VOID:
                    raise ProtocolError("worker returned a value when none was requested")
                tag = self.stream.read_int32()
                if tag != result_type:
                    raise ProtocolError(
                        f"worker returned {tag_name(tag)}, expected {tag_name(result_type)}"
                    )
                try:
                    value = self.registry.decode(self.stream, tag)
                except ValueDecodeError:
                    # Payload fully consumed, the stream is still in sync
                    self._permit.allow()
                    raise
                self._permit.allow()
                return value
        except (RemoteError, ValueDecodeError) as e:
            # Only a fully consumed terminal reply leaves the permit allowed
            if not self._permit.allowed:
                self._mark_unrecoverable(e)
            raise
        except BaseException as e:
            self._mark_unrecoverable(e)
            raise

    def _service_callback(self) -> None:
        """Answer one CALLBACK_INVOKE from the worker

        The worker is blocked mid-script until it gets an answer, so any
        failure between reading the invocation and writing the answer ends
        the session.
        """
        callback_id = self.stream.read_uint32()
        registration = self._callbacks.get(callback_id)
        if registration is None:
            raise ProtocolError(f"worker invoked unknown callback id {callback_id}")

        frame = _CallbackFrame(callback_id, registration.name)
        self._callback_stack.append(frame)
        try:
            args = self._read_callback_args(registration)
            result = registration.handler(*args)
            if registration.result_type == TypeTag.VOID:
                reply, payload = Reply.OK, b""
            else:
                reply = Reply.VALUE
                payload = self.registry.encode_typed(registration.result_type, result)
        except BaseException as e:
            logger.debug("Callback %s (id %d) failed: %s", frame.name, frame.callback_id, e)
            self._mark_unrecoverable(e)
            self.stream.close()
            raise
        finally:
            self._callback_stack.pop()

        write_reply(self.stream, reply, payload)

    def _read_callback_args(self, registration: CallbackRegistration) -> List[Any]:
        args = []
        for expected in registration.param_types:
            tag = self.stream.read_int32()
            if tag != expected:
                raise ProtocolError(
                    f"callback {registration.name} argument is {tag_name(tag)}, expected {tag_name(expected)}"
                )
            args.append(self.registry.decode(self.stream, tag))
        return args
