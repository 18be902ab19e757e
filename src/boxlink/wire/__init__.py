"""Wire layer: byte stream, type registry and command/reply framing"""

from boxlink.wire.stream import BinaryStream, DEFAULT_MAX_PAYLOAD, SIZE_WIDTH
from boxlink.wire.typetag import TypeTag, is_builtin, tag_name
from boxlink.wire.registry import (
    EncodingKind,
    TypeCodec,
    TypedValue,
    TypeRegistry,
    default_registry,
    register_builtin_types,
)
from boxlink.wire.cbor_types import register_cbor_type
from boxlink.wire.frame import (
    MAGIC_NUMBER,
    Command,
    Reply,
    SendPermit,
    send_handshake,
    accept_handshake,
    write_command,
    read_command,
    write_reply,
    read_reply,
)
