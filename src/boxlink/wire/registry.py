"""Type registry for marshalling values across the channel

Every type tag maps to exactly one codec. A codec is resolved to one of
three encoding strategies when it is registered:

- PRIMITIVE: a fixed-width scalar copied as its native binary layout
- SELF_DESCRIBING: a class carrying `TYPE_TAG` with `serialize(stream)`
  and a `deserialize(stream)` classmethod
- REGISTERED_CONTAINER: a free encode/decode function pair for a Python
  container type (strings, sequences, documents)

The registry is built once at startup and frozen before the first session
uses it. Sessions freeze the registry they are handed.

## Typed value layout

```
┌────────────────────────────────────┐
│  4 bytes: int32 type tag           │
├────────────────────────────────────┤
│  N bytes: payload for that tag     │
└────────────────────────────────────┘
```
"""

import math
import struct
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from boxlink.errors import (
    RegistryError,
    UnknownTypeTagError,
    ValueEncodeError,
)
from boxlink.wire.stream import BinaryStream
from boxlink.wire.typetag import INT32_MAX, INT32_MIN, TypeTag, is_builtin, tag_name


EncodeFn = Callable[[BinaryStream, Any], None]
DecodeFn = Callable[[BinaryStream], Any]


class EncodingKind(Enum):
    """How a registered type is put on the wire"""
    PRIMITIVE = "primitive"
    SELF_DESCRIBING = "self_describing"
    REGISTERED_CONTAINER = "registered_container"


@dataclass(frozen=True)
class TypeCodec:
    """Encode/decode pair for one type tag"""
    tag: int
    kind: EncodingKind
    py_type: type
    encode: EncodeFn
    decode: DecodeFn


@dataclass
class TypedValue:
    """A decoded value together with the tag it travelled under"""
    tag: int
    value: Any


def is_self_describing(cls: type) -> bool:
    """Check if a class provides TYPE_TAG, serialize() and deserialize()"""
    return (
        isinstance(getattr(cls, "TYPE_TAG", None), int)
        and callable(getattr(cls, "serialize", None))
        and callable(getattr(cls, "deserialize", None))
    )


# =========================================================================
# Built-in codecs
# =========================================================================

def _check_int32(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueEncodeError(f"expected int for int32, got {type(value).__name__}")
    if value < INT32_MIN or value > INT32_MAX:
        raise ValueEncodeError(f"value {value} out of int32 range")
    return value


def _check_float32(value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueEncodeError(f"expected float for float32, got {type(value).__name__}")
    value = float(value)
    if math.isfinite(value) and abs(value) > 3.4028234663852886e38:
        raise ValueEncodeError(f"value {value} out of float32 range")
    return value


def _encode_int32(stream: BinaryStream, value: Any) -> None:
    stream.write_int32(_check_int32(value))


def _encode_float32(stream: BinaryStream, value: Any) -> None:
    stream.write_float32(_check_float32(value))


def _encode_int32_vector(stream: BinaryStream, value: Any) -> None:
    if not isinstance(value, (list, tuple)):
        raise ValueEncodeError(f"expected list for int32 vector, got {type(value).__name__}")
    items = [_check_int32(v) for v in value]
    stream.write_size(len(items))
    if items:
        stream.write(struct.pack(f"@{len(items)}i", *items))


def _decode_int32_vector(stream: BinaryStream) -> List[int]:
    count = stream.read_count()
    if count == 0:
        return []
    return list(struct.unpack(f"@{count}i", stream.read_exact(4 * count)))


def _encode_float32_vector(stream: BinaryStream, value: Any) -> None:
    if not isinstance(value, (list, tuple)):
        raise ValueEncodeError(f"expected list for float32 vector, got {type(value).__name__}")
    items = [_check_float32(v) for v in value]
    stream.write_size(len(items))
    if items:
        stream.write(struct.pack(f"@{len(items)}f", *items))


def _decode_float32_vector(stream: BinaryStream) -> List[float]:
    count = stream.read_count()
    if count == 0:
        return []
    return list(struct.unpack(f"@{count}f", stream.read_exact(4 * count)))


def _encode_string(stream: BinaryStream, value: Any) -> None:
    if not isinstance(value, str):
        raise ValueEncodeError(f"expected str for string, got {type(value).__name__}")
    stream.write_string(value)


def _encode_bytes(stream: BinaryStream, value: Any) -> None:
    if not isinstance(value, (bytes, bytearray, memoryview)):
        raise ValueEncodeError(f"expected bytes, got {type(value).__name__}")
    stream.write_bytes(bytes(value))


# =========================================================================
# TypeRegistry
# =========================================================================

class TypeRegistry:
    """Maps type tags to codecs, one table per direction.

    Usage:
    ```python
    registry = default_registry()
    registry.register_type(Point)
    registry.freeze()
    ```
    """

    def __init__(self):
        self._encoders: Dict[int, TypeCodec] = {}
        self._decoders: Dict[int, TypeCodec] = {}
        self._frozen = False

    @property
    def frozen(self) -> bool:
        return self._frozen

    def freeze(self) -> "TypeRegistry":
        """Make the registry immutable. Idempotent."""
        self._frozen = True
        return self

    def tags(self) -> List[int]:
        """All registered tags, sorted"""
        return sorted(self._encoders)

    def is_registered(self, tag: int) -> bool:
        return tag in self._encoders

    def _install(self, codec: TypeCodec) -> None:
        if self._frozen:
            raise RegistryError(f"registry is frozen, cannot register type tag {codec.tag}")
        if codec.tag == TypeTag.VOID:
            raise RegistryError("type tag 0 is reserved for void")
        if codec.tag in self._encoders or codec.tag in self._decoders:
            raise RegistryError(f"type tag {codec.tag} registered twice")
        self._encoders[codec.tag] = codec
        self._decoders[codec.tag] = codec

    def register_primitive(self, tag: int, fmt: str, py_type: type) -> None:
        """Register a fixed-width scalar encoded with a native struct format"""
        packer = struct.Struct("@" + fmt)

        def encode(stream: BinaryStream, value: Any) -> None:
            if not isinstance(value, py_type) or (isinstance(value, bool) and py_type is not bool):
                raise ValueEncodeError(
                    f"expected {py_type.__name__} for {tag_name(tag)}, got {type(value).__name__}"
                )
            try:
                stream.write(packer.pack(value))
            except struct.error as e:
                raise ValueEncodeError(f"cannot encode {value!r} as {tag_name(tag)}: {e}")

        def decode(stream: BinaryStream) -> Any:
            return packer.unpack(stream.read_exact(packer.size))[0]

        self._install(TypeCodec(tag, EncodingKind.PRIMITIVE, py_type, encode, decode))

    def register_type(self, cls: type) -> None:
        """Register a self-describing class under its TYPE_TAG

        The class must provide:
            TYPE_TAG: non-negative int
            serialize(self, stream: BinaryStream) -> None
            deserialize(cls, stream: BinaryStream) -> instance   (classmethod)
        """
        if not is_self_describing(cls):
            raise RegistryError(
                f"{cls.__name__} is not self-describing (needs TYPE_TAG, serialize, deserialize)"
            )
        tag = cls.TYPE_TAG
        if is_builtin(tag):
            raise RegistryError(f"negative type tag {tag} is reserved for built-ins")

        def encode(stream: BinaryStream, value: Any) -> None:
            if not isinstance(value, cls):
                raise ValueEncodeError(
                    f"expected {cls.__name__} for type tag {tag}, got {type(value).__name__}"
                )
            value.serialize(stream)

        self._install(TypeCodec(tag, EncodingKind.SELF_DESCRIBING, cls, encode, cls.deserialize))

    def register_container(
        self,
        tag: int,
        py_type: type,
        encode: EncodeFn,
        decode: DecodeFn,
        builtin: bool = False,
    ) -> None:
        """Register a free encode/decode function pair for a container type

        Args:
            tag: Type tag (non-negative unless `builtin`)
            py_type: Python type the pair handles
            encode: Writes a value to the stream
            decode: Reads a value from the stream
            builtin: Allow a reserved negative tag (built-ins only)
        """
        if is_builtin(tag) and not builtin:
            raise RegistryError(f"negative type tag {tag} is reserved for built-ins")
        if is_self_describing(py_type):
            raise RegistryError(
                f"{py_type.__name__} is self-describing; register it with register_type()"
            )
        self._install(TypeCodec(tag, EncodingKind.REGISTERED_CONTAINER, py_type, encode, decode))

    # -----------------------------------------------------------------
    # Encoding / decoding
    # -----------------------------------------------------------------

    def codec(self, tag: int) -> Optional[TypeCodec]:
        return self._encoders.get(tag)

    def encode(self, tag: int, value: Any) -> bytes:
        """Encode `value` as `tag` into bytes

        Encoding happens in memory, so a failure never leaves partial bytes
        on a channel.

        Raises:
            ValueEncodeError: If no encoder is registered or the value does not fit
        """
        codec = self._encoders.get(tag)
        if codec is None:
            raise ValueEncodeError(f"no encoder registered for type tag {tag}")
        buf = BinaryStream.buffer()
        try:
            codec.encode(buf, value)
        except ValueEncodeError:
            raise
        except (TypeError, ValueError, OverflowError, struct.error) as e:
            raise ValueEncodeError(f"cannot encode value as {tag_name(tag)}: {e}")
        return buf.getvalue()

    def encode_typed(self, tag: int, value: Any) -> bytes:
        """Encode `value` prefixed by its int32 tag"""
        head = BinaryStream.buffer()
        head.write_int32(tag)
        return head.getvalue() + self.encode(tag, value)

    def decode(self, stream: BinaryStream, tag: int) -> Any:
        """Decode one payload of type `tag` from the stream

        Raises:
            UnknownTypeTagError: If no decoder is registered (fatal)
        """
        codec = self._decoders.get(tag)
        if codec is None:
            raise UnknownTypeTagError(tag)
        return codec.decode(stream)

    def read_typed(self, stream: BinaryStream) -> TypedValue:
        """Read an int32 tag followed by its payload"""
        tag = stream.read_int32()
        return TypedValue(tag=tag, value=self.decode(stream, tag))

    def write_typed(self, stream: BinaryStream, tag: int, value: Any) -> None:
        stream.write(self.encode_typed(tag, value))


def register_builtin_types(registry: TypeRegistry) -> None:
    """Install the built-in primitive and container codecs"""
    registry._install(TypeCodec(
        TypeTag.INT32, EncodingKind.PRIMITIVE, int,
        _encode_int32, BinaryStream.read_int32,
    ))
    registry._install(TypeCodec(
        TypeTag.FLOAT32, EncodingKind.PRIMITIVE, float,
        _encode_float32, BinaryStream.read_float32,
    ))
    registry.register_container(
        TypeTag.INT32_VECTOR, list, _encode_int32_vector, _decode_int32_vector, builtin=True
    )
    registry.register_container(
        TypeTag.FLOAT32_VECTOR, list, _encode_float32_vector, _decode_float32_vector, builtin=True
    )
    registry.register_container(
        TypeTag.STRING, str, _encode_string, BinaryStream.read_string, builtin=True
    )
    registry.register_container(
        TypeTag.BYTES, bytes, _encode_bytes, BinaryStream.read_bytes, builtin=True
    )


def default_registry() -> TypeRegistry:
    """Create a new (unfrozen) registry holding the built-in types"""
    registry = TypeRegistry()
    register_builtin_types(registry)
    return registry
