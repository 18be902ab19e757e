"""Tests for the type registry and value marshalling"""

import struct

import cbor2
import pytest

from boxlink.errors import (
    ChannelClosedError,
    RegistryError,
    UnknownTypeTagError,
    ValueDecodeError,
    ValueEncodeError,
)
from boxlink.wire.cbor_types import register_cbor_type
from boxlink.wire.registry import (
    EncodingKind,
    TypeRegistry,
    TypedValue,
    default_registry,
)
from boxlink.wire.stream import BinaryStream
from boxlink.wire.typetag import TypeTag, is_builtin


class Point:
    """Self-describing test type"""
    TYPE_TAG = 2

    def __init__(self, x: int, y: int):
        self.x = x
        self.y = y

    def serialize(self, stream: BinaryStream) -> None:
        stream.write_int32(self.x)
        stream.write_int32(self.y)

    @classmethod
    def deserialize(cls, stream: BinaryStream) -> "Point":
        return cls(stream.read_int32(), stream.read_int32())

    def __eq__(self, other):
        return isinstance(other, Point) and (self.x, self.y) == (other.x, other.y)


def roundtrip(registry: TypeRegistry, tag: int, value):
    data = registry.encode_typed(tag, value)
    stream = BinaryStream.buffer(data)
    typed = registry.read_typed(stream)
    assert typed.tag == tag
    # Every byte consumed
    with pytest.raises(ChannelClosedError):
        stream.read_uint8()
    return typed.value


# TEST101: int32 values survive encode/decode, including the extremes
@pytest.mark.parametrize("value", [0, -1, 7, 2147483647, -2147483648])
def test_int32_roundtrip(value):
    assert roundtrip(default_registry(), TypeTag.INT32, value) == value


# TEST102: float32 values exactly representable in single precision survive
@pytest.mark.parametrize("value", [0.0, -1.5, 3.25, 65504.0, 3.4028234663852886e38])
def test_float32_roundtrip(value):
    assert roundtrip(default_registry(), TypeTag.FLOAT32, value) == value


# TEST103: Vectors round trip, empty and non-empty
def test_vector_roundtrip():
    registry = default_registry()
    assert roundtrip(registry, TypeTag.INT32_VECTOR, []) == []
    assert roundtrip(registry, TypeTag.INT32_VECTOR, [1, -2, 2147483647]) == [1, -2, 2147483647]
    assert roundtrip(registry, TypeTag.FLOAT32_VECTOR, []) == []
    assert roundtrip(registry, TypeTag.FLOAT32_VECTOR, [0.5, -2.0]) == [0.5, -2.0]
    assert roundtrip(registry, TypeTag.INT32_VECTOR, (4, 5)) == [4, 5]


# TEST104: Strings round trip, empty and unicode-bearing
@pytest.mark.parametrize("value", ["", "hello", "héllo wörld ✓ 日本語"])
def test_string_roundtrip(value):
    assert roundtrip(default_registry(), TypeTag.STRING, value) == value


# TEST105: Byte blobs round trip
def test_bytes_roundtrip():
    registry = default_registry()
    assert roundtrip(registry, TypeTag.BYTES, b"") == b""
    assert roundtrip(registry, TypeTag.BYTES, b"\x89PNG\r\n\x1a\n") == b"\x89PNG\r\n\x1a\n"
    assert roundtrip(registry, TypeTag.BYTES, bytearray(b"ab")) == b"ab"


# TEST106: Built-ins resolve to the expected encoding strategy
def test_builtin_encoding_kinds():
    registry = default_registry()
    assert registry.codec(TypeTag.INT32).kind == EncodingKind.PRIMITIVE
    assert registry.codec(TypeTag.FLOAT32).kind == EncodingKind.PRIMITIVE
    assert registry.codec(TypeTag.STRING).kind == EncodingKind.REGISTERED_CONTAINER
    assert registry.codec(TypeTag.INT32_VECTOR).kind == EncodingKind.REGISTERED_CONTAINER
    assert registry.tags() == sorted([-21, -20, -12, -11, -2, -1])


# TEST107: Self-describing types register under their TYPE_TAG
def test_self_describing_type():
    registry = default_registry()
    registry.register_type(Point)
    assert registry.codec(2).kind == EncodingKind.SELF_DESCRIBING
    assert roundtrip(registry, 2, Point(3, -4)) == Point(3, -4)


# TEST108: A self-describing class cannot also be registered as a container
def test_self_describing_rejected_as_container():
    registry = default_registry()
    with pytest.raises(RegistryError):
        registry.register_container(5, Point, lambda s, v: None, lambda s: None)


# TEST109: Registering a tag twice is a registry error
def test_duplicate_tag_rejected():
    registry = default_registry()
    registry.register_type(Point)
    with pytest.raises(RegistryError):
        registry.register_type(Point)
    with pytest.raises(RegistryError):
        registry.register_primitive(TypeTag.INT32, "i", int)


# TEST110: Integration types may not use negative or void tags
def test_reserved_tags_rejected():
    registry = default_registry()

    class Negative(Point):
        TYPE_TAG = -3

    with pytest.raises(RegistryError):
        registry.register_type(Negative)
    with pytest.raises(RegistryError):
        registry.register_container(-30, dict, lambda s, v: None, lambda s: None)
    with pytest.raises(RegistryError):
        registry.register_primitive(0, "q", int)


# TEST111: A frozen registry refuses new registrations
def test_frozen_registry_is_immutable():
    registry = default_registry().freeze()
    assert registry.frozen
    with pytest.raises(RegistryError):
        registry.register_type(Point)


# TEST112: Custom primitives use the native struct layout
def test_custom_primitive():
    registry = default_registry()
    registry.register_primitive(10, "q", int)
    assert registry.encode(10, -9) == struct.pack("@q", -9)
    assert roundtrip(registry, 10, 2 ** 40) == 2 ** 40
    with pytest.raises(ValueEncodeError):
        registry.encode(10, 2 ** 70)
    with pytest.raises(ValueEncodeError):
        registry.encode(10, "nope")


# TEST113: Encoding with an unregistered tag is a recoverable encode error
def test_encode_unknown_tag():
    with pytest.raises(ValueEncodeError):
        default_registry().encode(77, 1)


# TEST114: Decoding an unregistered tag is fatal
def test_decode_unknown_tag():
    out = BinaryStream.buffer()
    out.write_int32(77)
    out.write_int32(1)
    with pytest.raises(UnknownTypeTagError) as exc_info:
        default_registry().read_typed(BinaryStream.buffer(out.getvalue()))
    assert exc_info.value.tag == 77


# TEST115: Values of the wrong Python type are rejected
@pytest.mark.parametrize("tag,value", [
    (TypeTag.INT32, "1"),
    (TypeTag.INT32, True),
    (TypeTag.INT32, 1.0),
    (TypeTag.INT32, 2 ** 31),
    (TypeTag.FLOAT32, "1.0"),
    (TypeTag.FLOAT32, 1e39),
    (TypeTag.STRING, b"bytes"),
    (TypeTag.BYTES, "text"),
    (TypeTag.INT32_VECTOR, 5),
    (TypeTag.FLOAT32_VECTOR, ["a"]),
])
def test_wrong_python_type_rejected(tag, value):
    with pytest.raises(ValueEncodeError):
        default_registry().encode(tag, value)


# TEST116: A failing element leaves nothing written to the target stream
def test_encode_is_atomic():
    registry = default_registry()
    target = BinaryStream.buffer()
    with pytest.raises(ValueEncodeError):
        registry.write_typed(target, TypeTag.INT32_VECTOR, [1, 2, "three"])
    assert target.getvalue() == b""


# TEST117: Ints are accepted for float32
def test_int_accepted_for_float32():
    assert roundtrip(default_registry(), TypeTag.FLOAT32, 2) == 2.0


# TEST118: CBOR documents round trip as registered containers
def test_cbor_type_roundtrip():
    registry = default_registry()
    register_cbor_type(registry, 1, dict)
    value = {"name": "run", "args": [1, 2.5, "x"], "nested": {"ok": True}}
    assert registry.codec(1).kind == EncodingKind.REGISTERED_CONTAINER
    assert roundtrip(registry, 1, value) == value


# TEST119: A malformed CBOR document is consumed fully and reported as decode error
def test_cbor_malformed_document():
    registry = default_registry()
    register_cbor_type(registry, 1, dict)
    out = BinaryStream.buffer()
    out.write_int32(1)
    out.write_bytes(b"\xff\xff")
    out.write_int32(99)
    stream = BinaryStream.buffer(out.getvalue())
    with pytest.raises(ValueDecodeError):
        registry.read_typed(stream)
    # Stream is still in sync
    assert stream.read_int32() == 99


# TEST120: A CBOR document of the wrong shape is rejected
def test_cbor_wrong_shape():
    registry = default_registry()
    register_cbor_type(registry, 1, dict)
    out = BinaryStream.buffer()
    out.write_int32(1)
    out.write_bytes(cbor2.dumps([1, 2]))
    with pytest.raises(ValueDecodeError):
        registry.read_typed(BinaryStream.buffer(out.getvalue()))
    with pytest.raises(ValueEncodeError):
        registry.encode(1, [1, 2])


# TEST121: TypedValue carries the tag it was read under
def test_typed_value():
    registry = default_registry()
    typed = registry.read_typed(BinaryStream.buffer(registry.encode_typed(TypeTag.STRING, "s")))
    assert typed == TypedValue(tag=TypeTag.STRING, value="s")


# TEST122: Negative tags are the built-in range; a user container may use a non-negative one
def test_builtin_range():
    assert is_builtin(TypeTag.INT32)
    assert is_builtin(-99)
    assert not is_builtin(TypeTag.VOID)
    assert not is_builtin(5)

    registry = default_registry()
    registry.register_container(5, list, lambda s, v: s.write_size(len(v)), lambda s: [None] * s.read_size())
    assert registry.is_registered(5)


# TEST123: A string value with invalid UTF-8 is a recoverable decode error
def test_string_invalid_utf8():
    registry = default_registry()
    data = BinaryStream.buffer()
    data.write_bytes(b"\xc3")
    data.write_int32(9)

    stream = BinaryStream.buffer(data.getvalue())
    with pytest.raises(ValueDecodeError):
        registry.decode(stream, TypeTag.STRING)
    assert stream.read_int32() == 9
