"""CBOR-backed structured values

Lets the integration layer ship dicts and lists without writing a codec.
The payload is one CBOR document carried as a length-prefixed blob:

```
┌─────────────────────────────────────────┐
│  size: document length                  │
├─────────────────────────────────────────┤
│  N bytes: CBOR document                 │
└─────────────────────────────────────────┘
```

Because the blob length is known up front, a malformed document is
consumed completely before it fails to parse and the stream stays in sync.
"""

from typing import Any

import cbor2

from boxlink.errors import ValueDecodeError, ValueEncodeError
from boxlink.wire.registry import TypeRegistry
from boxlink.wire.stream import BinaryStream


def encode_cbor_document(value: Any) -> bytes:
    """Encode a value as a CBOR document

    Raises:
        ValueEncodeError: If cbor2 cannot encode the value
    """
    try:
        return cbor2.dumps(value)
    except Exception as e:
        raise ValueEncodeError(f"CBOR encoding failed: {e}")


def decode_cbor_document(data: bytes) -> Any:
    """Decode a CBOR document

    Raises:
        ValueDecodeError: If the document is malformed
    """
    try:
        return cbor2.loads(data)
    except Exception as e:
        raise ValueDecodeError(f"CBOR decoding failed: {e}")


def register_cbor_type(registry: TypeRegistry, tag: int, py_type: type = dict) -> None:
    """Register `py_type` under `tag`, carried as a CBOR document

    Args:
        registry: Registry to install into (must not be frozen)
        tag: Non-negative type tag
        py_type: Python type accepted by the encoder (dict or list)
    """

    def encode(stream: BinaryStream, value: Any) -> None:
        if not isinstance(value, py_type):
            raise ValueEncodeError(
                f"expected {py_type.__name__} for type tag {tag}, got {type(value).__name__}"
            )
        stream.write_bytes(encode_cbor_document(value))

    def decode(stream: BinaryStream) -> Any:
        value = decode_cbor_document(stream.read_bytes())
        if not isinstance(value, py_type):
            raise ValueDecodeError(
                f"CBOR document for type tag {tag} is {type(value).__name__}, expected {py_type.__name__}"
            )
        return value

    registry.register_container(tag, py_type, encode, decode)
