"""Type tags for values crossing the channel

Negative tags are reserved for built-in primitives; non-negative tags
belong to types registered by the execution-engine integration layer.
Tags only have to be stable between the two ends of one session.
"""

from enum import IntEnum
from typing import Optional


class TypeTag(IntEnum):
    """Built-in type tags"""
    VOID = 0
    INT32 = -1
    FLOAT32 = -2
    INT32_VECTOR = -11
    FLOAT32_VECTOR = -12
    STRING = -20
    BYTES = -21

    @classmethod
    def from_i32(cls, v: int) -> Optional["TypeTag"]:
        """Convert i32 to a built-in TypeTag, returns None if not built-in"""
        try:
            return cls(v)
        except ValueError:
            return None


INT32_MIN = -(2 ** 31)
INT32_MAX = 2 ** 31 - 1
UINT32_MAX = 2 ** 32 - 1


def is_builtin(tag: int) -> bool:
    """Check if a tag lies in the built-in (negative) range"""
    return tag < 0


def tag_name(tag: int) -> str:
    """Human-readable name for error messages"""
    builtin = TypeTag.from_i32(tag)
    if builtin is not None:
        return builtin.name.lower()
    return f"registered type {tag}"
