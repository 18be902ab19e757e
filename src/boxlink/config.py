"""Session configuration

Supports configuration via:
1. Builder methods (highest priority)
2. Environment variables (BOXLINK_MAGIC_NUMBER, BOXLINK_MAX_PAYLOAD)
3. Default values
"""

import os
from typing import Optional

from boxlink.wire.frame import MAGIC_NUMBER
from boxlink.wire.stream import DEFAULT_MAX_PAYLOAD


ENV_MAGIC_NUMBER = "BOXLINK_MAGIC_NUMBER"
ENV_MAX_PAYLOAD = "BOXLINK_MAX_PAYLOAD"


def _env_int(name: str) -> Optional[int]:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return None
    try:
        return int(raw.strip(), 0)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")


class SessionConfig:
    """Configuration shared by the controller and worker sessions"""

    def __init__(
        self,
        magic_number: Optional[int] = None,
        max_payload: Optional[int] = None,
    ):
        """Create session configuration

        Args:
            magic_number: Handshake magic number (both sides must agree)
            max_payload: Largest accepted length-prefixed payload in bytes
        """
        if magic_number is None:
            magic_number = _env_int(ENV_MAGIC_NUMBER)
        if magic_number is None:
            magic_number = MAGIC_NUMBER
        if not -(2 ** 31) <= magic_number < 2 ** 31:
            raise ValueError(f"magic_number must fit in int32, got {magic_number}")

        if max_payload is None:
            max_payload = _env_int(ENV_MAX_PAYLOAD)
        if max_payload is None:
            max_payload = DEFAULT_MAX_PAYLOAD
        if max_payload <= 0:
            raise ValueError(f"max_payload must be positive, got {max_payload}")

        self.magic_number = magic_number
        self.max_payload = max_payload

    def with_magic_number(self, magic_number: int) -> "SessionConfig":
        """Return a copy with a different magic number"""
        return SessionConfig(magic_number=magic_number, max_payload=self.max_payload)

    def with_max_payload(self, max_payload: int) -> "SessionConfig":
        """Return a copy with a different payload limit"""
        return SessionConfig(magic_number=self.magic_number, max_payload=max_payload)

    def __repr__(self):
        return f"SessionConfig(magic_number={self.magic_number:#x}, max_payload={self.max_payload})"
