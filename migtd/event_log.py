"""Tagged events measured into the confidential-computing event log."""

from __future__ import annotations

import hashlib
import struct
from dataclasses import dataclass

EV_EVENT_TAG = 0x0000_0006
SHA384_DIGEST_SIZE = 48

_TAG_HEADER = struct.Struct("<II")
_U32_MAX = 0xFFFF_FFFF


@dataclass(frozen=True)
class TaggedEvent:
    """A tagged event: tag id and data length (both 32-bit LE) then the data."""

    tag_id: int
    data: bytes = b""

    def __post_init__(self) -> None:
        if not 0 <= self.tag_id <= _U32_MAX:
            raise ValueError("tag id must fit in 32 bits")
        if len(self.data) > _U32_MAX:
            raise ValueError("event data too long")
        object.__setattr__(self, "data", bytes(self.data))

    def to_bytes(self) -> bytes:
        """The event in its logged form."""
        return _TAG_HEADER.pack(self.tag_id, len(self.data)) + self.data

    def __bytes__(self) -> bytes:
        return self.to_bytes()

    def __len__(self) -> int:
        return _TAG_HEADER.size + len(self.data)


def calculate_digest(data: bytes) -> bytes:
    """The SHA-384 digest of ``data``."""
    digest = hashlib.sha384(bytes(data)).digest()
    if len(digest) != SHA384_DIGEST_SIZE:
        raise ValueError("Calculate digest")
    return digest


__all__ = ["EV_EVENT_TAG", "SHA384_DIGEST_SIZE", "TaggedEvent", "calculate_digest"]