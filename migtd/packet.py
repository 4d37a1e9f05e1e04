"""The vsock packet header: layout, field access and validation."""

from __future__ import annotations

import struct

from migtd.vsock import VsockError, VsockErrorKind

CID_ANY = 0xFFFF_FFFF

# Field layout: (offset, struct format), all little endian.
_SRC_CID = (0, "<Q")
_DST_CID = (8, "<Q")
_SRC_PORT = (16, "<I")
_DST_PORT = (20, "<I")
_LEN = (24, "<I")
_TYPE = (28, "<H")
_OP = (30, "<H")
_FLAGS = (32, "<I")
_BUF_ALLOC = (36, "<I")
_FWD_CNT = (40, "<I")

HEADER_LEN = 44

TYPE_STREAM = 1

FLAG_SHUTDOWN_READ = 0x1
FLAG_SHUTDOWN_WRITE = 0x2

OP_REQUEST = 1
OP_RESPONSE = 2
OP_RST = 3
OP_SHUTDOWN = 4
OP_RW = 5
OP_CREDIT_UPDATE = 6
OP_CREDIT_REQUEST = 7


def _field(spec: tuple[int, str], doc: str) -> property:
    offset, fmt = spec

    def getter(self: Packet) -> int:
        return struct.unpack_from(fmt, self._buffer, offset)[0]

    def setter(self: Packet, value: int) -> None:
        struct.pack_into(fmt, self._buffer, offset, value)

    return property(getter, setter, doc=doc)


class Packet:
    """A vsock packet held in a byte buffer: header then payload."""

    src_cid = _field(_SRC_CID, "Source CID.")
    dst_cid = _field(_DST_CID, "Destination CID.")
    src_port = _field(_SRC_PORT, "Source port.")
    dst_port = _field(_DST_PORT, "Destination port.")
    data_len = _field(_LEN, "Payload length in bytes.")
    type = _field(_TYPE, "Socket type; only TYPE_STREAM is supported.")
    op = _field(_OP, "Operation, one of the OP_* values.")
    flags = _field(_FLAGS, "Flags, used with OP_SHUTDOWN.")
    buf_alloc = _field(_BUF_ALLOC, "Size of the sender's receive buffer.")
    fwd_cnt = _field(_FWD_CNT, "Bytes the sender has received and consumed.")

    def __init__(self, buffer: bytes | bytearray = b"") -> None:
        self._buffer = bytearray(buffer)

    @classmethod
    def checked(cls, buffer: bytes | bytearray) -> Packet:
        """Wrap ``buffer`` and validate its header."""
        packet = cls(buffer)
        packet.check()
        return packet

    @classmethod
    def build(
        cls,
        src_cid: int,
        dst_cid: int,
        src_port: int,
        dst_port: int,
        op: int,
        data_len: int = 0,
        flags: int = 0,
        fwd_cnt: int = 0,
        buf_alloc: int = 0,
    ) -> Packet:
        """Create a stream packet header with the given fields."""
        packet = cls(bytes(HEADER_LEN))
        packet.src_cid = src_cid
        packet.dst_cid = dst_cid
        packet.src_port = src_port
        packet.dst_port = dst_port
        packet.type = TYPE_STREAM
        packet.op = op
        packet.data_len = data_len
        packet.flags = flags
        packet.fwd_cnt = fwd_cnt
        packet.buf_alloc = buf_alloc
        return packet

    def check(self) -> None:
        """Raise VsockError if the header is truncated or malformed."""
        if len(self._buffer) < self.header_len():
            raise VsockError(VsockErrorKind.TRUNCATED)
        if self.type != TYPE_STREAM:
            raise VsockError(VsockErrorKind.MALFORMED)
        if not OP_REQUEST <= self.op <= OP_CREDIT_REQUEST:
            raise VsockError(VsockErrorKind.MALFORMED)

    def header_len(self) -> int:
        """Length of the packet header."""
        return HEADER_LEN

    def payload(self) -> bytes:
        """The bytes following the header."""
        return bytes(self._buffer[HEADER_LEN:])

    def to_bytes(self) -> bytes:
        """The whole packet buffer."""
        return bytes(self._buffer)

    def __bytes__(self) -> bytes:
        return self.to_bytes()

    def __len__(self) -> int:
        return len(self._buffer)