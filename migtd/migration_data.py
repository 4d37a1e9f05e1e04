"""Buffers and messages of the VMM service calls used for migration."""

from __future__ import annotations

import struct
from dataclasses import dataclass, field

from migtd.migration import MigrationError, MigrationResult

QUERY_COMMAND = 0
MIG_COMMAND_SHUT_DOWN = 0
MIG_COMMAND_WAIT = 1
MIG_COMMAND_REPORT_STATUS = 2

# GUID (16) + length (4) + reserved/status (4)
COMMAND_HEADER_LENGTH = 24
RESPONSE_HEADER_LENGTH = 24

_LENGTH = struct.Struct("<I")
_GUID_SIZE = 16


def _check_guid(guid: bytes) -> bytes:
    guid = bytes(guid)
    if len(guid) != _GUID_SIZE:
        raise ValueError("a GUID has exactly 16 bytes")
    return guid


class VmcallServiceCommand:
    """A command buffer: GUID, total length, reserved word, then data."""

    def __init__(self, size: int, guid: bytes) -> None:
        if size < COMMAND_HEADER_LENGTH:
            raise MigrationError(MigrationResult.INVALID_PARAMETER, "command buffer too small")
        self._data = bytearray(size)
        self._data[0:16] = _check_guid(guid)
        self._offset = COMMAND_HEADER_LENGTH
        self._update_length()

    def _update_length(self) -> None:
        _LENGTH.pack_into(self._data, 16, self._offset)

    @property
    def length(self) -> int:
        """The value of the length field."""
        return _LENGTH.unpack_from(self._data, 16)[0]

    def write(self, data: bytes) -> None:
        """Append ``data`` and update the length field."""
        if len(data) > len(self._data) - self._offset:
            raise MigrationError(MigrationResult.INVALID_PARAMETER, "command buffer full")
        end = self._offset + len(data)
        self._data[self._offset:end] = data
        self._offset = end
        self._update_length()

    def to_bytes(self) -> bytes:
        """The whole command buffer."""
        return bytes(self._data)


class VmcallServiceResponse:
    """A response buffer: GUID, length, status word, then data."""

    def __init__(self, data: bytes) -> None:
        self._data = bytes(data)

    @classmethod
    def try_read(cls, data: bytes) -> VmcallServiceResponse | None:
        """Validate a response from the VMM; None if its header is unusable."""
        if len(data) < RESPONSE_HEADER_LENGTH:
            return None
        length = _LENGTH.unpack_from(data, 16)[0]
        if length < RESPONSE_HEADER_LENGTH or length > len(data):
            return None
        return cls(data)

    @classmethod
    def create(cls, buffer: bytearray, guid: bytes) -> VmcallServiceResponse:
        """Prepare ``buffer`` in place as an empty response for ``guid``."""
        if len(buffer) < RESPONSE_HEADER_LENGTH:
            raise MigrationError(MigrationResult.INVALID_PARAMETER, "response buffer too small")
        buffer[:] = bytes(len(buffer))
        buffer[0:16] = _check_guid(guid)
        _LENGTH.pack_into(buffer, 16, len(buffer))
        return cls(buffer)

    def read_guid(self) -> bytes:
        """The GUID field."""
        return self._data[:16]

    def read_status(self) -> int:
        """The status field."""
        return _LENGTH.unpack_from(self._data, 20)[0]

    def read_data(self, offset: int, size: int) -> bytes | None:
        """``size`` bytes of data at ``offset``, or None if the buffer is short."""
        start = RESPONSE_HEADER_LENGTH + offset
        if len(self._data) < start + size:
            return None
        return self._data[start:start + size]


def _need(data: bytes, size: int, name: str) -> None:
    if len(data) < size:
        raise ValueError(f"{name} needs {size} bytes, got {len(data)}")


@dataclass(frozen=True)
class ServiceMigWaitForReqCommand:
    """Command asking the VMM for a migration request (or a query)."""

    version: int = 0
    command: int = MIG_COMMAND_WAIT
    reserved: bytes = bytes(2)

    SIZE = 4

    def to_bytes(self) -> bytes:
        """The packed command."""
        return struct.pack("<BB2s", self.version, self.command, self.reserved)


@dataclass(frozen=True)
class ServiceMigReportStatusCommand:
    """Command reporting the outcome of a migration request."""

    version: int = 0
    command: int = MIG_COMMAND_REPORT_STATUS
    operation: int = 0
    status: int = 0
    mig_request_id: int = 0

    _FORMAT = struct.Struct("<BBBBQ")
    SIZE = _FORMAT.size

    def to_bytes(self) -> bytes:
        """The packed command."""
        return self._FORMAT.pack(
            self.version, self.command, self.operation, self.status, self.mig_request_id
        )


@dataclass(frozen=True)
class ServiceQueryResponse:
    """Reply to a service query."""

    version: int = 0
    command: int = 0
    status: int = 0
    reserved: int = 0
    guid: bytes = bytes(16)

    _FORMAT = struct.Struct("<BBBB16s")
    SIZE = _FORMAT.size

    @classmethod
    def from_bytes(cls, data: bytes) -> ServiceQueryResponse:
        """Parse the reply from the start of ``data``."""
        _need(data, cls.SIZE, cls.__name__)
        return cls(*cls._FORMAT.unpack_from(data))

    def to_bytes(self) -> bytes:
        """The packed reply."""
        return self._FORMAT.pack(self.version, self.command, self.status, self.reserved, self.guid)


@dataclass(frozen=True)
class ServiceMigWaitForReqResponse:
    """Reply to a wait-for-request command."""

    version: int = 0
    command: int = 0
    operation: int = 0
    reserved: int = 0

    SIZE = 4

    @classmethod
    def from_bytes(cls, data: bytes) -> ServiceMigWaitForReqResponse:
        """Parse the reply from the start of ``data``."""
        _need(data, cls.SIZE, cls.__name__)
        return cls(*struct.unpack_from("<BBBB", data))


@dataclass(frozen=True)
class ServiceMigWaitForReqShutdown:
    """Command telling the VMM that the service shuts down."""

    version: int = 0
    command: int = MIG_COMMAND_SHUT_DOWN
    reserved: bytes = bytes(2)

    SIZE = 4

    def to_bytes(self) -> bytes:
        """The packed command."""
        return struct.pack("<BB2s", self.version, self.command, self.reserved)


@dataclass(frozen=True)
class ServiceMigReportStatusResponse:
    """Reply to a report-status command."""

    version: int = 0
    command: int = 0
    reserved: bytes = bytes(2)

    SIZE = 4

    @classmethod
    def from_bytes(cls, data: bytes) -> ServiceMigReportStatusResponse:
        """Parse the reply from the start of ``data``."""
        _need(data, cls.SIZE, cls.__name__)
        return cls(*struct.unpack_from("<BB2s", data))


@dataclass
class MigrationSessionKey:
    """A 256-bit migration session key held as four 64-bit words."""

    fields: list[int] = field(default_factory=lambda: [0] * 4)

    _FORMAT = struct.Struct("<4Q")
    SIZE = _FORMAT.size

    def to_bytes(self) -> bytes:
        """The key as 32 little-endian bytes."""
        return self._FORMAT.pack(*self.fields)

    @classmethod
    def from_bytes(cls, data: bytes) -> MigrationSessionKey:
        """Load a key from the first 32 bytes of ``data``."""
        _need(data, cls.SIZE, cls.__name__)
        return cls(list(cls._FORMAT.unpack_from(data)))

    def clear(self) -> None:
        """Zero the key."""
        self.fields[:] = [0] * len(self.fields)


__all__ = [
    "COMMAND_HEADER_LENGTH",
    "MIG_COMMAND_REPORT_STATUS",
    "MIG_COMMAND_SHUT_DOWN",
    "MIG_COMMAND_WAIT",
    "QUERY_COMMAND",
    "RESPONSE_HEADER_LENGTH",
    "MigrationSessionKey",
    "ServiceMigReportStatusCommand",
    "ServiceMigReportStatusResponse",
    "ServiceMigWaitForReqCommand",
    "ServiceMigWaitForReqResponse",
    "ServiceMigWaitForReqShutdown",
    "ServiceQueryResponse",
    "VmcallServiceCommand",
    "VmcallServiceResponse",
]