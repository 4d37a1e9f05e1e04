"""Migration identifiers, result codes and the hand-off structures from the VMM."""

from __future__ import annotations

import enum
import struct
from dataclasses import dataclass, field

MIG_POLICY_UNSATISFIED_ERROR = "PolicyUnsatisfiedError"
INVALID_MIG_POLICY_ERROR = "InvalidPolicyError"
MUTUAL_ATTESTATION_ERROR = "MutualAttestationError"
MISMATCH_PUBLIC_KEY = "MismatchPublicKeyError"


def guid_from_fields(
    time_low: int,
    time_mid: int,
    time_hi: int,
    clk_seq_hi: int,
    clk_seq_low: int,
    node: bytes | list[int] | tuple[int, ...],
) -> bytes:
    """Return the 16-byte wire form of a GUID given by its fields."""
    node_bytes = bytes(node)
    if len(node_bytes) != 6:
        raise ValueError("a GUID node has exactly 6 bytes")
    return struct.pack("<IHHBB", time_low, time_mid, time_hi, clk_seq_hi, clk_seq_low) + node_bytes


VMCALL_SERVICE_COMMON_GUID = guid_from_fields(
    0xFB6FC5E1, 0x3378, 0x4ACB, 0x89, 0x64, (0xFA, 0x5E, 0xE4, 0x3B, 0x9C, 0x8A)
)
VMCALL_SERVICE_MIGTD_GUID = guid_from_fields(
    0xE60E6330, 0x1E09, 0x4387, 0xA4, 0x44, (0x8F, 0x32, 0xB8, 0xD6, 0x11, 0xE5)
)
MIGRATION_INFORMATION_HOB_GUID = guid_from_fields(
    0x42B5E398, 0xA199, 0x4D30, 0xBE, 0xFC, (0xC7, 0x5A, 0xC3, 0xDA, 0x5D, 0x7C)
)
MIGPOLICY_HOB_GUID = guid_from_fields(
    0xD64F771A, 0xF0C9, 0x4D33, 0x99, 0x8B, (0x0E, 0x3D, 0x8B, 0x94, 0x0A, 0x61)
)
STREAM_SOCKET_INFO_HOB_GUID = guid_from_fields(
    0x7A103B9D, 0x552B, 0x485F, 0xBB, 0x4C, (0x2F, 0x3D, 0x2E, 0x8B, 0x1E, 0x0E)
)


class MigrationResult(enum.IntEnum):
    """Status reported to the VMM at the end of a migration request."""

    SUCCESS = 0
    INVALID_PARAMETER = 1
    UNSUPPORTED = 2
    OUT_OF_RESOURCE = 3
    TDX_MODULE_ERROR = 4
    NETWORK_ERROR = 5
    SECURE_SESSION_ERROR = 6
    MUTUAL_ATTESTATION_ERROR = 7
    POLICY_UNSATISFIED_ERROR = 8
    INVALID_POLICY_ERROR = 9


class MigrationError(Exception):
    """A migration step failed with the given result code."""

    def __init__(self, result: MigrationResult, message: str | None = None) -> None:
        super().__init__(message or result.name)
        self.result = result


def result_for_tls_error(description: str) -> MigrationResult:
    """Map the description of a failed peer-certificate check to a result."""
    if description == MIG_POLICY_UNSATISFIED_ERROR:
        return MigrationResult.POLICY_UNSATISFIED_ERROR
    if description == INVALID_MIG_POLICY_ERROR:
        return MigrationResult.INVALID_POLICY_ERROR
    if description == MUTUAL_ATTESTATION_ERROR:
        return MigrationResult.MUTUAL_ATTESTATION_ERROR
    return MigrationResult.SECURE_SESSION_ERROR


def result_for_io_error(invalid_data: bool, description: str) -> MigrationResult:
    """Map an I/O error on the secure channel to a result."""
    if not invalid_data:
        return MigrationResult.NETWORK_ERROR
    if MIG_POLICY_UNSATISFIED_ERROR in description:
        return MigrationResult.POLICY_UNSATISFIED_ERROR
    if INVALID_MIG_POLICY_ERROR in description:
        return MigrationResult.INVALID_POLICY_ERROR
    if MUTUAL_ATTESTATION_ERROR in description:
        return MigrationResult.MUTUAL_ATTESTATION_ERROR
    return MigrationResult.SECURE_SESSION_ERROR


def _require(data: bytes, size: int, name: str) -> None:
    if len(data) < size:
        raise ValueError(f"{name} needs {size} bytes, got {len(data)}")


@dataclass(frozen=True)
class MigtdMigrationInformation:
    """The migration request handed over by the VMM."""

    mig_request_id: int = 0
    migration_source: int = 0
    target_td_uuid: tuple[int, int, int, int] = (0, 0, 0, 0)
    binding_handle: int = 0
    mig_policy_id: int = 0
    communication_id: int = 0

    _FORMAT = struct.Struct("<QB7x4QQQQ")
    SIZE = _FORMAT.size

    @classmethod
    def from_bytes(cls, data: bytes) -> MigtdMigrationInformation:
        """Parse the structure from the start of ``data``."""
        _require(data, cls.SIZE, cls.__name__)
        values = cls._FORMAT.unpack_from(data)
        return cls(
            mig_request_id=values[0],
            migration_source=values[1],
            target_td_uuid=tuple(values[2:6]),
            binding_handle=values[6],
            mig_policy_id=values[7],
            communication_id=values[8],
        )

    def to_bytes(self) -> bytes:
        """The wire form of the structure."""
        return self._FORMAT.pack(
            self.mig_request_id,
            self.migration_source,
            *self.target_td_uuid,
            self.binding_handle,
            self.mig_policy_id,
            self.communication_id,
        )


@dataclass(frozen=True)
class MigtdStreamSocketInfo:
    """Where the migration channel and the quote service listen."""

    communication_id: int = 0
    mig_td_cid: int = 0
    mig_channel_port: int = 0
    quote_service_port: int = 0

    _FORMAT = struct.Struct("<QQII")
    SIZE = _FORMAT.size

    @classmethod
    def from_bytes(cls, data: bytes) -> MigtdStreamSocketInfo:
        """Parse the structure from the start of ``data``."""
        _require(data, cls.SIZE, cls.__name__)
        return cls(*cls._FORMAT.unpack_from(data))

    def to_bytes(self) -> bytes:
        """The wire form of the structure."""
        return self._FORMAT.pack(
            self.communication_id,
            self.mig_td_cid,
            self.mig_channel_port,
            self.quote_service_port,
        )


@dataclass(frozen=True)
class MigtdMigpolicyInfo:
    """Header of a migration policy: its id and size in bytes."""

    mig_policy_id: int = 0
    mig_policy_size: int = 0

    _FIELDS = struct.Struct("<QI")
    # The header occupies a padded 16-byte slot ahead of the policy data.
    SIZE = 16

    @classmethod
    def from_bytes(cls, data: bytes) -> MigtdMigpolicyInfo:
        """Parse the header fields from the start of ``data``."""
        _require(data, cls._FIELDS.size, cls.__name__)
        return cls(*cls._FIELDS.unpack_from(data))

    def to_bytes(self) -> bytes:
        """The header in its padded 16-byte slot."""
        packed = self._FIELDS.pack(self.mig_policy_id, self.mig_policy_size)
        return packed + bytes(self.SIZE - len(packed))


@dataclass(frozen=True)
class MigtdMigpolicy:
    """A migration policy: its header and the policy data."""

    header: MigtdMigpolicyInfo = field(default_factory=MigtdMigpolicyInfo)
    mig_policy: bytes = b""

    @classmethod
    def from_bytes(cls, data: bytes) -> MigtdMigpolicy:
        """Parse a header followed by ``mig_policy_size`` bytes of policy."""
        header = MigtdMigpolicyInfo.from_bytes(data)
        end = MigtdMigpolicyInfo.SIZE + header.mig_policy_size
        _require(data, end, cls.__name__)
        return cls(header=header, mig_policy=bytes(data[MigtdMigpolicyInfo.SIZE:end]))


__all__ = [
    "INVALID_MIG_POLICY_ERROR",
    "MIG_POLICY_UNSATISFIED_ERROR",
    "MISMATCH_PUBLIC_KEY",
    "MUTUAL_ATTESTATION_ERROR",
    "MIGPOLICY_HOB_GUID",
    "MIGRATION_INFORMATION_HOB_GUID",
    "STREAM_SOCKET_INFO_HOB_GUID",
    "VMCALL_SERVICE_COMMON_GUID",
    "VMCALL_SERVICE_MIGTD_GUID",
    "MigrationError",
    "MigrationResult",
    "MigtdMigpolicy",
    "MigtdMigpolicyInfo",
    "MigtdMigrationInformation",
    "MigtdStreamSocketInfo",
    "guid_from_fields",
    "result_for_io_error",
    "result_for_tls_error",
]