"""Version negotiation and the information exchanged during a migration session."""

from __future__ import annotations

import struct
from dataclasses import dataclass, field

from migtd.migration import (
    MigrationError,
    MigrationResult,
    MigtdMigpolicy,
    MigtdMigrationInformation,
    MigtdStreamSocketInfo,
)
from migtd.migration_data import MigrationSessionKey

_U16_MAX = 0xFFFF
# min_ver and max_ver as 16-bit LE words, padded to 8 bytes, then the 32-byte key.
_VERSIONS = struct.Struct("<HH4x")


def _check_version(value: int) -> int:
    if not 0 <= value <= _U16_MAX:
        raise MigrationError(
            MigrationResult.INVALID_PARAMETER, f"version {value} does not fit in 16 bits"
        )
    return value


@dataclass
class ExchangeInformation:
    """What each side sends over the secure channel: versions and session key."""

    min_ver: int = 0
    max_ver: int = 0
    key: MigrationSessionKey = field(default_factory=MigrationSessionKey)

    SIZE = _VERSIONS.size + MigrationSessionKey.SIZE

    def __post_init__(self) -> None:
        _check_version(self.min_ver)
        _check_version(self.max_ver)

    def to_bytes(self) -> bytes:
        """The wire form sent to the peer."""
        return _VERSIONS.pack(
            _check_version(self.min_ver), _check_version(self.max_ver)
        ) + self.key.to_bytes()

    @classmethod
    def from_bytes(cls, data: bytes) -> ExchangeInformation:
        """Parse what the peer sent; too little data is a network error."""
        if len(data) < cls.SIZE:
            raise MigrationError(
                MigrationResult.NETWORK_ERROR,
                f"exchange information needs {cls.SIZE} bytes, got {len(data)}",
            )
        min_ver, max_ver = _VERSIONS.unpack_from(data)
        key = MigrationSessionKey.from_bytes(data[_VERSIONS.size:cls.SIZE])
        return cls(min_ver=min_ver, max_ver=max_ver, key=key)


@dataclass(frozen=True)
class MigrationInformation:
    """Everything the VMM handed over for one migration request."""

    mig_info: MigtdMigrationInformation
    mig_socket_info: MigtdStreamSocketInfo
    mig_policy: MigtdMigpolicy | None = None

    def is_src(self) -> bool:
        """Whether this side is the migration source."""
        return self.mig_info.migration_source == 1


def cal_mig_version(
    is_src: bool,
    local_info: ExchangeInformation,
    remote_info: ExchangeInformation,
) -> int:
    """Pick the migration version both sides support: the highest common one."""
    if is_src:
        min_export, max_export = local_info.min_ver, local_info.max_ver
        min_import, max_import = remote_info.min_ver, remote_info.max_ver
    else:
        min_export, max_export = remote_info.min_ver, remote_info.max_ver
        min_import, max_import = local_info.min_ver, local_info.max_ver

    if (
        min_export > max_export
        or min_import > max_import
        or max_export < min_import
        or max_import < min_export
    ):
        raise MigrationError(MigrationResult.INVALID_PARAMETER, "no common migration version")

    return min(max_export, max_import)


__all__ = ["ExchangeInformation", "MigrationInformation", "cal_mig_version"]