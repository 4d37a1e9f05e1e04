"""Core vsock types: addresses, errors and the transport interfaces."""

from __future__ import annotations

import enum
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Sequence

PAGE_SIZE = 0x1000
VSOCK_BUF_ALLOC = 0x40000

_U32_MASK = 0xFFFF_FFFF


class VsockErrorKind(enum.Enum):
    """Kinds of errors raised by the vsock stack."""

    NO_AVAILABLE_PORT = "NoAvailablePort"
    ADDRESS_ALREADY_USED = "AddressAlreadyUsed"
    TRANSPORT = "Transport"
    TRUNCATED = "Truncated"
    MALFORMED = "Malformed"
    ILLEGAL = "Illegal"
    REFUSED = "REFUSED"


class TransportErrorKind(enum.Enum):
    """Kinds of errors raised by a vsock transport."""

    VMCALL = "Vmcall"
    CREATE_VIRT_QUEUE = "CreateVirtQueue"
    INITIALIZATION = "Initilization"
    DMA_ALLOCATION = "DmaAllocation"
    TIMEOUT = "Timeout"
    INVALID_PARAMETER = "InvalidParameter"
    INVALID_VSOCK_PACKET = "InvalidVsockPacket"


class VsockTransportError(Exception):
    """Raised by a transport when the device cannot carry a packet."""

    def __init__(self, kind: TransportErrorKind, cause: object = None) -> None:
        super().__init__(kind.value)
        self.kind = kind
        self.cause = cause

    def __str__(self) -> str:
        return self.kind.value


class VsockError(OSError):
    """Raised by vsock streams; a transport failure is kept as ``transport``."""

    def __init__(
        self,
        kind: VsockErrorKind,
        transport: VsockTransportError | None = None,
    ) -> None:
        if kind is VsockErrorKind.TRANSPORT and transport is None:
            raise ValueError("a transport error needs its cause")
        self.kind = kind
        self.transport = transport
        super().__init__(self._describe())

    def _describe(self) -> str:
        if self.kind is VsockErrorKind.TRANSPORT:
            return f"Transport: {self.transport}"
        return self.kind.value

    def __str__(self) -> str:
        return self._describe()


@dataclass(frozen=True, order=True)
class VsockAddr:
    """A vsock address: a 32-bit context id and a 32-bit port."""

    cid: int = 0
    port: int = 0

    def __post_init__(self) -> None:
        object.__setattr__(self, "cid", self.cid & _U32_MASK)
        object.__setattr__(self, "port", self.port & _U32_MASK)

    def __str__(self) -> str:
        return f"cid: {self.cid} port: {self.port}"

    __repr__ = __str__


@dataclass(frozen=True, order=True)
class VsockAddrPair:
    """The local and remote ends of a connection."""

    local: VsockAddr = field(default_factory=VsockAddr)
    remote: VsockAddr = field(default_factory=VsockAddr)


class VsockTransport(ABC):
    """A device that moves vsock packets between the guest and the host."""

    @abstractmethod
    def get_cid(self) -> int:
        """Return the context id of this device."""

    @abstractmethod
    def init(self) -> None:
        """Make the device ready to carry packets."""

    @abstractmethod
    def enqueue(self, stream: object, hdr: bytes, data: bytes, timeout: int) -> int:
        """Send a packet header and its payload; return the payload length."""

    @abstractmethod
    def dequeue(self, stream: object, timeout: int) -> bytes:
        """Return the next buffer addressed to ``stream``."""

    @abstractmethod
    def can_send(self) -> bool:
        """Whether a packet can be sent now."""

    @abstractmethod
    def can_recv(self) -> bool:
        """Whether a packet can be received now."""


class VsockTimeout(ABC):
    """A one-shot timer used by transports while waiting for the device."""

    @abstractmethod
    def set_timeout(self, timeout: int) -> int | None:
        """Arm the timer; return the timeout, or None if it cannot be armed."""

    @abstractmethod
    def is_timeout(self) -> bool:
        """Whether the armed timer has expired."""

    @abstractmethod
    def reset_timeout(self) -> None:
        """Disarm the timer and clear its expired state."""


def align_up(size: int) -> int:
    """Round ``size`` up to a whole number of pages."""
    return (size & ~(PAGE_SIZE - 1)) + (PAGE_SIZE if size % PAGE_SIZE else 0)


__all__: Sequence[str] = [
    "PAGE_SIZE",
    "VSOCK_BUF_ALLOC",
    "VsockErrorKind",
    "VsockError",
    "TransportErrorKind",
    "VsockTransportError",
    "VsockAddr",
    "VsockAddrPair",
    "VsockTransport",
    "VsockTimeout",
    "align_up",
]