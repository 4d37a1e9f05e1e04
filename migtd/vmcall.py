"""A vsock transport that carries packets through VMM service calls."""

from __future__ import annotations

import struct
import threading
from collections.abc import Callable

from migtd.migration import VMCALL_SERVICE_MIGTD_GUID
from migtd.packet import HEADER_LEN, Packet
from migtd.stream import VsockDevice, wait_for_event
from migtd.vsock import (
    PAGE_SIZE,
    TransportErrorKind,
    VsockAddr,
    VsockAddrPair,
    VsockTimeout,
    VsockTransport,
    VsockTransportError,
    align_up,
)

CURRENT_VERSION = 0
COMMAND_SEND = 3
COMMAND_RECV = 4
MAX_VSOCK_MTU = PAGE_SIZE * 16
VMCALL_VECTOR = 0x52

# Command header (24) + version, command, reserved (4) + request id (8)
_COMMAND_PREFIX = 36
_LENGTH = struct.Struct("<I")
_MID = struct.Struct("<Q")

ServiceCall = Callable[[bytes, bytearray, int, int], None]


def _invalid(kind: TransportErrorKind = TransportErrorKind.INVALID_PARAMETER) -> VsockTransportError:
    return VsockTransportError(kind)


class Command:
    """A service command buffer: GUID, length, reserved word, then data."""

    HEADER_LENGTH = 24

    def __init__(self, size: int, guid: bytes) -> None:
        if size < self.HEADER_LENGTH or len(guid) != 16:
            raise _invalid()
        self._data = bytearray(size)
        self._data[0:16] = guid
        self._offset = self.HEADER_LENGTH
        _LENGTH.pack_into(self._data, 16, self._offset)

    @property
    def length(self) -> int:
        """The value of the length field."""
        return _LENGTH.unpack_from(self._data, 16)[0]

    def write(self, data: bytes) -> None:
        """Append ``data`` and update the length field."""
        end = self._offset + len(data)
        if end > len(self._data):
            raise _invalid()
        self._data[self._offset:end] = data
        self._offset = end
        _LENGTH.pack_into(self._data, 16, self._offset)

    def to_bytes(self) -> bytes:
        """The whole command buffer."""
        return bytes(self._data)


class Response:
    """A validated service response: GUID, length, status, then data."""

    HEADER_LENGTH = 24

    def __init__(self, data: bytes) -> None:
        self._data = bytes(data)

    @classmethod
    def fill(cls, size: int, guid: bytes) -> bytearray:
        """A zeroed response buffer of ``size`` bytes prepared for ``guid``."""
        if size < cls.HEADER_LENGTH or len(guid) != 16:
            raise _invalid()
        buffer = bytearray(size)
        buffer[0:16] = guid
        _LENGTH.pack_into(buffer, 16, size)
        return buffer

    @classmethod
    def parse(cls, data: bytes) -> Response | None:
        """Validate a response from the VMM; None if its header is unusable."""
        if len(data) < cls.HEADER_LENGTH:
            return None
        length = _LENGTH.unpack_from(data, 16)[0]
        if length < cls.HEADER_LENGTH or length > len(data):
            return None
        return cls(bytes(data[:length]))

    def guid(self) -> bytes:
        """The GUID field."""
        return self._data[0:16]

    def status(self) -> int:
        """The status field."""
        return _LENGTH.unpack_from(self._data, 20)[0]

    def data(self) -> bytes:
        """The bytes after the header, up to the length field."""
        return self._data[self.HEADER_LENGTH:]


class VmcallVsock(VsockTransport):
    """Sends and receives vsock packets through the MigTD service call.

    ``service`` performs the call: it gets the command bytes, a response
    buffer to fill, the notification vector and the timeout. Completion is
    signalled through :meth:`notify`.
    """

    def __init__(
        self,
        mid: int,
        cid: int,
        timer: VsockTimeout,
        service: ServiceCall,
        device: VsockDevice | None = None,
    ) -> None:
        self.mid = mid
        self.cid = cid
        self.timer = timer
        self.service = service
        self.device = device
        self.event = threading.Event()

    def notify(self) -> None:
        """Signal that the VMM finished a service call."""
        self.event.set()

    def init(self) -> None:
        """Nothing to set up for this transport."""

    def get_cid(self) -> int:
        """The context id given at creation."""
        return self.cid

    def can_send(self) -> bool:
        """Sending is always possible."""
        return True

    def can_recv(self) -> bool:
        """Receiving is always possible."""
        return True

    def recv_packet(self, packet: bytes) -> VsockAddrPair:
        """Split ``packet`` into header and data and queue them for their stream."""
        if len(packet) < HEADER_LEN:
            raise _invalid(TransportErrorKind.INVALID_VSOCK_PACKET)
        header = bytes(packet[:HEADER_LEN])
        hdr = Packet(header)
        data_len = hdr.data_len
        data = b""
        if data_len:
            if data_len > len(packet) - HEADER_LEN:
                raise _invalid()
            data = bytes(packet[HEADER_LEN:HEADER_LEN + data_len])
        key = VsockAddrPair(
            local=VsockAddr(hdr.dst_cid, hdr.dst_port),
            remote=VsockAddr(hdr.src_cid, hdr.src_port),
        )
        if self.device is not None:
            self.device.push_packet(key, header)
            self.device.push_packet(key, data)
        return key

    def enqueue(self, stream: object, hdr: bytes, data: bytes, timeout: int) -> int:
        """Send one packet header and its payload to the host."""
        command = self._command(
            align_up(_COMMAND_PREFIX + len(hdr) + len(data)), COMMAND_SEND, hdr, data
        )
        response = Response.fill(align_up(_COMMAND_PREFIX), VMCALL_SERVICE_MIGTD_GUID)
        self._call(command, response, timeout)
        self._wait()
        self._check_reply(response, COMMAND_SEND)
        return len(data)

    def dequeue(self, stream: object, timeout: int) -> bytes:
        """Return the next buffer for ``stream``, asking the host if none is queued."""
        device = getattr(stream, "device", None)
        if device is not None:
            self.device = device
        addrs: VsockAddrPair = stream.addr  # type: ignore[attr-defined]
        if self.device is not None:
            queued = self.device.pop_packet(addrs)
            if queued is not None:
                return queued

        command = self._command(align_up(_COMMAND_PREFIX), COMMAND_RECV)
        response = Response.fill(MAX_VSOCK_MTU, VMCALL_SERVICE_MIGTD_GUID)
        self._call(command, response, timeout)
        while True:
            self._wait()
            reply = self._check_reply(response, COMMAND_RECV)
            self.recv_packet(reply.data()[12:])
            if self.device is not None:
                queued = self.device.pop_packet(addrs)
                if queued is not None:
                    return queued

    def _command(self, size: int, cmd: int, *parts: bytes) -> bytes:
        command = Command(size, VMCALL_SERVICE_MIGTD_GUID)
        command.write(bytes([CURRENT_VERSION, cmd, 0, 0]))
        command.write(_MID.pack(self.mid))
        for part in parts:
            command.write(part)
        return command.to_bytes()

    def _call(self, command: bytes, response: bytearray, timeout: int) -> None:
        self.timer.set_timeout(timeout)
        try:
            self.service(command, response, VMCALL_VECTOR, timeout)
        except VsockTransportError:
            raise
        except Exception as exc:
            raise VsockTransportError(TransportErrorKind.VMCALL, exc) from exc

    def _wait(self) -> None:
        if not wait_for_event(self.event, self.timer):
            raise _invalid(TransportErrorKind.TIMEOUT)
        self.timer.reset_timeout()

    def _check_reply(self, response: bytearray, cmd: int) -> Response:
        reply = Response.parse(bytes(response))
        if reply is None:
            raise _invalid()
        data = reply.data()
        if (
            reply.guid() != VMCALL_SERVICE_MIGTD_GUID
            or reply.status() != 0
            or len(data) < 12
            or data[0] != CURRENT_VERSION
            or data[1] != cmd
            or _MID.unpack_from(data, 4)[0] != self.mid
        ):
            raise _invalid()
        return reply


__all__ = [
    "COMMAND_RECV",
    "COMMAND_SEND",
    "CURRENT_VERSION",
    "MAX_VSOCK_MTU",
    "VMCALL_VECTOR",
    "Command",
    "Response",
    "VmcallVsock",
]