"""Connection-oriented vsock streams on top of a packet transport."""

from __future__ import annotations

import enum
import threading
from collections import deque
from dataclasses import replace

from migtd.packet import (
    FLAG_SHUTDOWN_READ,
    FLAG_SHUTDOWN_WRITE,
    HEADER_LEN,
    OP_REQUEST,
    OP_RESPONSE,
    OP_RST,
    OP_RW,
    OP_SHUTDOWN,
    TYPE_STREAM,
    Packet,
)
from migtd.vsock import (
    VSOCK_BUF_ALLOC,
    VsockAddr,
    VsockAddrPair,
    VsockError,
    VsockErrorKind,
    VsockTimeout,
    VsockTransport,
    VsockTransportError,
)

# Timeout in milliseconds for every transport operation.
DEFAULT_TIMEOUT = 8000

_FIRST_PORT_COUNTER = 40000
_U32_MAX = 0xFFFF_FFFF
_HALT_INTERVAL = 0.001


def wait_for_event(event: threading.Event, timer: VsockTimeout) -> bool:
    """Wait until ``event`` is set or ``timer`` expires.

    Returns True and clears the event when it was set; returns False and
    resets the timer when the timer expired first.
    """
    while not event.is_set():
        event.wait(_HALT_INTERVAL)
        if event.is_set():
            break
        if timer.is_timeout():
            timer.reset_timeout()
            return False
    event.clear()
    return True


class StreamState(enum.Enum):
    """States of a vsock stream."""

    CLOSED = "Closed"
    LISTENING = "Listening"
    REQUEST_SEND = "RequestSend"
    ESTABLISHED = "Establised"
    CLOSING = "Closing"


class VsockDevice:
    """A registered transport with the packet queues and port table it serves."""

    def __init__(self, transport: VsockTransport) -> None:
        self.transport = transport
        self._lock = threading.Lock()
        self._connections: dict[VsockAddrPair, deque[bytes]] = {}
        self._bindings: dict[VsockAddr, deque[bytes]] = {}
        self._used_ports: set[int] = set()
        self._port_counter = _FIRST_PORT_COUNTER
        try:
            transport.init()
        except VsockTransportError as exc:
            raise VsockError(VsockErrorKind.TRANSPORT, exc) from exc

    def get_unused_port(self) -> int | None:
        """Reserve and return the next free port, or None when exhausted."""
        with self._lock:
            port = self._port_counter + 1
            if port > _U32_MAX:
                return None
            while port in self._used_ports:
                port += 1
                if port > _U32_MAX:
                    return None
            self._used_ports.add(port)
            self._port_counter = port
            return port

    def push_packet(self, addrs: VsockAddrPair, buf: bytes) -> None:
        """Queue ``buf`` for the connection or listener it is addressed to."""
        if not buf:
            return
        with self._lock:
            queue = self._connections.get(addrs)
            if queue is None:
                queue = self._bindings.get(addrs.local)
            if queue is not None:
                queue.append(bytes(buf))

    def pop_packet(self, addrs: VsockAddrPair) -> bytes | None:
        """Take the oldest buffer queued for ``addrs``, if any."""
        with self._lock:
            queue = self._connections.get(addrs)
            if queue is None:
                queue = self._bindings.get(addrs.local)
            if queue:
                return queue.popleft()
            return None

    def _reserve_port(self, port: int) -> None:
        with self._lock:
            if port in self._used_ports:
                raise VsockError(VsockErrorKind.ADDRESS_ALREADY_USED)
            self._used_ports.add(port)

    def _add_connection(self, addrs: VsockAddrPair) -> None:
        with self._lock:
            self._connections[addrs] = deque()

    def _remove_connection(self, addrs: VsockAddrPair) -> None:
        with self._lock:
            self._connections.pop(addrs, None)

    def _add_binding(self, local: VsockAddr) -> None:
        with self._lock:
            self._bindings[local] = deque()

    def _remove_binding(self, local: VsockAddr) -> None:
        with self._lock:
            self._bindings.pop(local, None)


class VsockStream:
    """A stream socket over a vsock device."""

    def __init__(self, device: VsockDevice) -> None:
        try:
            cid = device.transport.get_cid()
        except VsockTransportError as exc:
            raise VsockError(VsockErrorKind.TRANSPORT, exc) from exc
        port = device.get_unused_port()
        if port is None:
            raise VsockError(VsockErrorKind.NO_AVAILABLE_PORT)
        self._setup(device, VsockAddrPair(local=VsockAddr(cid, port)), StreamState.CLOSED)

    def _setup(self, device: VsockDevice, addr: VsockAddrPair, state: StreamState) -> None:
        self.device = device
        self.addr = addr
        self.state = state
        self.listen_backlog = 0
        self._data_queue: deque[bytes] = deque()
        self.rx_cnt = 0

    @classmethod
    def _established(cls, device: VsockDevice, addr: VsockAddrPair) -> VsockStream:
        stream = cls.__new__(cls)
        stream._setup(device, addr, StreamState.ESTABLISHED)
        return stream

    def __enter__(self) -> VsockStream:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _enqueue(self, hdr: bytes, data: bytes = b"") -> int:
        try:
            return self.device.transport.enqueue(self, hdr, data, DEFAULT_TIMEOUT)
        except VsockTransportError as exc:
            raise VsockError(VsockErrorKind.TRANSPORT, exc) from exc

    def _dequeue(self) -> bytes:
        try:
            return bytes(self.device.transport.dequeue(self, DEFAULT_TIMEOUT))
        except VsockTransportError as exc:
            raise VsockError(VsockErrorKind.TRANSPORT, exc) from exc

    def _header(self, op: int, data_len: int = 0, flags: int = 0) -> bytes:
        return Packet.build(
            src_cid=self.addr.local.cid,
            dst_cid=self.addr.remote.cid,
            src_port=self.addr.local.port,
            dst_port=self.addr.remote.port,
            op=op,
            data_len=data_len,
            flags=flags,
            fwd_cnt=self.rx_cnt,
            buf_alloc=VSOCK_BUF_ALLOC,
        ).to_bytes()

    def bind(self, addr: VsockAddr) -> None:
        """Use the port of ``addr`` as the local port."""
        self.device._reserve_port(addr.port)
        self.addr = replace(self.addr, local=replace(self.addr.local, port=addr.port))

    def listen(self, backlog: int) -> None:
        """Start accepting connection requests on the local address."""
        if self.state is not StreamState.CLOSED:
            raise VsockError(VsockErrorKind.ILLEGAL)
        self.listen_backlog = backlog
        self.state = StreamState.LISTENING
        self.device._add_binding(self.addr.local)

    def accept(self) -> VsockStream:
        """Answer the next connection request and return the new stream."""
        if self.state is not StreamState.LISTENING:
            raise VsockError(VsockErrorKind.ILLEGAL)
        recv = self._dequeue()
        if Packet.checked(recv).op != OP_REQUEST:
            raise VsockError(VsockErrorKind.ILLEGAL)
        request = Packet.checked(recv[:HEADER_LEN])

        response = Packet.build(
            src_cid=self.addr.local.cid,
            dst_cid=request.src_cid,
            src_port=self.addr.local.port,
            dst_port=request.src_port,
            op=OP_RESPONSE,
            buf_alloc=VSOCK_BUF_ALLOC,
        )
        self._enqueue(response.to_bytes())

        peer = VsockAddr(request.src_cid, request.src_port)
        stream = VsockStream._established(
            self.device, VsockAddrPair(local=self.addr.local, remote=peer)
        )
        self.device._add_connection(stream.addr)
        return stream

    def connect(self, addr: VsockAddr) -> None:
        """Connect to the listener at ``addr``."""
        if self.state is not StreamState.CLOSED:
            raise VsockError(VsockErrorKind.ILLEGAL)
        self.addr = replace(self.addr, remote=addr)
        self.device._add_connection(self.addr)

        self._enqueue(self._header(OP_REQUEST))
        self.state = StreamState.REQUEST_SEND

        packet = Packet.checked(self._dequeue())
        local, remote = self.addr.local, self.addr.remote
        if (
            packet.type == TYPE_STREAM
            and packet.dst_cid == local.cid
            and packet.dst_port == local.port
            and packet.op == OP_RESPONSE
            and packet.src_port == remote.port
            and packet.src_cid == remote.cid
        ):
            self.state = StreamState.ESTABLISHED
        else:
            raise VsockError(VsockErrorKind.REFUSED)

    def shutdown(self) -> None:
        """Stop listening, or close an established connection."""
        if self.state is StreamState.LISTENING:
            self.state = StreamState.CLOSED
            self.device._remove_binding(self.addr.local)
        elif self.state is StreamState.ESTABLISHED:
            self._enqueue(
                self._header(OP_SHUTDOWN, flags=FLAG_SHUTDOWN_READ | FLAG_SHUTDOWN_WRITE)
            )
            self.state = StreamState.CLOSING
            self._reset()
        else:
            raise VsockError(VsockErrorKind.ILLEGAL)

    def send(self, buf: bytes, flags: int = 0) -> int:
        """Send ``buf`` in one packet and return its length."""
        if self.state is not StreamState.ESTABLISHED:
            raise VsockError(VsockErrorKind.ILLEGAL)
        data = bytes(buf)
        self._enqueue(self._header(OP_RW, data_len=len(data)), data)
        return len(data)

    def recv(self, size: int, flags: int = 0) -> bytes:
        """Return up to ``size`` received bytes; empty once the peer shut down."""
        if self.state is not StreamState.ESTABLISHED:
            raise VsockError(VsockErrorKind.ILLEGAL)

        if not self._data_queue:
            packet = Packet.checked(self._dequeue())
            if packet.op == OP_SHUTDOWN:
                self.shutdown()
                return b""
            if packet.op == OP_RST:
                self._reset()
                raise VsockError(VsockErrorKind.ILLEGAL)
            if packet.op != OP_RW:
                raise VsockError(VsockErrorKind.ILLEGAL)

            data_len = packet.data_len
            if data_len > 0:
                data = self._dequeue()
                self.rx_cnt = (self.rx_cnt + data_len) & _U32_MAX
                if data_len > len(data):
                    raise VsockError(VsockErrorKind.ILLEGAL)
                self._data_queue.append(data[:data_len])

        if not self._data_queue:
            return b""
        head = self._data_queue[0]
        if len(head) <= size:
            return self._data_queue.popleft()
        self._data_queue[0] = head[size:]
        return head[:size]

    def read(self, size: int) -> bytes:
        """Read up to ``size`` bytes."""
        return self.recv(size, 0)

    def write(self, data: bytes) -> int:
        """Write ``data`` and return the number of bytes written."""
        return self.send(data, 0)

    def close(self) -> None:
        """Shut the stream down, ignoring errors."""
        try:
            self.shutdown()
        except VsockError:
            pass

    def _reset(self) -> None:
        if self.state is not StreamState.CLOSING:
            raise VsockError(VsockErrorKind.ILLEGAL)
        packet = Packet.checked(self._dequeue())
        if packet.op == OP_RST:
            self._enqueue(self._header(OP_RST))
            self.state = StreamState.CLOSED
            self.device._remove_connection(self.addr)
        else:
            self.state = StreamState.CLOSING


__all__ = [
    "DEFAULT_TIMEOUT",
    "StreamState",
    "VsockDevice",
    "VsockStream",
    "wait_for_event",
]