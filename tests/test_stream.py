import threading

import pytest

from migtd.packet import (
    FLAG_SHUTDOWN_READ,
    FLAG_SHUTDOWN_WRITE,
    OP_REQUEST,
    OP_RESPONSE,
    OP_RST,
    OP_RW,
    OP_SHUTDOWN,
    Packet,
)
from migtd.stream import StreamState, VsockDevice, VsockStream, wait_for_event
from migtd.vsock import (
    VSOCK_BUF_ALLOC,
    TransportErrorKind,
    VsockAddr,
    VsockAddrPair,
    VsockError,
    VsockErrorKind,
    VsockTimeout,
    VsockTransport,
    VsockTransportError,
)

LOCAL_CID = 33
PEER = VsockAddr(2, 1234)


class FakeTransport(VsockTransport):
    def __init__(self, cid=LOCAL_CID, responder=None):
        self.cid = cid
        self.responder = responder
        self.sent = []
        self.device = None
        self.initialized = False

    def get_cid(self):
        return self.cid

    def init(self):
        self.initialized = True

    def enqueue(self, stream, hdr, data, timeout):
        packet = Packet(hdr)
        self.sent.append((packet, bytes(data)))
        if self.responder is not None:
            self.responder(self.device, stream, packet)
        return len(data)

    def dequeue(self, stream, timeout):
        buf = self.device.pop_packet(stream.addr)
        if buf is None:
            raise VsockTransportError(TransportErrorKind.TIMEOUT)
        return buf

    def can_send(self):
        return True

    def can_recv(self):
        return True


class FakeTimer(VsockTimeout):
    def __init__(self, expired):
        self.expired = expired
        self.resets = 0

    def set_timeout(self, timeout):
        return timeout

    def is_timeout(self):
        return self.expired

    def reset_timeout(self):
        self.resets += 1
        self.expired = False


def deliver(device, local, remote, op, data=b"", flags=0):
    hdr = Packet.build(
        src_cid=remote.cid,
        dst_cid=local.cid,
        src_port=remote.port,
        dst_port=local.port,
        op=op,
        data_len=len(data),
        flags=flags,
    )
    key = VsockAddrPair(local=local, remote=remote)
    device.push_packet(key, hdr.to_bytes())
    device.push_packet(key, data)


def peer_responder(device, stream, packet):
    local = VsockAddr(packet.src_cid, packet.src_port)
    remote = VsockAddr(packet.dst_cid, packet.dst_port)
    if packet.op == OP_REQUEST:
        deliver(device, local, remote, OP_RESPONSE)
    elif packet.op == OP_SHUTDOWN:
        deliver(device, local, remote, OP_RST)


def make_device(responder=None):
    transport = FakeTransport(responder=responder)
    device = VsockDevice(transport)
    transport.device = device
    return transport, device


def connected_stream():
    transport, device = make_device(peer_responder)
    stream = VsockStream(device)
    stream.connect(PEER)
    return transport, device, stream


def test_device_initializes_transport():
    transport, _ = make_device()
    assert transport.initialized is True


def test_unused_ports_are_increasing_and_distinct():
    _, device = make_device()
    first = device.get_unused_port()
    second = device.get_unused_port()
    assert first > 40000
    assert second == first + 1


def test_unused_port_skips_bound_port():
    _, device = make_device()
    stream = VsockStream(device)
    taken = stream.addr.local.port + 1
    stream.bind(VsockAddr(LOCAL_CID, taken))
    assert device.get_unused_port() == taken + 1


def test_new_stream_uses_transport_cid():
    _, device = make_device()
    stream = VsockStream(device)
    assert stream.addr.local.cid == LOCAL_CID
    assert stream.state is StreamState.CLOSED
    assert stream.addr.remote == VsockAddr()


def test_bind_sets_port_and_rejects_reuse():
    _, device = make_device()
    first = VsockStream(device)
    first.bind(VsockAddr(LOCAL_CID, 1234))
    assert first.addr.local.port == 1234
    second = VsockStream(device)
    with pytest.raises(VsockError) as info:
        second.bind(VsockAddr(LOCAL_CID, 1234))
    assert info.value.kind is VsockErrorKind.ADDRESS_ALREADY_USED


def test_listen_twice_is_illegal():
    _, device = make_device()
    stream = VsockStream(device)
    stream.listen(1)
    assert stream.state is StreamState.LISTENING
    with pytest.raises(VsockError) as info:
        stream.listen(1)
    assert info.value.kind is VsockErrorKind.ILLEGAL


def test_accept_without_listen_is_illegal():
    _, device = make_device()
    stream = VsockStream(device)
    with pytest.raises(VsockError) as info:
        stream.accept()
    assert info.value.kind is VsockErrorKind.ILLEGAL


def test_accept_answers_request():
    transport, device = make_device()
    server = VsockStream(device)
    server.bind(VsockAddr(LOCAL_CID, 1234))
    server.listen(1)
    client = VsockAddr(2, 3292289129)
    deliver(device, server.addr.local, client, OP_REQUEST)

    accepted = server.accept()
    assert accepted.state is StreamState.ESTABLISHED
    assert accepted.addr.remote == client
    assert accepted.addr.local == server.addr.local

    response, data = transport.sent[-1]
    assert response.op == OP_RESPONSE
    assert response.dst_port == 3292289129
    assert response.src_port == 1234
    assert response.buf_alloc == VSOCK_BUF_ALLOC
    assert data == b""


def test_accept_rejects_non_request():
    _, device = make_device()
    server = VsockStream(device)
    server.listen(1)
    deliver(device, server.addr.local, PEER, OP_RW)
    with pytest.raises(VsockError) as info:
        server.accept()
    assert info.value.kind is VsockErrorKind.ILLEGAL


def test_connect_establishes():
    transport, _, stream = connected_stream()
    assert stream.state is StreamState.ESTABLISHED
    assert stream.addr.remote == PEER
    request, _ = transport.sent[0]
    assert request.op == OP_REQUEST
    assert request.dst_cid == PEER.cid
    assert request.dst_port == PEER.port


def test_connect_refused_on_reset():
    def refuse(device, stream, packet):
        local = VsockAddr(packet.src_cid, packet.src_port)
        deliver(device, local, PEER, OP_RST)

    _, device = make_device(refuse)
    stream = VsockStream(device)
    with pytest.raises(VsockError) as info:
        stream.connect(PEER)
    assert info.value.kind is VsockErrorKind.REFUSED


def test_connect_times_out_without_peer():
    _, device = make_device()
    stream = VsockStream(device)
    with pytest.raises(VsockError) as info:
        stream.connect(PEER)
    assert info.value.kind is VsockErrorKind.TRANSPORT
    assert info.value.transport.kind is TransportErrorKind.TIMEOUT


def test_connect_when_established_is_illegal():
    _, _, stream = connected_stream()
    with pytest.raises(VsockError) as info:
        stream.connect(PEER)
    assert info.value.kind is VsockErrorKind.ILLEGAL


def test_send_builds_rw_packet():
    transport, _, stream = connected_stream()
    assert stream.send(b"hello\n") == 6
    packet, data = transport.sent[-1]
    assert packet.op == OP_RW
    assert packet.data_len == 6
    assert data == b"hello\n"


def test_send_when_closed_is_illegal():
    _, device = make_device()
    stream = VsockStream(device)
    with pytest.raises(VsockError) as info:
        stream.send(b"x")
    assert info.value.kind is VsockErrorKind.ILLEGAL


def test_recv_splits_and_counts_bytes():
    transport, device, stream = connected_stream()
    deliver(device, stream.addr.local, PEER, OP_RW, b"hello\n")
    assert stream.recv(4) == b"hell"
    assert stream.recv(10) == b"o\n"
    stream.send(b"x")
    packet, _ = transport.sent[-1]
    assert packet.fwd_cnt == 6


def test_read_write_round_trip():
    transport, device, stream = connected_stream()
    assert stream.write(b"ping") == 4
    assert transport.sent[-1][1] == b"ping"
    deliver(device, stream.addr.local, PEER, OP_RW, b"pong")
    assert stream.read(16) == b"pong"


def test_recv_rejects_short_payload():
    _, device, stream = connected_stream()
    key = stream.addr
    hdr = Packet.build(PEER.cid, LOCAL_CID, PEER.port, key.local.port, OP_RW, data_len=10)
    device.push_packet(key, hdr.to_bytes())
    device.push_packet(key, b"abc")
    with pytest.raises(VsockError) as info:
        stream.recv(16)
    assert info.value.kind is VsockErrorKind.ILLEGAL


def test_recv_reset_is_illegal():
    _, device, stream = connected_stream()
    deliver(device, stream.addr.local, PEER, OP_RST)
    with pytest.raises(VsockError) as info:
        stream.recv(16)
    assert info.value.kind is VsockErrorKind.ILLEGAL


def test_recv_peer_shutdown_returns_empty_and_closes():
    _, device, stream = connected_stream()
    deliver(device, stream.addr.local, PEER, OP_SHUTDOWN)
    assert stream.recv(16) == b""
    assert stream.state is StreamState.CLOSED


def test_shutdown_established_sends_shutdown_then_reset():
    transport, _, stream = connected_stream()
    stream.shutdown()
    assert stream.state is StreamState.CLOSED
    ops = [packet.op for packet, _ in transport.sent]
    assert ops == [OP_REQUEST, OP_SHUTDOWN, OP_RST]
    assert transport.sent[1][0].flags == FLAG_SHUTDOWN_READ | FLAG_SHUTDOWN_WRITE


def test_shutdown_listening_removes_binding():
    _, device = make_device()
    server = VsockStream(device)
    server.listen(1)
    server.shutdown()
    assert server.state is StreamState.CLOSED
    key = VsockAddrPair(local=server.addr.local, remote=PEER)
    device.push_packet(key, b"data")
    assert device.pop_packet(key) is None


def test_shutdown_closed_is_illegal():
    _, device = make_device()
    stream = VsockStream(device)
    with pytest.raises(VsockError) as info:
        stream.shutdown()
    assert info.value.kind is VsockErrorKind.ILLEGAL


def test_close_ignores_errors_and_context_manager_closes():
    _, device = make_device()
    stream = VsockStream(device)
    stream.close()
    assert stream.state is StreamState.CLOSED
    with VsockStream(device) as listener:
        listener.listen(1)
    assert listener.state is StreamState.CLOSED


def test_push_packet_ignores_empty_and_unknown():
    _, device = make_device()
    stream = VsockStream(device)
    stream.listen(1)
    key = VsockAddrPair(local=stream.addr.local, remote=PEER)
    device.push_packet(key, b"")
    assert device.pop_packet(key) is None
    other = VsockAddrPair(local=VsockAddr(9, 9), remote=PEER)
    device.push_packet(other, b"abc")
    assert device.pop_packet(other) is None


def test_wait_for_event_set():
    event = threading.Event()
    event.set()
    timer = FakeTimer(expired=False)
    assert wait_for_event(event, timer) is True
    assert not event.is_set()


def test_wait_for_event_timeout_resets_timer():
    event = threading.Event()
    timer = FakeTimer(expired=True)
    assert wait_for_event(event, timer) is False
    assert timer.resets == 1


def test_wait_for_event_set_from_thread():
    event = threading.Event()
    timer = FakeTimer(expired=False)
    threading.Timer(0.01, event.set).start()
    assert wait_for_event(event, timer) is True
    assert timer.resets == 0