# migtd

Building blocks for a migration trust domain: the vsock packet format and a
stream layer on top of a pluggable transport, a transport that carries
packets through VMM service calls, the vmcall service command and response
buffers, the migration information records, version negotiation between
source and destination, and tagged event log entries.

## Installation

```
pip install .
```

For running the tests:

```
pip install ".[test]"
pytest
```

## Modules

- `migtd.vsock` – `VsockAddr`, `VsockAddrPair`, the `VsockError` and
  `VsockTransportError` exceptions (with `VsockErrorKind` and
  `TransportErrorKind`), the `VsockTransport` and `VsockTimeout` interfaces
  a transport implements, and `align_up`.
- `migtd.packet` – `Packet`, the 44-byte vsock header followed by payload.
  `Packet.build(...)` creates a header, `Packet.checked(buffer)` parses and
  validates one.
- `migtd.stream` – `VsockDevice` and `VsockStream` with `bind`, `listen`,
  `accept`, `connect`, `send`, `recv`, `read`, `write`, `shutdown` and
  `close`; `VsockStream` is also a context manager. `wait_for_event` waits
  on a `threading.Event` until it is set or a `VsockTimeout` expires.
- `migtd.vmcall` – `Command`, `Response` and the `VmcallVsock` transport.
  `VmcallVsock` is given a callable that performs the service call and is
  told of its completion through `notify()`.
- `migtd.migration` – `MigrationResult`, `MigrationError`, the service
  GUIDs, `guid_from_fields`, `result_for_tls_error`,
  `result_for_io_error` and the migration information records
  (`MigtdMigrationInformation`, `MigtdStreamSocketInfo`,
  `MigtdMigpolicyInfo`, `MigtdMigpolicy`).
- `migtd.migration_data` – `VmcallServiceCommand`, `VmcallServiceResponse`,
  the service command and response structures and `MigrationSessionKey`.
- `migtd.session` – `ExchangeInformation`, `MigrationInformation` and
  `cal_mig_version`.
- `migtd.event_log` – `TaggedEvent` and `calculate_digest` (SHA-384).

## Example

```python
from migtd.packet import Packet

header = Packet.build(
    src_cid=33, dst_cid=2, src_port=1234, dst_port=40001,
    op=2, data_len=0, flags=0, fwd_cnt=0, buf_alloc=0x40000,
)
packet = Packet.checked(header.to_bytes())
print(packet.header_len(), packet.payload())
```

Negotiating the migration version:

```python
from migtd.session import ExchangeInformation, cal_mig_version

local = ExchangeInformation(min_ver=4, max_ver=6)
remote = ExchangeInformation(min_ver=5, max_ver=6)
print(cal_mig_version(True, local, remote))  # 6
```

## What the package does not do

It has no command-line program and does not run a migration service itself:
it does not talk to real hardware or to a VMM, does not set up a secure
channel, and does not read or extend measurement registers. A transport and
the service call it relies on are supplied by the caller.