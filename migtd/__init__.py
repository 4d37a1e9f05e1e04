"""Migration TD protocol helpers: vsock packets and streams, vmcall service buffers, migration session data and tagged event logs."""

__version__ = "0.1.0"