"""lldb-remote: client for the lldb-server / gdbserver remote protocol.

Drives a remote debug stub over TCP: launch or attach to a target, control
its execution, write its memory and query its threads.

Architecture:
    Session (session.py)           state machine + command builders
        |
    PacketCodec (protocol.py)      $payload#checksum framing, reply classes
        |
    ConnectionManager (connection.py)
        |                          no-ack handshake, locked send+receive
        v
    lldb-server / gdbserver over TCP
"""

from .address import Address
from .connection import ConnectionConfig, ConnectionManager
from .errors import (
    AllocationError,
    DecodeError,
    LLDBRemoteError,
    ProtocolError,
    RemoteConnectionError,
    RemoteError,
    RemoteTimeoutError,
    TargetStateError,
)
from .protocol import ChecksumMode, PacketCodec, Reply, ReplyKind, SizeRadix, StopReply
from .session import RegisterStateToken, Session, SessionState, connect

__version__ = "0.1.0"

__all__ = [
    "Address",
    "AllocationError",
    "ChecksumMode",
    "ConnectionConfig",
    "ConnectionManager",
    "DecodeError",
    "LLDBRemoteError",
    "PacketCodec",
    "ProtocolError",
    "RegisterStateToken",
    "RemoteConnectionError",
    "RemoteError",
    "RemoteTimeoutError",
    "Reply",
    "ReplyKind",
    "Session",
    "SessionState",
    "SizeRadix",
    "StopReply",
    "TargetStateError",
    "connect",
]
