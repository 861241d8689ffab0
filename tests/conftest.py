"""Shared test fixtures for the lldb-remote test suite."""

import socket
import threading

import pytest

from lldb_remote.connection import ConnectionConfig, ConnectionManager
from lldb_remote.session import Session


def frame(payload: str, start: str = "$") -> bytes:
    """Frame ``payload`` with a correct checksum, as a stub would."""
    body = payload.encode()
    return f"{start}{payload}#{sum(body) % 256:02x}".encode()


class FakeStub:
    """Scripted stand-in for a socket connected to a debug stub.

    Each packet written via ``sendall`` is looked up by its payload in
    ``replies``; the matching bytes (or the next item of a list) are queued
    for ``recv``. Unknown commands get ``$OK#9a``. Every write is recorded in
    ``sent`` exactly as it arrived.
    """

    def __init__(self, replies: dict | None = None, chunk_size: int = 4096) -> None:
        self.replies: dict[str, bytes | list[bytes]] = {
            "QStartNoAckMode": b"+$OK#9a",
        }
        self.replies.update(replies or {})
        self.chunk_size = chunk_size
        self.sent: list[bytes] = []
        self.timeouts: list[float | None] = []
        self.closed = False
        self.eof = False
        self._inbound = b""
        self._lock = threading.Lock()

    @property
    def commands(self) -> list[str]:
        """Payloads of every packet sent, bare acks excluded."""
        return [data[1:-3].decode() for data in self.sent if data.startswith(b"$")]

    def push(self, data: bytes) -> None:
        """Queue bytes the stub sends on its own."""
        with self._lock:
            self._inbound += data

    # --- socket API ---

    def sendall(self, data: bytes) -> None:
        with self._lock:
            self.sent.append(bytes(data))
            if not data.startswith(b"$"):
                return
            command = data[1:-3].decode()
            reply = self.replies.get(command, b"$OK#9a")
            if isinstance(reply, list):
                reply = reply.pop(0)
            self._inbound += reply

    def recv(self, bufsize: int) -> bytes:
        with self._lock:
            if not self._inbound:
                if self.eof:
                    return b""
                raise socket.timeout("timed out")
            size = min(bufsize, self.chunk_size)
            chunk, self._inbound = self._inbound[:size], self._inbound[size:]
            return chunk

    def settimeout(self, value: float | None) -> None:
        self.timeouts.append(value)

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def stub():
    """A FakeStub that accepts the no-ack handshake."""
    return FakeStub()


@pytest.fixture
def connection(stub):
    """A ConnectionManager over ``stub`` with the handshake done."""
    conn = ConnectionManager(stub, ConnectionConfig(read_timeout=0.5))
    conn.handshake()
    return conn


@pytest.fixture
def session(connection):
    """An unattached Session over the handshaken connection."""
    return Session(connection)
