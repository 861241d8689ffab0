"""TCP connection to a remote debug stub.

Owns the socket, performs the no-ack handshake, and exposes one atomic
``send_and_receive`` used by every higher layer. Reads are buffered so a
reply split across several ``recv()`` calls, or several units arriving in
one ``recv()``, are both handled.

The protocol is half-duplex: one command, one reply. Complete packets found
in the buffer before a command is written were not asked for, so they are
queued as notifications. A stop reply that arrives only after the next
command has been written cannot be told apart from that command's reply.
A command whose reply misses the read deadline leaves the connection out of
sync; every later exchange fails until the caller reconnects.
"""

import logging
import queue
import socket
import threading
import time
from dataclasses import dataclass

from .errors import ProtocolError, RemoteConnectionError, RemoteTimeoutError
from .protocol import (
    ACK,
    CHECKSUM_LEN,
    CONNECTION_TIMEOUT,
    DEFAULT_READ_TIMEOUT,
    MAX_RECV,
    NAK,
    NO_ACK_MODE_COMMAND,
    NOTIFICATION_START,
    OK_REPLY,
    PACKET_END,
    PACKET_START,
    PacketCodec,
)

logger = logging.getLogger(__name__)

_UNIT_STARTS = (ACK, NAK, PACKET_START, NOTIFICATION_START)


@dataclass
class ConnectionConfig:
    connect_timeout: float = CONNECTION_TIMEOUT
    read_timeout: float = DEFAULT_READ_TIMEOUT
    recv_size: int = MAX_RECV


class ConnectionManager:
    """Exclusive owner of one stub connection.

    Usage::

        conn = ConnectionManager.open("127.0.0.1", 1234)
        raw = conn.send_and_receive(PacketCodec().encode("jThreadsInfo"))
        conn.close()
    """

    def __init__(self, sock: socket.socket, config: ConnectionConfig | None = None) -> None:
        self._sock: socket.socket | None = sock
        self.config = config or ConnectionConfig()
        self._buffer = b""
        self._notifications: queue.Queue[bytes] = queue.Queue()
        # Serializes write+read so concurrent callers can't interleave.
        self._io_lock = threading.Lock()
        self._handshake_done = False
        # Set once a command's reply was not read in time; later replies can't be paired.
        self._desync_reason: str | None = None

    # --- Connection lifecycle ---

    @classmethod
    def open(
        cls,
        host: str,
        port: int,
        config: ConnectionConfig | None = None,
    ) -> "ConnectionManager":
        """Dial the stub and complete the no-ack handshake.

        Raises:
            RemoteConnectionError: If the dial or the handshake fails.
            RemoteTimeoutError: If the stub does not answer the handshake.
        """
        config = config or ConnectionConfig()
        try:
            sock = socket.create_connection((host, port), timeout=config.connect_timeout)
        except OSError as exc:
            raise RemoteConnectionError(f"Cannot connect to {host}:{port}: {exc}") from exc
        logger.info("Connected to %s:%s", host, port)

        conn = cls(sock, config)
        try:
            conn.handshake()
        except Exception:
            conn.close()
            raise
        return conn

    def handshake(self) -> None:
        """Negotiate no-acknowledgment mode.

        Sends ``QStartNoAckMode``, waits for the stub's ``+``, reads its
        ``OK`` reply and acknowledges it with a bare ``+``. Anything the stub
        sends after that stays buffered for the next read.
        """
        codec = PacketCodec(verify_checksums=True)
        with self._io_lock:
            if self._handshake_done:
                raise RemoteConnectionError("Handshake already completed")
            deadline = time.monotonic() + self.config.read_timeout
            self._write(codec.encode(NO_ACK_MODE_COMMAND))

            reply_unit = self._read_unit(deadline)
            if reply_unit == NAK:
                raise RemoteConnectionError("Stub rejected the no-ack request")
            # Some stubs skip the ack and answer straight away.
            if reply_unit == ACK:
                reply_unit = self._read_unit(deadline)

            try:
                reply = codec.decode(reply_unit)
            except ProtocolError as exc:
                raise RemoteConnectionError(f"Bad handshake reply: {exc}") from exc
            if reply.payload != OK_REPLY:
                raise RemoteConnectionError(
                    f"Stub refused no-ack mode: {reply_unit!r}"
                )

            self._write(ACK)
            self._handshake_done = True
        logger.info("No-ack mode negotiated")

    def close(self) -> None:
        """Close the socket. Safe to call more than once."""
        sock, self._sock = self._sock, None
        if sock is None:
            return
        try:
            sock.close()
        except OSError:
            pass
        self._buffer = b""
        logger.info("Disconnected")

    @property
    def closed(self) -> bool:
        return self._sock is None

    @property
    def handshake_done(self) -> bool:
        return self._handshake_done

    @property
    def usable(self) -> bool:
        """False once closed or once a reply was lost to a timeout."""
        return self._sock is not None and self._desync_reason is None

    # --- Exchanges ---

    def send_and_receive(self, data: bytes, timeout: float | None = None) -> bytes:
        """Write one packet and return the next reply unit.

        Notification packets read while waiting are queued instead of
        returned, and stray ``+`` acks from stubs that keep acknowledging
        in no-ack mode are skipped. ``timeout`` overrides the configured
        read deadline.

        A timeout leaves the stub's reply outstanding, so the connection
        refuses further commands afterwards.

        Raises:
            RemoteConnectionError: If the socket is closed or fails, or a
                previous reply was lost to a timeout.
            RemoteTimeoutError: If no complete reply arrives in time.
        """
        with self._io_lock:
            self._require_in_sync()
            self._queue_buffered_units()
            self._write(data)
            deadline = self._deadline(timeout)
            while True:
                try:
                    unit = self._read_unit(deadline)
                except RemoteTimeoutError:
                    self._desync_reason = f"no reply to {data[:32]!r} before the deadline"
                    logger.warning("Connection out of sync: %s", self._desync_reason)
                    raise
                if unit == ACK:
                    continue
                if unit.startswith(NOTIFICATION_START):
                    self._notifications.put(unit)
                    continue
                return unit

    def receive(self, timeout: float | None = None) -> bytes:
        """Wait for the next packet without sending anything.

        Queued notifications are returned first, oldest first.
        """
        with self._io_lock:
            self._require_in_sync()
            self._queue_buffered_units()
            try:
                return self._notifications.get_nowait()
            except queue.Empty:
                pass
            deadline = self._deadline(timeout)
            while True:
                unit = self._read_unit(deadline)
                if unit in (ACK, NAK):
                    continue
                return unit

    def drain_notifications(self) -> list[bytes]:
        """Return all unsolicited packets received so far, clearing the queue.

        Complete packets still sitting in the read buffer are included. The
        socket itself is not read.
        """
        with self._io_lock:
            self._queue_buffered_units()
        units = []
        while True:
            try:
                units.append(self._notifications.get_nowait())
            except queue.Empty:
                break
        return units

    # --- Internal I/O ---

    def _deadline(self, timeout: float | None) -> float:
        if timeout is None:
            timeout = self.config.read_timeout
        return time.monotonic() + timeout

    def _require_in_sync(self) -> None:
        if self._desync_reason is not None:
            raise RemoteConnectionError(
                f"Connection out of sync ({self._desync_reason}); reconnect"
            )

    def _write(self, data: bytes) -> None:
        if self._sock is None:
            raise RemoteConnectionError("Not connected")
        logger.debug("send %r", data)
        try:
            self._sock.sendall(data)
        except OSError as exc:
            raise RemoteConnectionError(f"Send failed: {exc}") from exc

    def _read_unit(self, deadline: float) -> bytes:
        """Read until one complete unit (ack, nak or packet) is buffered."""
        while True:
            unit = self._take_unit()
            if unit is not None:
                logger.debug("recv %r", unit)
                return unit
            self._fill(deadline)

    def _take_unit(self) -> bytes | None:
        """Pop one complete unit off the buffer, or None if none is complete."""
        while self._buffer:
            head = self._buffer[:1]
            if head in (ACK, NAK):
                self._buffer = self._buffer[1:]
                return head
            if head in (PACKET_START, NOTIFICATION_START):
                end = self._buffer.find(PACKET_END, 1)
                if end < 0 or len(self._buffer) < end + 1 + CHECKSUM_LEN:
                    return None
                unit = self._buffer[: end + 1 + CHECKSUM_LEN]
                self._buffer = self._buffer[end + 1 + CHECKSUM_LEN :]
                return unit

            starts = [i for i in (self._buffer.find(s) for s in _UNIT_STARTS) if i >= 0]
            skip = min(starts) if starts else len(self._buffer)
            logger.debug("Discarding stray bytes: %r", self._buffer[:skip])
            self._buffer = self._buffer[skip:]
        return None

    def _queue_buffered_units(self) -> None:
        while True:
            unit = self._take_unit()
            if unit is None:
                return
            if unit in (ACK, NAK):
                continue
            logger.debug("Queued unsolicited packet %r", unit)
            self._notifications.put(unit)

    def _fill(self, deadline: float) -> None:
        if self._sock is None:
            raise RemoteConnectionError("Not connected")

        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise RemoteTimeoutError("Timed out waiting for reply")
        self._sock.settimeout(remaining)

        try:
            chunk = self._sock.recv(self.config.recv_size)
        except socket.timeout as exc:
            raise RemoteTimeoutError("Timed out waiting for reply") from exc
        except OSError as exc:
            raise RemoteConnectionError(f"Socket error: {exc}") from exc

        if not chunk:
            raise RemoteConnectionError("Stub closed connection")
        self._buffer += chunk
