"""Stateful command layer over one stub connection.

A Session is either unattached or attached to a target. It only moves to
attached after Create or Attach gets a non-error reply, and back to
unattached after a successful Detach, after the target exits, or on Close.

Every command is one ``send_and_receive`` on the owned connection. Replies
are classified (ack, error packet, payload) before anything else looks at
them; error packets surface as RemoteError or a more specific error.
"""

import enum
import json
import logging
import threading
from collections.abc import Mapping
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any

from .address import Address
from .connection import ConnectionConfig, ConnectionManager
from .errors import (
    AllocationError,
    DecodeError,
    RemoteConnectionError,
    TargetStateError,
)
from .protocol import (
    RESERVED_BYTES,
    PacketCodec,
    Reply,
    SizeRadix,
    StopReply,
    hex_encode,
    parse_stop_reply,
    stop_payload,
    unescape_payload,
)

logger = logging.getLogger(__name__)

_PERMISSION_CHARS = frozenset("rwx")


class SessionState(enum.Enum):
    UNATTACHED = "unattached"
    ATTACHED = "attached"


@dataclass(frozen=True, slots=True)
class RegisterStateToken:
    """Opaque handle returned by the stub for a saved register snapshot."""

    value: str

    def __str__(self) -> str:
        return self.value


class Session:
    """Command surface for one remote debug stub.

    Usage::

        with Session.connect("127.0.0.1", 1234) as session:
            session.set_stdout("/tmp/out.txt")
            session.create("/bin/ls", "-l")
            stop = session.run()
            threads = session.get_threads()

    Allocate, write, thread queries, interrupt and detach work in either
    state; run, continue and register snapshots need an attached target;
    I/O redirection and environment setup must happen before one exists.
    """

    def __init__(
        self,
        connection: ConnectionManager,
        codec: PacketCodec | None = None,
        *,
        size_radix: SizeRadix = SizeRadix.HEX,
    ) -> None:
        self._connection = connection
        self._codec = codec or PacketCodec()
        self.size_radix = size_radix
        self._target = ""
        self._started = False
        self._closed = False
        # Held across precondition check, exchange and state change.
        self._lock = threading.RLock()

    @classmethod
    def connect(
        cls,
        host: str,
        port: int,
        *,
        config: ConnectionConfig | None = None,
        codec: PacketCodec | None = None,
        size_radix: SizeRadix = SizeRadix.HEX,
    ) -> "Session":
        """Dial ``host:port``, negotiate no-ack mode, return an unattached Session."""
        return cls(ConnectionManager.open(host, port, config), codec, size_radix=size_radix)

    def __enter__(self) -> "Session":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # --- State ---

    @property
    def target(self) -> str:
        """Path or name of the current target, empty when unattached."""
        return self._target

    @property
    def state(self) -> SessionState:
        return SessionState.ATTACHED if self._target else SessionState.UNATTACHED

    @property
    def started(self) -> bool:
        return self._started

    @property
    def closed(self) -> bool:
        return self._closed

    # --- Target lifecycle ---

    def create(self, path: str, *args: str) -> None:
        """Launch ``path`` with ``args`` on the remote host.

        Raises:
            TargetStateError: If a target is already set.
            RemoteError: If the stub refuses to launch it.
        """
        with self._lock:
            self._require_unattached("create a target")
            reply = self._exchange(_create_command(path, args))
            reply.raise_for_error()
            self._set_target(path)
        logger.info("Created target %s", path)

    def attach(self, name: str) -> None:
        """Attach to a running process by name.

        Raises:
            TargetStateError: If a target is already set.
            RemoteError: If the stub cannot attach.
        """
        with self._lock:
            self._require_unattached("attach")
            reply = self._exchange(f"vAttachName;{hex_encode(name)}")
            reply.raise_for_error()
            self._set_target(name)
        logger.info("Attached to %s", name)

    def detach(self) -> None:
        """Detach from the target.

        An error reply is ignored when no target was set, so calling this
        twice is harmless.
        """
        with self._lock:
            reply = self._exchange("D")
            if reply.is_error and not self._target:
                logger.warning(
                    "Ignoring detach error E%02X with no target set", reply.error_code or 0
                )
                return
            reply.raise_for_error()
            if self._target:
                logger.info("Detached from %s", self._target)
            self._clear_target()

    # --- Execution control ---

    def run(self) -> StopReply | None:
        """Start the created target.

        Returns:
            The stop reply if the stub answered with one, else None.

        Raises:
            TargetStateError: If unattached, or if run was already issued.
        """
        with self._lock:
            self._require_attached("run")
            if self._started:
                raise TargetStateError("Target is already running")
            self._started = True
            reply = self._exchange("c")
            if reply.is_error:
                self._started = False
                reply.raise_for_error()
            return self._handle_stop(reply)

    def continue_(self) -> StopReply | None:
        """Resume the target after a stop.

        Raises:
            TargetStateError: If unattached.
        """
        with self._lock:
            self._require_attached("continue")
            reply = self._exchange("c")
            reply.raise_for_error()
            self._started = True
            return self._handle_stop(reply)

    def interrupt(self) -> Reply:
        """Ask the stub to stop the target, as if Ctrl-C was pressed.

        The stop reply the stub sends afterwards is not read here; use
        :meth:`wait_for_stop` or :meth:`drain_notifications` to collect it.
        """
        with self._lock:
            reply = self._exchange("vCtrlC")
            reply.raise_for_error()
            self._handle_stop(reply)
            return reply

    def wait_for_stop(self, timeout: float | None = None) -> StopReply:
        """Read the next stop packet from the stub without sending a command.

        Accepts a plain stop reply or a ``%Stop:`` notification.

        Raises:
            RemoteTimeoutError: If no packet arrives in time.
            DecodeError: If the next packet is not a stop reply.
        """
        with self._lock:
            self._require_open()
            reply = self._codec.decode(self._connection.receive(timeout))
            reply.raise_for_error()
            stop = self._handle_stop(reply)
            if stop is None:
                raise DecodeError(f"Expected a stop reply, got {reply.payload!r}")
            return stop

    def drain_notifications(self) -> list[Reply]:
        """Return unsolicited packets received so far, oldest first.

        A stop among them that reports the target gone clears the target.

        Raises:
            ProtocolError: If a queued packet is malformed.
        """
        with self._lock:
            replies = [self._codec.decode(unit) for unit in self._connection.drain_notifications()]
            for reply in replies:
                self._handle_stop(reply)
        return replies

    # --- Memory ---

    def allocate(self, size: int, permissions: str = "rwx") -> Address:
        """Allocate ``size`` bytes in the target with the given permissions.

        Raises:
            AllocationError: If the stub refuses or replies with no usable
                address.
        """
        if size <= 0:
            raise ValueError(f"Allocation size must be positive, got {size}")
        if not permissions or not set(permissions) <= _PERMISSION_CHARS:
            raise ValueError(f"Permissions must be drawn from 'rwx', got {permissions!r}")

        with self._lock:
            reply = self._exchange(f"_M{self.size_radix.format(size)},{permissions}")
        if reply.is_error:
            raise AllocationError(
                f"Stub refused to allocate {size} bytes: {reply.payload}",
                code=reply.error_code,
            )
        if not reply.payload:
            raise AllocationError(f"Stub returned no address for {size} bytes")
        try:
            return Address.from_hex(reply.payload)
        except DecodeError as exc:
            raise AllocationError(f"Unparsable allocation reply: {reply.payload!r}") from exc

    def write_at_address(self, address: Address | int, data: bytes) -> None:
        """Write ``data`` into target memory at ``address``.

        Raises:
            RemoteError: If the stub rejects the write.
        """
        if not isinstance(address, Address):
            address = Address(address)
        with self._lock:
            reply = self._exchange(f"M{address},{self.size_radix.format(len(data))}:{data.hex()}")
        reply.raise_for_error()

    # --- Queries ---

    def get_threads(self) -> Mapping[str, Any]:
        """Return thread metadata keyed by thread id.

        A JSON object payload is returned as-is. A JSON array of thread
        objects is keyed by each entry's ``tid``. The mapping is read-only.

        Raises:
            DecodeError: If the payload is not valid JSON of either shape.
        """
        with self._lock:
            reply = self._exchange("jThreadsInfo")
        reply.raise_for_error()
        if not reply.payload:
            raise DecodeError("Empty reply to jThreadsInfo")
        return MappingProxyType(_threads_mapping(_load_json(reply.payload)))

    # --- Registers ---

    def save_registers(self) -> RegisterStateToken:
        """Snapshot the registers of the current thread.

        Raises:
            TargetStateError: If unattached.
            DecodeError: If the stub returns no token.
        """
        with self._lock:
            self._require_attached("save registers")
            reply = self._exchange("QSaveRegisterState")
        reply.raise_for_error()
        if not reply.payload:
            raise DecodeError("Stub returned no register state token")
        return RegisterStateToken(reply.payload)

    def restore_registers(self, token: RegisterStateToken) -> None:
        """Restore a snapshot taken by :meth:`save_registers`."""
        with self._lock:
            self._require_attached("restore registers")
            reply = self._exchange(f"QRestoreRegisterState:{token.value}")
        reply.raise_for_error()

    # --- Launch setup ---

    def set_stdout(self, path: str) -> None:
        """Redirect the stdout of the next created target to ``path``."""
        self._set_stdio("QSetSTDOUT", path)

    def set_stdin(self, path: str) -> None:
        """Redirect the stdin of the next created target from ``path``."""
        self._set_stdio("QSetSTDIN", path)

    def set_stderr(self, path: str) -> None:
        """Redirect the stderr of the next created target to ``path``."""
        self._set_stdio("QSetSTDERR", path)

    def set_env(self, env: Mapping[str, str]) -> None:
        """Set environment variables for the next created target.

        Entries containing protocol-reserved characters are sent hex-encoded.
        """
        with self._lock:
            self._require_unattached("set the environment")
            for name, value in env.items():
                entry = f"{name}={value}"
                if RESERVED_BYTES & set(entry.encode("utf-8")):
                    command = f"QEnvironmentHexEncoded:{hex_encode(entry)}"
                else:
                    command = f"QEnvironment:{entry}"
                self._exchange(command).raise_for_error()

    def set_env_escaped(self, env: Mapping[str, str]) -> None:
        """Set environment variables, hex-encoding every entry."""
        with self._lock:
            self._require_unattached("set the environment")
            for name, value in env.items():
                command = f"QEnvironmentHexEncoded:{hex_encode(f'{name}={value}')}"
                self._exchange(command).raise_for_error()

    # --- Teardown ---

    def close(self) -> None:
        """Detach if a target is set, then release the connection.

        Safe to call more than once. The connection is released and the
        target cleared even when the detach fails; the detach error is raised
        afterwards. Detach is skipped on a connection that is out of sync.
        """
        with self._lock:
            if self._closed:
                return
            try:
                if self._target and self._connection.usable:
                    self.detach()
            finally:
                self._closed = True
                self._clear_target()
                self._connection.close()
        logger.info("Session closed")

    # --- Internal helpers ---

    def _exchange(self, command: str, timeout: float | None = None) -> Reply:
        self._require_open()
        raw = self._connection.send_and_receive(self._codec.encode(command), timeout)
        reply = self._codec.decode(raw)
        logger.debug("%s -> %s %r", command, reply.kind.value, reply.payload)
        return reply

    def _set_stdio(self, command: str, path: str) -> None:
        with self._lock:
            self._require_unattached(f"send {command}")
            self._exchange(f"{command}:{hex_encode(path)}").raise_for_error()

    def _handle_stop(self, reply: Reply) -> StopReply | None:
        payload = stop_payload(reply)
        if payload is None:
            return None
        stop = parse_stop_reply(payload)
        if stop.target_gone:
            logger.info("Target %s %s (code %d)", self._target, stop.kind, stop.code)
            self._clear_target()
        return stop

    def _set_target(self, target: str) -> None:
        self._target = target
        self._started = False

    def _clear_target(self) -> None:
        self._target = ""
        self._started = False

    def _require_open(self) -> None:
        if self._closed:
            raise RemoteConnectionError("Session is closed")

    def _require_attached(self, action: str) -> None:
        self._require_open()
        if not self._target:
            raise TargetStateError(f"Cannot {action}; no target created or attached")

    def _require_unattached(self, action: str) -> None:
        self._require_open()
        if self._target:
            raise TargetStateError(f"Cannot {action}; already attached to {self._target}")


def connect(
    host: str,
    port: int,
    *,
    config: ConnectionConfig | None = None,
    codec: PacketCodec | None = None,
    size_radix: SizeRadix = SizeRadix.HEX,
) -> Session:
    """Open a Session to the stub at ``host:port``."""
    return Session.connect(host, port, config=config, codec=codec, size_radix=size_radix)


def _create_command(path: str, args: tuple[str, ...]) -> str:
    """Build ``A<len>,0,<hex path>[,<len>,<idx>,<hex arg>]...``."""
    parts = []
    for index, value in enumerate((path, *args)):
        encoded = hex_encode(value)
        parts.append(f"{len(encoded)},{index},{encoded}")
    return "A" + ",".join(parts)


def _load_json(payload: str) -> Any:
    try:
        return json.loads(payload)
    except json.JSONDecodeError as exc:
        # lldb-server escapes '}' inside JSON replies; retry on the unescaped form.
        try:
            raw = unescape_payload(payload.encode("utf-8", errors="surrogateescape"))
            return json.loads(raw.decode("utf-8", errors="surrogateescape"))
        except (DecodeError, json.JSONDecodeError):
            pass
        raise DecodeError(f"Malformed JSON in reply: {exc}") from exc


def _threads_mapping(decoded: Any) -> dict[str, Any]:
    if isinstance(decoded, dict):
        return dict(decoded)
    if isinstance(decoded, list):
        threads: dict[str, Any] = {}
        for entry in decoded:
            if not isinstance(entry, dict) or "tid" not in entry:
                raise DecodeError(f"Thread entry without a tid: {entry!r}")
            threads[str(entry["tid"])] = entry
        return threads
    raise DecodeError(f"Expected a JSON object or array, got {type(decoded).__name__}")
