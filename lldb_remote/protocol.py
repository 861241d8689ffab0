"""Packet framing, checksums, and reply classification for the remote protocol.

Wire format of one packet::

    $<payload>#<hh>

where ``hh`` is the sum of the payload bytes modulo 256 as two lowercase hex
digits. Notification packets use ``%`` as the start marker. A bare ``+`` is an
acknowledgment and ``-`` asks for a retransmit.

Error replies are ``E`` followed by a two-digit hex code, optionally followed
by ``;<text>`` from stubs that report error strings.
"""

import enum
import re
from dataclasses import dataclass, field

from .errors import DecodeError, ProtocolError, RemoteError

# --- Wire markers ---

PACKET_START = b"$"
NOTIFICATION_START = b"%"
PACKET_END = b"#"
ACK = b"+"
NAK = b"-"
ESCAPE = 0x7D
ESCAPE_XOR = 0x20

# Bytes that may not appear raw inside a payload.
RESERVED_BYTES = frozenset(b"$#}*")

PLACEHOLDER_CHECKSUM = "00"
CHECKSUM_LEN = 2

# --- Well-known commands and replies ---

NO_ACK_MODE_COMMAND = "QStartNoAckMode"
OK_REPLY = "OK"
STOP_NOTIFICATION_PREFIX = "Stop:"

# --- Timeouts (seconds) and buffer size ---

CONNECTION_TIMEOUT = 5.0
DEFAULT_READ_TIMEOUT = 30.0
MAX_RECV = 4096

ERROR_PATTERN = re.compile(r"E([0-9a-fA-F]{2})(?:;(.*))?", re.DOTALL)
_HEX_DIGITS = frozenset(b"0123456789abcdefABCDEF")


def checksum(data: bytes) -> int:
    """Return the protocol checksum of ``data`` (byte sum modulo 256)."""
    return sum(data) % 256


def escape_payload(data: bytes) -> bytes:
    """Escape reserved bytes as ``}`` followed by the byte XOR 0x20."""
    result = bytearray()
    for byte in data:
        if byte in RESERVED_BYTES:
            result += bytes([ESCAPE, byte ^ ESCAPE_XOR])
        else:
            result.append(byte)
    return bytes(result)


def unescape_payload(data: bytes) -> bytes:
    """Reverse :func:`escape_payload`.

    Raises:
        DecodeError: If the data ends with a dangling escape byte.
    """
    result = bytearray()
    it = iter(data)
    for byte in it:
        if byte == ESCAPE:
            try:
                result.append(next(it) ^ ESCAPE_XOR)
            except StopIteration:
                raise DecodeError("Payload ends with a dangling escape byte") from None
        else:
            result.append(byte)
    return bytes(result)


def hex_encode(value: str | bytes) -> str:
    """Lowercase hex of ``value`` (strings are UTF-8 encoded first)."""
    if isinstance(value, str):
        value = value.encode("utf-8")
    return value.hex()


def is_error_reply(payload: str) -> bool:
    """True if ``payload`` is an error packet (``Exx`` or ``Exx;text``)."""
    return ERROR_PATTERN.fullmatch(payload) is not None


def parse_error_code(payload: str) -> tuple[int, str]:
    """Split an error payload into its numeric code and optional text.

    Raises:
        ValueError: If the payload is not an error packet.
    """
    match = ERROR_PATTERN.fullmatch(payload)
    if match is None:
        raise ValueError(f"Not an error reply: {payload!r}")
    return int(match.group(1), 16), match.group(2) or ""


# --- Packets and replies ---


class ChecksumMode(enum.Enum):
    """How outgoing packets get their checksum trailer."""

    COMPUTED = "computed"
    # Fixed "00" trailer for stubs that stop checking once no-ack mode is on.
    PLACEHOLDER = "placeholder"


class SizeRadix(enum.Enum):
    """Radix of the size field in ``_M`` and the byte count in ``M``.

    lldb-server parses both as hex. Some stubs expect decimal.
    """

    HEX = "hex"
    DECIMAL = "decimal"

    def format(self, value: int) -> str:
        if self is SizeRadix.HEX:
            return f"{value:x}"
        return str(value)


@dataclass(frozen=True, slots=True)
class Packet:
    """One framed packet located inside a raw reply.

    Attributes:
        payload: Text between the start marker and ``#``, as sent.
        start: Offset of the start marker in the raw bytes.
        end: Offset of the ``#`` end marker in the raw bytes.
        checksum: Value of the two-digit trailer.
        computed: Checksum recomputed from the payload bytes.
        notification: True for ``%`` notification packets.
    """

    payload: str
    start: int
    end: int
    checksum: int
    computed: int
    notification: bool = False

    @property
    def checksum_ok(self) -> bool:
        return self.checksum == self.computed


class ReplyKind(enum.Enum):
    ACK = "ack"
    ERROR = "error"
    PAYLOAD = "payload"
    NOTIFICATION = "notification"


@dataclass(frozen=True, slots=True)
class Reply:
    """A classified reply: bare ack, error packet, or substantive payload."""

    kind: ReplyKind
    payload: str = ""
    error_code: int | None = None
    error_message: str = ""

    @property
    def is_ack(self) -> bool:
        return self.kind is ReplyKind.ACK

    @property
    def is_error(self) -> bool:
        return self.kind is ReplyKind.ERROR

    def raise_for_error(self) -> None:
        """Raise RemoteError if this reply is an error packet."""
        if self.kind is ReplyKind.ERROR:
            raise RemoteError(self.error_code or 0, self.error_message)


def locate_packet(raw: bytes) -> Packet:
    """Find the start marker, end marker and trailer of one packet in ``raw``.

    Leading acknowledgment bytes are skipped; anything else outside the
    packet boundaries is a framing error.

    Raises:
        ProtocolError: If the bytes are not exactly one well-formed packet.
    """
    start = 0
    while start < len(raw) and raw[start : start + 1] == ACK:
        start += 1

    marker = raw[start : start + 1]
    if marker not in (PACKET_START, NOTIFICATION_START):
        raise ProtocolError(f"Missing packet start marker: {raw!r}")

    end = raw.find(PACKET_END, start + 1)
    if end < 0:
        raise ProtocolError(f"Missing packet end marker: {raw!r}")

    trailer = raw[end + 1 : end + 1 + CHECKSUM_LEN]
    if len(trailer) != CHECKSUM_LEN or not all(b in _HEX_DIGITS for b in trailer):
        raise ProtocolError(f"Malformed checksum trailer: {raw!r}")

    if end + 1 + CHECKSUM_LEN != len(raw):
        raise ProtocolError(f"Trailing bytes after packet: {raw!r}")

    body = raw[start + 1 : end]
    return Packet(
        payload=body.decode("utf-8", errors="surrogateescape"),
        start=start,
        end=end,
        checksum=int(trailer, 16),
        computed=checksum(body),
        notification=marker == NOTIFICATION_START,
    )


@dataclass
class PacketCodec:
    """Encodes commands into packets and classifies raw replies.

    ``checksum_mode`` picks the trailer for outgoing packets. Incoming
    checksums are only enforced when ``verify_checksums`` is set, since stubs
    in no-ack mode are not required to send valid ones.
    """

    checksum_mode: ChecksumMode = ChecksumMode.COMPUTED
    verify_checksums: bool = False

    @property
    def _placeholder(self) -> bool:
        return self.checksum_mode is ChecksumMode.PLACEHOLDER

    def encode(self, command: str) -> bytes:
        """Frame ``command`` as ``$<escaped payload>#<checksum>``."""
        body = escape_payload(command.encode("utf-8", errors="surrogateescape"))
        if self._placeholder:
            trailer = PLACEHOLDER_CHECKSUM
        else:
            trailer = f"{checksum(body):02x}"
        return PACKET_START + body + PACKET_END + trailer.encode("ascii")

    def decode(self, raw: bytes) -> Reply:
        """Classify one raw reply unit.

        Returns:
            A Reply of kind ACK for a bare ``+``, ERROR for ``Exx`` packets,
            NOTIFICATION for ``%`` packets, PAYLOAD otherwise.

        Raises:
            ProtocolError: On bad framing, a ``-`` retransmit request, or a
                checksum mismatch when verification is on.
        """
        if raw == ACK:
            return Reply(ReplyKind.ACK)
        if raw == NAK:
            raise ProtocolError("Stub requested retransmission")

        packet = locate_packet(raw)
        if self.verify_checksums and not packet.checksum_ok:
            placeholder_ok = self._placeholder and packet.checksum == 0
            if not placeholder_ok:
                raise ProtocolError(
                    f"Checksum mismatch: trailer {packet.checksum:02x}, "
                    f"computed {packet.computed:02x}"
                )

        if packet.notification:
            return Reply(ReplyKind.NOTIFICATION, packet.payload)
        if is_error_reply(packet.payload):
            code, message = parse_error_code(packet.payload)
            return Reply(
                ReplyKind.ERROR,
                packet.payload,
                error_code=code,
                error_message=message,
            )
        return Reply(ReplyKind.PAYLOAD, packet.payload)


# --- Stop replies ---

_STOP_KINDS = {
    "S": "signal",
    "T": "signal",
    "W": "exited",
    "X": "terminated",
}


@dataclass(frozen=True, slots=True)
class StopReply:
    """Parsed stop packet (``S``, ``T``, ``W`` or ``X``).

    Attributes:
        kind: "signal", "exited" or "terminated".
        code: Signal number, or exit status for "exited".
        fields: ``key:value`` pairs from ``T`` and ``W``/``X`` packets.
    """

    kind: str
    code: int
    fields: dict[str, str] = field(default_factory=dict)

    @property
    def thread_id(self) -> str | None:
        return self.fields.get("thread")

    @property
    def target_gone(self) -> bool:
        return self.kind in ("exited", "terminated")


def is_stop_reply(payload: str) -> bool:
    """True if ``payload`` looks like a stop packet."""
    if len(payload) < 3 or payload[0] not in _STOP_KINDS:
        return False
    return all(c in "0123456789abcdefABCDEF" for c in payload[1:3])


def stop_payload(reply: Reply) -> str | None:
    """Return the stop packet carried by ``reply``, or None.

    Works for plain replies and for ``%Stop:`` notifications.
    """
    payload = reply.payload
    if reply.kind is ReplyKind.NOTIFICATION:
        if not payload.startswith(STOP_NOTIFICATION_PREFIX):
            return None
        payload = payload[len(STOP_NOTIFICATION_PREFIX) :]
    elif reply.kind is not ReplyKind.PAYLOAD:
        return None
    return payload if is_stop_reply(payload) else None


def parse_stop_reply(payload: str) -> StopReply:
    """Parse a stop packet such as ``T05thread:1c03;reason:signal;``.

    Raises:
        DecodeError: If the payload is not a stop packet.
    """
    if not is_stop_reply(payload):
        raise DecodeError(f"Not a stop reply: {payload!r}")

    kind = _STOP_KINDS[payload[0]]
    code = int(payload[1:3], 16)
    rest = payload[3:]

    fields: dict[str, str] = {}
    for item in rest.lstrip(";").split(";"):
        if not item:
            continue
        key, sep, value = item.partition(":")
        if not sep:
            raise DecodeError(f"Malformed stop reply field {item!r} in {payload!r}")
        fields[key] = value
    return StopReply(kind=kind, code=code, fields=fields)
