"""Exception hierarchy for the lldb-remote client.

Every failure on the wire surfaces as one of these. Nothing here is retried;
callers that want retry or backoff wrap the Session themselves.
"""


class LLDBRemoteError(Exception):
    """Base class for all lldb-remote errors."""


class RemoteConnectionError(LLDBRemoteError, ConnectionError):
    """Raised when dialing, the handshake, or the byte stream fails."""


class RemoteTimeoutError(LLDBRemoteError, TimeoutError):
    """Raised when no complete reply arrives before the read deadline."""


class ProtocolError(LLDBRemoteError):
    """Raised when a reply does not match the packet framing."""


class RemoteError(LLDBRemoteError):
    """Raised when the stub answers with an error packet.

    Attributes:
        code: The numeric error code from the ``Exx`` packet.
        message: Optional text the stub appended after ``;``.
    """

    def __init__(self, code: int, message: str = "") -> None:
        self.code = code
        self.message = message
        text = f"stub returned error E{code:02X}"
        if message:
            text += f": {message}"
        super().__init__(text)


class TargetStateError(LLDBRemoteError):
    """Raised when an operation is invalid for the current attach/run state."""


class DecodeError(LLDBRemoteError):
    """Raised when a reply payload cannot be parsed into the expected shape."""


class AllocationError(LLDBRemoteError):
    """Raised when a memory allocation is rejected or yields no address."""

    def __init__(self, message: str, code: int | None = None) -> None:
        self.code = code
        super().__init__(message)
