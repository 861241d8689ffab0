"""Remote memory address value type."""

import string
from dataclasses import dataclass

from .errors import DecodeError

MAX_ADDRESS = 0xFFFF_FFFF_FFFF_FFFF


@dataclass(frozen=True, slots=True)
class Address:
    """An unsigned 64-bit address in the target's memory.

    The canonical text form is lowercase hex without padding or prefix,
    which is also how the address appears on the wire.
    """

    value: int

    def __post_init__(self) -> None:
        if not 0 <= self.value <= MAX_ADDRESS:
            raise ValueError(f"Address out of 64-bit range: {self.value:#x}")

    def __str__(self) -> str:
        return f"{self.value:x}"

    def __int__(self) -> int:
        return self.value

    @classmethod
    def from_hex(cls, text: str) -> "Address":
        """Parse a hex string (as sent by the stub) into an Address.

        Raises:
            DecodeError: If the text is empty, not hex, or wider than 64 bits.
        """
        cleaned = text.strip()
        if not cleaned or any(c not in string.hexdigits for c in cleaned):
            raise DecodeError(f"Not a hex address: {text!r}")
        value = int(cleaned, 16)
        if value > MAX_ADDRESS:
            raise DecodeError(f"Address wider than 64 bits: {text!r}")
        return cls(value)
