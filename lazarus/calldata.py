"""
Calldata Validator - Beneficiary Presence Gate

Route instructions come from an external quote provider and are opaque to
us. Before any funds move, the payload must visibly name the registered
beneficiary somewhere near its head. If it does not, the route is rejected.

This is a best-effort, fail-closed heuristic, not a structural decode:
- Scan window: offsets [SELECTOR_BYTES, SELECTOR_BYTES + CALLDATA_SCAN_WINDOW_BYTES)
- A match is an exact 20-byte equality starting at any offset in the window,
  so both 32-byte-word-aligned and byte-shifted encodings are found
- Anything that cannot be parsed is "not found", never "assume valid"

It does not protect against a route that names the beneficiary and still
sends funds elsewhere. A structural decode of known bridge ABIs would.
"""

import logging
from dataclasses import dataclass
from typing import Final, Optional, Union

from .protocol import NULL_ADDRESS, PROTOCOL_RULES, is_address

logger = logging.getLogger("lazarus.calldata")

SELECTOR_BYTES: Final[int] = PROTOCOL_RULES.SELECTOR_BYTES
ADDRESS_BYTES: Final[int] = PROTOCOL_RULES.ADDRESS_BYTES
SCAN_WINDOW_BYTES: Final[int] = PROTOCOL_RULES.CALLDATA_SCAN_WINDOW_BYTES


@dataclass(frozen=True)
class RouteBuffer:
    """Immutable view over a route-instruction payload."""
    data: bytes

    @classmethod
    def parse(cls, payload: Union[bytes, bytearray, str]) -> Optional["RouteBuffer"]:
        """Accept raw bytes or a 0x-hex string. Returns None if unparseable."""
        if isinstance(payload, (bytes, bytearray)):
            return cls(bytes(payload))
        if isinstance(payload, str):
            text = payload[2:] if payload[:2] in ("0x", "0X") else payload
            try:
                return cls(bytes.fromhex(text))
            except ValueError:
                return None
        return None

    @property
    def selector(self) -> bytes:
        return self.data[:SELECTOR_BYTES]

    def to_hex(self) -> str:
        return "0x" + self.data.hex()

    def scan_offsets(self) -> range:
        """Start offsets at which a full address could begin inside the window."""
        last_fit = len(self.data) - ADDRESS_BYTES
        end = min(SELECTOR_BYTES + SCAN_WINDOW_BYTES, last_fit + 1)
        return range(SELECTOR_BYTES, max(SELECTOR_BYTES, end))

    def __len__(self) -> int:
        return len(self.data)


def address_bytes(address: str) -> Optional[bytes]:
    if not is_address(address) or address.lower() == NULL_ADDRESS:
        return None
    return bytes.fromhex(address[2:])


def contains_beneficiary(payload, beneficiary: str) -> bool:
    """
    True iff the beneficiary's 20 raw bytes appear at some offset of the
    scan window. Zero/malformed beneficiary or unparseable payload -> False.
    """
    needle = address_bytes(beneficiary)
    if needle is None:
        logger.warning(f"Calldata check: invalid beneficiary {beneficiary!r}, rejecting")
        return False

    buf = payload if isinstance(payload, RouteBuffer) else RouteBuffer.parse(payload)
    if buf is None:
        logger.warning("Calldata check: route payload is not valid hex, rejecting")
        return False

    data = buf.data
    for offset in buf.scan_offsets():
        if data[offset:offset + ADDRESS_BYTES] == needle:
            return True
    return False
