"""
Heartbeat Signatures: EIP-712 Liveness Proofs.

A heartbeat is a typed-data signature over {message, timestamp, nonce},
bound to the "Lazarus Protocol" domain and the ledger's chain id, so a
signature made for one chain cannot be replayed on another.

Flow:
  1. Frontend: user signs Heartbeat{message:"I am alive", timestamp, nonce}
  2. Relay: reject if |now - timestamp| > 5 minutes
  3. Relay: recover signer from the typed-data hash, must equal the claimed address
  4. Relay: reject a (address, nonce) pair already seen inside the window

No passwords. The wallet IS the identity.
"""

import logging
import secrets
import threading
import time
from dataclasses import dataclass
from typing import Optional

from eth_account import Account
from eth_account.messages import encode_typed_data

from .protocol import PROTOCOL_RULES

logger = logging.getLogger("lazarus.signature")

HEARTBEAT_DOMAIN_NAME = "Lazarus Protocol"
HEARTBEAT_DOMAIN_VERSION = "1"
DEFAULT_HEARTBEAT_TEXT = "I am alive"

HEARTBEAT_TYPES = {
    "EIP712Domain": [
        {"name": "name", "type": "string"},
        {"name": "version", "type": "string"},
        {"name": "chainId", "type": "uint256"},
    ],
    "Heartbeat": [
        {"name": "message", "type": "string"},
        {"name": "timestamp", "type": "uint256"},
        {"name": "nonce", "type": "uint256"},
    ],
}


@dataclass(frozen=True)
class HeartbeatMessage:
    message: str
    timestamp: int      # unix seconds
    nonce: int


@dataclass
class VerificationResult:
    valid: bool
    recovered_address: str = ""
    error: str = ""


def heartbeat_domain(chain_id: int) -> dict:
    return {"name": HEARTBEAT_DOMAIN_NAME, "version": HEARTBEAT_DOMAIN_VERSION, "chainId": int(chain_id)}


def heartbeat_typed_data(message: HeartbeatMessage, chain_id: int) -> dict:
    """Full EIP-712 payload. Also what the frontend passes to eth_signTypedData_v4."""
    return {
        "types": HEARTBEAT_TYPES,
        "primaryType": "Heartbeat",
        "domain": heartbeat_domain(chain_id),
        "message": {
            "message": message.message,
            "timestamp": int(message.timestamp),
            "nonce": int(message.nonce),
        },
    }


def generate_heartbeat_message(now: Optional[float] = None) -> HeartbeatMessage:
    return HeartbeatMessage(
        message=DEFAULT_HEARTBEAT_TEXT,
        timestamp=int(now if now is not None else time.time()),
        nonce=secrets.randbelow(1_000_000_000),
    )


def sign_heartbeat(private_key: str, message: HeartbeatMessage, chain_id: int) -> str:
    """Sign a heartbeat. Returns a 0x-prefixed 65-byte signature."""
    signable = encode_typed_data(full_message=heartbeat_typed_data(message, chain_id))
    signed = Account.sign_message(signable, private_key=private_key)
    return "0x" + bytes(signed.signature).hex()


def verify_heartbeat_signature(
    message: HeartbeatMessage,
    signature: str,
    expected_signer: str,
    chain_id: int,
    now: Optional[float] = None,
) -> VerificationResult:
    """
    Check freshness, then recover the typed-data signer.
    Never raises: any failure is an invalid result with a reason.
    """
    now_s = int(now if now is not None else time.time())
    window = PROTOCOL_RULES.HEARTBEAT_FRESHNESS_SECONDS
    if message.timestamp < now_s - window or message.timestamp > now_s + window:
        return VerificationResult(valid=False, error="Heartbeat timestamp is too old or in the future")

    try:
        signable = encode_typed_data(full_message=heartbeat_typed_data(message, chain_id))
        recovered = Account.recover_message(signable, signature=signature)
    except Exception as e:
        logger.warning(f"Heartbeat signature recovery failed: {e}")
        return VerificationResult(valid=False, error=f"Malformed signature: {e}")

    if recovered.lower() != expected_signer.lower():
        return VerificationResult(valid=False, recovered_address=recovered, error="Signature verification failed")

    return VerificationResult(valid=True, recovered_address=recovered)


class NonceRegistry:
    """
    Remembers (address, nonce) pairs for as long as their timestamp could
    still pass the freshness check. Anything older is rejected as stale anyway.
    """

    def __init__(self, window_seconds: int = PROTOCOL_RULES.HEARTBEAT_FRESHNESS_SECONDS):
        self._window = window_seconds
        self._seen: dict[tuple[str, int], int] = {}
        self._lock = threading.Lock()

    def check_and_record(self, address: str, nonce: int, timestamp: int, now: Optional[float] = None) -> bool:
        """True if fresh (and now recorded), False if this pair was already used."""
        now_s = int(now if now is not None else time.time())
        key = (address.lower(), int(nonce))
        with self._lock:
            self._prune(now_s)
            if key in self._seen:
                return False
            self._seen[key] = int(timestamp)
            return True

    def _prune(self, now_s: int):
        horizon = now_s - 2 * self._window
        for key in [k for k, ts in self._seen.items() if ts < horizon]:
            del self._seen[key]

    def __len__(self) -> int:
        return len(self._seen)
