"""
Lazarus Protocol Rules - Layer 0 (Immutable)

Constants that both the ledger model and the watchtower must agree on.
Changing any of these changes the economics or the security envelope of
settlement, so they live in a frozen dataclass and nowhere else.
"""

import re
from dataclasses import dataclass
from typing import Final, Tuple

from .errors import LedgerRevert, ValidationError


NULL_ADDRESS: Final[str] = "0x" + "0" * 40

_ADDRESS_RE = re.compile(r"^0x[a-fA-F0-9]{40}$")


# ============================================================
# PROTOCOL RULES
# ============================================================

@dataclass(frozen=True)
class ProtocolRules:
    """Frozen dataclass = immutable at runtime."""

    # --- LIVENESS ---
    MIN_INACTIVITY_PERIOD_SECONDS: Final[int] = 30           # Floor for every registration
    DEFAULT_INACTIVITY_PERIOD_SECONDS: Final[int] = 604_800  # 7 days
    HEARTBEAT_FRESHNESS_SECONDS: Final[int] = 300            # |now - timestamp| window for signed pings
    AT_RISK_SECONDS: Final[int] = 86_400                     # < 1 day left = at risk

    # --- SETTLEMENT ECONOMICS ---
    FEE_BPS: Final[int] = 100                                 # 1% to the executor
    BPS_DENOMINATOR: Final[int] = 10_000

    # --- ROUTE PAYLOAD SCAN ---
    SELECTOR_BYTES: Final[int] = 4
    ADDRESS_BYTES: Final[int] = 20
    CALLDATA_SCAN_WINDOW_BYTES: Final[int] = 200

    # --- ROUTING ---
    DEFAULT_SLIPPAGE: Final[float] = 0.03
    STUB_BRIDGE_SELECTOR: Final[str] = "0x50384546"           # mockBridge(address,uint256,address,uint256)

    # --- DESTINATION MONITOR ---
    BRIDGE_STALE_SECONDS: Final[int] = 1_800


PROTOCOL_RULES = ProtocolRules()


@dataclass(frozen=True)
class ChainConfig:
    chain_id: int
    name: str
    rpc: str
    explorer: str


SUPPORTED_CHAINS: Final[Tuple[ChainConfig, ...]] = (
    ChainConfig(chain_id=11155111, name="sepolia", rpc="https://rpc.sepolia.org",
                explorer="https://sepolia.etherscan.io"),
    ChainConfig(chain_id=42161, name="arbitrum", rpc="https://arb1.arbitrum.io/rpc",
                explorer="https://arbiscan.io"),
)


def get_chain_config(chain_id: int) -> ChainConfig:
    """Get chain config by numeric id. Raises ValidationError if unknown."""
    for chain in SUPPORTED_CHAINS:
        if chain.chain_id == chain_id:
            return chain
    raise ValidationError(
        f"Unknown chain: {chain_id}. Supported: {[c.chain_id for c in SUPPORTED_CHAINS]}"
    )


# ============================================================
# HELPERS
# ============================================================

def is_address(value) -> bool:
    return isinstance(value, str) and bool(_ADDRESS_RE.match(value))


def normalize_address(value) -> str:
    """Lowercase a 0x-prefixed 20-byte hex address, rejecting anything else."""
    if not is_address(value):
        raise ValidationError(f"Invalid address format: {value!r}")
    return value.lower()


def require(condition: bool, reason: str, error: type = LedgerRevert):
    """
    Ledger-side guard. If the condition fails, raise a LedgerRevert
    (or the given subclass) before any state has been touched.
    """
    if not condition:
        raise error(reason)
