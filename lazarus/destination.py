"""
Destination Monitor

Every successful settlement leaves a pending bridge: funds left the source
ledger and should show up as a vault Deposited event for the beneficiary.
run_check() matches pending bridges against new deposits by beneficiary;
anything older than the stale threshold without a match is reported stuck.

Deposits are fetched through a callable, so the same monitor works against
the vault contract (ChainVaultReader.fetch_deposits) and the in-process
VaultLedger (local_vault_deposits).
"""

import logging
import time
from dataclasses import asdict, dataclass
from typing import Awaitable, Callable

from .protocol import PROTOCOL_RULES, normalize_address
from .vault import VaultLedger

logger = logging.getLogger("lazarus.destination")

DepositFetcher = Callable[[], Awaitable[list[dict]]]

# Deposits seen before their bridge was registered are kept for late matching.
_MAX_UNMATCHED_DEPOSITS = 1000


@dataclass
class PendingBridge:
    user_address: str
    beneficiary: str
    source_tx_hash: str
    token_symbol: str
    amount: int
    timestamp: float

    @property
    def key(self) -> str:
        return f"{self.beneficiary}-{self.source_tx_hash}"

    def to_dict(self) -> dict:
        return asdict(self)


class DestinationMonitor:
    def __init__(
        self,
        fetch_deposits: DepositFetcher,
        stale_seconds: int = PROTOCOL_RULES.BRIDGE_STALE_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self._fetch = fetch_deposits
        self._stale_seconds = stale_seconds
        self._clock = clock
        self._pending: dict[str, PendingBridge] = {}
        self._unmatched: list[dict] = []

    def add_pending_bridge(
        self,
        user_address: str,
        beneficiary: str,
        source_tx_hash: str,
        token_symbol: str,
        amount: int = 0,
    ) -> PendingBridge:
        bridge = PendingBridge(
            user_address=normalize_address(user_address),
            beneficiary=normalize_address(beneficiary),
            source_tx_hash=source_tx_hash,
            token_symbol=token_symbol,
            amount=amount,
            timestamp=self._clock(),
        )
        self._pending[bridge.key] = bridge
        logger.info(f"[DestMonitor] Added pending bridge for {bridge.beneficiary[:10]}... ({token_symbol})")
        return bridge

    async def run_check(self) -> tuple[list[str], list[PendingBridge]]:
        """Returns (confirmed bridge keys, stuck bridges)."""
        try:
            deposits = await self._fetch()
        except Exception as e:
            logger.error(f"[DestMonitor] Error fetching deposit events: {e}")
            deposits = []

        available = self._unmatched + list(deposits)
        confirmed: list[str] = []
        stuck: list[PendingBridge] = []
        now = self._clock()

        for key, bridge in list(self._pending.items()):
            match = next((d for d in available if d["beneficiary"] == bridge.beneficiary), None)
            if match is not None:
                available.remove(match)
                del self._pending[key]
                confirmed.append(key)
                logger.info(
                    f"[DestMonitor] Bridge confirmed for {bridge.beneficiary[:10]}...: "
                    f"{match.get('tx_hash', '')[:18]}"
                )
            elif now - bridge.timestamp > self._stale_seconds:
                stuck.append(bridge)
                logger.warning(
                    f"[DestMonitor] Bridge may be stuck for {bridge.beneficiary[:10]}... "
                    f"(source tx: {bridge.source_tx_hash[:18]}...)"
                )

        self._unmatched = available[-_MAX_UNMATCHED_DEPOSITS:]
        return confirmed, stuck

    def get_pending_bridges(self) -> list[PendingBridge]:
        return list(self._pending.values())

    def __len__(self) -> int:
        return len(self._pending)


def local_vault_deposits(vault: VaultLedger) -> DepositFetcher:
    """Deposit fetcher over the in-process vault, advancing its own cursor."""
    cursor = {"block": 0}

    async def _fetch() -> list[dict]:
        events = [e for e in vault.events_since(cursor["block"]) if e.name == "Deposited"]
        if vault.events:
            cursor["block"] = vault.events[-1].block
        return [
            {
                "depositor": e.depositor,
                "beneficiary": e.beneficiary,
                "amount": e.amount,
                "block": e.block,
                "tx_hash": "",
            }
            for e in events
        ]

    return _fetch
