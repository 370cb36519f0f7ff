"""
LedgerClient over the in-process StateLedger.

Used in local mode (no RPC configured, non-production) and by the tests.
Writes are serialized with the same lock discipline as the web3 client;
transaction hashes are synthetic.
"""

import asyncio
import hashlib
import logging

from .chain import WATCHED_LEDGER_EVENTS, ChainTxResult, LedgerClient
from .errors import (
    DelegationFailure,
    ExecutionRevert,
    LedgerRevert,
    SecurityRejection,
    SimulationFailure,
)
from .ledger import LedgerEvent, StateLedger, UserInfo
from .protocol import normalize_address
from .tokens import TokenLedger

logger = logging.getLogger("lazarus.chain.local")


class LocalLedgerClient(LedgerClient):
    def __init__(self, ledger: StateLedger, tokens: TokenLedger, signer: str):
        self._ledger = ledger
        self._tokens = tokens
        self._signer = normalize_address(signer)
        self._tx_lock = asyncio.Lock()
        self._nonce = 0

    @property
    def ledger_address(self) -> str:
        return self._ledger.address

    @property
    def signer_address(self) -> str:
        return self._signer

    def _tx_hash(self, *parts) -> str:
        self._nonce += 1
        seed = ":".join(str(p) for p in (self._nonce, *parts))
        return "0x" + hashlib.sha256(seed.encode()).hexdigest()

    # ---- views ----

    async def check_status(self, user: str) -> tuple[bool, int]:
        return self._ledger.check_status(user)

    async def get_user_info(self, user: str) -> UserInfo:
        return self._ledger.get_user_info(user)

    async def allowance(self, token: str, owner: str, spender: str) -> int:
        return self._tokens.allowance(token, owner, spender)

    async def balance_of(self, token: str, holder: str) -> int:
        return self._tokens.balance_of(token, holder)

    async def deposit_of(self, user: str, token: str) -> int:
        return self._ledger.deposit_of(user, token)

    # ---- simulation / writes ----

    async def simulate_liquidate(self, user: str, token: str, route_instructions: bytes) -> None:
        try:
            self._ledger.preview_liquidate(self._signer, user, token, route_instructions)
        except SecurityRejection:
            raise
        except LedgerRevert as e:
            raise SimulationFailure(f"Simulation failed: {e.reason}") from e

    async def submit_liquidate(self, user: str, token: str, route_instructions: bytes,
                               timeout: float) -> ChainTxResult:
        async with self._tx_lock:
            tx_hash = self._tx_hash("liquidate", user, token)
            try:
                self._ledger.liquidate(self._signer, user, token, route_instructions)
            except (DelegationFailure, SecurityRejection):
                raise
            except LedgerRevert as e:
                raise ExecutionRevert(f"Transaction reverted: {e.reason}", tx_hash=tx_hash) from e
        return ChainTxResult(success=True, tx_hash=tx_hash)

    async def ping_for(self, user: str, timeout: float) -> ChainTxResult:
        async with self._tx_lock:
            tx_hash = self._tx_hash("pingFor", user)
            try:
                self._ledger.ping_for(self._signer, user)
            except LedgerRevert as e:
                raise ExecutionRevert(f"Transaction reverted: {e.reason}", tx_hash=tx_hash) from e
        return ChainTxResult(success=True, tx_hash=tx_hash)

    async def latest_block(self) -> int:
        return max((e.block for e in self._ledger.events_since(0)), default=0)

    async def fetch_events(self, from_block: int) -> tuple[list[LedgerEvent], int]:
        events = [
            e for e in self._ledger.events_since(from_block)
            if e.name in WATCHED_LEDGER_EVENTS
        ]
        latest = max((e.block for e in self._ledger.events_since(from_block)), default=from_block)
        return events, latest
