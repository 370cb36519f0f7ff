"""
Chain Client - On-Chain Ledger Access

Everything the watchtower reads from or writes to the LazarusSource ledger
goes through a LedgerClient. Two implementations share the interface:
- ChainLedgerClient: web3 against a real RPC (this module)
- LocalLedgerClient: the in-process StateLedger (local_chain.py)

Design:
- Sync web3 calls wrapped in run_in_executor() (web3.py async is fragile)
- Embedded minimal ABI: only the functions and events we use
- Gas estimation + 20% buffer
- One signing identity: a nonce lock is held from build until the node has
  accepted the transaction, so submissions never collide on a nonce.
  Receipt waiting happens outside the lock, bounded by a timeout.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

from .errors import ConfirmationTimeout, ExecutionRevert, SecurityRejection, SimulationFailure
from .ledger import LedgerEvent, UserInfo
from .protocol import normalize_address

logger = logging.getLogger("lazarus.chain")


# ============================================================
# MINIMAL ABI
# ============================================================

ERC20_ABI = [
    {
        "inputs": [{"name": "owner", "type": "address"}, {"name": "spender", "type": "address"}],
        "name": "allowance",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [{"name": "account", "type": "address"}],
        "name": "balanceOf",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
]

LAZARUS_SOURCE_ABI = [
    # checkUserStatus(user) -> (canLiquidate, timeRemaining)
    {
        "inputs": [{"name": "_user", "type": "address"}],
        "name": "checkUserStatus",
        "outputs": [{"name": "canLiquidate", "type": "bool"}, {"name": "timeRemaining", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
    # getUserInfo(user) -> (registered, beneficiary, lastPing, dead)
    {
        "inputs": [{"name": "_user", "type": "address"}],
        "name": "getUserInfo",
        "outputs": [
            {"name": "registered", "type": "bool"},
            {"name": "beneficiary", "type": "address"},
            {"name": "lastPing", "type": "uint256"},
            {"name": "dead", "type": "bool"},
        ],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [{"name": "", "type": "address"}],
        "name": "inactivityPeriods",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [{"name": "", "type": "address"}, {"name": "", "type": "address"}],
        "name": "deposits",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [{"name": "_user", "type": "address"}],
        "name": "pingFor",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "inputs": [
            {"name": "_user", "type": "address"},
            {"name": "_token", "type": "address"},
            {"name": "_swapData", "type": "bytes"},
        ],
        "name": "liquidate",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "anonymous": False,
        "inputs": [
            {"indexed": True, "name": "user", "type": "address"},
            {"indexed": True, "name": "beneficiary", "type": "address"},
            {"indexed": False, "name": "inactivityPeriod", "type": "uint256"},
        ],
        "name": "Registered",
        "type": "event",
    },
    {
        "anonymous": False,
        "inputs": [
            {"indexed": True, "name": "user", "type": "address"},
            {"indexed": False, "name": "inactivityPeriod", "type": "uint256"},
        ],
        "name": "InactivityPeriodUpdated",
        "type": "event",
    },
    {
        "anonymous": False,
        "inputs": [
            {"indexed": True, "name": "user", "type": "address"},
            {"indexed": True, "name": "beneficiary", "type": "address"},
        ],
        "name": "BeneficiaryUpdated",
        "type": "event",
    },
]

LAZARUS_VAULT_EVENTS_ABI = [
    {
        "anonymous": False,
        "inputs": [
            {"indexed": True, "name": "depositor", "type": "address"},
            {"indexed": True, "name": "beneficiary", "type": "address"},
            {"indexed": False, "name": "amount", "type": "uint256"},
        ],
        "name": "Deposited",
        "type": "event",
    },
    {
        "anonymous": False,
        "inputs": [
            {"indexed": True, "name": "beneficiary", "type": "address"},
            {"indexed": False, "name": "amount", "type": "uint256"},
        ],
        "name": "Claimed",
        "type": "event",
    },
]

WATCHED_LEDGER_EVENTS = ("Registered", "InactivityPeriodUpdated", "BeneficiaryUpdated")

# Public RPCs reject eth_getLogs over wide block ranges
MAX_LOG_BLOCK_RANGE = 5_000


# ============================================================
# LOG RANGES
# ============================================================

def block_ranges(from_block: int, latest: int, span: int = MAX_LOG_BLOCK_RANGE) -> list[tuple[int, int]]:
    """Inclusive (start, end) ranges covering from_block+1 .. latest, each at most `span` blocks."""
    ranges = []
    start = from_block + 1
    while start <= latest:
        end = min(start + span - 1, latest)
        ranges.append((start, end))
        start = end + 1
    return ranges


def collect_logs(get_logs, from_block: int, latest: int,
                 span: int = MAX_LOG_BLOCK_RANGE) -> tuple[list, int]:
    """
    Fetch logs range by range. Returns (logs, last block fully read).

    If a later range fails, what was read so far is returned and the cursor
    stops at the last complete range, so the next poll resumes there.
    A failure on the first range propagates.
    """
    logs: list = []
    done = from_block
    for start, end in block_ranges(from_block, latest, span):
        try:
            logs.extend(get_logs(start, end))
        except Exception as e:
            if done == from_block:
                raise
            logger.warning(f"Log fetch stopped at blocks {start}-{end}, resuming next poll: {e}")
            break
        done = end
    return logs, done


# ============================================================
# RESULT TYPE
# ============================================================

@dataclass
class ChainTxResult:
    """Result of a confirmed on-chain transaction."""
    success: bool
    tx_hash: str = ""
    error: str = ""
    gas_used: int = 0


def classify_revert(reason: str) -> Exception:
    """Map a simulation revert reason onto the error taxonomy."""
    if "beneficiary not found" in reason.lower():
        return SecurityRejection(reason)
    return SimulationFailure(f"Simulation failed: {reason}")


# ============================================================
# INTERFACE
# ============================================================

class LedgerClient(ABC):
    """Async surface the relay, aggregator and executor depend on."""

    @property
    @abstractmethod
    def ledger_address(self) -> str:
        ...

    @property
    @abstractmethod
    def signer_address(self) -> str:
        ...

    @abstractmethod
    async def check_status(self, user: str) -> tuple[bool, int]:
        ...

    @abstractmethod
    async def get_user_info(self, user: str) -> UserInfo:
        ...

    @abstractmethod
    async def allowance(self, token: str, owner: str, spender: str) -> int:
        ...

    @abstractmethod
    async def balance_of(self, token: str, holder: str) -> int:
        ...

    @abstractmethod
    async def deposit_of(self, user: str, token: str) -> int:
        ...

    @abstractmethod
    async def simulate_liquidate(self, user: str, token: str, route_instructions: bytes) -> None:
        """Raise SimulationFailure / SecurityRejection if liquidate() would revert."""
        ...

    @abstractmethod
    async def submit_liquidate(self, user: str, token: str, route_instructions: bytes,
                               timeout: float) -> ChainTxResult:
        """Submit and confirm. Raise ExecutionRevert / ConfirmationTimeout / DelegationFailure."""
        ...

    @abstractmethod
    async def ping_for(self, user: str, timeout: float) -> ChainTxResult:
        ...

    @abstractmethod
    async def latest_block(self) -> int:
        ...

    @abstractmethod
    async def fetch_events(self, from_block: int) -> tuple[list[LedgerEvent], int]:
        """Watched ledger events after from_block, plus the next block to poll from."""
        ...


# ============================================================
# WEB3 IMPLEMENTATION
# ============================================================

class ChainLedgerClient(LedgerClient):
    """
    Usage:
        client = ChainLedgerClient(rpc_url, ledger_address, private_key, chain_id)
        can, remaining = await client.check_status(user)
    """

    def __init__(self, rpc_url: str, ledger_address: str, private_key: str, chain_id: int,
                 request_timeout: int = 30):
        from web3 import Web3
        from eth_account import Account

        self._w3 = Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": request_timeout}))
        self._chain_id = chain_id
        self._private_key = private_key
        self._account_address = Account.from_key(private_key).address
        self._ledger_address = Web3.to_checksum_address(ledger_address)
        self._ledger = self._w3.eth.contract(address=self._ledger_address, abi=LAZARUS_SOURCE_ABI)
        self._tokens: dict[str, object] = {}
        self._to_checksum = Web3.to_checksum_address

        # Serializes build+send for the single signing identity
        self._nonce_lock = asyncio.Lock()
        self._next_nonce: Optional[int] = None
        self._tx_count = 0
        self._last_error = ""

        logger.info(
            f"Chain client: chain={chain_id} | ledger={self._ledger_address[:10]}... | "
            f"signer={self._account_address[:10]}..."
        )

    @property
    def ledger_address(self) -> str:
        return self._ledger_address.lower()

    @property
    def signer_address(self) -> str:
        return self._account_address.lower()

    async def _run(self, fn, *args):
        return await asyncio.get_running_loop().run_in_executor(None, fn, *args)

    def _token(self, token: str):
        key = normalize_address(token)
        if key not in self._tokens:
            self._tokens[key] = self._w3.eth.contract(address=self._to_checksum(key), abi=ERC20_ABI)
        return self._tokens[key]

    # ---- views ----

    async def check_status(self, user: str) -> tuple[bool, int]:
        can, remaining = await self._run(self._ledger.functions.checkUserStatus(self._to_checksum(user)).call)
        return bool(can), int(remaining)

    async def get_user_info(self, user: str) -> UserInfo:
        addr = self._to_checksum(user)
        registered, beneficiary, last_ping, dead = await self._run(self._ledger.functions.getUserInfo(addr).call)
        period = await self._run(self._ledger.functions.inactivityPeriods(addr).call)
        return UserInfo(
            registered=bool(registered),
            beneficiary=str(beneficiary).lower(),
            last_heartbeat=int(last_ping),
            dead=bool(dead),
            inactivity_period=int(period),
        )

    async def allowance(self, token: str, owner: str, spender: str) -> int:
        fn = self._token(token).functions.allowance(self._to_checksum(owner), self._to_checksum(spender))
        return int(await self._run(fn.call))

    async def balance_of(self, token: str, holder: str) -> int:
        fn = self._token(token).functions.balanceOf(self._to_checksum(holder))
        return int(await self._run(fn.call))

    async def deposit_of(self, user: str, token: str) -> int:
        fn = self._ledger.functions.deposits(self._to_checksum(user), self._to_checksum(token))
        return int(await self._run(fn.call))

    # ---- simulation ----

    async def simulate_liquidate(self, user: str, token: str, route_instructions: bytes) -> None:
        from web3.exceptions import ContractLogicError

        fn = self._ledger.functions.liquidate(self._to_checksum(user), self._to_checksum(token), route_instructions)
        try:
            await self._run(lambda: fn.call({"from": self._account_address}))
        except ContractLogicError as e:
            raise classify_revert(str(e)) from e

    # ---- writes ----

    async def submit_liquidate(self, user: str, token: str, route_instructions: bytes,
                               timeout: float) -> ChainTxResult:
        fn = self._ledger.functions.liquidate(self._to_checksum(user), self._to_checksum(token), route_instructions)
        return await self._send_tx(fn, timeout)

    async def ping_for(self, user: str, timeout: float) -> ChainTxResult:
        return await self._send_tx(self._ledger.functions.pingFor(self._to_checksum(user)), timeout)

    async def _send_tx(self, tx_fn, timeout: float) -> ChainTxResult:
        from web3.exceptions import TimeExhausted

        w3 = self._w3

        def _build_and_send(nonce: int) -> str:
            tx = tx_fn.build_transaction({
                "from": self._account_address,
                "nonce": nonce,
                "chainId": self._chain_id,
            })
            # Gas estimation + 20% buffer
            try:
                tx["gas"] = int(w3.eth.estimate_gas(tx) * 1.2)
            except Exception as gas_err:
                logger.warning(f"Gas estimation failed, using default 500k: {gas_err}")
                tx["gas"] = 500_000
            signed = w3.eth.account.sign_transaction(tx, self._private_key)
            return w3.eth.send_raw_transaction(signed.raw_transaction).hex()

        async with self._nonce_lock:
            pending = await self._run(w3.eth.get_transaction_count, self._account_address, "pending")
            nonce = max(pending, self._next_nonce or 0)
            tx_hash = await self._run(_build_and_send, nonce)
            self._next_nonce = nonce + 1

        if not tx_hash.startswith("0x"):
            tx_hash = "0x" + tx_hash
        logger.info(f"TX SENT: {tx_hash[:18]}... (nonce {nonce})")

        try:
            receipt = await self._run(
                lambda: w3.eth.wait_for_transaction_receipt(tx_hash, timeout=timeout)
            )
        except TimeExhausted as e:
            self._last_error = f"confirmation timeout: {tx_hash}"
            raise ConfirmationTimeout(f"No receipt after {timeout}s", tx_hash=tx_hash) from e

        if receipt["status"] != 1:
            self._last_error = f"reverted: {tx_hash}"
            raise ExecutionRevert("Transaction reverted", tx_hash=tx_hash)

        self._tx_count += 1
        gas_used = receipt.get("gasUsed", 0)
        logger.info(f"TX SUCCESS: {tx_hash[:18]}... | gas={gas_used}")
        return ChainTxResult(success=True, tx_hash=tx_hash, gas_used=gas_used)

    # ---- events ----

    async def latest_block(self) -> int:
        return await self._run(lambda: self._w3.eth.block_number)

    async def fetch_events(self, from_block: int) -> tuple[list[LedgerEvent], int]:
        latest = await self.latest_block()
        if latest <= from_block:
            return [], from_block

        def _range(start: int, end: int) -> list[LedgerEvent]:
            out: list[LedgerEvent] = []
            for name in WATCHED_LEDGER_EVENTS:
                event = getattr(self._ledger.events, name)
                for log in event.get_logs(from_block=start, to_block=end):
                    args = dict(log["args"])
                    user = str(args.pop("user")).lower()
                    out.append(LedgerEvent(
                        block=int(log["blockNumber"]),
                        name=name,
                        user=user,
                        args={_snake(k): (v.lower() if isinstance(v, str) else v) for k, v in args.items()},
                    ))
            return out

        events, done = await self._run(collect_logs, _range, from_block, latest)
        events.sort(key=lambda e: e.block)
        return events, done

    def get_status(self) -> dict:
        return {
            "chain_id": self._chain_id,
            "signer": self._account_address[:10] + "...",
            "tx_count": self._tx_count,
            "last_error": self._last_error,
        }


def _snake(name: str) -> str:
    out = []
    for ch in name:
        if ch.isupper():
            out.append("_" + ch.lower())
        else:
            out.append(ch)
    return "".join(out)


class ChainVaultReader:
    """
    Reads vault Deposited events on the destination chain.

    Without a start block the cursor starts at the chain head on the first
    fetch: pending bridges only exist from watchtower startup onwards.
    """

    def __init__(self, rpc_url: str, vault_address: str, request_timeout: int = 30,
                 start_block: Optional[int] = None):
        from web3 import Web3

        self._w3 = Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": request_timeout}))
        self._vault = self._w3.eth.contract(
            address=Web3.to_checksum_address(vault_address), abi=LAZARUS_VAULT_EVENTS_ABI
        )
        self._cursor = start_block

    async def fetch_deposits(self) -> list[dict]:
        def _collect() -> list[dict]:
            latest = self._w3.eth.block_number
            if self._cursor is None:
                self._cursor = latest
                logger.info(f"Vault reader starting at block {latest}")
            if latest <= self._cursor:
                return []
            logs, self._cursor = collect_logs(
                lambda start, end: self._vault.events.Deposited.get_logs(from_block=start, to_block=end),
                self._cursor,
                latest,
            )
            return [
                {
                    "depositor": str(log["args"]["depositor"]).lower(),
                    "beneficiary": str(log["args"]["beneficiary"]).lower(),
                    "amount": int(log["args"]["amount"]),
                    "block": int(log["blockNumber"]),
                    "tx_hash": log["transactionHash"].hex(),
                }
                for log in logs
            ]

        return await asyncio.get_running_loop().run_in_executor(None, _collect)
