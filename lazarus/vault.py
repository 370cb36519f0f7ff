"""
Vault Ledger - Destination-Side Claimable Balances

In-process model of the destination-chain LazarusVault. Bridged funds land
here and are credited to the beneficiary, who withdraws them with claim().

Invariant after every state-changing call:
    total_tracked == sum(balances) <= token.balanceOf(vault)

Two ways in:
- deposit(): caller pays, vault pulls the tokens itself
- deposit_authorized(): a whitelisted relayer (bridge receiver) credits
  funds that already arrived by another path; the vault's actual holdings
  must already cover the new obligation
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable

from .errors import InsufficientFunds, Unauthorized
from .protocol import NULL_ADDRESS, normalize_address, require
from .tokens import TokenLedger

logger = logging.getLogger("lazarus.vault")


@dataclass(frozen=True)
class VaultEvent:
    block: int
    name: str              # Deposited | Claimed
    depositor: str         # "" for Claimed
    beneficiary: str
    amount: int
    timestamp: float


class VaultLedger:
    def __init__(
        self,
        address: str,
        tokens: TokenLedger,
        token: str,
        owner: str,
        relayers: tuple = (),
        clock: Callable[[], float] = time.time,
    ):
        self.address = normalize_address(address)
        self.token = normalize_address(token)
        self.owner = normalize_address(owner)
        self._tokens = tokens
        self._relayers: set[str] = {normalize_address(r) for r in relayers}
        self._clock = clock

        self._balances: dict[str, int] = {}
        self.total_tracked: int = 0
        self.events: list[VaultEvent] = []
        self._lock = threading.RLock()

    # ---- views ----

    def balance_of(self, beneficiary: str) -> int:
        with self._lock:
            return self._balances.get(normalize_address(beneficiary), 0)

    def held_balance(self) -> int:
        return self._tokens.balance_of(self.token, self.address)

    def is_relayer(self, who: str) -> bool:
        return normalize_address(who) in self._relayers

    def events_since(self, block: int) -> list[VaultEvent]:
        with self._lock:
            return [e for e in self.events if e.block > block]

    # ---- internal ----

    def _credit(self, depositor: str, beneficiary: str, amount: int):
        self._balances[beneficiary] = self._balances.get(beneficiary, 0) + amount
        self.total_tracked += amount
        self._record("Deposited", depositor, beneficiary, amount)

    def _record(self, name: str, depositor: str, beneficiary: str, amount: int):
        self.events.append(VaultEvent(
            block=len(self.events) + 1,
            name=name,
            depositor=depositor,
            beneficiary=beneficiary,
            amount=amount,
            timestamp=self._clock(),
        ))

    def _assert_solvent(self):
        held = self.held_balance()
        require(self.total_tracked <= held, f"vault insolvent: tracked {self.total_tracked} > held {held}")

    # ============================================================
    # CREDIT
    # ============================================================

    def deposit(self, caller: str, beneficiary: str, amount: int):
        caller, beneficiary = normalize_address(caller), normalize_address(beneficiary)
        with self._lock:
            require(amount > 0, "amount must be positive")
            require(beneficiary != NULL_ADDRESS, "invalid beneficiary")
            self._tokens.transfer_from(self.token, self.address, caller, self.address, amount)
            self._credit(caller, beneficiary, amount)
            self._assert_solvent()
        logger.info(f"VAULT DEPOSIT {amount} for {beneficiary[:10]}... from {caller[:10]}...")

    def deposit_authorized(self, caller: str, beneficiary: str, amount: int):
        caller, beneficiary = normalize_address(caller), normalize_address(beneficiary)
        with self._lock:
            require(caller in self._relayers, "caller is not an authorized relayer", Unauthorized)
            require(amount > 0, "amount must be positive")
            require(beneficiary != NULL_ADDRESS, "invalid beneficiary")
            held = self.held_balance()
            require(
                held >= self.total_tracked + amount,
                f"tokens not received (held {held} < tracked {self.total_tracked} + {amount})",
                InsufficientFunds,
            )
            self._credit(caller, beneficiary, amount)
        logger.info(f"VAULT CREDIT {amount} for {beneficiary[:10]}... via relayer {caller[:10]}...")

    # ============================================================
    # DEBIT
    # ============================================================

    def claim(self, caller: str) -> int:
        caller = normalize_address(caller)
        with self._lock:
            amount = self._balances.get(caller, 0)
            require(amount > 0, "nothing to claim", InsufficientFunds)
            self._debit(caller, amount)
        return amount

    def claim_amount(self, caller: str, amount: int):
        caller = normalize_address(caller)
        with self._lock:
            require(amount > 0, "amount must be positive")
            available = self._balances.get(caller, 0)
            require(amount <= available, f"claim exceeds balance ({amount} > {available})", InsufficientFunds)
            self._debit(caller, amount)

    def _debit(self, beneficiary: str, amount: int):
        self._balances[beneficiary] -= amount
        self.total_tracked -= amount
        self._tokens.transfer(self.token, self.address, beneficiary, amount)
        self._record("Claimed", "", beneficiary, amount)
        self._assert_solvent()
        logger.info(f"VAULT CLAIM {amount} by {beneficiary[:10]}...")

    # ============================================================
    # ADMIN
    # ============================================================

    def set_relayer(self, caller: str, relayer: str, allowed: bool):
        with self._lock:
            require(normalize_address(caller) == self.owner, "caller is not the owner", Unauthorized)
            relayer = normalize_address(relayer)
            if allowed:
                self._relayers.add(relayer)
            else:
                self._relayers.discard(relayer)

    def rescue(self, caller: str, token: str, to: str, amount: int):
        """Owner-only. For the tracked token only the surplus above obligations can leave."""
        caller, token, to = normalize_address(caller), normalize_address(token), normalize_address(to)
        with self._lock:
            require(caller == self.owner, "caller is not the owner", Unauthorized)
            if token == self.token:
                surplus = self.held_balance() - self.total_tracked
                require(amount <= surplus, f"rescue would touch tracked funds ({amount} > {surplus})")
            self._tokens.transfer(token, self.address, to, amount)
            self._assert_solvent()
        logger.warning(f"VAULT RESCUE {amount} of {token[:10]}... -> {to[:10]}...")
