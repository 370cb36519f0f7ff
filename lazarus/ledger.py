"""
State Ledger - Authoritative Liveness & Custody Record

In-process model of the source-chain LazarusSource contract. Single writer:
every state-changing call holds one lock for its whole duration, so no torn
intermediate state is ever observable.

Per-user state machine:

    UNREGISTERED --register--> ALIVE --(ping | pingFor | deposit | withdraw)--> ALIVE
    ALIVE --(first successful liquidate past deadline)--> DEAD

DEAD is terminal for liveness operations. liquidate() stays valid for other
tokens (multi-token sweep), each call independently re-validated.

Guards raise LedgerRevert subclasses before any state is touched. The one
exception is a failed delegate call during liquidate: funds already pulled
from the wallet stay in ledger custody, credited to the user's internal
deposit, and DelegationFailure is raised.
"""

import logging
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Callable

from .calldata import RouteBuffer, contains_beneficiary
from .errors import (
    DelegationFailure,
    InsufficientFunds,
    NotYetEligible,
    SecurityRejection,
    Unauthorized,
)
from .funds import FeeSplit, liquidatable_amount, split_fee
from .protocol import NULL_ADDRESS, PROTOCOL_RULES, normalize_address, require
from .tokens import TokenLedger

logger = logging.getLogger("lazarus.ledger")


# ============================================================
# TYPES
# ============================================================

@dataclass
class UserRecord:
    address: str
    beneficiary: str
    last_heartbeat: int             # unix seconds
    inactivity_period: int          # seconds
    dead: bool = False
    deposits: dict[str, int] = field(default_factory=dict)   # token -> amount

    @property
    def deadline(self) -> int:
        return self.last_heartbeat + self.inactivity_period


@dataclass(frozen=True)
class UserInfo:
    """Result of the getUserInfo view."""
    registered: bool
    beneficiary: str
    last_heartbeat: int
    dead: bool
    inactivity_period: int


@dataclass(frozen=True)
class SettlementReceipt:
    user: str
    token: str
    amount: int
    fee: int
    bridged: int
    first_death: bool       # this call flipped dead=false -> true


@dataclass(frozen=True)
class LedgerEvent:
    block: int              # monotonically increasing sequence number
    name: str               # Registered | Pinged | InactivityPeriodUpdated | BeneficiaryUpdated | ...
    user: str
    args: dict


class RouteExecutionTarget(ABC):
    """
    External venue that executes route instructions (swap / bridge).
    The ledger approves `amount` to `address` right before calling.
    """

    @property
    @abstractmethod
    def address(self) -> str:
        ...

    @abstractmethod
    def execute_route(self, sender: str, token: str, amount: int, route_instructions: bytes) -> None:
        """Pull `amount` of `token` from `sender` and act on the payload. Raise on failure."""
        ...


# ============================================================
# LEDGER
# ============================================================

class StateLedger:
    """
    Usage:
        ledger = StateLedger(address, tokens, route_target, owner=..., executor=..., relay=...)
        ledger.register(user, beneficiary, 7 * 86400)
        ledger.ping(user)
        can, remaining = ledger.check_status(user)
    """

    def __init__(
        self,
        address: str,
        tokens: TokenLedger,
        route_target: RouteExecutionTarget,
        owner: str,
        executor: str,
        relay: str,
        fee_bps: int = PROTOCOL_RULES.FEE_BPS,
        min_period: int = PROTOCOL_RULES.MIN_INACTIVITY_PERIOD_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self.address = normalize_address(address)
        self.owner = normalize_address(owner)
        self.executor = normalize_address(executor)
        self.relay = normalize_address(relay)
        self.fee_bps = fee_bps
        self.min_period = min_period
        self._tokens = tokens
        self._route_target = route_target
        self._clock = clock

        self._users: dict[str, UserRecord] = {}
        self._total_deposits: dict[str, int] = {}
        self._events: list[LedgerEvent] = []
        self._lock = threading.RLock()

    def _now(self) -> int:
        return int(self._clock())

    def _emit(self, name: str, user: str, **args):
        self._events.append(LedgerEvent(block=len(self._events) + 1, name=name, user=user, args=args))

    def _live_record(self, user: str) -> UserRecord:
        record = self._users.get(user)
        require(record is not None, "user not registered")
        require(not record.dead, "user is dead")
        return record

    def _touch(self, record: UserRecord):
        # never decreases, even if the clock steps backwards
        record.last_heartbeat = max(record.last_heartbeat, self._now())

    # ============================================================
    # LIVENESS
    # ============================================================

    def register(self, caller: str, beneficiary: str, inactivity_period: int):
        caller, beneficiary = normalize_address(caller), normalize_address(beneficiary)
        with self._lock:
            require(beneficiary != NULL_ADDRESS, "invalid beneficiary")
            require(beneficiary != caller, "beneficiary cannot be self")
            require(inactivity_period >= self.min_period, f"period below minimum ({self.min_period}s)")
            require(caller not in self._users, "already registered")

            self._users[caller] = UserRecord(
                address=caller,
                beneficiary=beneficiary,
                last_heartbeat=self._now(),
                inactivity_period=inactivity_period,
            )
            self._emit("Registered", caller, beneficiary=beneficiary, inactivity_period=inactivity_period)
        logger.info(f"REGISTERED {caller[:10]}... -> {beneficiary[:10]}... | period={inactivity_period}s")

    def ping(self, caller: str):
        caller = normalize_address(caller)
        with self._lock:
            record = self._live_record(caller)
            self._touch(record)
            self._emit("Pinged", caller, timestamp=record.last_heartbeat)

    def ping_for(self, caller: str, user: str):
        caller, user = normalize_address(caller), normalize_address(user)
        with self._lock:
            require(caller == self.relay, "caller is not the relay", Unauthorized)
            record = self._live_record(user)
            self._touch(record)
            self._emit("Pinged", user, timestamp=record.last_heartbeat, relayed=True)

    def deposit_funds(self, caller: str, token: str, amount: int):
        caller, token = normalize_address(caller), normalize_address(token)
        with self._lock:
            require(amount > 0, "amount must be positive")
            record = self._live_record(caller)
            self._tokens.transfer_from(token, self.address, caller, self.address, amount)
            record.deposits[token] = record.deposits.get(token, 0) + amount
            self._total_deposits[token] = self._total_deposits.get(token, 0) + amount
            self._touch(record)
            self._emit("Deposited", caller, token=token, amount=amount)
        logger.info(f"DEPOSIT {caller[:10]}... {amount} of {token[:10]}...")

    def withdraw_funds(self, caller: str, token: str, amount: int):
        caller, token = normalize_address(caller), normalize_address(token)
        with self._lock:
            require(amount > 0, "amount must be positive")
            record = self._live_record(caller)
            held = record.deposits.get(token, 0)
            require(amount <= held, f"withdraw exceeds deposit ({amount} > {held})", InsufficientFunds)
            self._tokens.transfer(token, self.address, caller, amount)
            record.deposits[token] = held - amount
            self._total_deposits[token] -= amount
            self._touch(record)
            self._emit("Withdrawn", caller, token=token, amount=amount)
        logger.info(f"WITHDRAW {caller[:10]}... {amount} of {token[:10]}...")

    def update_beneficiary(self, caller: str, new_beneficiary: str):
        caller, new_beneficiary = normalize_address(caller), normalize_address(new_beneficiary)
        with self._lock:
            record = self._live_record(caller)
            require(new_beneficiary != NULL_ADDRESS, "invalid beneficiary")
            require(new_beneficiary != caller, "beneficiary cannot be self")
            record.beneficiary = new_beneficiary
            self._emit("BeneficiaryUpdated", caller, beneficiary=new_beneficiary)

    def update_inactivity_period(self, caller: str, new_period: int):
        caller = normalize_address(caller)
        with self._lock:
            record = self._live_record(caller)
            require(new_period >= self.min_period, f"period below minimum ({self.min_period}s)")
            record.inactivity_period = new_period
            self._emit("InactivityPeriodUpdated", caller, inactivity_period=new_period)

    # ============================================================
    # VIEWS
    # ============================================================

    def check_status(self, user: str) -> tuple[bool, int]:
        """(canLiquidate, timeRemaining). Dead users still report canLiquidate."""
        user = normalize_address(user)
        with self._lock:
            record = self._users.get(user)
            if record is None:
                return False, 0
            now = self._now()
            return now > record.deadline, max(0, record.deadline - now)

    def get_user_info(self, user: str) -> UserInfo:
        user = normalize_address(user)
        with self._lock:
            record = self._users.get(user)
            if record is None:
                return UserInfo(False, NULL_ADDRESS, 0, False, 0)
            return UserInfo(
                registered=True,
                beneficiary=record.beneficiary,
                last_heartbeat=record.last_heartbeat,
                dead=record.dead,
                inactivity_period=record.inactivity_period,
            )

    def deposit_of(self, user: str, token: str) -> int:
        user, token = normalize_address(user), normalize_address(token)
        with self._lock:
            record = self._users.get(user)
            return record.deposits.get(token, 0) if record else 0

    def total_deposits(self, token: str) -> int:
        with self._lock:
            return self._total_deposits.get(normalize_address(token), 0)

    def events_since(self, block: int) -> list[LedgerEvent]:
        with self._lock:
            return [e for e in self._events if e.block > block]

    # ============================================================
    # LIQUIDATION
    # ============================================================

    def _check_liquidation(self, caller: str, user: str, token: str, payload: RouteBuffer):
        require(caller == self.executor, "caller is not the executor", Unauthorized)
        record = self._users.get(user)
        require(record is not None, "user not registered")
        require(self._now() > record.deadline, "inactivity deadline not passed", NotYetEligible)
        require(
            contains_beneficiary(payload, record.beneficiary),
            "beneficiary not found in route instructions",
            SecurityRejection,
        )

        allowance = self._tokens.allowance(token, user, self.address)
        balance = self._tokens.balance_of(token, user)
        deposit = record.deposits.get(token, 0)
        amount = liquidatable_amount(allowance, balance, deposit)
        require(amount > 0, "nothing to liquidate", InsufficientFunds)
        return record, min(allowance, balance), deposit, split_fee(amount, self.fee_bps)

    def preview_liquidate(self, caller: str, user: str, token: str, route_instructions) -> FeeSplit:
        """Run every liquidate() guard without side effects. Used for simulation."""
        caller, user, token = normalize_address(caller), normalize_address(user), normalize_address(token)
        payload = RouteBuffer.parse(route_instructions) or RouteBuffer(b"")
        with self._lock:
            _, _, _, split = self._check_liquidation(caller, user, token, payload)
            return split

    def liquidate(self, caller: str, user: str, token: str, route_instructions) -> SettlementReceipt:
        caller, user, token = normalize_address(caller), normalize_address(user), normalize_address(token)
        payload = RouteBuffer.parse(route_instructions) or RouteBuffer(b"")

        with self._lock:
            record, wallet_portion, deposit, split = self._check_liquidation(caller, user, token, payload)
            target = normalize_address(self._route_target.address)

            # Pull everything into custody first.
            if wallet_portion:
                self._tokens.transfer_from(token, self.address, user, self.address, wallet_portion)
            record.deposits[token] = 0
            self._total_deposits[token] = self._total_deposits.get(token, 0) - deposit

            held_before = self._tokens.balance_of(token, self.address)
            self._tokens.approve(token, self.address, target, split.bridged)
            try:
                self._route_target.execute_route(self.address, token, split.bridged, payload.data)
            except Exception as e:
                self._tokens.approve(token, self.address, target, 0)
                # Credit back only what is still held; a target may have pulled before failing.
                shortfall = max(0, held_before - self._tokens.balance_of(token, self.address))
                kept = max(0, split.amount - shortfall)
                record.deposits[token] = kept
                self._total_deposits[token] = self._total_deposits.get(token, 0) + kept
                self._emit(
                    "DelegationFailed", user, token=token, amount=split.amount,
                    kept=kept, shortfall=shortfall, error=str(e),
                )
                if shortfall:
                    logger.critical(
                        f"DELEGATION FAILED {user[:10]}.../{token[:10]}...: {e} | "
                        f"{kept} kept in custody, {shortfall} left with route target {target[:10]}..."
                    )
                else:
                    logger.error(
                        f"DELEGATION FAILED {user[:10]}.../{token[:10]}...: {e} | "
                        f"{kept} kept in custody as internal deposit"
                    )
                raise DelegationFailure(f"route execution failed: {e}", kept=kept, shortfall=shortfall) from e
            self._tokens.approve(token, self.address, target, 0)

            first_death = not record.dead
            record.dead = True
            if split.fee:
                self._tokens.transfer(token, self.address, caller, split.fee)
            self._emit(
                "Liquidated", user, token=token, amount=split.amount,
                fee=split.fee, bridged=split.bridged, beneficiary=record.beneficiary,
            )

        logger.info(
            f"LIQUIDATED {user[:10]}.../{token[:10]}...: amount={split.amount} "
            f"fee={split.fee} bridged={split.bridged}" + (" | user now DEAD" if first_death else "")
        )
        return SettlementReceipt(
            user=user, token=token, amount=split.amount, fee=split.fee,
            bridged=split.bridged, first_death=first_death,
        )

    # ============================================================
    # ADMIN
    # ============================================================

    def set_relay(self, caller: str, relay: str):
        with self._lock:
            require(normalize_address(caller) == self.owner, "caller is not the owner", Unauthorized)
            self.relay = normalize_address(relay)

    def set_executor(self, caller: str, executor: str):
        with self._lock:
            require(normalize_address(caller) == self.owner, "caller is not the owner", Unauthorized)
            self.executor = normalize_address(executor)

    def rescue_token(self, caller: str, token: str, to: str, amount: int):
        """Owner-only. Moves only the surplus above tracked internal deposits."""
        caller, token, to = normalize_address(caller), normalize_address(token), normalize_address(to)
        with self._lock:
            require(caller == self.owner, "caller is not the owner", Unauthorized)
            surplus = self._tokens.balance_of(token, self.address) - self._total_deposits.get(token, 0)
            require(amount <= surplus, f"rescue exceeds untracked surplus ({amount} > {surplus})")
            self._tokens.transfer(token, self.address, to, amount)
        logger.warning(f"RESCUE {amount} of {token[:10]}... -> {to[:10]}...")

