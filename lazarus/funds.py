"""
Fund Aggregator

Liquidatable funds for a (user, token) pair come from two independent places:
- the user's wallet, capped by what the user approved to the ledger
- the user's internal deposit held by the ledger itself

    amount = min(allowance, balance) + internal_deposit
    fee    = floor(amount * FEE_BPS / 10000)
    bridged = amount - fee

The same two functions are used by the ledger model and by the watchtower,
so both sides always agree on the numbers.
"""

import asyncio
import logging
from dataclasses import dataclass

from .protocol import PROTOCOL_RULES

logger = logging.getLogger("lazarus.funds")


def liquidatable_amount(allowance: int, balance: int, internal_deposit: int) -> int:
    return min(allowance, balance) + internal_deposit


@dataclass(frozen=True)
class FeeSplit:
    amount: int
    fee: int
    bridged: int


def split_fee(amount: int, fee_bps: int = PROTOCOL_RULES.FEE_BPS) -> FeeSplit:
    """Integer fee split. fee + bridged == amount exactly."""
    fee = (amount * fee_bps) // PROTOCOL_RULES.BPS_DENOMINATOR
    return FeeSplit(amount=amount, fee=fee, bridged=amount - fee)


@dataclass(frozen=True)
class FundSnapshot:
    user: str
    token: str
    wallet_allowance: int
    wallet_balance: int
    internal_deposit: int

    @property
    def wallet_portion(self) -> int:
        return min(self.wallet_allowance, self.wallet_balance)

    @property
    def amount_to_liquidate(self) -> int:
        return liquidatable_amount(self.wallet_allowance, self.wallet_balance, self.internal_deposit)

    @property
    def is_empty(self) -> bool:
        return self.amount_to_liquidate == 0

    def split(self, fee_bps: int = PROTOCOL_RULES.FEE_BPS) -> FeeSplit:
        return split_fee(self.amount_to_liquidate, fee_bps)


class FundAggregator:
    """Reads the three inputs through a LedgerClient, concurrently."""

    def __init__(self, ledger_client):
        self._client = ledger_client

    async def snapshot(self, user: str, token: str) -> FundSnapshot:
        allowance, balance, deposit = await asyncio.gather(
            self._client.allowance(token, user, self._client.ledger_address),
            self._client.balance_of(token, user),
            self._client.deposit_of(user, token),
        )
        snap = FundSnapshot(
            user=user,
            token=token,
            wallet_allowance=allowance,
            wallet_balance=balance,
            internal_deposit=deposit,
        )
        logger.debug(
            f"Funds {user[:10]}.../{token[:10]}...: allowance={allowance} "
            f"balance={balance} deposit={deposit} -> {snap.amount_to_liquidate}"
        )
        return snap
