"""
Liquidation Executor - Settlement Pipeline

For one eligible user, every supported token is processed on its own:

    aggregate -> (zero: skipped) -> route -> beneficiary check
              -> simulate -> submit -> confirm

Each step's failure becomes a LiquidationResult for that token and the loop
moves on. One token's failure never masks or blocks another token.

After all tokens: if at least one settled, the user is dropped from the
heartbeat cache (the ledger's dead flag is permanent). If none settled the
cache row is kept, so a dead-on-chain user who later holds liquidatable
assets is still picked up by the next scan.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Iterable, Optional

from .calldata import contains_beneficiary
from .chain import LedgerClient
from .config import TokenConfig
from .destination import DestinationMonitor
from .errors import ConfirmationTimeout, LazarusError, OutcomeKind, SecurityRejection
from .funds import FundAggregator
from .heartbeat_store import HeartbeatStore
from .protocol import PROTOCOL_RULES, normalize_address
from .routes import RouteProvider, RouteRequest

logger = logging.getLogger("lazarus.liquidator")


@dataclass(frozen=True)
class LiquidationResult:
    user_address: str
    token: str
    symbol: str
    success: bool
    outcome: OutcomeKind
    tx_hash: Optional[str] = None
    error: Optional[str] = None
    amount: int = 0
    fee: int = 0
    bridged: int = 0
    stubbed_route: bool = False

    def to_dict(self) -> dict:
        return {
            "userAddress": self.user_address,
            "token": self.token,
            "symbol": self.symbol,
            "success": self.success,
            "outcome": self.outcome.value,
            "txHash": self.tx_hash,
            "error": self.error,
            "amount": str(self.amount),
            "fee": str(self.fee),
            "bridged": str(self.bridged),
            "stubbedRoute": self.stubbed_route,
        }


class LiquidationExecutor:
    """
    Usage:
        executor = LiquidationExecutor(client, provider, store, tokens, ...)
        if await executor.check_user(user):
            results = await executor.liquidate_user(user)
    """

    def __init__(
        self,
        ledger_client: LedgerClient,
        route_provider: RouteProvider,
        store: HeartbeatStore,
        supported_tokens: Iterable[TokenConfig],
        source_chain_id: int,
        destination_chain_id: int,
        destination_token: str,
        confirmation_timeout: float = 120.0,
        confirmation_grace: float = 10.0,
        slippage: float = PROTOCOL_RULES.DEFAULT_SLIPPAGE,
        destination_monitor: Optional[DestinationMonitor] = None,
    ):
        self._client = ledger_client
        self._routes = route_provider
        self._store = store
        self._tokens = tuple(supported_tokens)
        self._aggregator = FundAggregator(ledger_client)
        self._source_chain_id = source_chain_id
        self._destination_chain_id = destination_chain_id
        self._destination_token = destination_token
        self._timeout = confirmation_timeout
        self._grace = confirmation_grace
        self._slippage = slippage
        self._monitor = destination_monitor

    @property
    def supported_tokens(self) -> tuple:
        return self._tokens

    async def check_user(self, user: str) -> bool:
        """Ledger reconfirmation. Dead users stay eligible for the multi-token sweep."""
        can_liquidate, remaining = await self._client.check_status(user)
        if not can_liquidate:
            logger.debug(f"{user[:10]}... not eligible on ledger ({remaining}s remaining)")
        return can_liquidate

    # ============================================================
    # PER TOKEN
    # ============================================================

    async def liquidate_token(self, user: str, beneficiary: str, token: TokenConfig) -> LiquidationResult:
        snapshot = None
        stubbed = False
        try:
            snapshot = await self._aggregator.snapshot(user, token.address)
            if snapshot.is_empty:
                logger.info(f"No {token.symbol} to liquidate for {user[:10]}...")
                return LiquidationResult(
                    user_address=user, token=token.address, symbol=token.symbol,
                    success=False, outcome=OutcomeKind.SKIPPED, error="nothing to liquidate",
                )
            split = snapshot.split()

            route = await self._routes.get_route(RouteRequest(
                from_chain=self._source_chain_id,
                to_chain=self._destination_chain_id,
                from_token=token.address,
                to_token=self._destination_token,
                amount=split.bridged,
                from_address=self._client.ledger_address,
                to_address=beneficiary,
                slippage=self._slippage,
            ))
            stubbed = route.stubbed

            # Same check the ledger runs. Refuse before spending anything on a bad route.
            if not contains_beneficiary(route.payload, beneficiary):
                raise SecurityRejection("beneficiary not found in route instructions")

            await self._client.simulate_liquidate(user, token.address, route.payload)
            try:
                tx = await asyncio.wait_for(
                    self._client.submit_liquidate(user, token.address, route.payload, timeout=self._timeout),
                    timeout=self._timeout + self._grace,
                )
            except asyncio.TimeoutError as e:
                raise ConfirmationTimeout(f"No confirmation after {self._timeout}s") from e

            logger.info(
                f"LIQUIDATED {token.symbol} for {user[:10]}...: amount={split.amount} "
                f"fee={split.fee} bridged={split.bridged} | tx={tx.tx_hash[:18]}..."
                + (" | STUB ROUTE" if stubbed else "")
            )
            return LiquidationResult(
                user_address=user, token=token.address, symbol=token.symbol,
                success=True, outcome=OutcomeKind.SETTLED, tx_hash=tx.tx_hash,
                amount=split.amount, fee=split.fee, bridged=split.bridged, stubbed_route=stubbed,
            )

        except SecurityRejection as e:
            logger.critical(
                f"SECURITY REJECTION {token.symbol} for {user[:10]}...: {e} | "
                f"route does not name beneficiary {beneficiary[:10]}..., no funds moved"
            )
            return self._failed(user, token, e, snapshot, stubbed)
        except LazarusError as e:
            logger.warning(f"Liquidation of {token.symbol} for {user[:10]}... failed [{e.outcome.value}]: {e}")
            return self._failed(user, token, e, snapshot, stubbed)
        except Exception as e:
            logger.error(f"Unexpected error liquidating {token.symbol} for {user[:10]}...: {e}", exc_info=True)
            return self._failed(user, token, e, snapshot, stubbed)

    @staticmethod
    def _failed(user: str, token: TokenConfig, error: Exception, snapshot, stubbed: bool) -> LiquidationResult:
        return LiquidationResult(
            user_address=user,
            token=token.address,
            symbol=token.symbol,
            success=False,
            outcome=getattr(error, "outcome", OutcomeKind.ERROR),
            tx_hash=getattr(error, "tx_hash", None) or None,
            error=str(error),
            amount=snapshot.amount_to_liquidate if snapshot is not None else 0,
            stubbed_route=stubbed,
        )

    # ============================================================
    # PER USER
    # ============================================================

    async def liquidate_user(self, user: str) -> list[LiquidationResult]:
        """Sequential over tokens: every write goes through the one signing identity anyway."""
        user = normalize_address(user)
        info = await self._client.get_user_info(user)
        logger.info(
            f"Liquidating {user[:10]}... -> beneficiary {info.beneficiary[:10]}... "
            f"({len(self._tokens)} tokens{', already dead' if info.dead else ''})"
        )

        results = []
        for token in self._tokens:
            results.append(await self.liquidate_token(user, info.beneficiary, token))

        settled = [r for r in results if r.success]
        if settled:
            self._store.remove_user(user)
            logger.info(f"{user[:10]}... settled {len(settled)}/{len(results)} tokens, removed from cache")
            if self._monitor is not None:
                for r in settled:
                    self._monitor.add_pending_bridge(user, info.beneficiary, r.tx_hash or "", r.symbol, r.bridged)
        else:
            logger.info(f"{user[:10]}... settled nothing, still monitored")
        return results
