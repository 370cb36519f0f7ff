"""
Route Instructions - Swap/Bridge Payload Source

The quote provider (LI.FI) is a black box: we send a quote request and get
back an opaque execution payload. We only check that the quote is usable,
never that it is economically sound.

Policy:
- production: provider failure -> RouteUnavailable, attempt aborted
- development/test with stubs allowed: provider failure -> deterministic
  stub payload, flagged as stubbed in the result
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

import aiohttp

from .errors import ConfigError, RouteUnavailable, ValidationError
from .protocol import PROTOCOL_RULES, normalize_address

logger = logging.getLogger("lazarus.routes")

_LIFI_API_BASE = "https://li.quest/v1"


@dataclass(frozen=True)
class RouteRequest:
    from_chain: int
    to_chain: int
    from_token: str
    to_token: str
    amount: int
    from_address: str
    to_address: str
    slippage: float = PROTOCOL_RULES.DEFAULT_SLIPPAGE

    def to_query(self) -> dict:
        return {
            "fromChain": str(self.from_chain),
            "toChain": str(self.to_chain),
            "fromToken": self.from_token,
            "toToken": self.to_token,
            "fromAmount": str(self.amount),
            "fromAddress": self.from_address,
            "toAddress": self.to_address,
            "slippage": str(self.slippage),
        }


@dataclass(frozen=True)
class RouteResult:
    payload: bytes
    target: str = ""             # transactionRequest.to, "" for stubs
    min_out: int = 0
    stubbed: bool = False


# ============================================================
# QUOTE VALIDATION
# ============================================================

def validate_quote(quote) -> bool:
    """Shape check only: a target, a payload and some guaranteed output."""
    if not isinstance(quote, dict):
        return False
    tx = quote.get("transactionRequest") or {}
    estimate = quote.get("estimate") or {}
    if not isinstance(tx, dict) or not isinstance(estimate, dict):
        return False
    if not isinstance(tx.get("to"), str) or not isinstance(tx.get("data"), str):
        return False
    if not tx["to"] or not tx["data"]:
        return False
    try:
        return int(estimate.get("toAmountMin", 0)) > 0
    except (TypeError, ValueError):
        return False


def _hex_to_bytes(data: str) -> bytes:
    text = data[2:] if data.startswith(("0x", "0X")) else data
    try:
        return bytes.fromhex(text)
    except ValueError as e:
        raise ValidationError(f"quote payload is not hex: {e}") from e


# ============================================================
# STUB ROUTE
# ============================================================

def build_stub_route(token: str, amount: int, receiver: str, destination_chain_id: int) -> bytes:
    """
    Deterministic mockBridge(address token, uint256 amount, address receiver,
    uint256 destinationChainId) calldata. Non-production only.
    """
    words = [
        bytes(12) + bytes.fromhex(normalize_address(token)[2:]),
        amount.to_bytes(32, "big"),
        bytes(12) + bytes.fromhex(normalize_address(receiver)[2:]),
        destination_chain_id.to_bytes(32, "big"),
    ]
    return bytes.fromhex(PROTOCOL_RULES.STUB_BRIDGE_SELECTOR[2:]) + b"".join(words)


def decode_stub_route(payload: bytes) -> tuple[str, int, str, int]:
    """Inverse of build_stub_route. Raises ValidationError on any other payload."""
    selector = bytes.fromhex(PROTOCOL_RULES.STUB_BRIDGE_SELECTOR[2:])
    if len(payload) != 4 + 32 * 4 or payload[:4] != selector:
        raise ValidationError("not a mockBridge payload")
    body = payload[4:]
    token = "0x" + body[12:32].hex()
    amount = int.from_bytes(body[32:64], "big")
    receiver = "0x" + body[76:96].hex()
    chain_id = int.from_bytes(body[96:128], "big")
    return token, amount, receiver, chain_id


# ============================================================
# LI.FI SOURCE
# ============================================================

class LiFiRouteSource:
    """GET /quote against the LI.FI API."""

    def __init__(self, api_base: str = _LIFI_API_BASE, timeout_seconds: float = 30.0):
        self._api_base = api_base.rstrip("/")
        self._timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        return self._session

    async def get_route(self, request: RouteRequest) -> RouteResult:
        session = await self._get_session()
        try:
            async with session.get(f"{self._api_base}/quote", params=request.to_query()) as resp:
                if resp.status != 200:
                    text = await resp.text()
                    raise RouteUnavailable(f"LI.FI API error: HTTP {resp.status} - {text[:200]}")
                quote = await resp.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise RouteUnavailable(f"LI.FI request failed: {e}") from e
        except ValueError as e:
            # Declared JSON but the body does not parse
            raise RouteUnavailable(f"LI.FI returned malformed JSON: {e}") from e

        if not validate_quote(quote):
            raise RouteUnavailable("Invalid LI.FI quote")

        tx = quote["transactionRequest"]
        try:
            payload = _hex_to_bytes(tx["data"])
        except ValidationError as e:
            raise RouteUnavailable(f"Invalid LI.FI quote: {e}") from e
        return RouteResult(
            payload=payload,
            target=tx["to"],
            min_out=int(quote["estimate"]["toAmountMin"]),
        )

    async def close(self):
        if self._session and not self._session.closed:
            await self._session.close()


# ============================================================
# PROVIDER (production / stub policy)
# ============================================================

class RouteProvider:
    """
    Usage:
        provider = RouteProvider(LiFiRouteSource(), production=True)
        route = await provider.get_route(request)
    """

    def __init__(self, source=None, production: bool = True, allow_stub: bool = False):
        if production and allow_stub:
            raise ConfigError("stub routes are never allowed in production")
        self._source = source
        self.production = production
        self.allow_stub = allow_stub

    async def get_route(self, request: RouteRequest) -> RouteResult:
        error: Optional[Exception] = None
        if self._source is not None:
            try:
                return await self._source.get_route(request)
            except (RouteUnavailable, ValidationError) as e:
                error = e
        else:
            error = RouteUnavailable("no route source configured")

        if not self.allow_stub:
            raise RouteUnavailable(str(error)) from error

        logger.warning(f"Route source failed ({error}), using STUB route (non-production)")
        return RouteResult(
            payload=build_stub_route(request.from_token, request.amount, request.to_address, request.to_chain),
            stubbed=True,
        )

    async def close(self):
        if self._source is not None and hasattr(self._source, "close"):
            await self._source.close()
