"""
Watchtower configuration.

Read once at startup from the environment (main.py calls load_dotenv()
first). Invalid combinations raise ConfigError before anything is wired.

Modes:
- production:   real RPC, real route source, stub routes forbidden
- development / test: stub routes may be enabled; without SOURCE_RPC_URL
  the watchtower runs against the in-process ledger ("local mode")
"""

import os
from dataclasses import dataclass, field
from typing import Optional

from .errors import ConfigError
from .protocol import PROTOCOL_RULES, SUPPORTED_CHAINS, is_address, normalize_address

_ENVIRONMENTS = ("production", "development", "test")
_TRUTHY = ("1", "true", "yes", "on")

DEFAULT_SUPPORTED_TOKENS = "USDC:0x1c7d4b196cb0c7b01d743fbc6116a902379c7238"
DEFAULT_DESTINATION_TOKEN = "0xaf88d065e77c8cc2239327c5edb3a432268e5831"


@dataclass(frozen=True)
class TokenConfig:
    symbol: str
    address: str


def parse_supported_tokens(raw: str) -> tuple[TokenConfig, ...]:
    """SYMBOL:0xaddr,SYMBOL:0xaddr -> TokenConfig tuple."""
    tokens = []
    for item in raw.split(","):
        item = item.strip()
        if not item:
            continue
        symbol, sep, address = item.partition(":")
        if not sep or not symbol.strip() or not is_address(address.strip()):
            raise ConfigError(f"Invalid SUPPORTED_TOKENS entry: {item!r}")
        tokens.append(TokenConfig(symbol=symbol.strip().upper(), address=normalize_address(address.strip())))
    if not tokens:
        raise ConfigError("SUPPORTED_TOKENS is empty")
    return tuple(tokens)


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name, "")
    if not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from e


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name, "")
    if not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError as e:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from e


def _optional_int_env(name: str) -> Optional[int]:
    raw = os.getenv(name, "")
    if not raw.strip():
        return None
    return _int_env(name, 0)


@dataclass(frozen=True)
class WatchtowerConfig:
    environment: str = "development"
    private_key: str = ""
    source_rpc_url: str = ""
    source_chain_id: int = 11155111
    destination_chain_id: int = 42161
    destination_rpc_url: str = ""
    ledger_address: str = ""
    vault_address: str = ""
    supported_tokens: tuple = field(default_factory=lambda: parse_supported_tokens(DEFAULT_SUPPORTED_TOKENS))
    destination_token: str = DEFAULT_DESTINATION_TOKEN
    lifi_api_url: str = "https://li.quest/v1"
    route_slippage: float = PROTOCOL_RULES.DEFAULT_SLIPPAGE
    allow_stub_routes: bool = False
    heartbeat_db_path: str = "data/heartbeats.json"
    scan_interval_seconds: int = 3600
    max_concurrent_liquidations: int = 3
    tx_confirmation_timeout_seconds: float = 120.0
    onchain_ping_sync_seconds: int = 86_400
    event_poll_seconds: float = 15.0
    start_block: Optional[int] = None
    host: str = "0.0.0.0"
    port: int = 3001
    log_level: str = "INFO"
    cors_origins: tuple = ("http://localhost:3000",)

    def __post_init__(self):
        if self.environment not in _ENVIRONMENTS:
            raise ConfigError(f"WATCHTOWER_ENV must be one of {_ENVIRONMENTS}, got {self.environment!r}")
        if self.is_production:
            if self.allow_stub_routes:
                raise ConfigError("ALLOW_STUB_ROUTES cannot be enabled in production")
            missing = [
                name for name, value in (
                    ("WATCHTOWER_PRIVATE_KEY", self.private_key),
                    ("SOURCE_RPC_URL", self.source_rpc_url),
                    ("LAZARUS_SOURCE_ADDRESS", self.ledger_address),
                ) if not value
            ]
            if missing:
                raise ConfigError(f"Missing required production settings: {', '.join(missing)}")
        if self.ledger_address and not is_address(self.ledger_address):
            raise ConfigError(f"LAZARUS_SOURCE_ADDRESS is not an address: {self.ledger_address!r}")
        if self.vault_address and not is_address(self.vault_address):
            raise ConfigError(f"LAZARUS_VAULT_ADDRESS is not an address: {self.vault_address!r}")
        if self.source_rpc_url and not (self.private_key and self.ledger_address):
            raise ConfigError("SOURCE_RPC_URL requires WATCHTOWER_PRIVATE_KEY and LAZARUS_SOURCE_ADDRESS")
        if self.source_chain_id not in {c.chain_id for c in SUPPORTED_CHAINS}:
            raise ConfigError(f"Unsupported SOURCE_CHAIN_ID {self.source_chain_id}")
        if not 0 < self.route_slippage < 1:
            raise ConfigError("ROUTE_SLIPPAGE must be between 0 and 1")
        if self.scan_interval_seconds <= 0 or self.max_concurrent_liquidations <= 0:
            raise ConfigError("SCAN_INTERVAL_SECONDS and MAX_CONCURRENT_LIQUIDATIONS must be positive")
        if self.tx_confirmation_timeout_seconds <= 0:
            raise ConfigError("TX_CONFIRMATION_TIMEOUT_SECONDS must be positive")
        if self.start_block is not None and self.start_block < 0:
            raise ConfigError("START_BLOCK must not be negative")

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def local_mode(self) -> bool:
        return not self.source_rpc_url

    @classmethod
    def from_env(cls) -> "WatchtowerConfig":
        cors = os.getenv("CORS_ORIGINS", "http://localhost:3000")
        return cls(
            environment=os.getenv("WATCHTOWER_ENV", "development").strip().lower(),
            private_key=os.getenv("WATCHTOWER_PRIVATE_KEY", "").strip(),
            source_rpc_url=os.getenv("SOURCE_RPC_URL", "").strip(),
            source_chain_id=_int_env("SOURCE_CHAIN_ID", 11155111),
            destination_chain_id=_int_env("DESTINATION_CHAIN_ID", 42161),
            destination_rpc_url=os.getenv("DESTINATION_RPC_URL", "").strip(),
            ledger_address=os.getenv("LAZARUS_SOURCE_ADDRESS", "").strip(),
            vault_address=os.getenv("LAZARUS_VAULT_ADDRESS", "").strip(),
            supported_tokens=parse_supported_tokens(os.getenv("SUPPORTED_TOKENS", DEFAULT_SUPPORTED_TOKENS)),
            destination_token=os.getenv("DESTINATION_TOKEN", DEFAULT_DESTINATION_TOKEN).strip(),
            lifi_api_url=os.getenv("LIFI_API_URL", "https://li.quest/v1").strip(),
            route_slippage=_float_env("ROUTE_SLIPPAGE", PROTOCOL_RULES.DEFAULT_SLIPPAGE),
            allow_stub_routes=os.getenv("ALLOW_STUB_ROUTES", "").strip().lower() in _TRUTHY,
            heartbeat_db_path=os.getenv("HEARTBEAT_DB_PATH", "data/heartbeats.json"),
            scan_interval_seconds=_int_env("SCAN_INTERVAL_SECONDS", 3600),
            max_concurrent_liquidations=_int_env("MAX_CONCURRENT_LIQUIDATIONS", 3),
            tx_confirmation_timeout_seconds=_float_env("TX_CONFIRMATION_TIMEOUT_SECONDS", 120.0),
            onchain_ping_sync_seconds=_int_env("ONCHAIN_PING_SYNC_SECONDS", 86_400),
            event_poll_seconds=_float_env("EVENT_POLL_SECONDS", 15.0),
            start_block=_optional_int_env("START_BLOCK"),
            host=os.getenv("HOST", "0.0.0.0"),
            port=_int_env("PORT", 3001),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            cors_origins=tuple(o.strip() for o in cors.split(",") if o.strip()),
        )

    def describe(self) -> dict:
        """Safe summary for startup logs. Never includes the private key."""
        return {
            "environment": self.environment,
            "mode": "local" if self.local_mode else "chain",
            "source_chain_id": self.source_chain_id,
            "destination_chain_id": self.destination_chain_id,
            "ledger": self.ledger_address or "(in-process)",
            "tokens": [t.symbol for t in self.supported_tokens],
            "stub_routes": self.allow_stub_routes,
            "scan_interval_seconds": self.scan_interval_seconds,
        }
