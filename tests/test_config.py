"""Watchtower configuration from the environment."""

import pytest

from lazarus.config import TokenConfig, WatchtowerConfig, parse_supported_tokens
from lazarus.errors import ConfigError

LEDGER = "0x" + "aa" * 20
KEY = "0x" + "33" * 32

_ENV_VARS = (
    "WATCHTOWER_ENV", "WATCHTOWER_PRIVATE_KEY", "SOURCE_RPC_URL", "SOURCE_CHAIN_ID",
    "LAZARUS_SOURCE_ADDRESS", "LAZARUS_VAULT_ADDRESS", "SUPPORTED_TOKENS", "ALLOW_STUB_ROUTES",
    "SCAN_INTERVAL_SECONDS", "ROUTE_SLIPPAGE", "CORS_ORIGINS", "PORT", "START_BLOCK",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)


def test_defaults_are_local_development():
    config = WatchtowerConfig.from_env()
    assert config.environment == "development"
    assert config.local_mode
    assert not config.is_production
    assert config.port == 3001
    assert config.supported_tokens[0].symbol == "USDC"
    assert config.start_block is None


def test_from_env_reads_every_setting(monkeypatch):
    monkeypatch.setenv("WATCHTOWER_ENV", "Production")
    monkeypatch.setenv("WATCHTOWER_PRIVATE_KEY", KEY)
    monkeypatch.setenv("SOURCE_RPC_URL", "https://rpc.example")
    monkeypatch.setenv("LAZARUS_SOURCE_ADDRESS", LEDGER)
    monkeypatch.setenv("SUPPORTED_TOKENS", "usdc:0x" + "01" * 20 + ", weth:0x" + "02" * 20)
    monkeypatch.setenv("SCAN_INTERVAL_SECONDS", "60")
    monkeypatch.setenv("CORS_ORIGINS", "https://a.example, https://b.example")

    config = WatchtowerConfig.from_env()
    assert config.is_production
    assert not config.local_mode
    assert [t.symbol for t in config.supported_tokens] == ["USDC", "WETH"]
    assert config.scan_interval_seconds == 60
    assert config.cors_origins == ("https://a.example", "https://b.example")


def test_describe_never_leaks_the_key():
    config = WatchtowerConfig(private_key=KEY, source_rpc_url="https://rpc.example", ledger_address=LEDGER)
    assert KEY not in str(config.describe())
    assert config.describe()["mode"] == "chain"


def test_parse_supported_tokens():
    assert parse_supported_tokens("dai:0x" + "0A" * 20) == (TokenConfig("DAI", "0x" + "0a" * 20),)
    for raw in ("", "DAI", "DAI:0x1234", ":0x" + "01" * 20):
        with pytest.raises(ConfigError):
            parse_supported_tokens(raw)


@pytest.mark.parametrize(
    "kwargs",
    [
        {"environment": "staging"},
        {"environment": "production"},
        {"environment": "production", "private_key": KEY, "source_rpc_url": "https://rpc",
         "ledger_address": LEDGER, "allow_stub_routes": True},
        {"ledger_address": "0x1234"},
        {"vault_address": "nope"},
        {"source_rpc_url": "https://rpc"},
        {"source_chain_id": 1},
        {"route_slippage": 0.0},
        {"route_slippage": 1.5},
        {"scan_interval_seconds": 0},
        {"max_concurrent_liquidations": -1},
        {"tx_confirmation_timeout_seconds": 0},
        {"start_block": -1},
    ],
)
def test_invalid_configurations(kwargs):
    with pytest.raises(ConfigError):
        WatchtowerConfig(**kwargs)


def test_bad_numbers_in_env(monkeypatch):
    monkeypatch.setenv("PORT", "eighty")
    with pytest.raises(ConfigError, match="PORT"):
        WatchtowerConfig.from_env()

    monkeypatch.setenv("PORT", "8080")
    monkeypatch.setenv("ROUTE_SLIPPAGE", "lots")
    with pytest.raises(ConfigError, match="ROUTE_SLIPPAGE"):
        WatchtowerConfig.from_env()


def test_start_block_from_env(monkeypatch):
    monkeypatch.setenv("START_BLOCK", "19000000")
    assert WatchtowerConfig.from_env().start_block == 19_000_000

    monkeypatch.setenv("START_BLOCK", " ")
    assert WatchtowerConfig.from_env().start_block is None

    monkeypatch.setenv("START_BLOCK", "latest")
    with pytest.raises(ConfigError, match="START_BLOCK"):
        WatchtowerConfig.from_env()
