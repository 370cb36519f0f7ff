"""Shared fixtures: a controllable clock, funded accounts and a local deployment."""

import pytest
from eth_account import Account

from lazarus.config import TokenConfig
from lazarus.deployment import deploy_local, derive_address
from lazarus.heartbeat_store import HeartbeatStore
from lazarus.liquidator import LiquidationExecutor
from lazarus.relay import HeartbeatRelay
from lazarus.routes import RouteProvider
from lazarus.scanner import InactivityScanner

T0 = 1_700_000_000
DAY = 86_400
WEEK = 7 * DAY

SOURCE_CHAIN_ID = 11155111
DESTINATION_CHAIN_ID = 42161

USER_KEY = "0x" + "11" * 32
OTHER_KEY = "0x" + "22" * 32
EXECUTOR_KEY = "0x" + "33" * 32

USER = Account.from_key(USER_KEY).address.lower()
OTHER_USER = Account.from_key(OTHER_KEY).address.lower()
EXECUTOR = Account.from_key(EXECUTOR_KEY).address.lower()
BENEFICIARY = derive_address("beneficiary")
OTHER_BENEFICIARY = derive_address("beneficiary-2")

TOKEN_X = derive_address("token-x")
TOKEN_Y = derive_address("token-y")
DEST_TOKEN = derive_address("dest-usdc")

TOKENS = (TokenConfig("TKX", TOKEN_X), TokenConfig("TKY", TOKEN_Y))


class FakeClock:
    def __init__(self, start: float = T0):
        self.now = float(start)

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def deployment(clock):
    return deploy_local(EXECUTOR, DEST_TOKEN, DESTINATION_CHAIN_ID, clock=clock)


@pytest.fixture
def tokens(deployment):
    return deployment.tokens


@pytest.fixture
def ledger(deployment):
    return deployment.ledger


@pytest.fixture
def vault(deployment):
    return deployment.vault


@pytest.fixture
def store():
    s = HeartbeatStore()
    yield s
    s.close()


@pytest.fixture
def stub_routes():
    return RouteProvider(source=None, production=False, allow_stub=True)


@pytest.fixture
def executor(deployment, stub_routes, store):
    return LiquidationExecutor(
        deployment.client,
        stub_routes,
        store,
        TOKENS,
        source_chain_id=SOURCE_CHAIN_ID,
        destination_chain_id=DESTINATION_CHAIN_ID,
        destination_token=DEST_TOKEN,
        confirmation_timeout=5.0,
        confirmation_grace=0.0,
    )


@pytest.fixture
def scanner(store, executor, clock):
    return InactivityScanner(store, executor, interval_seconds=3600, max_concurrency=2, clock=clock)


@pytest.fixture
def relay(store, deployment, clock):
    return HeartbeatRelay(store, deployment.client, chain_id=SOURCE_CHAIN_ID, clock=clock)


def fund_and_approve(tokens, ledger, user: str, token: str, balance: int, allowance: int):
    tokens.mint(token, user, balance)
    tokens.approve(token, user, ledger.address, allowance)
