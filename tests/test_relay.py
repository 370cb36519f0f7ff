"""Heartbeat relay: verification, cache upsert, period carry-forward and on-chain sync."""

import pytest

from lazarus.errors import AuthenticationError, ValidationError
from lazarus.ledger import LedgerEvent
from lazarus.protocol import PROTOCOL_RULES
from lazarus.relay import HeartbeatRelay, parse_heartbeat_message
from lazarus.signature import HeartbeatMessage, sign_heartbeat

from conftest import (
    BENEFICIARY,
    DAY,
    OTHER_KEY,
    OTHER_USER,
    SOURCE_CHAIN_ID,
    T0,
    USER,
    USER_KEY,
    WEEK,
)


def _signed(key: str, timestamp: float, nonce: int = 1):
    msg = HeartbeatMessage(message="I am alive", timestamp=int(timestamp), nonce=nonce)
    body = {"message": msg.message, "timestamp": str(msg.timestamp), "nonce": str(msg.nonce)}
    return body, sign_heartbeat(key, msg, SOURCE_CHAIN_ID)


class _UnreachableLedger:
    async def get_user_info(self, user):
        raise ConnectionError("rpc down")


@pytest.mark.asyncio
async def test_unregistered_user_gets_default_period(relay, store, clock):
    body, sig = _signed(USER_KEY, clock.now)
    record = await relay.accept(USER, body, sig)
    assert record.last_seen == T0 * 1000
    assert record.inactivity_period == PROTOCOL_RULES.DEFAULT_INACTIVITY_PERIOD_SECONDS
    assert store.get_heartbeat(USER).signature == sig


@pytest.mark.asyncio
async def test_period_fetched_on_first_sight_then_carried(relay, ledger, store, clock):
    ledger.register(USER, BENEFICIARY, 3 * DAY)
    body, sig = _signed(USER_KEY, clock.now, nonce=1)
    assert (await relay.accept(USER, body, sig)).inactivity_period == 3 * DAY

    # Changed on the ledger but no period-change signal seen yet.
    ledger.update_inactivity_period(USER, WEEK)
    clock.advance(60)
    body, sig = _signed(USER_KEY, clock.now, nonce=2)
    assert (await relay.accept(USER, body, sig)).inactivity_period == 3 * DAY

    relay.apply_event(LedgerEvent(block=2, name="InactivityPeriodUpdated", user=USER,
                                  args={"inactivity_period": WEEK}))
    assert store.get_heartbeat(USER).inactivity_period == WEEK


@pytest.mark.asyncio
async def test_registered_event_creates_cache_row(relay, store, clock):
    relay.apply_event(LedgerEvent(block=1, name="Registered", user=OTHER_USER,
                                  args={"beneficiary": BENEFICIARY, "inactivity_period": DAY}))
    record = store.get_heartbeat(OTHER_USER)
    assert record.inactivity_period == DAY
    assert record.last_seen == T0 * 1000


@pytest.mark.asyncio
async def test_rejects_malformed_requests(relay, clock):
    body, sig = _signed(USER_KEY, clock.now)
    with pytest.raises(ValidationError):
        await relay.accept("0x1234", body, sig)
    with pytest.raises(ValidationError):
        await relay.accept(USER, body, "0xdeadbeef")
    with pytest.raises(ValidationError):
        await relay.accept(USER, {"message": "I am alive", "timestamp": "soon"}, sig)


@pytest.mark.asyncio
async def test_rejects_wrong_signer(relay, store, clock):
    body, sig = _signed(OTHER_KEY, clock.now)
    with pytest.raises(AuthenticationError):
        await relay.accept(USER, body, sig)
    assert store.get_heartbeat(USER) is None


@pytest.mark.asyncio
async def test_rejects_stale_heartbeat(relay, clock):
    body, sig = _signed(USER_KEY, clock.now - 301)
    with pytest.raises(AuthenticationError, match="too old"):
        await relay.accept(USER, body, sig)


@pytest.mark.asyncio
async def test_rejects_replayed_nonce(relay, clock):
    body, sig = _signed(USER_KEY, clock.now, nonce=7)
    await relay.accept(USER, body, sig)
    with pytest.raises(AuthenticationError, match="nonce"):
        await relay.accept(USER, body, sig)


@pytest.mark.asyncio
async def test_syncs_ledger_when_on_chain_ping_is_old(relay, ledger, clock):
    ledger.register(USER, BENEFICIARY, WEEK)
    clock.advance(2 * DAY)
    body, sig = _signed(USER_KEY, clock.now)
    await relay.accept(USER, body, sig)
    await relay.drain()
    assert ledger.get_user_info(USER).last_heartbeat == T0 + 2 * DAY
    assert relay.pending_syncs == 0


@pytest.mark.asyncio
async def test_no_sync_when_on_chain_ping_is_recent(relay, ledger, clock):
    ledger.register(USER, BENEFICIARY, WEEK)
    clock.advance(3600)
    body, sig = _signed(USER_KEY, clock.now)
    await relay.accept(USER, body, sig)
    await relay.drain()
    assert ledger.get_user_info(USER).last_heartbeat == T0


@pytest.mark.asyncio
async def test_ledger_outage_does_not_fail_heartbeat(store, clock):
    relay = HeartbeatRelay(store, _UnreachableLedger(), chain_id=SOURCE_CHAIN_ID, clock=clock)
    body, sig = _signed(USER_KEY, clock.now)
    record = await relay.accept(USER, body, sig)
    assert record.inactivity_period == PROTOCOL_RULES.DEFAULT_INACTIVITY_PERIOD_SECONDS


def test_parse_message_defaults_text():
    msg = parse_heartbeat_message({"timestamp": 5, "nonce": "9"})
    assert msg == HeartbeatMessage(message="I am alive", timestamp=5, nonce=9)
