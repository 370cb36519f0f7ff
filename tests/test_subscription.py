"""Ledger event subscription: cache upserts, cursor and reconnect backoff."""

import asyncio

import pytest

from lazarus.subscription import MAX_BACKOFF_SECONDS, LedgerEventSubscription

from conftest import BENEFICIARY, DAY, OTHER_USER, USER, WEEK


class _DownClient:
    async def fetch_events(self, from_block):
        raise ConnectionError("websocket closed")


@pytest.mark.asyncio
async def test_events_update_cache_and_advance_cursor(deployment, ledger, relay, store):
    subscription = LedgerEventSubscription(deployment.client, relay.apply_event)
    ledger.register(USER, BENEFICIARY, WEEK)
    ledger.register(OTHER_USER, BENEFICIARY, DAY)
    ledger.update_inactivity_period(USER, 2 * WEEK)

    assert await subscription.poll_once() == 3
    assert store.get_heartbeat(USER).inactivity_period == 2 * WEEK
    assert store.get_heartbeat(OTHER_USER).inactivity_period == DAY

    cursor = subscription.cursor
    assert await subscription.poll_once() == 0
    assert subscription.cursor == cursor


@pytest.mark.asyncio
async def test_unwatched_events_still_move_the_cursor(deployment, ledger, relay):
    subscription = LedgerEventSubscription(deployment.client, relay.apply_event)
    ledger.register(USER, BENEFICIARY, WEEK)
    ledger.ping(USER)

    assert await subscription.poll_once() == 1
    assert subscription.cursor == ledger.events_since(0)[-1].block


@pytest.mark.asyncio
async def test_handler_failure_does_not_stall(deployment, ledger):
    seen = []

    def handler(event):
        seen.append(event.user)
        if len(seen) == 1:
            raise KeyError("boom")

    subscription = LedgerEventSubscription(deployment.client, handler)
    ledger.register(USER, BENEFICIARY, WEEK)
    ledger.register(OTHER_USER, BENEFICIARY, WEEK)

    await subscription.poll_once()
    assert seen == [USER, OTHER_USER]
    assert subscription.events_applied == 1


@pytest.mark.asyncio
async def test_poll_failures_back_off_exponentially(monkeypatch):
    real_sleep = asyncio.sleep
    delays = []

    async def fake_sleep(delay, *args, **kwargs):
        delays.append(delay)
        if len(delays) >= 8:
            raise asyncio.CancelledError()
        await real_sleep(0)

    monkeypatch.setattr("lazarus.subscription.asyncio.sleep", fake_sleep)
    subscription = LedgerEventSubscription(_DownClient(), lambda event: None)

    with pytest.raises(asyncio.CancelledError):
        await subscription._loop()

    assert delays == [1.0, 2.0, 4.0, 8.0, 16.0, 32.0, 60.0, 60.0]
    assert subscription.next_backoff == MAX_BACKOFF_SECONDS
    assert subscription.failures == 8


@pytest.mark.asyncio
async def test_start_and_stop(deployment, relay):
    subscription = LedgerEventSubscription(deployment.client, relay.apply_event, poll_seconds=3600)
    subscription.start()
    assert subscription.is_running
    await subscription.stop()
    assert not subscription.is_running
