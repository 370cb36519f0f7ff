"""HTTP surface: status codes and response shapes."""

import pytest
from fastapi.testclient import TestClient

from api.server import create_app
from lazarus.destination import DestinationMonitor, local_vault_deposits
from lazarus.signature import HeartbeatMessage, sign_heartbeat

from conftest import (
    BENEFICIARY,
    DAY,
    OTHER_KEY,
    SOURCE_CHAIN_ID,
    T0,
    TOKEN_X,
    USER,
    USER_KEY,
    WEEK,
    fund_and_approve,
)


@pytest.fixture
def monitor(vault, clock):
    return DestinationMonitor(local_vault_deposits(vault), clock=clock)


@pytest.fixture
def client(store, relay, scanner, monitor, clock):
    app = create_app(store, relay, scanner, destination_monitor=monitor, clock=clock)
    with TestClient(app) as c:
        yield c


def _body(key=USER_KEY, address=USER, timestamp=T0, nonce=1):
    msg = HeartbeatMessage(message="I am alive", timestamp=timestamp, nonce=nonce)
    return {
        "address": address,
        "message": {"message": msg.message, "timestamp": msg.timestamp, "nonce": msg.nonce},
        "signature": sign_heartbeat(key, msg, SOURCE_CHAIN_ID),
    }


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "ok"
    assert data["users"] == 0
    assert data["scanRunning"] is False
    assert data["timestamp"] == "2023-11-14T22:13:20Z"


def test_heartbeat_accepted(client, store):
    response = client.post("/heartbeat", json=_body())
    assert response.status_code == 200
    assert response.json() == {
        "success": True,
        "lastSeen": T0 * 1000,
        "message": "Heartbeat recorded successfully",
    }
    assert store.get_heartbeat(USER) is not None


def test_heartbeat_bad_address_is_400(client):
    response = client.post("/heartbeat", json=_body(address="0x1234"))
    assert response.status_code == 400


def test_heartbeat_missing_fields_is_400(client):
    response = client.post("/heartbeat", json={"address": USER})
    assert response.status_code == 400


def test_heartbeat_wrong_signer_is_401(client, store):
    response = client.post("/heartbeat", json=_body(key=OTHER_KEY))
    assert response.status_code == 401
    assert store.get_heartbeat(USER) is None


def test_heartbeat_replay_is_401(client):
    body = _body(nonce=9)
    assert client.post("/heartbeat", json=body).status_code == 200
    assert client.post("/heartbeat", json=body).status_code == 401


def test_status(client, store, clock):
    store.record_heartbeat(USER, "0xsig", WEEK, at_ms=T0 * 1000)
    clock.advance(WEEK - DAY // 2)

    data = client.get(f"/status/{USER}").json()
    assert data["address"] == USER
    assert data["deadline"] == (T0 + WEEK) * 1000
    assert data["timeRemainingMs"] == DAY // 2 * 1000
    assert data["timeRemainingDays"] == 0.5
    assert data["isAtRisk"] is True
    assert data["lastSeenISO"].endswith("Z")


def test_status_errors(client):
    assert client.get("/status/not-an-address").status_code == 400
    assert client.get(f"/status/{USER}").status_code == 404


def test_users_listing(client, store):
    store.record_heartbeat(USER, "0xsig", WEEK, at_ms=T0 * 1000)
    data = client.get("/users").json()
    assert data["count"] == 1
    assert data["users"][0]["address"] == USER
    assert data["users"][0]["inactivityPeriod"] == WEEK


def test_manual_liquidation_check(client, ledger, tokens, store, clock):
    ledger.register(USER, BENEFICIARY, WEEK)
    store.record_heartbeat(USER, "0xsig", WEEK, at_ms=T0 * 1000)
    fund_and_approve(tokens, ledger, USER, TOKEN_X, 1_000, 1_000)
    clock.advance(WEEK + 1)

    response = client.post("/liquidation/check")
    assert response.status_code == 200
    data = response.json()
    assert data["success"] is True
    assert data["candidates"] == 1
    assert data["settled"] == 1
    settled = [r for r in data["results"] if r["success"]]
    assert settled[0]["bridged"] == "990"
    assert settled[0]["stubbedRoute"] is True
    assert store.get_heartbeat(USER) is None


def test_pending_bridges_listed(client, monitor):
    monitor.add_pending_bridge(USER, BENEFICIARY, "0xabc", "TKX", 99)
    data = client.get("/bridges/pending").json()
    assert data["count"] == 1
    assert data["bridges"][0]["beneficiary"] == BENEFICIARY
