"""Heartbeat cache: upserts, inactivity query, persistence, lifecycle."""

import json

import pytest

from lazarus.heartbeat_store import HeartbeatStore

from conftest import OTHER_USER, USER, WEEK

T_MS = 1_700_000_000_000


def test_record_heartbeat_creates_and_updates():
    store = HeartbeatStore()
    first = store.record_heartbeat(USER.upper().replace("0X", "0x"), "0xsig1", WEEK, at_ms=T_MS)
    assert first.user_address == USER
    assert first.created_at == first.updated_at == first.last_seen == T_MS

    second = store.record_heartbeat(USER, "0xsig2", WEEK, at_ms=T_MS + 1_000)
    assert second.last_seen == T_MS + 1_000
    assert second.signature == "0xsig2"
    assert second.created_at == T_MS
    assert len(store) == 1


def test_older_write_does_not_move_last_seen_back():
    store = HeartbeatStore()
    store.record_heartbeat(USER, "0xnew", WEEK, at_ms=T_MS + 5_000)
    record = store.record_heartbeat(USER, "0xold", WEEK, at_ms=T_MS)
    assert record.last_seen == T_MS + 5_000
    assert record.signature == "0xnew"


def test_inactive_users_use_each_records_period():
    store = HeartbeatStore()
    store.record_heartbeat(USER, "0xa", 60, at_ms=T_MS)
    store.record_heartbeat(OTHER_USER, "0xb", WEEK, at_ms=T_MS)

    assert store.get_inactive_users(at_ms=T_MS + 60_000) == []
    inactive = store.get_inactive_users(at_ms=T_MS + 60_001)
    assert [r.user_address for r in inactive] == [USER]


def test_registration_signal_and_period_change():
    store = HeartbeatStore()
    record = store.record_registration(USER, WEEK, at_ms=T_MS)
    assert record.signature == ""
    assert store.update_inactivity_period(USER, 2 * WEEK)
    assert store.get_heartbeat(USER).inactivity_period == 2 * WEEK
    assert not store.update_inactivity_period(OTHER_USER, WEEK)


def test_returned_records_are_copies():
    store = HeartbeatStore()
    record = store.record_heartbeat(USER, "0xa", WEEK, at_ms=T_MS)
    record.last_seen = 0
    assert store.get_heartbeat(USER).last_seen == T_MS


def test_remove_user():
    store = HeartbeatStore()
    store.record_heartbeat(USER, "0xa", WEEK, at_ms=T_MS)
    assert store.remove_user(USER)
    assert not store.remove_user(USER)
    assert store.get_heartbeat(USER) is None


def test_persists_and_reloads(tmp_path):
    path = tmp_path / "data" / "heartbeats.json"
    store = HeartbeatStore(str(path))
    store.record_heartbeat(USER, "0xa", WEEK, at_ms=T_MS)
    store.close()

    saved = json.loads(path.read_text())
    assert saved["heartbeats"][0]["user_address"] == USER

    reloaded = HeartbeatStore(str(path))
    assert reloaded.get_heartbeat(USER).last_seen == T_MS


def test_corrupt_file_starts_empty(tmp_path):
    path = tmp_path / "heartbeats.json"
    path.write_text("{not json")
    assert len(HeartbeatStore(str(path))) == 0


def test_closed_store_rejects_writes():
    store = HeartbeatStore()
    store.close()
    assert store.closed
    with pytest.raises(RuntimeError):
        store.record_heartbeat(USER, "0xa", WEEK)
