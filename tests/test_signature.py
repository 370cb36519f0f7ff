"""EIP-712 heartbeat signatures and nonce replay protection."""

from lazarus.signature import (
    HeartbeatMessage,
    NonceRegistry,
    generate_heartbeat_message,
    heartbeat_typed_data,
    sign_heartbeat,
    verify_heartbeat_signature,
)

from conftest import OTHER_KEY, SOURCE_CHAIN_ID, T0, USER, USER_KEY

MESSAGE = HeartbeatMessage(message="I am alive", timestamp=T0, nonce=42)


def test_valid_signature_recovers_signer():
    sig = sign_heartbeat(USER_KEY, MESSAGE, SOURCE_CHAIN_ID)
    result = verify_heartbeat_signature(MESSAGE, sig, USER, SOURCE_CHAIN_ID, now=T0 + 10)
    assert result.valid
    assert result.recovered_address.lower() == USER


def test_signature_from_another_key_is_rejected():
    sig = sign_heartbeat(OTHER_KEY, MESSAGE, SOURCE_CHAIN_ID)
    result = verify_heartbeat_signature(MESSAGE, sig, USER, SOURCE_CHAIN_ID, now=T0)
    assert not result.valid
    assert result.error == "Signature verification failed"


def test_signature_is_bound_to_chain_id():
    sig = sign_heartbeat(USER_KEY, MESSAGE, 1)
    assert not verify_heartbeat_signature(MESSAGE, sig, USER, SOURCE_CHAIN_ID, now=T0).valid


def test_tampered_message_is_rejected():
    sig = sign_heartbeat(USER_KEY, MESSAGE, SOURCE_CHAIN_ID)
    tampered = HeartbeatMessage(message=MESSAGE.message, timestamp=MESSAGE.timestamp, nonce=43)
    assert not verify_heartbeat_signature(tampered, sig, USER, SOURCE_CHAIN_ID, now=T0).valid


def test_freshness_window_is_five_minutes_each_way():
    sig = sign_heartbeat(USER_KEY, MESSAGE, SOURCE_CHAIN_ID)
    assert verify_heartbeat_signature(MESSAGE, sig, USER, SOURCE_CHAIN_ID, now=T0 + 300).valid
    assert verify_heartbeat_signature(MESSAGE, sig, USER, SOURCE_CHAIN_ID, now=T0 - 300).valid

    stale = verify_heartbeat_signature(MESSAGE, sig, USER, SOURCE_CHAIN_ID, now=T0 + 301)
    future = verify_heartbeat_signature(MESSAGE, sig, USER, SOURCE_CHAIN_ID, now=T0 - 301)
    assert not stale.valid and "too old" in stale.error
    assert not future.valid


def test_malformed_signature_never_raises():
    result = verify_heartbeat_signature(MESSAGE, "0x1234", USER, SOURCE_CHAIN_ID, now=T0)
    assert not result.valid
    assert result.error.startswith("Malformed signature")


def test_typed_data_shape():
    data = heartbeat_typed_data(MESSAGE, SOURCE_CHAIN_ID)
    assert data["primaryType"] == "Heartbeat"
    assert data["domain"] == {"name": "Lazarus Protocol", "version": "1", "chainId": SOURCE_CHAIN_ID}
    assert data["message"] == {"message": "I am alive", "timestamp": T0, "nonce": 42}


def test_generated_message_uses_now():
    msg = generate_heartbeat_message(now=T0)
    assert msg.timestamp == T0
    assert msg.message == "I am alive"


def test_nonce_registry_blocks_replay_and_prunes():
    nonces = NonceRegistry(window_seconds=300)
    assert nonces.check_and_record(USER, 1, T0, now=T0)
    assert not nonces.check_and_record(USER.upper().replace("0X", "0x"), 1, T0, now=T0 + 1)
    assert nonces.check_and_record(USER, 2, T0, now=T0 + 1)

    # Long after the window the old entries are forgotten.
    assert nonces.check_and_record(USER, 3, T0 + 10_000, now=T0 + 10_000)
    assert len(nonces) == 1
