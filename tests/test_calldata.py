"""Calldata validator: beneficiary presence inside the scan window."""

from hypothesis import given, settings, strategies as st

from lazarus.calldata import (
    ADDRESS_BYTES,
    SCAN_WINDOW_BYTES,
    SELECTOR_BYTES,
    RouteBuffer,
    contains_beneficiary,
)
from lazarus.protocol import NULL_ADDRESS
from lazarus.routes import build_stub_route

from conftest import BENEFICIARY, OTHER_BENEFICIARY, TOKEN_X

SELECTOR = bytes.fromhex("deadbeef")
NEEDLE = bytes.fromhex(BENEFICIARY[2:])
LAST_OFFSET = SELECTOR_BYTES + SCAN_WINDOW_BYTES - 1


def _payload_with_needle_at(offset: int, total: int = 400) -> bytes:
    body = bytearray(total)
    body[:SELECTOR_BYTES] = SELECTOR
    body[offset:offset + ADDRESS_BYTES] = NEEDLE
    return bytes(body)


def test_stub_route_names_its_receiver():
    payload = build_stub_route(TOKEN_X, 1_000, BENEFICIARY, 42161)
    assert contains_beneficiary(payload, BENEFICIARY)
    assert not contains_beneficiary(payload, OTHER_BENEFICIARY)


def test_hex_string_payload_is_accepted():
    payload = build_stub_route(TOKEN_X, 1_000, BENEFICIARY, 42161)
    assert contains_beneficiary("0x" + payload.hex(), BENEFICIARY)
    assert contains_beneficiary(payload.hex().upper(), BENEFICIARY)


@given(offset=st.integers(min_value=SELECTOR_BYTES, max_value=LAST_OFFSET))
@settings(max_examples=100)
def test_found_at_any_offset_in_window(offset):
    assert contains_beneficiary(_payload_with_needle_at(offset), BENEFICIARY)


@given(offset=st.integers(min_value=LAST_OFFSET + 1, max_value=380))
@settings(max_examples=50)
def test_not_found_past_the_window(offset):
    assert not contains_beneficiary(_payload_with_needle_at(offset), BENEFICIARY)


def test_selector_bytes_are_never_scanned():
    # Beneficiary starting at offset 0 overlaps the selector.
    data = NEEDLE + bytes(100)
    assert not contains_beneficiary(data, BENEFICIARY)


def test_truncated_address_at_end_is_not_a_match():
    data = SELECTOR + bytes(10) + NEEDLE[:19]
    assert not contains_beneficiary(data, BENEFICIARY)


def test_exact_fit_at_end_is_a_match():
    data = SELECTOR + bytes(10) + NEEDLE
    assert contains_beneficiary(data, BENEFICIARY)


def test_fails_closed_on_bad_input():
    assert not contains_beneficiary("0xnothex", BENEFICIARY)
    assert not contains_beneficiary(b"", BENEFICIARY)
    assert not contains_beneficiary(SELECTOR + bytes(16), BENEFICIARY)
    assert not contains_beneficiary(_payload_with_needle_at(36), NULL_ADDRESS)
    assert not contains_beneficiary(_payload_with_needle_at(36), "not-an-address")
    assert not contains_beneficiary(None, BENEFICIARY)


def test_scan_offsets_respect_payload_length():
    assert list(RouteBuffer(bytes(10)).scan_offsets()) == []
    assert list(RouteBuffer(bytes(24)).scan_offsets()) == [4]
    offsets = RouteBuffer(bytes(1_000)).scan_offsets()
    assert offsets.start == SELECTOR_BYTES
    assert offsets.stop == SELECTOR_BYTES + SCAN_WINDOW_BYTES


def test_parse_rejects_garbage():
    assert RouteBuffer.parse("0xzz") is None
    assert RouteBuffer.parse(12345) is None
    assert RouteBuffer.parse("0x00ff").data == b"\x00\xff"
