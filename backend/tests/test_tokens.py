"""Tests for pairing and room-join tokens."""
import pytest

from myflow.chat.tokens import (
    issue_pairing_token,
    issue_room_token,
    parse_pairing_token,
    parse_room_token,
)
from myflow.errors import InvalidPayloadError


def test_pairing_token_format():
    assert issue_pairing_token("user-1") == "pairing:user-1"
    assert parse_pairing_token("pairing:user-1") == "user-1"


def test_room_token_format():
    token = issue_room_token("room-abc")
    assert token == "join_room:room-abc"
    assert parse_room_token(token) == "room-abc"


def test_surrounding_whitespace_is_ignored():
    assert parse_pairing_token("  pairing:user-1\n") == "user-1"


@pytest.mark.parametrize("token", ["join_room:room-abc", "pairing:", "user-1", "", None])
def test_invalid_pairing_tokens(token):
    with pytest.raises(InvalidPayloadError):
        parse_pairing_token(token)


def test_room_token_is_not_a_pairing_token():
    with pytest.raises(InvalidPayloadError):
        parse_room_token("pairing:user-1")
