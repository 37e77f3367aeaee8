"""Pairing and room-join tokens.

Tokens are the plain strings a client encodes in a QR code (rendering the
image is left to the client):

    pairing:<userId>     shown by a device that wants to be invited
    join_room:<roomId>   shown by a room member so others can join
"""
from myflow.errors import InvalidPayloadError

PAIRING_PREFIX = "pairing:"
ROOM_PREFIX = "join_room:"


def issue_pairing_token(user_id: str) -> str:
    return f"{PAIRING_PREFIX}{user_id}"


def issue_room_token(room_id: str) -> str:
    return f"{ROOM_PREFIX}{room_id}"


def _parse(token: str, prefix: str, kind: str) -> str:
    token = (token or "").strip()
    if not token.startswith(prefix) or len(token) == len(prefix):
        raise InvalidPayloadError(f"Invalid {kind} token.")
    return token[len(prefix):]


def parse_pairing_token(token: str) -> str:
    """Return the user id encoded in a pairing token.

    Raises:
        InvalidPayloadError: If the token is not a pairing token.
    """
    return _parse(token, PAIRING_PREFIX, "pairing")


def parse_room_token(token: str) -> str:
    """Return the room id encoded in a join_room token."""
    return _parse(token, ROOM_PREFIX, "room")
