"""Real-time protocol: action and event names plus the ordered Outbox.

Every mutating operation of the chat core returns an :class:`Outbox`, an
ordered list of effects the gateway applies once the store writes are done:

    - ``Envelope`` with scope ROOM:  fan-out to connections subscribed to a room
    - ``Envelope`` with scope USER:  directed delivery to one user's connections
    - ``Envelope`` with scope ACTOR: reply to the connection that issued the action
    - ``Subscription``: (un)subscribe a user's connections to a room channel

Keeping the effects ordered is what makes broadcast order equal to the order
in which actions were admitted.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, Iterator, List, Optional, Union

from .schemas import MessageRecord


class ClientAction(str, Enum):
    """Inbound WebSocket action types."""
    JOIN_ROOM = "join_room"
    SEND_MESSAGE = "send_message"
    TOGGLE_PIN = "toggle_pin"
    LEAVE_ROOM = "leave_room"
    KICK_MEMBER = "kick_member"
    INVITE_PAIRED_DEVICE = "invite_paired_device"
    LOAD_MORE_MESSAGES = "load_more_messages"
    SOFT_DELETE_MESSAGES = "soft_delete_messages"
    RESTORE_MESSAGES = "restore_messages"
    RESTORE_ALL_MESSAGES = "restore_all_messages"


class ServerEvent(str, Enum):
    """Outbound event types."""
    CONNECTED = "connected"
    ROOM_DATA = "room_data"
    NEW_MESSAGE = "new_message"
    MESSAGE_UPDATED = "message_updated"
    MESSAGES_DELETED = "messages_deleted"
    MESSAGES_HARD_DELETED = "messages_hard_deleted"
    MESSAGES_RESTORED = "messages_restored"
    ALL_MESSAGES_RESTORED = "all_messages_restored"
    MORE_MESSAGES_LOADED = "more_messages_loaded"
    USER_UPDATED = "user_updated"
    USER_KICKED = "user_kicked"
    FORCE_JOIN_ROOM = "force_join_room"
    ERROR = "error"


class Scope(str, Enum):
    ROOM = "room"
    USER = "user"
    ACTOR = "actor"


@dataclass
class Envelope:
    """One event addressed to a room, a user, or the acting connection."""
    scope: Scope
    target: Optional[str]
    event: ServerEvent
    payload: dict = field(default_factory=dict)

    def as_message(self) -> dict:
        return {"type": self.event.value, **self.payload}


@dataclass
class Subscription:
    user_id: str
    room_id: str
    subscribe: bool = True


Effect = Union[Envelope, Subscription]


class Outbox:
    """Ordered effects produced by a single action."""

    def __init__(self) -> None:
        self.effects: List[Effect] = []

    def to_room(self, room_id: str, event: ServerEvent, **payload) -> "Outbox":
        self.effects.append(Envelope(Scope.ROOM, room_id, event, payload))
        return self

    def to_user(self, user_id: str, event: ServerEvent, **payload) -> "Outbox":
        self.effects.append(Envelope(Scope.USER, user_id, event, payload))
        return self

    def to_actor(self, event: ServerEvent, **payload) -> "Outbox":
        self.effects.append(Envelope(Scope.ACTOR, None, event, payload))
        return self

    def subscribe(self, user_id: str, room_id: str) -> "Outbox":
        self.effects.append(Subscription(user_id, room_id, subscribe=True))
        return self

    def unsubscribe(self, user_id: str, room_id: str) -> "Outbox":
        self.effects.append(Subscription(user_id, room_id, subscribe=False))
        return self

    def extend(self, other: "Outbox") -> "Outbox":
        self.effects.extend(other.effects)
        return self

    def envelopes(self, event: Optional[ServerEvent] = None) -> List[Envelope]:
        """Envelopes in order, optionally only those of one event type."""
        return [
            e for e in self.effects
            if isinstance(e, Envelope) and (event is None or e.event == event)
        ]

    def __iter__(self) -> Iterator[Effect]:
        return iter(self.effects)

    def __len__(self) -> int:
        return len(self.effects)

    def __bool__(self) -> bool:
        return bool(self.effects)


def dump_messages(messages: Iterable[MessageRecord]) -> List[dict]:
    return [m.model_dump(mode="json") for m in messages]


def visible_messages(
    messages: Iterable[MessageRecord], viewer_is_host: bool
) -> List[MessageRecord]:
    """Default render filter: soft-deleted messages are shown to hosts only."""
    if viewer_is_host:
        return list(messages)
    return [m for m in messages if not m.is_deleted]
