"""Tests for the room membership state machine."""
import random

import pytest

from myflow.chat.protocol import Envelope, Scope, ServerEvent, Subscription
from myflow.chat.schemas import MessageType
from myflow.errors import ForbiddenError, InvalidPayloadError, NotFoundError, RoomNotFoundError

CHROME_ON_WINDOWS = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)


def system_texts(outbox):
    return [
        e.payload["message"]["content"]
        for e in outbox.envelopes(ServerEvent.NEW_MESSAGE)
        if e.payload["message"]["type"] == MessageType.SYSTEM.value
    ]


def room_of(outbox):
    """Room id created by a join without target."""
    return outbox.envelopes(ServerEvent.ROOM_DATA)[-1].payload["roomId"]


@pytest.fixture
def users(membership):
    for user_id, name in (("alice", "Alice"), ("bob", "Bob"), ("carol", "Carol")):
        user = membership.identify(user_id)
        membership.store.rename_user(user.userId, name)
    return membership


def assert_room_invariant(store):
    """Every existing room is non-empty with exactly one host."""
    for room_id in store.list_room_ids():
        members = store.get_members(room_id)
        assert members, f"{room_id} exists without members"
        assert sum(1 for m in members if m.isHost) == 1, f"{room_id} host count"


class TestIdentify:
    def test_new_user_gets_device_name(self, membership):
        user = membership.identify(None, CHROME_ON_WINDOWS)
        assert user.name == "Windows (Chrome)"
        assert user.roomId is None
        assert user.userId

    def test_missing_user_agent(self, membership):
        assert membership.identify(None).name == "Unknown Device"

    def test_existing_user_is_returned(self, membership):
        first = membership.identify("device-1", CHROME_ON_WINDOWS)
        again = membership.identify("device-1", "something else")
        assert again.userId == "device-1"
        assert again.name == first.name

    def test_system_id_is_never_handed_out(self, membership):
        user = membership.identify("system")
        assert user.userId != "system"


class TestRename:
    def test_rename_broadcasts_to_room(self, users):
        outbox = users.join("alice")
        room_id = room_of(outbox)

        user, outbox = users.rename("alice", "  Phone  ")

        assert user.name == "Phone"
        [event] = outbox.envelopes()
        assert event.event == ServerEvent.USER_UPDATED
        assert event.scope == Scope.ROOM and event.target == room_id
        assert event.payload["user"]["name"] == "Phone"

    def test_rename_outside_room_is_silent(self, users):
        _, outbox = users.rename("alice", "Phone")
        assert len(outbox) == 0

    def test_empty_name_rejected(self, users):
        with pytest.raises(InvalidPayloadError):
            users.rename("alice", "   ")

    def test_unknown_user(self, users):
        with pytest.raises(NotFoundError):
            users.rename("nobody", "Phone")


class TestJoin:
    def test_create_room(self, users):
        outbox = users.join("alice")
        room_id = room_of(outbox)
        alice = users.store.get_user("alice")

        assert room_id.startswith("room-")
        assert alice.roomId == room_id and alice.isHost
        assert system_texts(outbox) == ["Room created."]
        effects = list(outbox)
        assert effects[0] == Subscription("alice", room_id, subscribe=True)
        assert isinstance(effects[-1], Envelope) and effects[-1].event == ServerEvent.ROOM_DATA

    def test_join_missing_room_fails_without_mutation(self, users):
        with pytest.raises(RoomNotFoundError):
            users.join("alice", "room-does-not-exist")
        assert users.store.get_user("alice").roomId is None
        assert users.store.list_room_ids() == []

    def test_join_existing_room_as_member(self, users):
        room_id = room_of(users.join("alice"))

        outbox = users.join("bob", room_id)

        bob = users.store.get_user("bob")
        assert bob.roomId == room_id and not bob.isHost
        assert system_texts(outbox) == ["Bob joined the room."]
        snapshot = outbox.envelopes(ServerEvent.ROOM_DATA)[-1].payload
        assert [m["userId"] for m in snapshot["members"]] == ["alice", "bob"]
        assert [m["content"] for m in snapshot["messages"]] == ["Room created.", "Bob joined the room."]
        assert snapshot["pinnedMessages"] == []

    def test_rejoin_is_a_resync(self, users):
        room_id = room_of(users.join("alice"))
        before = len(users.store.recent_messages(room_id, 100))

        outbox = users.join("alice", room_id)

        assert system_texts(outbox) == []
        assert [e.event for e in outbox.envelopes()] == [ServerEvent.ROOM_DATA]
        assert len(users.store.recent_messages(room_id, 100)) == before

    def test_room_swap_leaves_previous_room(self, users):
        room_a = room_of(users.join("alice"))
        users.join("bob", room_a)
        room_b = room_of(users.join("carol"))

        outbox = users.join("bob", room_b)

        assert users.store.get_user("bob").roomId == room_b
        assert Subscription("bob", room_a, subscribe=False) in list(outbox)
        left = [e for e in outbox.envelopes(ServerEvent.NEW_MESSAGE) if e.target == room_a]
        joined = [e for e in outbox.envelopes(ServerEvent.NEW_MESSAGE) if e.target == room_b]
        assert [e.payload["message"]["content"] for e in left] == ["Bob left the room."]
        assert [e.payload["message"]["content"] for e in joined] == ["Bob joined the room."]
        assert_room_invariant(users.store)

    def test_swap_as_last_member_destroys_previous_room(self, users):
        room_a = room_of(users.join("alice"))
        room_b = room_of(users.join("bob"))

        users.join("alice", room_b)

        assert not users.store.room_exists(room_a)
        assert users.store.recent_messages(room_a, 10) == []

    def test_failed_swap_keeps_previous_room_and_uploads(self, users, monkeypatch):
        room_a = room_of(users.join("alice"))
        room_b = room_of(users.join("bob"))
        room_dir = users.files.upload_dir / room_a
        room_dir.mkdir(parents=True)
        (room_dir / "note.txt").write_text("x")

        def broken_set_membership(*args, **kwargs):
            raise RuntimeError("disk full")

        monkeypatch.setattr(users.store, "set_membership", broken_set_membership)

        with pytest.raises(RuntimeError):
            users.join("alice", room_b)

        # The departure was rolled back, so the room and its files survive
        assert users.store.room_exists(room_a)
        assert users.store.get_user("alice").roomId == room_a
        assert (room_dir / "note.txt").exists()

    def test_swap_as_host_promotes_in_previous_room(self, users, clock):
        room_a = room_of(users.join("alice"))
        clock.advance(1)
        users.join("bob", room_a)
        room_b = room_of(users.join("carol"))

        users.join("alice", room_b)

        assert users.store.get_user("bob").isHost
        assert not users.store.get_user("alice").isHost
        assert_room_invariant(users.store)


class TestLeave:
    def test_leave_without_room_is_noop(self, users):
        assert len(users.leave("alice")) == 0

    def test_last_member_leaving_destroys_room(self, users):
        room_id = room_of(users.join("alice"))
        users.store.add_message(room_id, "alice", MessageType.TEXT, "hello")
        room_dir = users.files.upload_dir / room_id
        room_dir.mkdir(parents=True)
        (room_dir / "note.txt").write_text("x")

        outbox = users.leave("alice")

        assert not users.store.room_exists(room_id)
        assert users.store.recent_messages(room_id, 10) == []
        assert not room_dir.exists()
        # Nobody is left to tell
        assert outbox.envelopes() == []

    def test_member_leaving(self, users):
        room_id = room_of(users.join("alice"))
        users.join("bob", room_id)

        outbox = users.leave("bob")

        assert system_texts(outbox) == ["Bob left the room."]
        assert outbox.envelopes()[-1].event == ServerEvent.ROOM_DATA
        assert users.store.get_user("alice").isHost

    def test_host_succession_announced_once(self, users, clock):
        room_id = room_of(users.join("alice"))
        clock.advance(1)
        users.join("bob", room_id)
        clock.advance(1)
        users.join("carol", room_id)

        outbox = users.leave("alice")

        texts = system_texts(outbox)
        assert texts == ["Alice left the room.", "Bob is now the Host."]
        assert texts.count("Bob is now the Host.") == 1
        snapshot = outbox.envelopes()[-1]
        assert snapshot.event == ServerEvent.ROOM_DATA
        assert [(m["userId"], m["isHost"]) for m in snapshot.payload["members"]] == [
            ("bob", True),
            ("carol", False),
        ]

    def test_succession_tie_broken_by_user_id(self, users):
        # The fake clock does not move, so both members joined "at once"
        room_id = room_of(users.join("alice"))
        users.join("carol", room_id)
        users.join("bob", room_id)

        users.leave("alice")

        assert users.store.get_user("bob").isHost
        assert not users.store.get_user("carol").isHost


class TestKick:
    def test_member_cannot_kick_host(self, users):
        room_id = room_of(users.join("alice"))
        users.join("bob", room_id)
        before = users.store.recent_messages(room_id, 100)

        with pytest.raises(ForbiddenError):
            users.kick("bob", "alice")

        assert users.store.get_user("alice").roomId == room_id
        assert users.store.get_user("alice").isHost
        assert users.store.recent_messages(room_id, 100) == before

    def test_host_kicks_member(self, users):
        room_id = room_of(users.join("alice"))
        users.join("bob", room_id)

        outbox = users.kick("alice", "bob")

        first = outbox.envelopes()[0]
        assert first.event == ServerEvent.USER_KICKED
        assert first.scope == Scope.USER and first.target == "bob"
        assert first.payload["roomId"] == room_id
        assert Subscription("bob", room_id, subscribe=False) in list(outbox)
        assert system_texts(outbox) == ["Bob was kicked by Alice."]
        assert users.store.get_user("bob").roomId is None

    def test_member_kicks_member(self, users):
        room_id = room_of(users.join("alice"))
        users.join("bob", room_id)
        users.join("carol", room_id)

        users.kick("bob", "carol")

        assert users.store.get_user("carol").roomId is None

    def test_kick_across_rooms_forbidden(self, users):
        room_of(users.join("alice"))
        room_of(users.join("bob"))
        with pytest.raises(ForbiddenError):
            users.kick("alice", "bob")

    def test_kick_without_room_forbidden(self, users):
        with pytest.raises(ForbiddenError):
            users.kick("alice", "bob")


class TestInvite:
    def test_host_invites_paired_device(self, users):
        room_id = room_of(users.join("alice"))

        outbox = users.invite("alice", "pairing:carol")

        [event] = outbox.envelopes()
        assert event.event == ServerEvent.FORCE_JOIN_ROOM
        assert event.scope == Scope.USER and event.target == "carol"
        assert event.payload["targetUserId"] == "carol"
        assert event.payload["roomId"] == room_id
        # Nothing moves until the device joins by itself
        assert users.store.get_user("carol").roomId is None

    def test_member_cannot_invite(self, users):
        room_id = room_of(users.join("alice"))
        users.join("bob", room_id)
        with pytest.raises(ForbiddenError):
            users.invite("bob", "pairing:carol")

    def test_invite_without_room_forbidden(self, users):
        with pytest.raises(ForbiddenError):
            users.invite("alice", "pairing:carol")

    @pytest.mark.parametrize("token", ["carol", "join_room:room-1", "pairing:", ""])
    def test_malformed_token(self, users, token):
        users.join("alice")
        with pytest.raises(InvalidPayloadError):
            users.invite("alice", token)

    def test_unknown_device(self, users):
        users.join("alice")
        with pytest.raises(NotFoundError):
            users.invite("alice", "pairing:ghost")


class TestReconnect:
    def test_reconnect_resyncs_actor(self, users):
        room_id = room_of(users.join("alice"))

        outbox = users.reconnect("alice")

        effects = list(outbox)
        assert effects[0] == Subscription("alice", room_id, subscribe=True)
        assert effects[1].scope == Scope.ACTOR
        assert effects[1].event == ServerEvent.ROOM_DATA

    def test_reconnect_without_room(self, users):
        assert len(users.reconnect("alice")) == 0


def test_random_operations_keep_one_host_per_room(users, clock):
    rng = random.Random(7)
    user_ids = ["alice", "bob", "carol"]
    for _ in range(200):
        clock.advance(rng.random())
        actor = rng.choice(user_ids)
        rooms = users.store.list_room_ids()
        op = rng.choice(["create", "join", "leave", "kick"])
        try:
            if op == "create":
                users.join(actor)
            elif op == "join" and rooms:
                users.join(actor, rng.choice(rooms))
            elif op == "leave":
                users.leave(actor)
            elif op == "kick":
                users.kick(actor, rng.choice(user_ids))
        except (ForbiddenError, InvalidPayloadError):
            pass
        assert_room_invariant(users.store)
