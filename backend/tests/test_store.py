"""Unit tests for the DuckDB chat store."""
import pytest

from myflow.chat.schemas import SYSTEM_USER_ID, LinkPreview, MessageType
from myflow.errors import NotFoundError


def make_room(store, room_id="room-1", members=("alice",)):
    store.create_room(room_id)
    for i, user_id in enumerate(members):
        if store.get_user(user_id) is None:
            store.create_user(user_id, user_id.capitalize())
        store.set_membership(user_id, room_id, is_host=(i == 0))
    return room_id


def add_text(store, room_id, user_id, content):
    return store.add_message(room_id, user_id, MessageType.TEXT, content)


class TestUsers:
    def test_system_user_is_seeded(self, store):
        system = store.get_user(SYSTEM_USER_ID)
        assert system is not None
        assert system.name == "System"
        assert system.roomId is None

    def test_reopening_does_not_duplicate_system_user(self, tmp_path, clock):
        from myflow.chat.store import ChatStore

        db_path = str(tmp_path / "chat.duckdb")
        first = ChatStore(db_path, clock=clock)
        first.close()
        second = ChatStore(db_path, clock=clock)
        assert second.get_user(SYSTEM_USER_ID).name == "System"
        second.close()

    def test_create_and_rename_user(self, store):
        store.create_user("u1", "Windows (Chrome)")
        renamed = store.rename_user("u1", "Laptop")
        assert renamed.name == "Laptop"
        assert renamed.roomId is None
        assert renamed.isHost is False

    def test_members_ordered_by_join_time_then_id(self, store, clock):
        store.create_room("room-1")
        for user_id in ("carol", "bob", "alice"):
            store.create_user(user_id, user_id)
        store.set_membership("carol", "room-1", is_host=True)
        clock.advance(1)
        store.set_membership("bob", "room-1", is_host=False)
        store.set_membership("alice", "room-1", is_host=False)

        assert [m.userId for m in store.get_members("room-1")] == ["carol", "alice", "bob"]

    def test_clear_membership_resets_host_flag(self, store):
        make_room(store)
        store.clear_membership("alice")
        alice = store.get_user("alice")
        assert alice.roomId is None
        assert alice.isHost is False


class TestRooms:
    def test_delete_room_cascades(self, store):
        make_room(store, members=("alice", "bob"))
        add_text(store, "room-1", "alice", "one")
        add_text(store, "room-1", "bob", "two")

        removed = store.delete_room("room-1")

        assert removed == 2
        assert not store.room_exists("room-1")
        assert store.recent_messages("room-1", 10) == []
        assert store.get_user("bob").roomId is None

    def test_delete_room_leaves_other_rooms_alone(self, store):
        make_room(store, "room-1", members=("alice",))
        make_room(store, "room-2", members=("bob",))
        add_text(store, "room-2", "bob", "keep me")

        store.delete_room("room-1")

        assert store.list_room_ids() == ["room-2"]
        assert len(store.recent_messages("room-2", 10)) == 1


class TestMessages:
    def test_add_message_requires_existing_room(self, store):
        store.create_user("alice", "Alice")
        with pytest.raises(NotFoundError):
            add_text(store, "missing", "alice", "hello")

    def test_message_carries_author_name(self, store):
        make_room(store)
        message = add_text(store, "room-1", "alice", "hello")
        assert message.userName == "Alice"
        assert message.type == MessageType.TEXT
        assert message.deletedAt is None
        assert message.isPinned is False

    def test_ids_are_monotonic_across_rooms(self, store):
        make_room(store, "room-1", members=("alice",))
        make_room(store, "room-2", members=("bob",))
        first = add_text(store, "room-1", "alice", "a")
        second = add_text(store, "room-2", "bob", "b")
        third = add_text(store, "room-1", "alice", "c")
        assert first.id < second.id < third.id

    def test_url_metadata_survives_storage(self, store):
        make_room(store)
        preview = LinkPreview(title="Example", image="https://example.com/i.png")
        message = store.add_message(
            "room-1", "alice", MessageType.TEXT, "https://example.com", url_metadata=preview
        )
        assert store.get_message(message.id).urlMetadata == preview

    def test_created_at_never_goes_backwards(self, store, clock):
        make_room(store)
        first = add_text(store, "room-1", "alice", "a")
        clock.advance(-30)
        second = add_text(store, "room-1", "alice", "b")
        assert second.createdAt >= first.createdAt

    def test_recent_messages_returns_latest_page_oldest_first(self, store, clock):
        make_room(store)
        for i in range(5):
            add_text(store, "room-1", "alice", f"m{i}")
            clock.advance(1)
        page = store.recent_messages("room-1", 3)
        assert [m.content for m in page] == ["m2", "m3", "m4"]

    def test_messages_before_is_strict(self, store):
        make_room(store)
        messages = [add_text(store, "room-1", "alice", f"m{i}") for i in range(6)]
        cursor = messages[4]

        page = store.messages_before("room-1", cursor, 10)

        assert [m.id for m in page] == [m.id for m in messages[:4]]
        assert cursor.id not in [m.id for m in page]

    def test_get_messages_ignores_other_rooms(self, store):
        make_room(store, "room-1", members=("alice",))
        make_room(store, "room-2", members=("bob",))
        mine = add_text(store, "room-1", "alice", "mine")
        theirs = add_text(store, "room-2", "bob", "theirs")

        assert [m.id for m in store.get_messages("room-1", [mine.id, theirs.id])] == [mine.id]

    def test_pinning(self, store):
        make_room(store)
        message = add_text(store, "room-1", "alice", "pin me")
        store.set_pinned(message.id, True)
        assert [m.id for m in store.pinned_messages("room-1")] == [message.id]
        store.set_pinned(message.id, False)
        assert store.pinned_messages("room-1") == []


class TestSoftDelete:
    def test_soft_delete_is_idempotent(self, store, clock):
        make_room(store)
        message = add_text(store, "room-1", "alice", "oops")

        assert store.soft_delete("room-1", [message.id]) == [message.id]
        first_stamp = store.get_message(message.id).deletedAt

        clock.advance(60)
        assert store.soft_delete("room-1", [message.id]) == []
        assert store.get_message(message.id).deletedAt == first_stamp

    def test_restore_and_restore_all(self, store):
        make_room(store)
        messages = [add_text(store, "room-1", "alice", f"m{i}") for i in range(3)]
        ids = [m.id for m in messages]
        store.soft_delete("room-1", ids)

        assert store.restore("room-1", [ids[0]]) == [ids[0]]
        assert store.restore("room-1", [ids[0]]) == []
        assert store.restore_all("room-1") == ids[1:]
        assert all(m.deletedAt is None for m in store.recent_messages("room-1", 10))

    def test_hard_delete_is_permanent(self, store):
        make_room(store)
        message = add_text(store, "room-1", "alice", "gone")

        removed = store.delete_messages("room-1", [message.id])

        assert [m.id for m in removed] == [message.id]
        assert store.get_message(message.id) is None
        assert store.delete_messages("room-1", [message.id]) == []
        assert store.delete_message(message.id) is False

    def test_expired_messages_uses_cutoff(self, store, clock):
        make_room(store)
        old = add_text(store, "room-1", "alice", "old")
        fresh = add_text(store, "room-1", "alice", "fresh")
        store.soft_delete("room-1", [old.id])
        clock.advance(100)
        store.soft_delete("room-1", [fresh.id])

        assert [m.id for m in store.expired_messages(clock() - 50)] == [old.id]


class TestTransactions:
    def test_failed_transaction_rolls_back(self, store):
        store.create_user("alice", "Alice")
        with pytest.raises(RuntimeError):
            with store.transaction():
                store.create_room("room-1")
                store.set_membership("alice", "room-1", is_host=True)
                raise RuntimeError("boom")

        assert not store.room_exists("room-1")
        assert store.get_user("alice").roomId is None

    def test_nested_transactions_join_the_outer_one(self, store):
        store.create_user("alice", "Alice")
        with pytest.raises(RuntimeError):
            with store.transaction():
                store.create_room("room-1")
                with store.transaction():
                    store.set_membership("alice", "room-1", is_host=True)
                raise RuntimeError("boom")

        assert not store.room_exists("room-1")
