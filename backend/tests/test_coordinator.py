"""Tests for RoomCoordinator: join/leave/typing/send, fan-out and room lifecycle."""
import asyncio
import threading
from datetime import datetime, timezone
from unittest.mock import patch

import pytest

from chatrelay.rooms.coordinator import RoomCoordinator
from chatrelay.store.schemas import Message
from chatrelay.store.service import StoreUnavailableError

from fakes import make_session


@pytest.fixture
def rooms(memory_store):
    """A coordinator bound to the per-test in-memory store."""
    return RoomCoordinator(store_provider=lambda: memory_store)


def snapshot_users(session):
    """userIds of the last presence-snapshot a session received."""
    snapshots = session.websocket.of_type("presence-snapshot")
    assert snapshots, "no presence-snapshot received"
    return [u["userId"] for u in snapshots[-1]["users"]]


class TestJoin:
    """Tests for RoomCoordinator.join."""

    @pytest.mark.asyncio
    async def test_first_join_gets_empty_seed_and_snapshot(self, rooms):
        alice = make_session("alice")

        await rooms.join(alice, "r1")

        assert alice.websocket.types() == ["history-seed", "presence-snapshot"]
        seed = alice.websocket.sent[0]
        assert seed == {"type": "history-seed", "roomId": "r1", "messages": []}
        snapshot = alice.websocket.sent[1]
        assert snapshot["roomId"] == "r1"
        assert snapshot["users"] == [
            {"userId": "alice", "username": "Alice", "status": "online", "typing": False}
        ]

    @pytest.mark.asyncio
    async def test_second_join_notifies_first(self, rooms):
        alice, bob = make_session("alice"), make_session("bob")
        await rooms.join(alice, "r1")
        alice.websocket.sent.clear()

        await rooms.join(bob, "r1")

        assert alice.websocket.types() == ["presence-online", "presence-snapshot"]
        assert alice.websocket.sent[0] == {
            "type": "presence-online", "userId": "bob", "username": "Bob", "roomId": "r1"
        }
        assert bob.websocket.types() == ["history-seed", "presence-snapshot"]
        assert snapshot_users(alice) == ["alice", "bob"]
        assert snapshot_users(bob) == ["alice", "bob"]

    @pytest.mark.asyncio
    async def test_seed_contains_previous_messages(self, rooms):
        alice, bob = make_session("alice"), make_session("bob")
        await rooms.join(alice, "r1")
        await rooms.send_message(alice, "r1", "hello")

        await rooms.join(bob, "r1")

        seed = bob.websocket.of_type("history-seed")[0]
        assert [m["text"] for m in seed["messages"]] == ["hello"]
        assert seed["messages"][0]["userId"] == "alice"

    @pytest.mark.asyncio
    async def test_seed_is_limited_and_ascending(self, memory_store):
        rooms = RoomCoordinator(store_provider=lambda: memory_store, history_seed_limit=3)
        alice = make_session("alice")
        await rooms.join(alice, "r1")
        for i in range(5):
            await rooms.send_message(alice, "r1", f"m{i}")

        bob = make_session("bob")
        await rooms.join(bob, "r1")

        seed = bob.websocket.of_type("history-seed")[0]
        assert [m["text"] for m in seed["messages"]] == ["m2", "m3", "m4"]

    @pytest.mark.asyncio
    async def test_rejoin_replaces_entry(self, rooms):
        alice = make_session("alice")
        await rooms.join(alice, "r1")
        await rooms.set_typing(alice, "r1", True)

        await rooms.join(alice, "r1")

        entries = rooms.presence("r1")
        assert len(entries) == 1
        assert entries[0].typing is False

    @pytest.mark.asyncio
    async def test_reconnect_from_new_connection_replaces_entry(self, rooms):
        old, new = make_session("alice"), make_session("alice", "Alice 2")
        await rooms.join(old, "r1")
        await rooms.join(new, "r1")

        entries = rooms.presence("r1")
        assert [(e.userId, e.username) for e in entries] == [("alice", "Alice 2")]

    @pytest.mark.asyncio
    async def test_join_without_identity_is_dropped(self, rooms):
        anonymous = make_session()
        await rooms.join(anonymous, "r1")

        assert anonymous.websocket.sent == []
        assert rooms.presence("r1") == []
        assert rooms.room_ids() == []

    @pytest.mark.asyncio
    async def test_join_with_empty_room_is_dropped(self, rooms):
        alice = make_session("alice")
        await rooms.join(alice, "")

        assert alice.websocket.sent == []
        assert rooms.room_ids() == []

    @pytest.mark.asyncio
    async def test_join_store_failure_leaves_no_presence(self, rooms, memory_store):
        alice = make_session("alice")

        with patch.object(memory_store, "recent", side_effect=StoreUnavailableError("down")):
            await rooms.join(alice, "r1")

        assert alice.websocket.types() == ["error"]
        assert alice.websocket.sent[0]["event"] == "room-join"
        assert rooms.presence("r1") == []
        assert alice.rooms == {}
        assert rooms.room_ids() == []

    @pytest.mark.asyncio
    async def test_join_after_close_is_ignored(self, rooms):
        alice = make_session("alice")
        alice.closed = True

        await rooms.join(alice, "r1")

        assert rooms.presence("r1") == []
        assert rooms.room_ids() == []


class TestLeave:
    """Tests for RoomCoordinator.leave / drop_session."""

    @pytest.mark.asyncio
    async def test_leave_notifies_remaining_members(self, rooms):
        alice, bob = make_session("alice"), make_session("bob")
        await rooms.join(alice, "r1")
        await rooms.join(bob, "r1")
        alice.websocket.sent.clear()
        bob.websocket.sent.clear()

        await rooms.leave(bob, "r1")

        assert alice.websocket.types() == ["presence-offline", "presence-snapshot"]
        assert alice.websocket.sent[0] == {
            "type": "presence-offline", "userId": "bob", "username": "Bob", "roomId": "r1"
        }
        assert snapshot_users(alice) == ["alice"]
        assert bob.websocket.sent == []
        assert "r1" not in bob.rooms

    @pytest.mark.asyncio
    async def test_leave_twice_is_noop(self, rooms):
        alice, bob = make_session("alice"), make_session("bob")
        await rooms.join(alice, "r1")
        await rooms.join(bob, "r1")
        alice.websocket.sent.clear()

        await rooms.leave(bob, "r1")
        await rooms.leave(bob, "r1")

        assert alice.websocket.types().count("presence-offline") == 1

    @pytest.mark.asyncio
    async def test_leave_unknown_room_is_noop(self, rooms):
        alice = make_session("alice")
        await rooms.leave(alice, "never-joined")

        assert alice.websocket.sent == []
        assert rooms.room_ids() == []

    @pytest.mark.asyncio
    async def test_leave_stops_fanout(self, rooms):
        alice, bob = make_session("alice"), make_session("bob")
        await rooms.join(alice, "r1")
        await rooms.join(bob, "r1")
        await rooms.leave(bob, "r1")
        bob.websocket.sent.clear()

        await rooms.send_message(alice, "r1", "anyone?")

        assert bob.websocket.sent == []

    @pytest.mark.asyncio
    async def test_last_leave_prunes_room(self, rooms):
        alice = make_session("alice")
        await rooms.join(alice, "r1")
        assert rooms.room_ids() == ["r1"]

        await rooms.leave(alice, "r1")

        assert rooms.room_ids() == []
        assert rooms.get_room("r1") is None

    @pytest.mark.asyncio
    async def test_drop_session_uses_identity_joined_with(self, rooms):
        alice, bob = make_session("alice"), make_session("bob")
        await rooms.join(alice, "r1")
        await rooms.join(bob, "r1")

        # re-bind after joining; cleanup must still remove "alice"
        alice.identity = alice.identity.model_copy(update={"userId": "alice-2"})
        await rooms.drop_session(alice, "r1")

        assert [e.userId for e in rooms.presence("r1")] == ["bob"]
        assert bob.websocket.of_type("presence-offline")[-1]["userId"] == "alice"

    @pytest.mark.asyncio
    async def test_leave_after_rebind_removes_identity_joined_with(self, rooms):
        alice, bob = make_session("alice"), make_session("bob")
        await rooms.join(alice, "r1")
        await rooms.join(bob, "r1")
        bob.websocket.sent.clear()

        alice.identity = alice.identity.model_copy(update={"userId": "mallory", "username": "Mallory"})
        await rooms.leave(alice, "r1")

        assert [e.userId for e in rooms.presence("r1")] == ["bob"]
        assert bob.websocket.of_type("presence-offline") == [{
            "type": "presence-offline", "userId": "alice", "username": "Alice", "roomId": "r1"
        }]
        assert alice.rooms == {}

    @pytest.mark.asyncio
    async def test_rejoin_under_new_identity_retires_previous_entry(self, rooms):
        alice, bob = make_session("alice"), make_session("bob")
        await rooms.join(alice, "r1")
        await rooms.join(bob, "r1")
        bob.websocket.sent.clear()

        alice.identity = alice.identity.model_copy(update={"userId": "mallory", "username": "Mallory"})
        await rooms.join(alice, "r1")

        assert [e.userId for e in rooms.presence("r1")] == ["bob", "mallory"]
        assert bob.websocket.types() == ["presence-offline", "presence-online", "presence-snapshot"]
        assert bob.websocket.sent[0]["userId"] == "alice"
        assert alice.websocket.of_type("presence-offline") == []

        await rooms.drop_session(alice, "r1")
        assert [e.userId for e in rooms.presence("r1")] == ["bob"]


class TestTyping:
    """Tests for RoomCoordinator.set_typing."""

    @pytest.mark.asyncio
    async def test_typing_start_and_stop(self, rooms):
        alice, bob = make_session("alice"), make_session("bob")
        await rooms.join(alice, "r1")
        await rooms.join(bob, "r1")
        alice.websocket.sent.clear()
        bob.websocket.sent.clear()

        await rooms.set_typing(alice, "r1", True)

        assert bob.websocket.types() == ["typing-start", "presence-snapshot"]
        assert bob.websocket.sent[0] == {
            "type": "typing-start", "roomId": "r1", "userId": "alice", "username": "Alice"
        }
        typing_flags = {u["userId"]: u["typing"] for u in bob.websocket.sent[1]["users"]}
        assert typing_flags == {"alice": True, "bob": False}
        # sender gets the snapshot but not its own typing event
        assert alice.websocket.types() == ["presence-snapshot"]

        await rooms.set_typing(alice, "r1", False)

        assert bob.websocket.types()[-2:] == ["typing-stop", "presence-snapshot"]
        typing_flags = {u["userId"]: u["typing"] for u in bob.websocket.sent[-1]["users"]}
        assert typing_flags == {"alice": False, "bob": False}

    @pytest.mark.asyncio
    async def test_typing_without_presence_is_noop(self, rooms):
        alice, bob = make_session("alice"), make_session("bob")
        await rooms.join(alice, "r1")
        alice.websocket.sent.clear()

        await rooms.set_typing(bob, "r1", True)

        assert alice.websocket.sent == []
        assert bob.websocket.sent == []

    @pytest.mark.asyncio
    async def test_typing_is_not_expired_by_server(self, rooms):
        alice = make_session("alice")
        await rooms.join(alice, "r1")
        await rooms.set_typing(alice, "r1", True)

        await asyncio.sleep(0.05)

        assert rooms.presence("r1")[0].typing is True


class TestSendMessage:
    """Tests for RoomCoordinator.send_message."""

    @pytest.mark.asyncio
    async def test_message_echoed_to_sender_and_members(self, rooms):
        alice, bob = make_session("alice"), make_session("bob")
        await rooms.join(alice, "r1")
        await rooms.join(bob, "r1")
        sent_at = datetime.now(timezone.utc)

        message = await rooms.send_message(alice, "r1", "  hello  ")

        assert message is not None
        assert message.text == "hello"
        for session in (alice, bob):
            frame = session.websocket.of_type("message-new")[-1]
            assert frame["id"] == message.id
            assert frame["text"] == "hello"
            assert frame["userId"] == "alice"
            assert frame["username"] == "Alice"
            assert frame["roomId"] == "r1"
            assert Message.model_validate(frame).createdAt >= sent_at

    @pytest.mark.asyncio
    async def test_message_is_persisted(self, rooms, memory_store):
        alice = make_session("alice")
        await rooms.join(alice, "r1")

        await rooms.send_message(alice, "r1", "hi")

        assert [m.text for m in memory_store.recent("r1")] == ["hi"]

    @pytest.mark.parametrize("text", ["", "   ", "\n\t "])
    @pytest.mark.asyncio
    async def test_blank_message_is_dropped(self, rooms, memory_store, text):
        alice = make_session("alice")
        await rooms.join(alice, "r1")
        alice.websocket.sent.clear()

        assert await rooms.send_message(alice, "r1", text) is None

        assert alice.websocket.sent == []
        assert memory_store.count("r1") == 0

    @pytest.mark.asyncio
    async def test_send_without_joining_is_stored_not_echoed(self, rooms, memory_store):
        alice, bob = make_session("alice"), make_session("bob")
        await rooms.join(alice, "r1")

        message = await rooms.send_message(bob, "r1", "drive-by")

        assert message is not None
        assert alice.websocket.of_type("message-new")[-1]["text"] == "drive-by"
        assert bob.websocket.sent == []
        assert memory_store.count("r1") == 1

    @pytest.mark.asyncio
    async def test_send_without_identity_is_dropped(self, rooms, memory_store):
        anonymous = make_session()
        assert await rooms.send_message(anonymous, "r1", "hello") is None
        assert memory_store.count("r1") == 0

    @pytest.mark.asyncio
    async def test_store_failure_is_not_broadcast(self, rooms, memory_store):
        alice, bob = make_session("alice"), make_session("bob")
        await rooms.join(alice, "r1")
        await rooms.join(bob, "r1")
        alice.websocket.sent.clear()
        bob.websocket.sent.clear()

        with patch.object(memory_store, "append", side_effect=StoreUnavailableError("down")):
            assert await rooms.send_message(alice, "r1", "lost") is None

        assert alice.websocket.types() == ["error"]
        assert alice.websocket.sent[0]["event"] == "message-send"
        assert bob.websocket.sent == []

    @pytest.mark.asyncio
    async def test_broadcast_order_matches_store_order(self, rooms, memory_store):
        alice, bob = make_session("alice"), make_session("bob")
        await rooms.join(alice, "r1")
        await rooms.join(bob, "r1")

        await asyncio.gather(*[
            rooms.send_message(alice if i % 2 else bob, "r1", f"m{i}")
            for i in range(10)
        ])

        stored = [m.id for m in memory_store.recent("r1")]
        live = [f["id"] for f in bob.websocket.of_type("message-new")]
        assert live == stored

    @pytest.mark.asyncio
    async def test_rooms_are_isolated(self, rooms):
        alice, bob = make_session("alice"), make_session("bob")
        await rooms.join(alice, "r1")
        await rooms.join(bob, "r2")

        await rooms.send_message(alice, "r1", "only r1")

        assert bob.websocket.of_type("message-new") == []


class TestFanout:
    """Tests for broadcast cleanup and per-room serialization."""

    @pytest.mark.asyncio
    async def test_dead_connection_is_unsubscribed(self, rooms):
        alice = make_session("alice")
        bob = make_session("bob")
        await rooms.join(alice, "r1")
        await rooms.join(bob, "r1")
        bob.websocket.fail = True

        await rooms.send_message(alice, "r1", "ping")

        assert bob not in rooms.get_room("r1").members
        # presence is cleaned up by the disconnect, not by a failed send
        assert [e.userId for e in rooms.presence("r1")] == ["alice", "bob"]

    @pytest.mark.asyncio
    async def test_presence_matches_latest_join_or_leave(self, rooms):
        sessions = {name: make_session(name) for name in ("a", "b", "c", "d")}
        script = [
            ("join", "a"), ("join", "b"), ("join", "c"), ("leave", "b"),
            ("join", "d"), ("leave", "a"), ("join", "b"), ("leave", "d"),
        ]

        await asyncio.gather(*[
            (rooms.join if op == "join" else rooms.leave)(sessions[name], "r1")
            for op, name in script
        ])

        # the per-room lock applies operations in arrival order
        assert [e.userId for e in rooms.presence("r1")] == ["c", "b"]

    @pytest.mark.asyncio
    async def test_rooms_do_not_block_each_other(self, rooms, memory_store):
        alice, bob = make_session("alice"), make_session("bob")
        await rooms.join(alice, "slow")
        await rooms.join(bob, "fast")

        release = threading.Event()
        original_append = memory_store.append

        def blocking_append(entry):
            if entry.roomId == "slow":
                # runs in a worker thread; hold until the fast room is done
                release.wait(timeout=5)
            return original_append(entry)

        with patch.object(memory_store, "append", side_effect=blocking_append):
            slow = asyncio.create_task(rooms.send_message(alice, "slow", "slow one"))
            await asyncio.sleep(0.01)
            fast = await asyncio.wait_for(rooms.send_message(bob, "fast", "fast one"), timeout=5)
            release.set()
            await asyncio.wait_for(slow, timeout=5)

        assert fast is not None
        assert bob.websocket.of_type("message-new")[-1]["text"] == "fast one"
        assert alice.websocket.of_type("message-new")[-1]["text"] == "slow one"
