"""Tests for the message router: persistence, fan-out and acks."""
from unittest.mock import patch

import pytest

from parley.chat.errors import InvalidInput, NotJoined, PersistenceFailure
from parley.chat.identity import channel_key
from parley.chat.messaging import MessageRouter
from parley.chat.registry import registry
from parley.chat.schemas import Attachment


@pytest.fixture
def router(store):
    return MessageRouter(registry, store, max_body_length=100)


class TestRoomMessages:
    @pytest.mark.asyncio
    async def test_fan_out_then_ack_sender(self, router, store, connect_user):
        a, ws_a = connect_user("alice", rooms=["General"])
        _, ws_b = connect_user("bob", rooms=["General"])
        _, ws_c = connect_user("carol", rooms=["Family"])

        message = await router.send_room_message(a, "General", "  hi  ")

        assert ws_a.types() == ["receive_message", "message_delivered"]
        assert ws_a.sent[1] == {"type": "message_delivered", "messageId": message.id}
        assert ws_b.types() == ["receive_message"]
        assert ws_b.sent[0]["body"] == "hi"
        assert ws_b.sent[0]["room"] == "General"
        assert ws_c.sent == []

        stored = store.get_message(message.id)
        assert stored.delivered is True

    @pytest.mark.asyncio
    async def test_requires_membership(self, router, connect_user):
        a, _ = connect_user("alice")
        with pytest.raises(NotJoined):
            await router.send_room_message(a, "General", "hi")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("body", ["", "   ", "x" * 101])
    async def test_rejects_bad_body(self, router, connect_user, body):
        a, _ = connect_user("alice", rooms=["General"])
        with pytest.raises(InvalidInput):
            await router.send_room_message(a, "General", body)

    @pytest.mark.asyncio
    async def test_requires_profile(self, router, fake_ws):
        cid = registry.open(fake_ws())
        registry.join_room(cid, "General")
        with pytest.raises(InvalidInput):
            await router.send_room_message(cid, "General", "hi")

    @pytest.mark.asyncio
    async def test_persistence_failure_still_fans_out_without_ack(self, router, store, connect_user):
        a, ws_a = connect_user("alice", rooms=["General"])
        _, ws_b = connect_user("bob", rooms=["General"])

        with patch.object(store, "insert_message", side_effect=PersistenceFailure("disk full")):
            message = await router.send_room_message(a, "General", "hi")

        assert ws_b.types() == ["receive_message"]
        assert ws_a.types() == ["receive_message", "error"]
        assert ws_a.sent[1]["code"] == "persistence_failure"
        assert ws_a.sent[1]["messageId"] == message.id


class TestDirectMessages:
    @pytest.mark.asyncio
    async def test_dm_reaches_only_participants(self, router, connect_user):
        a, ws_a = connect_user("alice")
        b, ws_b = connect_user("bob")
        _, ws_c = connect_user("carol")

        message = await router.send_direct_message(a, b, body="psst")

        key = channel_key(a, b)
        assert message.channelKey == key
        assert message.isPrivate
        assert ws_b.types() == ["private_message"]
        assert ws_b.sent[0]["dmKey"] == key
        assert ws_a.types() == ["private_message", "message_delivered"]
        assert ws_c.sent == []

    @pytest.mark.asyncio
    async def test_dm_to_offline_recipient(self, router, store, connect_user):
        a, ws_a = connect_user("alice")

        message = await router.send_direct_message(a, "gone", body="hello?")

        assert store.get_message(message.id) is not None
        assert ws_a.types() == ["private_message", "message_delivered", "error"]
        error = ws_a.sent[2]
        assert error["code"] == "unknown_recipient"
        assert error["messageId"] == message.id

    @pytest.mark.asyncio
    async def test_dm_file(self, router, connect_user):
        a, _ = connect_user("alice")
        b, ws_b = connect_user("bob")

        message = await router.send_file(
            a, Attachment(url="/uploads/x.png", fileName="cat.png"),
            recipient_id=b, is_private=True,
        )

        assert message.body is None
        assert ws_b.types() == ["receive_file"]
        assert ws_b.sent[0]["attachment"] == {"url": "/uploads/x.png", "fileName": "cat.png"}
        assert ws_b.sent[0]["dmKey"] == channel_key(a, b)

    @pytest.mark.asyncio
    async def test_invalid_recipient(self, router, connect_user):
        a, _ = connect_user("alice")
        with pytest.raises(InvalidInput):
            await router.send_direct_message(a, "bad::id", body="hi")


class TestReactionsAndReads:
    @pytest.mark.asyncio
    async def test_reaction_is_idempotent(self, router, store, connect_user):
        a, ws_a = connect_user("alice", rooms=["General"])
        b, ws_b = connect_user("bob", rooms=["General"])
        message = await router.send_room_message(a, "General", "hi")
        ws_a.sent.clear()

        assert await router.react(b, message.id, "👍") is True
        assert await router.react(b, message.id, "👍") is False

        assert store.get_message(message.id).reactions == {"👍": ["bob"]}
        reactions = ws_a.of_type("message_reaction")
        assert len(reactions) == 1
        assert reactions[0]["reactions"] == {"👍": ["bob"]}
        assert reactions[0]["user"] == "bob"

    @pytest.mark.asyncio
    async def test_two_users_reacting_both_land(self, router, store, connect_user):
        a, _ = connect_user("alice", rooms=["General"])
        b, _ = connect_user("bob", rooms=["General"])
        message = await router.send_room_message(a, "General", "hi")

        await router.react(a, message.id, "🎉")
        await router.react(b, message.id, "🎉")

        assert sorted(store.get_reactions(message.id)["🎉"]) == ["alice", "bob"]

    @pytest.mark.asyncio
    async def test_reaction_on_unknown_message_is_noop(self, router, connect_user):
        a, ws_a = connect_user("alice", rooms=["General"])
        assert await router.react(a, "no-such-id", "👍") is False
        assert ws_a.sent == []

    @pytest.mark.asyncio
    async def test_dm_reaction_stays_in_dm(self, router, connect_user):
        a, _ = connect_user("alice", rooms=["General"])
        b, ws_b = connect_user("bob", rooms=["General"])
        c, ws_c = connect_user("carol", rooms=["General"])
        message = await router.send_direct_message(a, b, body="secret")
        ws_b.sent.clear()

        await router.react(b, message.id, "❤️")
        # Outsiders cannot react to a DM they cannot see
        assert await router.react(c, message.id, "👀") is False

        assert ws_b.types() == ["message_reaction"]
        assert ws_c.sent == []

    @pytest.mark.asyncio
    async def test_read_receipt(self, router, store, connect_user):
        a, ws_a = connect_user("alice", rooms=["General"])
        b, _ = connect_user("bob", rooms=["General"])
        message = await router.send_room_message(a, "General", "hi")
        ws_a.sent.clear()

        assert await router.mark_read(b, message.id) is True
        assert await router.mark_read(b, message.id) is False

        assert ws_a.of_type("read_receipt") == [{
            "type": "read_receipt",
            "messageId": message.id,
            "user": "bob",
            "readBy": ["bob"],
        }]
        assert store.get_read_by(message.id) == ["bob"]


class TestHistory:
    @pytest.mark.asyncio
    async def test_recent_messages_requires_membership(self, router, connect_user):
        a, _ = connect_user("alice", rooms=["General"])
        b, _ = connect_user("bob")
        for i in range(3):
            await router.send_room_message(a, "General", f"m{i}")

        assert [m.body for m in router.recent_messages(a, "General", 2)] == ["m1", "m2"]
        with pytest.raises(NotJoined):
            router.recent_messages(b, "General", 2)
