"""Tests for the client session driver, using a fake transport."""
import asyncio
import json
import logging

import pytest
from websockets.exceptions import ConnectionClosed

from parley.chat.identity import channel_key
from parley.client.session import ChatSession
from parley.client.state import MessageStatus
from parley.config import ClientSettings


class FakeTransport:
    def __init__(self):
        self.frames = []

    async def send(self, message):
        self.frames.append(json.loads(message))

    def types(self):
        return [frame["type"] for frame in self.frames]


class FailingTransport(FakeTransport):
    """Raises ``error`` instead of sending frames that match ``when``."""

    def __init__(self, when, error):
        super().__init__()
        self.when = when
        self.error = error

    async def send(self, message):
        frame = json.loads(message)
        if self.when(frame):
            raise self.error
        self.frames.append(frame)


def make_session(settings=None, **kwargs):
    notifications = []
    settings = settings or ClientSettings(typing_idle_seconds=0.05, pending_timeout_seconds=5.0)
    session = ChatSession("alice", settings=settings, notifier=notifications.append, **kwargs)
    return session, notifications


async def connect(session, connection_id="me", transport=None):
    transport = transport or FakeTransport()
    session.attach(transport)
    await session.handle_event({"type": "connected", "connectionId": connection_id})
    return transport


def incoming(id, channel="General", sender="bob-id", body="hi", event_type="receive_message", **extra):
    event = {
        "type": event_type,
        "id": id,
        "channelKey": channel,
        "senderId": sender,
        "senderName": "bob",
        "body": body,
        "attachment": None,
        "timestamp": 100.0,
        "delivered": False,
        "readBy": [],
        "reactions": {},
    }
    event.update(extra)
    return event


@pytest.mark.asyncio
async def test_connected_sends_user_join():
    session, _ = make_session()
    transport = await connect(session)

    assert transport.frames == [{"type": "user_join", "username": "alice", "avatar": None}]
    assert session.state.self_id == "me"


@pytest.mark.asyncio
async def test_sends_queue_until_connected():
    session, _ = make_session()
    await session.switch_channel("General")
    message = await session.send_message("early")

    assert message.status == MessageStatus.PENDING
    transport = await connect(session)

    assert transport.types() == ["user_join", "send_message"]
    assert transport.frames[1] == {"type": "send_message", "body": "early", "room": "General"}
    # Echo carries the new connection id and reconciles with the queued send
    await session.handle_event(incoming("srv-1", sender="me", body="early"))
    assert [m.id for m in session.state.messages] == ["srv-1"]


@pytest.mark.asyncio
async def test_reconnect_replays_joins():
    session, _ = make_session()
    first = await connect(session, "me")
    await session.join_room("General")
    await session.handle_event({"type": "joined_room", "name": "General"})
    assert first.types() == ["user_join", "join_room"]

    session.detach()
    second = await connect(session, "me-again")

    assert second.frames == [
        {"type": "user_join", "username": "alice", "avatar": None},
        {"type": "join_room", "name": "General"},
    ]
    assert session.state.own_ids == ("me", "me-again")


@pytest.mark.asyncio
async def test_dm_send_targets_peer():
    session, _ = make_session()
    transport = await connect(session)
    key = await session.open_dm("bob-id")

    await session.send_message("psst")

    assert key == channel_key("me", "bob-id")
    assert transport.frames[-1] == {
        "type": "private_message",
        "to": "bob-id",
        "message": {"body": "psst", "type": "text"},
    }


@pytest.mark.asyncio
async def test_file_send_to_room():
    session, _ = make_session()
    transport = await connect(session)
    await session.switch_channel("Family")

    message = await session.send_file("/uploads/x.png", "cat.png")

    assert message.attachment.fileName == "cat.png"
    assert transport.frames[-1] == {
        "type": "send_file",
        "isPrivate": False,
        "room": "Family",
        "url": "/uploads/x.png",
        "fileName": "cat.png",
    }


@pytest.mark.asyncio
async def test_incoming_in_active_channel_sends_read_receipt():
    session, notifications = make_session()
    transport = await connect(session)
    await session.switch_channel("General")

    await session.handle_event(incoming("m1"))

    assert transport.frames[-1] == {"type": "read_receipt", "messageId": "m1"}
    assert notifications == []
    assert session.state.unread == {}


@pytest.mark.asyncio
async def test_incoming_elsewhere_notifies_and_counts_unread():
    session, notifications = make_session()
    transport = await connect(session)
    await session.switch_channel("General")

    await session.handle_event(incoming("m1", channel="Family"))
    await session.handle_event(incoming("m1", channel="Family"))  # redelivery

    assert session.state.unread == {"Family": 1}
    assert len(notifications) == 1
    assert notifications[0].kind == "message"
    assert "read_receipt" not in transport.types()

    await session.switch_channel("Family")
    assert transport.frames[-1] == {"type": "read_receipt", "messageId": "m1"}
    assert session.state.unread == {}


@pytest.mark.asyncio
async def test_ack_and_error_update_status():
    session, _ = make_session()
    await connect(session)
    await session.switch_channel("General")
    await session.send_message("one")
    await session.send_message("two")

    await session.handle_event(incoming("m1", sender="me", body="one"))
    await session.handle_event(incoming("m2", sender="me", body="two"))
    await session.handle_event({"type": "message_delivered", "messageId": "m1"})
    await session.handle_event({
        "type": "error", "code": "persistence_failure", "error": "x", "messageId": "m2",
    })

    statuses = {m.id: m.status for m in session.state.messages}
    assert statuses == {"m1": MessageStatus.DELIVERED, "m2": MessageStatus.FAILED}


@pytest.mark.asyncio
async def test_expire_pending():
    session, _ = make_session()
    await session.switch_channel("General")
    message = await session.send_message("lost")

    session.expire_pending(now=message.createdAt + 6.0)

    assert session.state.messages[0].status == MessageStatus.FAILED


@pytest.mark.asyncio
async def test_typing_debounce():
    session, _ = make_session()
    transport = await connect(session)
    await session.switch_channel("General")

    await session.notify_typing()
    await session.notify_typing()
    await session.notify_typing()
    assert transport.frames[-1] == {"type": "typing", "isTyping": True, "room": "General"}
    assert transport.types().count("typing") == 1

    await asyncio.sleep(0.15)

    assert transport.frames[-1] == {"type": "typing", "isTyping": False, "room": "General"}
    assert transport.types().count("typing") == 2


@pytest.mark.asyncio
async def test_sending_clears_typing():
    session, _ = make_session()
    transport = await connect(session)
    await session.switch_channel("General")

    await session.notify_typing()
    await session.send_message("done")

    assert transport.types()[-2:] == ["send_message", "typing"]
    assert transport.frames[-1]["isTyping"] is False


@pytest.mark.asyncio
async def test_presence_and_room_events():
    session, _ = make_session()
    await connect(session)

    await session.handle_event({"type": "room_list", "rooms": ["General", "Family"]})
    await session.handle_event({"type": "user_list", "users": [{"id": "me", "username": "alice"}]})
    await session.handle_event({"type": "user_online", "user": {"id": "b", "username": "bob"}})
    await session.handle_event({"type": "typing_users", "room": "General", "users": ["bob"]})

    assert session.state.rooms == ("General", "Family")
    assert [u.username for u in session.state.users] == ["alice", "bob"]
    assert session.state.typing == {"General": ("bob",)}


@pytest.mark.asyncio
async def test_unparseable_frame_is_ignored():
    session, _ = make_session()
    await session.handle_raw("{not json")
    assert session.state.messages == ()


@pytest.mark.asyncio
async def test_body_is_stripped_so_echo_reconciles():
    session, _ = make_session()
    transport = await connect(session)
    await session.switch_channel("General")

    message = await session.send_message("hello ")

    assert message.body == "hello"
    assert transport.frames[-1] == {"type": "send_message", "body": "hello", "room": "General"}

    await session.handle_event(incoming("srv-1", sender="me", body="hello"))
    assert [(m.id, m.status) for m in session.state.messages] == [("srv-1", MessageStatus.SENT)]


@pytest.mark.asyncio
async def test_blank_body_rejected():
    session, _ = make_session()
    transport = await connect(session)
    await session.switch_channel("General")

    with pytest.raises(ValueError):
        await session.send_message("   ")

    assert session.state.messages == ()
    assert "send_message" not in transport.types()


@pytest.mark.asyncio
async def test_failed_flush_keeps_send_order():
    session, _ = make_session()
    await session.switch_channel("General")
    await session.send_message("first")
    await session.send_message("second")

    dropping = FailingTransport(
        lambda frame: frame.get("body") == "first", ConnectionClosed(None, None)
    )
    await connect(session, "me", dropping)
    assert not session.connected

    transport = await connect(session, "me-again")

    sent = [frame["body"] for frame in transport.frames if frame["type"] == "send_message"]
    assert sent == ["first", "second"]


@pytest.mark.asyncio
async def test_unconfirmed_send_fails_after_timeout():
    settings = ClientSettings(typing_idle_seconds=0.05, pending_timeout_seconds=0.05)
    session, _ = make_session(settings)
    await connect(session)
    await session.switch_channel("General")

    message = await session.send_message("lost")
    assert session.state.messages[0].status == MessageStatus.PENDING

    await asyncio.sleep(0.15)

    assert session.state.messages[0].tempId == message.tempId
    assert session.state.messages[0].status == MessageStatus.FAILED
    assert session._pending_timers == {}


@pytest.mark.asyncio
async def test_echo_before_timeout_cancels_expiry():
    settings = ClientSettings(typing_idle_seconds=0.05, pending_timeout_seconds=0.05)
    session, _ = make_session(settings)
    await connect(session)
    await session.switch_channel("General")

    await session.send_message("quick")
    await session.handle_event(incoming("srv-1", sender="me", body="quick"))
    assert session._pending_timers == {}

    await asyncio.sleep(0.15)

    assert session.state.messages[0].id == "srv-1"
    assert session.state.messages[0].status == MessageStatus.SENT


@pytest.mark.asyncio
async def test_typing_stop_failure_is_logged(caplog):
    caplog.set_level(logging.WARNING)
    session, _ = make_session()
    transport = FailingTransport(
        lambda frame: frame.get("isTyping") is False, RuntimeError("socket gone")
    )
    await connect(session, transport=transport)
    await session.switch_channel("General")

    await session.notify_typing()
    await asyncio.sleep(0.15)

    assert "Could not send typing stop: socket gone" in caplog.text
    assert session._typing_task is None


@pytest.mark.asyncio
async def test_close_cancels_typing_stop_in_flight():
    blocked = asyncio.Event()

    class StallingTransport(FakeTransport):
        async def send(self, message):
            frame = json.loads(message)
            if frame.get("isTyping") is False:
                blocked.set()
                await asyncio.Event().wait()
            self.frames.append(frame)

    session, _ = make_session()
    await connect(session, transport=StallingTransport())
    await session.switch_channel("General")

    await session.notify_typing()
    await asyncio.wait_for(blocked.wait(), 1.0)
    task = session._typing_task
    assert task is not None

    await asyncio.wait_for(session.close(), 1.0)

    assert task.cancelled()
    assert session._typing_task is None
