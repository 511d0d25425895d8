"""Client session state and its reducers.

Every reducer takes the previous ``SessionState`` and returns a new one; no
reducer mutates its input. ``ChatSession`` feeds server events through these
functions and sends whatever follow-up frames they ask for (read receipts).

Messages are kept in one flat tuple. Per-channel views are derived with
``group_by_channel`` whenever they are needed.
"""
import time
import uuid
from enum import Enum
from typing import Dict, Iterable, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

from parley.chat.identity import channel_key, other_participant, participants_of
from parley.chat.schemas import Attachment, UserProfile

MESSAGE_EVENTS = ("receive_message", "private_message", "receive_file")


class MessageStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    DELIVERED = "delivered"
    FAILED = "failed"


class ClientMessage(BaseModel):
    """A message as the client sees it.

    Optimistic messages have a ``tempId`` and no ``id`` until the server echo
    replaces them. ``createdAt`` is the local clock and only drives the
    pending-window expiry.
    """
    model_config = ConfigDict(frozen=True)

    id: Optional[str] = None
    tempId: Optional[str] = None
    channelKey: str
    isPrivate: bool = False
    senderId: str
    senderName: str = ""
    senderAvatar: Optional[str] = None
    receiverId: Optional[str] = None
    body: Optional[str] = None
    attachment: Optional[Attachment] = None
    timestamp: float = Field(default_factory=time.time)
    createdAt: float = Field(default_factory=time.time)
    status: MessageStatus = MessageStatus.SENT
    readBy: Tuple[str, ...] = ()
    reactions: Dict[str, Tuple[str, ...]] = Field(default_factory=dict)

    @property
    def is_optimistic(self) -> bool:
        return self.id is None

    @property
    def content_key(self) -> Optional[str]:
        """Body for text messages, file name for file messages."""
        if self.attachment is not None:
            return self.attachment.fileName
        return self.body


class Notification(BaseModel):
    model_config = ConfigDict(frozen=True)

    title: str
    body: str
    kind: str  # "message", "dm" or "file"


class SessionState(BaseModel):
    """Everything the client knows about its session.

    Attributes:
        self_id: Current connection id, None until ``connected`` arrives.
        own_ids: Every connection id this session has held, so messages sent
            before a reconnect are still recognised as our own.
        username: Name claimed with ``user_join``.
        active_channel: Room name or DM key currently on screen.
        messages: All known messages, optimistic ones included.
        unread: Unread count per channel key.
        typing: Other users typing, per channel key.
        users: Online users from the last presence snapshot.
        rooms: Room names from the last ``room_list``.
        joined_rooms: Rooms this session has joined, replayed on reconnect.
    """
    model_config = ConfigDict(frozen=True)

    self_id: Optional[str] = None
    own_ids: Tuple[str, ...] = ()
    username: Optional[str] = None
    avatar: Optional[str] = None
    active_channel: Optional[str] = None
    messages: Tuple[ClientMessage, ...] = ()
    unread: Dict[str, int] = Field(default_factory=dict)
    typing: Dict[str, Tuple[str, ...]] = Field(default_factory=dict)
    users: Tuple[UserProfile, ...] = ()
    rooms: Tuple[str, ...] = ()
    joined_rooms: Tuple[str, ...] = ()


# =============================================================================
# Helpers
# =============================================================================


def message_from_event(event: dict) -> ClientMessage:
    """Build a ``ClientMessage`` from a server message payload.

    Works for live message events and for entries of ``recent_messages``.
    """
    attachment = event.get("attachment")
    reactions = event.get("reactions") or {}
    return ClientMessage(
        id=event["id"],
        channelKey=event.get("channelKey") or event.get("dmKey") or event.get("room"),
        isPrivate=bool(event.get("isPrivate", False)),
        senderId=event["senderId"],
        senderName=event.get("senderName") or "",
        senderAvatar=event.get("senderAvatar"),
        receiverId=event.get("receiverId"),
        body=event.get("body"),
        attachment=Attachment(**attachment) if attachment else None,
        timestamp=event.get("timestamp") or time.time(),
        status=MessageStatus.DELIVERED if event.get("delivered") else MessageStatus.SENT,
        readBy=tuple(event.get("readBy") or ()),
        reactions={symbol: tuple(users) for symbol, users in reactions.items()},
    )


def is_own(state: SessionState, message: ClientMessage) -> bool:
    return message.senderId == state.self_id or message.senderId in state.own_ids


def dm_channel(state: SessionState, other_id: str) -> str:
    """DM key between this session and ``other_id``."""
    if state.self_id is None:
        raise ValueError("Not connected")
    return channel_key(state.self_id, other_id)


def find_message(state: SessionState, message_id: str) -> Optional[ClientMessage]:
    for message in state.messages:
        if message.id == message_id:
            return message
    return None


def _replace_where(state: SessionState, predicate, **changes) -> SessionState:
    updated = tuple(
        m.model_copy(update=changes) if predicate(m) else m
        for m in state.messages
    )
    return state.model_copy(update={"messages": updated})


def _with_unread(state: SessionState, channel: str, count: int) -> SessionState:
    unread = dict(state.unread)
    if count:
        unread[channel] = count
    else:
        unread.pop(channel, None)
    return state.model_copy(update={"unread": unread})


def group_by_channel(messages: Iterable[ClientMessage]) -> Dict[str, List[ClientMessage]]:
    """Channel key -> messages sorted by timestamp (stable for ties)."""
    grouped: Dict[str, List[ClientMessage]] = {}
    for message in messages:
        grouped.setdefault(message.channelKey, []).append(message)
    for channel_messages in grouped.values():
        channel_messages.sort(key=lambda m: m.timestamp)
    return grouped


def notification_for(state: SessionState, message: ClientMessage) -> Optional[Notification]:
    """Notification for an incoming message, or None if it should stay quiet.

    Own messages and messages in the active channel never notify.
    """
    if is_own(state, message) or message.channelKey == state.active_channel:
        return None

    sender = message.senderName or "Someone"
    if message.attachment is not None:
        return Notification(
            title=f"{sender} shared a file",
            body=message.attachment.fileName,
            kind="file",
        )
    if message.isPrivate:
        return Notification(title=sender, body=message.body or "", kind="dm")
    return Notification(
        title=f"{sender} in {message.channelKey}",
        body=message.body or "",
        kind="message",
    )


# =============================================================================
# Message reducers
# =============================================================================


def add_optimistic(
    state: SessionState,
    channel: str,
    *,
    body: Optional[str] = None,
    attachment: Optional[Attachment] = None,
    is_private: bool = False,
    receiver_id: Optional[str] = None,
    now: Optional[float] = None,
) -> Tuple[SessionState, ClientMessage]:
    """Append a pending message for a send the user just made.

    ``channel`` is fixed here, so a later ``switch_channel`` cannot move the
    message elsewhere.
    """
    now = time.time() if now is None else now
    message = ClientMessage(
        tempId=f"temp-{uuid.uuid4().hex}",
        channelKey=channel,
        isPrivate=is_private,
        senderId=state.self_id or "",
        senderName=state.username or "",
        senderAvatar=state.avatar,
        receiverId=receiver_id,
        body=body,
        attachment=attachment,
        timestamp=now,
        createdAt=now,
        status=MessageStatus.PENDING,
    )
    return state.model_copy(update={"messages": state.messages + (message,)}), message


def _matches_optimistic(candidate: ClientMessage, message: ClientMessage) -> bool:
    return (
        candidate.is_optimistic
        and candidate.status in (MessageStatus.PENDING, MessageStatus.FAILED)
        and candidate.senderId == message.senderId
        and candidate.channelKey == message.channelKey
        and candidate.content_key == message.content_key
    )


def reconcile_incoming(state: SessionState, message: ClientMessage) -> SessionState:
    """Merge a server message into the state.

    1. A message whose id is already known is a redelivery and is dropped.
    2. Otherwise the oldest optimistic message with the same sender, channel
       and body (or file name) is replaced in place.
    3. Otherwise the message is appended, and counts as unread when it lands
       outside the active channel and was not sent by us.
    """
    if find_message(state, message.id) is not None:
        return state

    messages = list(state.messages)
    for index, candidate in enumerate(messages):
        if _matches_optimistic(candidate, message):
            messages[index] = message.model_copy(update={"tempId": candidate.tempId})
            return state.model_copy(update={"messages": tuple(messages)})

    state = state.model_copy(update={"messages": state.messages + (message,)})
    if message.channelKey != state.active_channel and not is_own(state, message):
        state = _with_unread(state, message.channelKey, state.unread.get(message.channelKey, 0) + 1)
    return state


def needs_read_receipt(state: SessionState, message: ClientMessage) -> bool:
    """True for someone else's message in the active channel we have not read."""
    return (
        message.id is not None
        and message.channelKey == state.active_channel
        and not is_own(state, message)
        and state.username not in message.readBy
    )


def switch_channel(state: SessionState, channel: str) -> Tuple[SessionState, List[str]]:
    """Make ``channel`` active and clear its unread counter.

    Returns:
        The new state and the ids of messages in that channel that still need
        a ``read_receipt``.
    """
    state = state.model_copy(update={"active_channel": channel})
    state = _with_unread(state, channel, 0)
    to_read = [m.id for m in state.messages if needs_read_receipt(state, m)]
    return state, to_read


def apply_delivered(state: SessionState, message_id: str) -> SessionState:
    return _replace_where(
        state,
        lambda m: m.id == message_id and m.status != MessageStatus.FAILED,
        status=MessageStatus.DELIVERED,
    )


def apply_error(state: SessionState, event: dict) -> SessionState:
    """Mark the message named by an ``error`` event as failed.

    Errors that name no message leave the state unchanged.
    """
    message_id = event.get("messageId")
    if not message_id:
        return state
    return _replace_where(state, lambda m: m.id == message_id, status=MessageStatus.FAILED)


def fail_message(state: SessionState, temp_id: str) -> SessionState:
    return _replace_where(
        state,
        lambda m: m.tempId == temp_id and m.is_optimistic,
        status=MessageStatus.FAILED,
    )


def expire_pending(state: SessionState, now: float, timeout: float) -> SessionState:
    """Fail optimistic messages left unconfirmed for longer than ``timeout``."""
    return _replace_where(
        state,
        lambda m: m.status == MessageStatus.PENDING and now - m.createdAt > timeout,
        status=MessageStatus.FAILED,
    )


def apply_reaction(state: SessionState, event: dict) -> SessionState:
    """Take the server's reaction map for the message as authoritative."""
    reactions = {
        symbol: tuple(users)
        for symbol, users in (event.get("reactions") or {}).items()
    }
    return _replace_where(state, lambda m: m.id == event["messageId"], reactions=reactions)


def apply_read_receipt(state: SessionState, event: dict) -> SessionState:
    read_by = tuple(event.get("readBy") or ())
    return _replace_where(state, lambda m: m.id == event["messageId"], readBy=read_by)


def apply_recent_messages(state: SessionState, event: dict) -> SessionState:
    for payload in event.get("messages", []):
        message = message_from_event(payload)
        if find_message(state, message.id) is not None:
            continue
        # History is already seen; never counts as unread
        state = state.model_copy(update={"messages": state.messages + (message,)})
    return state


# =============================================================================
# Presence, typing and rooms
# =============================================================================


def _rebind(message: ClientMessage, connection_id: str) -> ClientMessage:
    changes = {"senderId": connection_id}
    if message.isPrivate and message.receiverId:
        changes["channelKey"] = channel_key(connection_id, message.receiverId)
    return message.model_copy(update=changes)


def apply_connected(state: SessionState, connection_id: str) -> SessionState:
    """Adopt a new connection id.

    Still-pending sends are rebound to the new id so their server echoes
    (which will carry it) reconcile with them. Typing state is cleared since
    the server has none for the new connection yet.
    """
    own_ids = state.own_ids
    if connection_id not in own_ids:
        own_ids = own_ids + (connection_id,)
    messages = tuple(
        _rebind(m, connection_id)
        if m.is_optimistic and m.status == MessageStatus.PENDING else m
        for m in state.messages
    )
    active = state.active_channel
    if active is not None and state.self_id and state.self_id in (participants_of(active) or ()):
        other = other_participant(active, state.self_id)
        active = channel_key(connection_id, other)
    return state.model_copy(update={
        "self_id": connection_id,
        "own_ids": own_ids,
        "messages": messages,
        "active_channel": active,
        "typing": {},
    })


def apply_typing(state: SessionState, event: dict) -> SessionState:
    """Replace the typing set for a channel, leaving ourselves out."""
    typing = dict(state.typing)
    users = tuple(u for u in event.get("users", []) if u != state.username)
    if users:
        typing[event["room"]] = users
    else:
        typing.pop(event["room"], None)
    return state.model_copy(update={"typing": typing})


def apply_user_list(state: SessionState, event: dict) -> SessionState:
    users = tuple(UserProfile(**u) for u in event.get("users", []))
    return state.model_copy(update={"users": users})


def apply_user_online(state: SessionState, event: dict) -> SessionState:
    user = UserProfile(**event["user"])
    users = tuple(u for u in state.users if u.id != user.id) + (user,)
    return state.model_copy(update={"users": users})


def apply_user_offline(state: SessionState, event: dict) -> SessionState:
    users = tuple(u for u in state.users if u.id != event["id"])
    return state.model_copy(update={"users": users})


def apply_room_list(state: SessionState, event: dict) -> SessionState:
    return state.model_copy(update={"rooms": tuple(event.get("rooms", []))})


def apply_joined_room(state: SessionState, name: str) -> SessionState:
    if name in state.joined_rooms:
        return state
    return state.model_copy(update={"joined_rooms": state.joined_rooms + (name,)})


def apply_left_room(state: SessionState, name: str) -> SessionState:
    typing = {k: v for k, v in state.typing.items() if k != name}
    return state.model_copy(update={
        "joined_rooms": tuple(r for r in state.joined_rooms if r != name),
        "typing": typing,
    })
