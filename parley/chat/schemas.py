"""Wire and storage models for the chat service.

Inbound events are a closed set of tagged variants discriminated by their
``type`` field and validated at the WebSocket boundary; anything that does not
match one of them is rejected as ``InvalidInput``. Outbound events are built
from the models below by the helpers at the bottom of this module, so every
event name the server can emit is listed in one place.

Field names are camelCase because they are sent to browser clients as-is.
"""
import time
import uuid
from typing import Annotated, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError, model_validator

from .errors import InvalidInput


def new_message_id() -> str:
    """Server-assigned message id, lexicographically ordered by creation time."""
    return f"{time.time_ns():020d}-{uuid.uuid4().hex[:8]}"


# =============================================================================
# Domain Models
# =============================================================================


class UserProfile(BaseModel):
    """Online user as shown in presence snapshots.

    Attributes:
        id: Connection id the profile is bound to.
        username: Display name, an unauthenticated claim.
        avatar: Optional avatar URI.
    """
    id: str = Field(..., description="Connection id")
    username: str = Field(..., description="Display name")
    avatar: Optional[str] = Field(default=None, description="Avatar URI")


class Room(BaseModel):
    name: str = Field(..., description="Unique room name")
    createdAt: float = Field(default_factory=time.time, description="Creation time (epoch seconds)")


class Attachment(BaseModel):
    url: str = Field(..., description="URL returned by the upload endpoint")
    fileName: str = Field(..., description="Original file name")


class ChatMessage(BaseModel):
    """Complete message record as persisted and fanned out.

    ``readBy`` and ``reactions`` only ever grow; everything else is fixed once
    the message has been created.
    """
    id: str = Field(default_factory=new_message_id, description="Stable message id")
    channelKey: str = Field(..., description="Room name or DM key")
    isPrivate: bool = Field(default=False)
    senderId: str = Field(..., description="Connection id of the sender")
    senderName: str = Field(default="")
    senderAvatar: Optional[str] = Field(default=None)
    receiverId: Optional[str] = Field(default=None, description="DM recipient connection id")
    body: Optional[str] = Field(default=None, description="Text, None for file messages")
    attachment: Optional[Attachment] = Field(default=None)
    timestamp: float = Field(default_factory=time.time, description="Server time (epoch seconds)")
    delivered: bool = Field(default=False)
    readBy: List[str] = Field(default_factory=list)
    reactions: Dict[str, List[str]] = Field(default_factory=dict)

    @property
    def is_file(self) -> bool:
        return self.attachment is not None


# =============================================================================
# Inbound Events (client -> server)
# =============================================================================


class UserJoinEvent(BaseModel):
    type: Literal["user_join"]
    username: str
    avatar: Optional[str] = None


class JoinRoomEvent(BaseModel):
    type: Literal["join_room"]
    name: str


class LeaveRoomEvent(BaseModel):
    type: Literal["leave_room"]
    name: str


class SendMessageEvent(BaseModel):
    type: Literal["send_message"]
    body: str
    room: str


class PrivatePayload(BaseModel):
    body: Optional[str] = None
    type: Literal["text", "file"] = "text"
    url: Optional[str] = None
    fileName: Optional[str] = None

    @model_validator(mode="after")
    def _file_needs_url(self) -> "PrivatePayload":
        if self.type == "file" and not (self.url and self.fileName):
            raise ValueError("file messages require url and fileName")
        return self


class PrivateMessageEvent(BaseModel):
    type: Literal["private_message"]
    to: str
    message: PrivatePayload


class SendFileEvent(BaseModel):
    type: Literal["send_file"]
    url: str
    fileName: str
    isPrivate: bool = False
    room: Optional[str] = None
    receiverId: Optional[str] = None

    @model_validator(mode="after")
    def _has_target(self) -> "SendFileEvent":
        if self.isPrivate and not self.receiverId:
            raise ValueError("private file messages require receiverId")
        if not self.isPrivate and not self.room:
            raise ValueError("room file messages require room")
        return self


class TypingEvent(BaseModel):
    type: Literal["typing"]
    isTyping: bool
    room: str


class ReactionEvent(BaseModel):
    type: Literal["message_reaction"]
    messageId: str
    reaction: str


class ReadReceiptEvent(BaseModel):
    type: Literal["read_receipt"]
    messageId: str


class RecentMessagesRequest(BaseModel):
    type: Literal["get_recent_messages"]
    room: str
    limit: Optional[int] = Field(default=None, ge=1)


InboundEvent = Annotated[
    Union[
        UserJoinEvent,
        JoinRoomEvent,
        LeaveRoomEvent,
        SendMessageEvent,
        PrivateMessageEvent,
        SendFileEvent,
        TypingEvent,
        ReactionEvent,
        ReadReceiptEvent,
        RecentMessagesRequest,
    ],
    Field(discriminator="type"),
]

_inbound_adapter = TypeAdapter(InboundEvent)


def parse_inbound(data: object) -> InboundEvent:
    """Validate a decoded JSON frame into one of the inbound event models.

    Raises:
        InvalidInput: If the frame is not an object, has an unknown ``type``,
            or fails the schema of its variant.
    """
    try:
        return _inbound_adapter.validate_python(data)
    except ValidationError as e:
        errors = e.errors()
        detail = errors[0]["msg"] if errors else str(e)
        kind = data.get("type") if isinstance(data, dict) else None
        raise InvalidInput(f"Invalid {kind or 'event'}: {detail}") from e


# =============================================================================
# Outbound Events (server -> client)
# =============================================================================


def connected_event(connection_id: str) -> dict:
    return {"type": "connected", "connectionId": connection_id}


def user_list_event(users: List[UserProfile]) -> dict:
    return {"type": "user_list", "users": [u.model_dump() for u in users]}


def user_online_event(user: UserProfile) -> dict:
    return {"type": "user_online", "user": user.model_dump()}


def user_offline_event(user: UserProfile) -> dict:
    return {"type": "user_offline", "id": user.id, "username": user.username}


def room_list_event(names: List[str]) -> dict:
    return {"type": "room_list", "rooms": list(names)}


def joined_room_event(name: str) -> dict:
    return {"type": "joined_room", "name": name}


def left_room_event(name: str) -> dict:
    return {"type": "left_room", "name": name}


def message_event(message: ChatMessage) -> dict:
    """Fan-out event for a newly created message.

    Room text messages are ``receive_message``, file messages are
    ``receive_file`` and DM text messages are ``private_message``. Room events
    carry ``room`` and DM events carry ``dmKey``.
    """
    if message.is_file:
        event_type = "receive_file"
    elif message.isPrivate:
        event_type = "private_message"
    else:
        event_type = "receive_message"

    event = {"type": event_type, **message.model_dump()}
    if message.isPrivate:
        event["dmKey"] = message.channelKey
    else:
        event["room"] = message.channelKey
    return event


def delivered_event(message_id: str) -> dict:
    return {"type": "message_delivered", "messageId": message_id}


def typing_event(channel: str, usernames: List[str]) -> dict:
    return {"type": "typing_users", "room": channel, "users": list(usernames)}


def reaction_event(message_id: str, reaction: str, user: str,
                   reactions: Dict[str, List[str]]) -> dict:
    return {
        "type": "message_reaction",
        "messageId": message_id,
        "reaction": reaction,
        "user": user,
        "reactions": reactions,
    }


def read_receipt_event(message_id: str, user: str, read_by: List[str]) -> dict:
    return {
        "type": "read_receipt",
        "messageId": message_id,
        "user": user,
        "readBy": list(read_by),
    }


def recent_messages_event(channel: str, messages: List[ChatMessage]) -> dict:
    return {
        "type": "recent_messages",
        "room": channel,
        "messages": [m.model_dump() for m in messages],
    }
