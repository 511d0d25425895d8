"""Chat router providing WebSocket and HTTP endpoints.

This module provides:
    - WebSocket /ws/chat: Real-time chat messaging
    - GET /api/rooms: Room directory snapshot
    - GET /api/messages: Recent room history

The WebSocket protocol supports:
    - Presence snapshots on join/leave
    - Room join/leave with upsert-on-join
    - Room broadcast and DM point-to-point messages
    - File sharing (URLs from POST /api/upload)
    - Typing indicators scoped to the channel
    - Reactions and read receipts scoped to the channel
    - Delivery acknowledgments addressed to the sender

Protocol Message Types (client -> server):
    - user_join, join_room, leave_room
    - send_message, private_message, send_file
    - typing, message_reaction, read_receipt
    - get_recent_messages
"""
import json
import logging

from fastapi import APIRouter, HTTPException, Query, WebSocket, WebSocketDisconnect

from .errors import ChatError, InvalidInput
from .identity import is_dm_key
from .messaging import MessageRouter
from .presence import PresenceBroadcaster, typing_tracker
from .registry import registry
from .rooms import RoomDirectory
from .schemas import (
    Attachment,
    JoinRoomEvent,
    LeaveRoomEvent,
    PrivateMessageEvent,
    ReactionEvent,
    ReadReceiptEvent,
    RecentMessagesRequest,
    SendFileEvent,
    SendMessageEvent,
    TypingEvent,
    UserJoinEvent,
    connected_event,
    joined_room_event,
    left_room_event,
    parse_inbound,
    recent_messages_event,
    room_list_event,
    user_list_event,
)
from .store import ChatStore
from parley.config import get_config

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/api/rooms")
async def list_rooms() -> dict:
    """Return every room name, oldest first."""
    store = ChatStore.get_instance(get_config().storage.db_path)
    return {"rooms": RoomDirectory(store).list_all()}


@router.get("/api/messages")
async def get_messages(
    room: str = Query(..., description="Room name"),
    limit: int = Query(50, ge=1, description="Number of messages to return"),
) -> list:
    """Get recent history for a room, oldest first.

    DM history is not served over HTTP; it is only available to the two
    participants over the WebSocket.

    Example:
        GET /api/messages?room=General&limit=50
    """
    if is_dm_key(room):
        raise HTTPException(status_code=403, detail="DM history is not available over HTTP")
    limit = min(limit, get_config().chat.history_limit)
    messages = ChatStore.get_instance(get_config().storage.db_path).list_messages(room, limit)
    return [m.model_dump() for m in messages]


@router.websocket("/ws/chat")
async def websocket_chat_endpoint(websocket: WebSocket) -> None:
    """WebSocket endpoint for one client connection.

    Protocol Flow:
        1. Client connects -> server assigns an ephemeral connection id
           -> Server sends: {type: "connected", connectionId}
           -> Server sends: {type: "room_list", rooms: [...]}
           -> Server sends: {type: "user_list", users: [...]}
        2. Client sends: {type: "user_join", username, avatar}
           -> Server broadcasts: user_online, then user_list
        3. Client sends: {type: "join_room", name}
           -> Server sends: {type: "joined_room", name}
           -> Server broadcasts room_list if the room is new
        4. Client sends: {type: "send_message", body, room}
           -> Room receives: {type: "receive_message", ...message}
           -> Sender receives: {type: "message_delivered", messageId}
        5. On disconnect -> typing sets purged and re-broadcast,
           then user_offline and user_list broadcast to everyone

    Any invalid or rejected event produces {type: "error", code, error}
    for this connection only; the connection stays open.
    """
    config = get_config()
    store = ChatStore.get_instance(config.storage.db_path)
    rooms = RoomDirectory(store)
    messages = MessageRouter(registry, store, config.chat.max_body_length)
    presence = PresenceBroadcaster(registry, typing_tracker)

    await websocket.accept()
    connection_id = registry.open(websocket)
    logger.info(f"[WS] Connection accepted. Assigned connectionId={connection_id}")

    try:
        await websocket.send_json(connected_event(connection_id))
        await websocket.send_json(room_list_event(rooms.list_all()))
        await websocket.send_json(user_list_event(registry.list_online()))

        # Main message loop
        while True:
            raw = await websocket.receive_text()
            try:
                try:
                    data = json.loads(raw)
                except ValueError:
                    raise InvalidInput("Frames must be JSON objects")
                event = parse_inbound(data)
                logger.debug("[WS] %s received: type=%s", connection_id, event.type)
                await _dispatch(event, connection_id, websocket, rooms, messages, presence)
            except ChatError as e:
                logger.info(f"[WS] Rejected event from {connection_id}: {e.code}: {e}")
                await websocket.send_json(e.to_event())

    except WebSocketDisconnect:
        logger.info(f"[WS] Connection {connection_id} disconnected")
    finally:
        profile = registry.remove(connection_id)
        await presence.disconnect_cleanup(connection_id)
        if profile:
            await presence.user_offline(profile)


async def _dispatch(
    event,
    connection_id: str,
    websocket: WebSocket,
    rooms: RoomDirectory,
    messages: MessageRouter,
    presence: PresenceBroadcaster,
) -> None:
    """Handle one validated inbound event to completion."""
    chat_config = get_config().chat

    # --- Handle USER_JOIN (profile registration) ---
    if isinstance(event, UserJoinEvent):
        username = event.username.strip()
        if not username:
            raise InvalidInput("Username is required")
        if len(username) > chat_config.max_username_length:
            raise InvalidInput(
                f"Username exceeds {chat_config.max_username_length} characters"
            )
        profile = registry.register(connection_id, username, event.avatar or None)
        await presence.user_online(profile)
        return

    # --- Handle JOIN_ROOM (upsert and subscribe) ---
    if isinstance(event, JoinRoomEvent):
        if registry.lookup(connection_id) is None:
            raise InvalidInput("Send user_join before joining rooms")
        room, created = rooms.ensure(event.name)
        if registry.join_room(connection_id, room.name):
            logger.info(f"[WS] {connection_id} joined room {room.name!r}")
        await websocket.send_json(joined_room_event(room.name))
        if created:
            await registry.broadcast_all(room_list_event(rooms.list_all()))
        return

    # --- Handle LEAVE_ROOM ---
    if isinstance(event, LeaveRoomEvent):
        name = event.name.strip()
        if registry.leave_room(connection_id, name):
            await presence.leave_channel(connection_id, name)
        await websocket.send_json(left_room_event(name))
        return

    # --- Handle room text message ---
    if isinstance(event, SendMessageEvent):
        await messages.send_room_message(connection_id, event.room.strip(), event.body)
        return

    # --- Handle DM (text or file) ---
    if isinstance(event, PrivateMessageEvent):
        payload = event.message
        attachment = None
        if payload.type == "file":
            attachment = Attachment(url=payload.url, fileName=payload.fileName)
        await messages.send_direct_message(
            connection_id, event.to, body=payload.body, attachment=attachment
        )
        return

    # --- Handle file share ---
    if isinstance(event, SendFileEvent):
        await messages.send_file(
            connection_id,
            Attachment(url=event.url, fileName=event.fileName),
            room=event.room.strip() if event.room else None,
            recipient_id=event.receiverId,
            is_private=event.isPrivate,
        )
        return

    # --- Handle TYPING indicator ---
    if isinstance(event, TypingEvent):
        await presence.set_typing(connection_id, event.room, event.isTyping)
        return

    # --- Handle reaction ---
    if isinstance(event, ReactionEvent):
        await messages.react(connection_id, event.messageId, event.reaction)
        return

    # --- Handle READ receipt ---
    if isinstance(event, ReadReceiptEvent):
        await messages.mark_read(connection_id, event.messageId)
        return

    # --- Handle history request ---
    if isinstance(event, RecentMessagesRequest):
        limit = min(event.limit or chat_config.history_limit, chat_config.history_limit)
        history = messages.recent_messages(connection_id, event.room, limit)
        await websocket.send_json(recent_messages_event(event.room, history))
        return
