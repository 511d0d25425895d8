"""Python chat client session.

``ChatSession`` owns a ``SessionState`` and a WebSocket transport. It turns
user intents (send, switch channel, react, type) into outbound frames and
server events into state transitions via the reducers in
:mod:`parley.client.state`.

Frames produced while no connection is up are queued and flushed once the
server's ``connected`` event arrives. After every (re)connect the session
replays ``user_join`` and all previously joined rooms.

Usage:
    session = ChatSession("alice", notifier=print)
    asyncio.create_task(session.run())
    await session.join_room("General")
    await session.send_message("hello")
"""
import asyncio
import json
import logging
import time
from collections import deque
from typing import Callable, Deque, Dict, Optional, Protocol

import websockets
from websockets.exceptions import ConnectionClosed

from parley.chat.identity import is_dm_key, participants_of
from parley.chat.schemas import Attachment
from parley.config import ClientSettings, get_config

from . import state as reducers
from .state import ClientMessage, Notification, SessionState

logger = logging.getLogger(__name__)

Notifier = Callable[[Notification], None]


class Transport(Protocol):
    async def send(self, message: str) -> None: ...


class ChatSession:
    """Client side of one user's chat session.

    Attributes:
        state: Current ``SessionState``; replaced, never mutated.
        settings: Client settings (server URL, timers, reconnect policy).
    """

    def __init__(
        self,
        username: str,
        avatar: Optional[str] = None,
        *,
        settings: Optional[ClientSettings] = None,
        notifier: Optional[Notifier] = None,
    ):
        self.settings = settings or get_config().client
        self.state = SessionState(username=username, avatar=avatar)
        self.notifier = notifier

        self._transport: Optional[Transport] = None
        self._ready = False
        self._outbox: Deque[dict] = deque()
        self._typing_channel: Optional[str] = None
        self._typing_timer: Optional[asyncio.TimerHandle] = None
        self._typing_task: Optional[asyncio.Task] = None
        # tempId -> expiry timer of an unconfirmed send
        self._pending_timers: Dict[str, asyncio.TimerHandle] = {}
        self._closing = False

    # =========================================================================
    # Transport
    # =========================================================================

    @property
    def connected(self) -> bool:
        return self._transport is not None and self._ready

    def attach(self, transport: Transport) -> None:
        """Bind a transport. Frames still queue until ``connected`` arrives."""
        self._transport = transport
        self._ready = False

    def detach(self) -> None:
        self._transport = None
        self._ready = False
        self._cancel_typing_timer()
        self._typing_channel = None
        task = self._typing_task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _send(self, frame: dict) -> None:
        if not self.connected:
            self._outbox.append(frame)
            logger.debug(f"[Session] Queued {frame['type']} ({len(self._outbox)} pending)")
            return
        try:
            await self._transport.send(json.dumps(frame))
        except ConnectionClosed:
            logger.info(f"[Session] Connection lost while sending {frame['type']}; queued")
            self.detach()
            self._outbox.appendleft(frame)

    async def _on_connected(self, connection_id: str) -> None:
        self.state = reducers.apply_connected(self.state, connection_id)
        self._ready = True
        logger.info(f"[Session] Connected as {connection_id}")

        await self._send({
            "type": "user_join",
            "username": self.state.username,
            "avatar": self.state.avatar,
        })
        for room in self.state.joined_rooms:
            await self._send({"type": "join_room", "name": room})

        while self._outbox and self.connected:
            await self._send(self._outbox.popleft())

    async def run(self) -> None:
        """Connect and process events until ``close`` or retries run out.

        Each connection attempt after a drop waits ``reconnect_delay_seconds``;
        the attempt counter resets whenever a connection succeeds.
        """
        attempts = 0
        self._closing = False
        while not self._closing:
            try:
                async with websockets.connect(self.settings.server_url) as ws:
                    attempts = 0
                    self.attach(ws)
                    async for raw in ws:
                        await self.handle_raw(raw)
            except (OSError, ConnectionClosed) as e:
                logger.warning(f"[Session] Connection error: {e}")
            finally:
                self.detach()

            if self._closing:
                break
            attempts += 1
            if attempts > self.settings.max_reconnect_attempts:
                logger.error(f"[Session] Giving up after {attempts - 1} reconnect attempts")
                break
            await asyncio.sleep(self.settings.reconnect_delay_seconds)

    async def close(self) -> None:
        self._closing = True
        transport = self._transport
        typing_task = self._typing_task
        self.detach()
        for timer in self._pending_timers.values():
            timer.cancel()
        self._pending_timers.clear()
        if typing_task is not None:
            await asyncio.gather(typing_task, return_exceptions=True)
        close = getattr(transport, "close", None)
        if close is not None:
            await close()

    # =========================================================================
    # Inbound events
    # =========================================================================

    async def handle_raw(self, raw: str) -> None:
        try:
            event = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning(f"[Session] Ignoring non-JSON frame: {raw[:80]!r}")
            return
        await self.handle_event(event)

    async def handle_event(self, event: dict) -> None:
        """Apply one server event to the session state."""
        event_type = event.get("type")

        if event_type == "connected":
            await self._on_connected(event["connectionId"])

        elif event_type in reducers.MESSAGE_EVENTS:
            await self._on_message(reducers.message_from_event(event))

        elif event_type == "message_delivered":
            self.state = reducers.apply_delivered(self.state, event["messageId"])

        elif event_type == "message_reaction":
            self.state = reducers.apply_reaction(self.state, event)

        elif event_type == "read_receipt":
            self.state = reducers.apply_read_receipt(self.state, event)

        elif event_type == "typing_users":
            self.state = reducers.apply_typing(self.state, event)

        elif event_type == "user_list":
            self.state = reducers.apply_user_list(self.state, event)

        elif event_type == "user_online":
            self.state = reducers.apply_user_online(self.state, event)

        elif event_type == "user_offline":
            self.state = reducers.apply_user_offline(self.state, event)

        elif event_type == "room_list":
            self.state = reducers.apply_room_list(self.state, event)

        elif event_type == "joined_room":
            self.state = reducers.apply_joined_room(self.state, event["name"])

        elif event_type == "left_room":
            self.state = reducers.apply_left_room(self.state, event["name"])

        elif event_type == "recent_messages":
            self.state = reducers.apply_recent_messages(self.state, event)

        elif event_type == "error":
            logger.warning(f"[Session] Server error {event.get('code')}: {event.get('error')}")
            self.state = reducers.apply_error(self.state, event)

        else:
            logger.debug(f"[Session] Ignoring event type {event_type!r}")

    async def _on_message(self, message: ClientMessage) -> None:
        if reducers.find_message(self.state, message.id) is not None:
            return

        notification = reducers.notification_for(self.state, message)
        self.state = reducers.reconcile_incoming(self.state, message)
        merged = reducers.find_message(self.state, message.id)
        timer = self._pending_timers.pop(merged.tempId, None) if merged.tempId else None
        if timer is not None:
            timer.cancel()

        if notification is not None and self.notifier is not None:
            try:
                self.notifier(notification)
            except Exception as e:
                logger.warning(f"[Session] Notifier failed: {e}")

        if reducers.needs_read_receipt(self.state, message):
            await self._send({"type": "read_receipt", "messageId": message.id})

    # =========================================================================
    # User intents
    # =========================================================================

    def _peer_of(self, dm_key: str) -> str:
        participants = participants_of(dm_key)
        if participants is None:
            raise ValueError(f"Not a DM key: {dm_key}")
        low, high = participants
        if low in self.state.own_ids or low == self.state.self_id:
            return high
        return low

    async def join_room(self, name: str) -> None:
        await self._send({"type": "join_room", "name": name})

    async def leave_room(self, name: str) -> None:
        await self._send({"type": "leave_room", "name": name})

    async def request_history(self, room: str, limit: Optional[int] = None) -> None:
        frame = {"type": "get_recent_messages", "room": room}
        if limit is not None:
            frame["limit"] = limit
        await self._send(frame)

    async def switch_channel(self, channel: str) -> None:
        """Show ``channel`` and acknowledge everything unread in it."""
        await self.stop_typing()
        self.state, to_read = reducers.switch_channel(self.state, channel)
        for message_id in to_read:
            await self._send({"type": "read_receipt", "messageId": message_id})

    async def open_dm(self, other_id: str) -> str:
        """Switch to the DM channel with ``other_id`` and return its key."""
        key = reducers.dm_channel(self.state, other_id)
        await self.switch_channel(key)
        return key

    async def send_message(self, body: str, channel: Optional[str] = None) -> ClientMessage:
        """Send text to ``channel`` (default: the active channel).

        The target is resolved now, so switching channels before the echo
        arrives does not redirect the message. The body is stripped the way
        the server stores it, so the echo matches the optimistic copy.

        Raises:
            ValueError: No channel to send to, or the body is blank.
        """
        channel = channel or self.state.active_channel
        if not channel:
            raise ValueError("No active channel")
        body = (body or "").strip()
        if not body:
            raise ValueError("Message body is required")

        if is_dm_key(channel):
            peer = self._peer_of(channel)
            self.state, message = reducers.add_optimistic(
                self.state, channel, body=body, is_private=True, receiver_id=peer
            )
            await self._send({
                "type": "private_message",
                "to": peer,
                "message": {"body": body, "type": "text"},
            })
        else:
            self.state, message = reducers.add_optimistic(self.state, channel, body=body)
            await self._send({"type": "send_message", "body": body, "room": channel})

        self._watch_pending(message)
        await self.stop_typing()
        return message

    async def send_file(self, url: str, file_name: str,
                        channel: Optional[str] = None) -> ClientMessage:
        """Share an already uploaded file (see ``POST /api/upload``)."""
        channel = channel or self.state.active_channel
        if not channel:
            raise ValueError("No active channel")
        attachment = Attachment(url=url, fileName=file_name)

        if is_dm_key(channel):
            peer = self._peer_of(channel)
            self.state, message = reducers.add_optimistic(
                self.state, channel, attachment=attachment, is_private=True, receiver_id=peer
            )
            await self._send({
                "type": "private_message",
                "to": peer,
                "message": {"type": "file", "url": url, "fileName": file_name},
            })
        else:
            self.state, message = reducers.add_optimistic(self.state, channel, attachment=attachment)
            await self._send({
                "type": "send_file",
                "isPrivate": False,
                "room": channel,
                "url": url,
                "fileName": file_name,
            })
        self._watch_pending(message)
        return message

    async def react(self, message_id: str, symbol: str) -> None:
        await self._send({"type": "message_reaction", "messageId": message_id, "reaction": symbol})

    def expire_pending(self, now: Optional[float] = None) -> None:
        """Fail sends still unconfirmed after ``pending_timeout_seconds``."""
        now = time.time() if now is None else now
        self.state = reducers.expire_pending(self.state, now, self.settings.pending_timeout_seconds)

    def _watch_pending(self, message: ClientMessage) -> None:
        """Fail ``message`` if no echo has replaced it when the window closes."""
        loop = asyncio.get_running_loop()
        self._pending_timers[message.tempId] = loop.call_later(
            self.settings.pending_timeout_seconds,
            self._on_pending_timeout,
            message.tempId,
        )

    def _on_pending_timeout(self, temp_id: str) -> None:
        self._pending_timers.pop(temp_id, None)
        before = self.state
        self.state = reducers.fail_message(self.state, temp_id)
        if self.state.messages != before.messages:
            logger.info(f"[Session] Send {temp_id} unconfirmed after "
                        f"{self.settings.pending_timeout_seconds}s; marked failed")

    # =========================================================================
    # Typing
    # =========================================================================

    def _cancel_typing_timer(self) -> None:
        if self._typing_timer is not None:
            self._typing_timer.cancel()
            self._typing_timer = None

    async def notify_typing(self) -> None:
        """Call on every keystroke.

        Sends ``typing: true`` once per burst and ``typing: false`` after
        ``typing_idle_seconds`` without another keystroke.
        """
        channel = self.state.active_channel
        if not channel or not self.connected:
            return

        if self._typing_channel != channel:
            await self.stop_typing()
            self._typing_channel = channel
            await self._send({"type": "typing", "isTyping": True, "room": channel})

        self._cancel_typing_timer()
        loop = asyncio.get_running_loop()
        self._typing_timer = loop.call_later(
            self.settings.typing_idle_seconds, self._on_typing_idle
        )

    def _on_typing_idle(self) -> None:
        self._typing_timer = None
        self._typing_task = asyncio.ensure_future(self.stop_typing())
        self._typing_task.add_done_callback(self._typing_task_done)

    def _typing_task_done(self, task: asyncio.Task) -> None:
        if self._typing_task is task:
            self._typing_task = None
        if not task.cancelled() and task.exception() is not None:
            logger.warning(f"[Session] Could not send typing stop: {task.exception()}")

    async def stop_typing(self) -> None:
        self._cancel_typing_timer()
        channel = self._typing_channel
        if channel is None:
            return
        self._typing_channel = None
        if self.connected:
            await self._send({"type": "typing", "isTyping": False, "room": channel})
