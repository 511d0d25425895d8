"""Connection registry for the real-time chat service.

This module owns every live WebSocket connection, the profile claimed on it,
and the rooms it is subscribed to. It is the only place that mutates that
state; the message router and the presence broadcaster read from it and use
its fan-out helpers.

Key features:
    - Server-assigned connection ids (never reused across reconnects)
    - Profiles overwritten, never merged, on repeated user_join
    - Deterministic (insertion-ordered) online snapshot
    - Room subscriptions with idempotent join/leave
    - Concurrent fan-out with asyncio.gather()
    - Dead connections dropped from fan-out on send failure

Thread Safety:
    Designed for a single event loop. Every mutation is synchronous, so it is
    atomic with respect to other handlers between await points. It is NOT
    thread-safe.

Scaling:
    The registry is process-wide state for one server instance. Running more
    than one instance would need an external shared presence store.
"""
import asyncio
import logging
import uuid
from typing import Any, Dict, Iterable, List, Optional, Set

from .errors import NotFound
from .identity import participants_of
from .schemas import UserProfile

logger = logging.getLogger(__name__)


class _Connection:
    """Per-connection record. Only the registry touches these."""

    __slots__ = ("id", "websocket", "profile", "joined_rooms")

    def __init__(self, connection_id: str, websocket: Any) -> None:
        self.id = connection_id
        self.websocket = websocket
        self.profile: Optional[UserProfile] = None
        # dict keeps join order for deterministic replay
        self.joined_rooms: Dict[str, None] = {}


class ConnectionRegistry:
    """Maps ephemeral connection ids to transports, profiles and rooms.

    Note:
        A module-level instance (``registry``) is shared by all WebSocket
        handlers. The application lifespan clears it on startup and shutdown.
    """

    def __init__(self) -> None:
        # connection_id -> _Connection (open transports, profile or not)
        self.connections: Dict[str, _Connection] = {}

        # connection_id -> UserProfile, in first-registration order
        self.profiles: Dict[str, UserProfile] = {}

        # room name -> set of subscribed connection ids
        self.room_subscribers: Dict[str, Set[str]] = {}

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def open(self, websocket: Any) -> str:
        """Track a newly accepted transport and assign its connection id."""
        connection_id = uuid.uuid4().hex
        self.connections[connection_id] = _Connection(connection_id, websocket)
        logger.info(f"[Registry] Connection {connection_id} opened ({len(self.connections)} live)")
        return connection_id

    def register(
        self, connection_id: str, username: str, avatar: Optional[str] = None
    ) -> UserProfile:
        """Bind a profile to a connection, replacing any earlier one.

        Raises:
            NotFound: If the connection is not open.
        """
        conn = self.connections.get(connection_id)
        if conn is None:
            raise NotFound(f"Connection {connection_id} is not open")
        profile = UserProfile(id=connection_id, username=username, avatar=avatar)
        conn.profile = profile
        self.profiles[connection_id] = profile
        logger.info(f"[Registry] {connection_id} registered as {username!r}")
        return profile

    def remove(self, connection_id: str) -> Optional[UserProfile]:
        """Forget a connection entirely.

        Returns:
            The profile that was bound to it, if any, for the presence broadcast.
        """
        conn = self.connections.pop(connection_id, None)
        profile = self.profiles.pop(connection_id, None)
        if conn is not None:
            for room in list(conn.joined_rooms):
                self._unsubscribe(room, connection_id)
        logger.info(f"[Registry] Connection {connection_id} removed ({len(self.connections)} live)")
        return profile

    def clear(self) -> None:
        """Drop all state (server start/stop and tests)."""
        self.connections.clear()
        self.profiles.clear()
        self.room_subscribers.clear()

    # =========================================================================
    # Lookup
    # =========================================================================

    def lookup(self, connection_id: str) -> Optional[UserProfile]:
        return self.profiles.get(connection_id)

    def is_live(self, connection_id: Optional[str]) -> bool:
        return connection_id is not None and connection_id in self.connections

    def list_online(self) -> List[UserProfile]:
        return list(self.profiles.values())

    # =========================================================================
    # Room subscriptions
    # =========================================================================

    def join_room(self, connection_id: str, room: str) -> bool:
        """Subscribe a connection to a room.

        Returns:
            True if newly joined, False if it was already a member.
        """
        conn = self.connections.get(connection_id)
        if conn is None:
            raise NotFound(f"Connection {connection_id} is not open")
        if room in conn.joined_rooms:
            return False
        conn.joined_rooms[room] = None
        self.room_subscribers.setdefault(room, set()).add(connection_id)
        return True

    def leave_room(self, connection_id: str, room: str) -> bool:
        conn = self.connections.get(connection_id)
        if conn is None or room not in conn.joined_rooms:
            return False
        del conn.joined_rooms[room]
        self._unsubscribe(room, connection_id)
        return True

    def is_joined(self, connection_id: str, room: str) -> bool:
        conn = self.connections.get(connection_id)
        return conn is not None and room in conn.joined_rooms

    def joined_rooms(self, connection_id: str) -> List[str]:
        conn = self.connections.get(connection_id)
        return list(conn.joined_rooms) if conn else []

    def subscribers(self, room: str) -> List[str]:
        """Connection ids subscribed to ``room``, in connection order."""
        members = self.room_subscribers.get(room, set())
        return [cid for cid in self.connections if cid in members]

    def audience(self, channel_key: str) -> List[str]:
        """Connections allowed to see events for a channel.

        Room subscribers for a room, or the live participants of a DM key.
        """
        participants = participants_of(channel_key)
        if participants is None:
            return self.subscribers(channel_key)
        return [cid for cid in dict.fromkeys(participants) if cid in self.connections]

    def can_see(self, connection_id: str, channel_key: str) -> bool:
        participants = participants_of(channel_key)
        if participants is None:
            return self.is_joined(connection_id, channel_key)
        return connection_id in participants

    def _unsubscribe(self, room: str, connection_id: str) -> None:
        members = self.room_subscribers.get(room)
        if members is None:
            return
        members.discard(connection_id)
        if not members:
            del self.room_subscribers[room]

    # =========================================================================
    # Fan-out
    # =========================================================================

    async def send_to(self, connection_id: str, event: dict) -> bool:
        """Send one event to one connection. Returns False if it is gone."""
        conn = self.connections.get(connection_id)
        if conn is None:
            return False
        ok = await self._safe_send(conn.websocket, event)
        if not ok:
            self._cleanup_connections([connection_id])
        return ok

    async def broadcast_to(self, connection_ids: Iterable[str], event: dict) -> None:
        """Send an event to the given connections concurrently.

        Unknown ids are skipped; duplicates are sent once.
        """
        targets = [
            cid for cid in dict.fromkeys(connection_ids)
            if cid in self.connections
        ]
        if not targets:
            return

        results = await asyncio.gather(
            *[self._safe_send(self.connections[cid].websocket, event) for cid in targets],
            return_exceptions=True
        )

        failed = [cid for cid, ok in zip(targets, results) if ok is not True]
        self._cleanup_connections(failed)

    async def broadcast_all(self, event: dict) -> None:
        await self.broadcast_to(list(self.connections), event)

    async def broadcast_room(self, room: str, event: dict) -> None:
        await self.broadcast_to(self.subscribers(room), event)

    async def _safe_send(self, websocket: Any, event: dict) -> bool:
        """Send JSON to a transport, returning False instead of raising."""
        try:
            await websocket.send_json(event)
            return True
        except Exception as e:
            logger.debug(f"Failed to send to connection: {e}")
            return False

    def _cleanup_connections(self, failed: List[str]) -> None:
        """Stop fanning out to connections whose transport failed.

        The record itself is removed by the disconnect handler of that
        connection's own receive loop.
        """
        for connection_id in failed:
            conn = self.connections.get(connection_id)
            if conn is None:
                continue
            for room in list(conn.joined_rooms):
                self._unsubscribe(room, connection_id)
            logger.debug(f"Dropped dead connection {connection_id} from room fan-out")


# Global singleton instance used by all WebSocket handlers
registry = ConnectionRegistry()
