"""Presence and typing broadcasts.

Presence is always sent as a full snapshot (``user_list``) to every
connection, preceded by a ``user_online`` / ``user_offline`` delta. Typing
state is scoped: a ``typing_users`` event for a channel only goes to that
channel's audience.

The server relays typing state declared by clients and runs no timers of
its own. Clients clear their typing flag after an idle window. The one thing
the server must do itself is purge a disconnecting user from every typing set
and re-broadcast each affected channel.
"""
import logging
from typing import Dict, List

from .errors import InvalidInput, NotJoined
from .identity import participants_of
from .registry import ConnectionRegistry
from .schemas import (
    UserProfile,
    typing_event,
    user_list_event,
    user_offline_event,
    user_online_event,
)

logger = logging.getLogger(__name__)


class TypingTracker:
    """Channel key -> currently typing users.

    Entries are keyed by connection id so two connections claiming the same
    username are tracked separately; ``users()`` reports usernames in the
    order they started typing.
    """

    def __init__(self) -> None:
        self.typing: Dict[str, Dict[str, str]] = {}

    def set_typing(self, channel: str, connection_id: str, username: str, is_typing: bool) -> bool:
        """Update one user's typing flag. Returns True if the set changed."""
        current = self.typing.get(channel, {})
        if is_typing:
            if current.get(connection_id) == username:
                return False
            self.typing.setdefault(channel, {})[connection_id] = username
            return True
        if connection_id not in current:
            return False
        del current[connection_id]
        if not current:
            del self.typing[channel]
        return True

    def users(self, channel: str) -> List[str]:
        return list(self.typing.get(channel, {}).values())

    def purge(self, connection_id: str) -> List[str]:
        """Remove a connection from every channel. Returns the affected channels."""
        affected = [ch for ch, entries in self.typing.items() if connection_id in entries]
        for channel in affected:
            self.set_typing(channel, connection_id, "", False)
        return affected

    def clear(self) -> None:
        self.typing.clear()


class PresenceBroadcaster:
    """Sends presence snapshots and channel-scoped typing sets."""

    def __init__(self, registry: ConnectionRegistry, typing: TypingTracker) -> None:
        self.registry = registry
        self.typing = typing

    async def user_online(self, profile: UserProfile) -> None:
        await self.registry.broadcast_all(user_online_event(profile))
        await self.registry.broadcast_all(user_list_event(self.registry.list_online()))

    async def user_offline(self, profile: UserProfile) -> None:
        await self.registry.broadcast_all(user_offline_event(profile))
        await self.registry.broadcast_all(user_list_event(self.registry.list_online()))

    async def set_typing(self, connection_id: str, channel: str, is_typing: bool) -> None:
        """Record a typing flag and re-broadcast the channel's typing set.

        Raises:
            InvalidInput: If the connection has not joined as a user, or
                ``channel`` is a DM it does not take part in.
            NotJoined: If ``channel`` is a room the connection has not joined.
        """
        profile = self.registry.lookup(connection_id)
        if profile is None:
            raise InvalidInput("Send user_join before typing")
        if not self.registry.can_see(connection_id, channel):
            if participants_of(channel) is not None:
                raise InvalidInput(f"Not a participant of {channel}")
            raise NotJoined(f"Join room {channel!r} before typing in it")

        if self.typing.set_typing(channel, connection_id, profile.username, is_typing):
            await self._broadcast_channel(channel)

    async def leave_channel(self, connection_id: str, channel: str) -> None:
        """Drop a connection's typing flag for one channel (used on leave_room)."""
        if self.typing.set_typing(channel, connection_id, "", False):
            await self._broadcast_channel(channel)

    async def disconnect_cleanup(self, connection_id: str) -> List[str]:
        """Purge a departing connection from all typing sets.

        Must run after the connection is removed from the registry so the
        re-broadcast does not target it.

        Returns:
            The channels that were re-broadcast.
        """
        affected = self.typing.purge(connection_id)
        for channel in affected:
            await self._broadcast_channel(channel)
        if affected:
            logger.info(f"[Presence] Cleared typing for {connection_id} in {len(affected)} channel(s)")
        return affected

    async def _broadcast_channel(self, channel: str) -> None:
        await self.registry.broadcast_to(
            self.registry.audience(channel),
            typing_event(channel, self.typing.users(channel)),
        )


# Global typing state shared by all WebSocket handlers
typing_tracker = TypingTracker()
