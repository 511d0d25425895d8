"""Room directory: the persisted set of named broadcast channels."""
import logging
from typing import Iterable, List, Tuple

from .errors import InvalidInput
from .identity import DM_PREFIX
from .schemas import Room
from .store import ChatStore

logger = logging.getLogger(__name__)

MAX_ROOM_NAME_LENGTH = 64


def normalize_room_name(raw: str) -> str:
    """Strip a room name and reject names that cannot be rooms.

    Names starting with the DM prefix are reserved for DM channel keys.
    """
    name = (raw or "").strip()
    if not name:
        raise InvalidInput("Room name is required")
    if len(name) > MAX_ROOM_NAME_LENGTH:
        raise InvalidInput(f"Room name exceeds {MAX_ROOM_NAME_LENGTH} characters")
    if name.startswith(DM_PREFIX):
        raise InvalidInput(f"Room names may not start with {DM_PREFIX!r}")
    return name


class RoomDirectory:
    """Upsert-on-join and listing over the chat store."""

    def __init__(self, store: ChatStore) -> None:
        self.store = store

    def ensure(self, name: str) -> Tuple[Room, bool]:
        """Return the room, creating it if needed.

        Safe to call repeatedly for the same name; only the first call
        reports ``created``.
        """
        room, created = self.store.upsert_room(normalize_room_name(name))
        if created:
            logger.info(f"[Rooms] Created room {room.name!r}")
        return room, created

    def exists(self, name: str) -> bool:
        return self.store.get_room(name) is not None

    def list_all(self) -> List[str]:
        return [room.name for room in self.store.list_rooms()]

    def seed(self, names: Iterable[str]) -> List[str]:
        """Ensure the configured default rooms exist. Returns the names created."""
        created = [name for name in names if self.ensure(name)[1]]
        if created:
            logger.info(f"[Rooms] Seeded default rooms: {', '.join(created)}")
        return created
