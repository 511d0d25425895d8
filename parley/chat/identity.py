"""Deterministic DM channel identity.

A DM channel is never stored as an entity of its own. It is identified by a
key derived from the two participant connection ids::

    channel_key("b7", "a3") == channel_key("a3", "b7") == "dm_a3::b7"

The separator is reserved: an id containing it is rejected, so a key always
splits back into exactly the two ids it was built from.
"""
from typing import Optional, Tuple

from .errors import InvalidParticipants

DM_PREFIX = "dm_"
DM_SEPARATOR = "::"


def _check(connection_id: Optional[str]) -> str:
    if not connection_id or not isinstance(connection_id, str):
        raise InvalidParticipants("DM participants must be non-empty ids")
    if DM_SEPARATOR in connection_id:
        raise InvalidParticipants(
            f"Connection id {connection_id!r} contains reserved separator {DM_SEPARATOR!r}"
        )
    return connection_id


def channel_key(id_a: Optional[str], id_b: Optional[str]) -> str:
    """Return the canonical DM key for two connection ids, in either order.

    Raises:
        InvalidParticipants: If either id is empty or contains the separator.
    """
    low, high = sorted((_check(id_a), _check(id_b)))
    return f"{DM_PREFIX}{low}{DM_SEPARATOR}{high}"


def is_dm_key(key: Optional[str]) -> bool:
    return participants_of(key) is not None


def participants_of(key: Optional[str]) -> Optional[Tuple[str, str]]:
    """Invert :func:`channel_key`.

    Returns:
        The two ids in canonical order, or None if ``key`` is not a DM key.
        A self-DM resolves to the same id on both sides.
    """
    if not key or not key.startswith(DM_PREFIX):
        return None
    parts = key[len(DM_PREFIX):].split(DM_SEPARATOR)
    if len(parts) != 2 or not all(parts):
        return None
    low, high = parts
    if low > high:
        return None
    return low, high


def other_participant(key: str, me: str) -> Optional[str]:
    """Return the party in DM ``key`` that is not ``me``.

    For a self-DM this is ``me``. Returns None when ``me`` is not a
    participant or ``key`` is not a DM key.
    """
    participants = participants_of(key)
    if participants is None or me not in participants:
        return None
    low, high = participants
    return high if low == me else low
