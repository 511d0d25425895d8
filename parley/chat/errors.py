"""Error taxonomy for chat operations.

Every error is local to the single inbound event that caused it. The
WebSocket loop converts a ``ChatError`` into an ``error`` event addressed to
the originating connection only; the connection itself stays open.
"""
from typing import Optional


class ChatError(Exception):
    """Base class for errors reported back to a single connection.

    Attributes:
        code: Stable machine-readable code sent on the wire.
        message_id: Message the error refers to, when there is one.
    """

    code = "chat_error"

    def __init__(self, message: str, *, message_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.message_id = message_id

    def to_event(self) -> dict:
        event = {"type": "error", "code": self.code, "error": str(self)}
        if self.message_id:
            event["messageId"] = self.message_id
        return event


class InvalidInput(ChatError):
    """Malformed or empty intent (empty username, empty body, bad schema)."""
    code = "invalid_input"


class InvalidParticipants(InvalidInput):
    """A DM channel key cannot be derived from the given identifiers."""
    code = "invalid_participants"


class NotFound(ChatError):
    code = "not_found"


class UnknownRecipient(NotFound):
    """The DM recipient has no live connection."""
    code = "unknown_recipient"


class NotJoined(ChatError):
    """The sender has not joined the room it is addressing."""
    code = "not_joined"


class PersistenceFailure(ChatError):
    """The storage call failed; fan-out may still have happened."""
    code = "persistence_failure"
