"""Python chat client: pure session reducers and a WebSocket session driver."""
from .session import ChatSession
from .state import ClientMessage, MessageStatus, Notification, SessionState

__all__ = ["ChatSession", "ClientMessage", "MessageStatus", "Notification", "SessionState"]
