"""Real-time chat: connection registry, room directory, DM identity,
message routing, presence/typing and the WebSocket endpoint."""
