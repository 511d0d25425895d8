"""Message router: persist inbound intents and fan them out.

Every send is fire-and-forget from the sender's point of view. The sender
learns about success through a ``message_delivered`` event addressed only to
it, after its own copy of the fan-out event.

Recipient sets:
    - Room messages: every connection subscribed to the room, sender included,
      so the echo can supersede the sender's optimistic copy.
    - DM messages: the sender and the recipient (when live).
    - Reactions and read receipts: the audience of the message's channel,
      never a global broadcast, so DM activity does not leak.

Persistence failures:
    Availability wins over durability. If the insert fails the message is
    still fanned out, the delivery ack is withheld, and the sender gets an
    ``error`` event with code ``persistence_failure`` and the message id.

Known limitation:
    A DM to a recipient with no live connection is persisted and echoed to
    the sender but never delivered; connection ids are not reused, so there
    is nothing to replay it to later. The sender is told with an
    ``unknown_recipient`` error event.
"""
import logging
from typing import List, Optional

from .errors import InvalidInput, NotJoined, PersistenceFailure, UnknownRecipient
from .identity import channel_key, participants_of
from .registry import ConnectionRegistry
from .schemas import (
    Attachment,
    ChatMessage,
    UserProfile,
    delivered_event,
    message_event,
    reaction_event,
    read_receipt_event,
)
from .store import ChatStore

logger = logging.getLogger(__name__)

DEFAULT_MAX_BODY_LENGTH = 4000
MAX_REACTION_LENGTH = 32


class MessageRouter:
    """Routes send, react and read intents for one server instance."""

    def __init__(
        self,
        registry: ConnectionRegistry,
        store: ChatStore,
        max_body_length: int = DEFAULT_MAX_BODY_LENGTH,
    ) -> None:
        self.registry = registry
        self.store = store
        self.max_body_length = max_body_length

    # =========================================================================
    # Sends
    # =========================================================================

    async def send_room_message(self, connection_id: str, room: str, body: str) -> ChatMessage:
        """Persist and broadcast a text message to a room.

        Raises:
            InvalidInput: Empty or oversized body, or sender not registered.
            NotJoined: Sender has not joined ``room``.
        """
        sender = self._sender(connection_id)
        text = self._clean_body(body)
        self._require_joined(connection_id, room)

        message = self._new_message(sender, room, body=text)
        return await self._publish(message, self.registry.subscribers(room))

    async def send_direct_message(
        self,
        connection_id: str,
        recipient_id: str,
        body: Optional[str] = None,
        attachment: Optional[Attachment] = None,
    ) -> ChatMessage:
        """Persist a DM and deliver it to both participants.

        Exactly one of ``body`` and ``attachment`` is used; file messages carry
        no body.

        Raises:
            InvalidInput: Empty body, or sender not registered.
            InvalidParticipants: ``recipient_id`` cannot form a DM key.
        """
        sender = self._sender(connection_id)
        if attachment is not None:
            attachment = self._clean_attachment(attachment)
            text = None
        else:
            text = self._clean_body(body)
        key = channel_key(connection_id, recipient_id)

        recipient_live = self.registry.is_live(recipient_id)
        message = self._new_message(
            sender, key, body=text, attachment=attachment,
            is_private=True, receiver_id=recipient_id,
        )
        audience = [connection_id]
        if recipient_live:
            audience.append(recipient_id)

        await self._publish(message, audience)

        if not recipient_live:
            logger.info(f"[Router] DM {message.id} not delivered: {recipient_id} is offline")
            await self.registry.send_to(
                connection_id,
                UnknownRecipient(
                    f"Recipient {recipient_id} is not connected; message was not delivered",
                    message_id=message.id,
                ).to_event(),
            )
        return message

    async def send_file(
        self,
        connection_id: str,
        attachment: Attachment,
        *,
        room: Optional[str] = None,
        recipient_id: Optional[str] = None,
        is_private: bool = False,
    ) -> ChatMessage:
        """Share an uploaded file with a room or a DM partner."""
        if is_private:
            if not recipient_id:
                raise InvalidInput("Private file messages require receiverId")
            return await self.send_direct_message(
                connection_id, recipient_id, attachment=attachment
            )

        sender = self._sender(connection_id)
        if not room:
            raise InvalidInput("File messages require a room")
        attachment = self._clean_attachment(attachment)
        self._require_joined(connection_id, room)

        message = self._new_message(sender, room, attachment=attachment)
        return await self._publish(message, self.registry.subscribers(room))

    # =========================================================================
    # Reactions and read receipts
    # =========================================================================

    async def react(self, connection_id: str, message_id: str, symbol: str) -> bool:
        """Add the sender's reaction to a message.

        Unknown messages, and messages in channels the sender cannot see, are
        ignored. Re-reacting with the same symbol changes nothing.

        Returns:
            True if the reaction was added and broadcast.
        """
        sender = self._sender(connection_id)
        symbol = (symbol or "").strip()
        if not symbol or len(symbol) > MAX_REACTION_LENGTH:
            raise InvalidInput("Reaction must be a short non-empty symbol")

        message = self._visible_message(connection_id, message_id)
        if message is None:
            return False
        if not self.store.add_reaction(message.id, symbol, sender.username):
            return False

        reactions = self.store.get_reactions(message.id)
        await self.registry.broadcast_to(
            self.registry.audience(message.channelKey),
            reaction_event(message.id, symbol, sender.username, reactions),
        )
        return True

    async def mark_read(self, connection_id: str, message_id: str) -> bool:
        """Record that the sender has read a message.

        Returns:
            True if the reader was added and broadcast.
        """
        sender = self._sender(connection_id)
        message = self._visible_message(connection_id, message_id)
        if message is None:
            return False
        if not self.store.add_reader(message.id, sender.username):
            return False

        read_by = self.store.get_read_by(message.id)
        await self.registry.broadcast_to(
            self.registry.audience(message.channelKey),
            read_receipt_event(message.id, sender.username, read_by),
        )
        return True

    # =========================================================================
    # History
    # =========================================================================

    def recent_messages(self, connection_id: str, channel: str, limit: int) -> List[ChatMessage]:
        """Return recent history for a channel the connection can see."""
        if not self.registry.can_see(connection_id, channel):
            if participants_of(channel) is not None:
                raise InvalidInput(f"Not a participant of {channel}")
            raise NotJoined(f"Join room {channel!r} to read its history")
        return self.store.list_messages(channel, limit)

    # =========================================================================
    # Internal
    # =========================================================================

    async def _publish(self, message: ChatMessage, audience: List[str]) -> ChatMessage:
        """Persist, fan out, then ack the sender.

        The state sequence is Created -> Persisted -> Delivered.
        """
        persisted = True
        try:
            self.store.insert_message(message)
        except PersistenceFailure as e:
            persisted = False
            logger.error(f"[Router] Message {message.id} not persisted, fanning out anyway: {e}")

        await self.registry.broadcast_to(audience, message_event(message))
        logger.info(
            f"[Router] {message.senderId} -> {message.channelKey} "
            f"({len(audience)} recipient(s), id={message.id})"
        )

        if not persisted:
            await self.registry.send_to(
                message.senderId,
                PersistenceFailure(
                    "Message was broadcast but could not be saved",
                    message_id=message.id,
                ).to_event(),
            )
            return message

        try:
            self.store.mark_delivered(message.id)
        except PersistenceFailure as e:
            logger.warning(f"[Router] Could not flag {message.id} delivered: {e}")
        message.delivered = True
        await self.registry.send_to(message.senderId, delivered_event(message.id))
        return message

    def _sender(self, connection_id: str) -> UserProfile:
        profile = self.registry.lookup(connection_id)
        if profile is None:
            raise InvalidInput("Send user_join before other events")
        return profile

    def _require_joined(self, connection_id: str, room: str) -> None:
        if not self.registry.is_joined(connection_id, room):
            raise NotJoined(f"Join room {room!r} before sending to it")

    def _clean_body(self, body: Optional[str]) -> str:
        text = (body or "").strip()
        if not text:
            raise InvalidInput("Message body is required")
        if len(text) > self.max_body_length:
            raise InvalidInput(f"Message body exceeds {self.max_body_length} characters")
        return text

    @staticmethod
    def _clean_attachment(attachment: Attachment) -> Attachment:
        if not attachment.url.strip() or not attachment.fileName.strip():
            raise InvalidInput("File messages require url and fileName")
        return attachment

    def _visible_message(self, connection_id: str, message_id: str) -> Optional[ChatMessage]:
        if not message_id:
            return None
        message = self.store.get_message(message_id)
        if message is None or not self.registry.can_see(connection_id, message.channelKey):
            return None
        return message

    @staticmethod
    def _new_message(
        sender: UserProfile,
        channel: str,
        *,
        body: Optional[str] = None,
        attachment: Optional[Attachment] = None,
        is_private: bool = False,
        receiver_id: Optional[str] = None,
    ) -> ChatMessage:
        return ChatMessage(
            channelKey=channel,
            isPrivate=is_private,
            senderId=sender.id,
            senderName=sender.username,
            senderAvatar=sender.avatar,
            receiverId=receiver_id,
            body=body,
            attachment=attachment,
        )
