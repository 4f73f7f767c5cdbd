from __future__ import annotations

import logging
from typing import Callable, Iterable
from uuid import uuid4

from deskrelay.core.errors import InvalidInputError, PermissionDeniedError
from deskrelay.events.envelope import ChangeEnvelope, EventType, now_ms
from deskrelay.feeds.base import ChangeFeed
from deskrelay.participants import Participant
from deskrelay.scheduling.clock import Clock, utc_now
from deskrelay.scheduling.typing import TypingIndicator, TypingThrottle
from deskrelay.stores.base import EntityFilter, EntityStore

from .listener import CHAT_TOPIC, ChatCallbacks, ChatListener
from .models import ChatMessage

logger = logging.getLogger(__name__)


class ChatManager:
    """Conversation between ``sender`` and ``receiver`` on one ticket.

    Typing signals travel as ``typing`` envelopes on the chat topic and are
    never persisted. Outgoing signals are throttled; incoming signals from
    the other participant feed :attr:`typing`.
    """

    def __init__(
        self,
        ticket_id: str,
        sender: Participant,
        receiver: Participant,
        store: EntityStore[ChatMessage],
        changes: ChangeFeed,
        *,
        throttle_seconds: float = 5.0,
        typing_expiry_seconds: float = 6.0,
        typing_check_interval_seconds: float = 1.0,
        clock: Clock = utc_now,
        on_message: Callable[[ChatMessage], None] | None = None,
        on_typing_change: Callable[[Participant, bool], None] | None = None,
    ) -> None:
        if sender.id == receiver.id:
            raise InvalidInputError("sender and receiver must differ")
        self.ticket_id = ticket_id
        self.sender = sender
        self.receiver = receiver
        self._store = store
        self._changes = changes
        self._clock = clock
        self._on_message = on_message
        self._throttle = TypingThrottle(throttle_seconds, clock=clock)
        self.typing = TypingIndicator(
            expiry_seconds=typing_expiry_seconds,
            check_interval_seconds=typing_check_interval_seconds,
            clock=clock,
            on_change=on_typing_change,
        )
        self._listener = ChatListener(
            store.bus,
            ChatCallbacks(on_created=self._on_created, on_typing=self._on_typing),
        )

    async def start(self) -> None:
        self._listener.start()
        self.typing.start()
        await self._changes.start(self.ticket_id)

    async def close(self) -> None:
        self._listener.stop()
        await self.typing.stop()
        await self._changes.stop()

    async def send(self, content: str) -> ChatMessage:
        text = content.strip()
        if not text:
            raise InvalidInputError("Message content must not be empty")
        message = ChatMessage(
            id=str(uuid4()),
            created_at=self._clock(),
            ticket_id=self.ticket_id,
            sender=self.sender,
            receiver=self.receiver,
            content=text,
        )
        created = await self._store.create(message)
        self._throttle.reset()
        return created

    async def get_recent(self, size: int = 50, offset: int = 0) -> list[ChatMessage]:
        """Return up to ``size`` messages, oldest first, skipping the newest ``offset``."""

        newest = await self._store.list(
            EntityFilter(scope_key=self.ticket_id, newest_first=True, limit=size, offset=offset)
        )
        return list(reversed(newest))

    async def count(self) -> int:
        return len(await self._store.list(EntityFilter(scope_key=self.ticket_id)))

    async def mark_as_read(self, message_ids: Iterable[str]) -> list[ChatMessage]:
        updated: list[ChatMessage] = []
        for message_id in message_ids:
            message = await self._store.require(message_id)
            if message.ticket_id != self.ticket_id:
                raise InvalidInputError(f"Message {message_id} belongs to another ticket")
            if message.receiver.id != self.sender.id:
                raise PermissionDeniedError(f"Message {message_id} was not sent to {self.sender.id}")
            if message.is_read:
                continue
            updated.append(
                await self._store.update(message_id, {"is_read": True, "read_at": self._clock()})
            )
        return updated

    def mark_is_typing(self) -> bool:
        """Signal that ``sender`` is typing; returns False when throttled."""

        if not self._throttle.should_emit():
            return False
        self._store.bus.publish(
            CHAT_TOPIC,
            ChangeEnvelope(
                type=EventType.TYPING.value,
                entity_id=self.ticket_id,
                entity=self.sender.model_dump(mode="json"),
                timestamp=now_ms(),
            ),
        )
        return True

    def is_receiver_typing(self) -> bool:
        return self.typing.is_typing(self.receiver.id)

    def _on_created(self, message: ChatMessage) -> None:
        if message.ticket_id != self.ticket_id:
            return
        if self._on_message is not None:
            self._on_message(message)

    def _on_typing(self, ticket_id: str, participant: Participant) -> None:
        if ticket_id != self.ticket_id or participant.id == self.sender.id:
            return
        self.typing.observe(participant)
