from __future__ import annotations

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable

from deskrelay.core.errors import TransportError
from deskrelay.entity import Entity
from deskrelay.events.bus import EventBus
from deskrelay.events.envelope import ChangeEnvelope, EventType, now_ms

logger = logging.getLogger(__name__)

ClaimDetector = Callable[[str | None, dict[str, Any]], bool]
EntityLoader = Callable[[str], Awaitable[Entity | None]]

_OPERATIONS: dict[str, EventType] = {
    "INSERT": EventType.CREATED,
    "UPDATE": EventType.UPDATED,
    "DELETE": EventType.DELETED,
}


class ChangeFeed(ABC):
    """Observes remote writes for one owning scope and re-publishes them."""

    @abstractmethod
    async def start(self, scope_key: str) -> None:
        ...

    @abstractmethod
    async def stop(self) -> None:
        ...


class NullChangeFeed(ChangeFeed):
    """Feed for stores that have no remote system of record."""

    def __init__(self) -> None:
        self.scope_key: str | None = None

    async def start(self, scope_key: str) -> None:
        self.scope_key = scope_key

    async def stop(self) -> None:
        self.scope_key = None


class NotificationChangeFeed(ChangeFeed):
    """Feed that turns row-change notifications into bus envelopes.

    A notification is a JSON object with ``op``, ``id``, ``scope``,
    ``participants``, ``old_status``, ``status``, ``record`` and
    ``timestamp``. Only rows whose scope or participants contain the started
    scope key are forwarded. ``record`` is omitted for rows too large to fit
    a notification; those are re-read through ``loader`` before publishing.
    Redelivered notifications are forwarded again; listeners are idempotent.
    """

    def __init__(
        self,
        bus: EventBus,
        *,
        topic: str,
        claim_detector: ClaimDetector | None = None,
        loader: EntityLoader | None = None,
    ) -> None:
        self._bus = bus
        self._topic = topic
        self._claim_detector = claim_detector
        self._loader = loader
        self._scope_key: str | None = None
        self._pending: set[asyncio.Task[None]] = set()

    @property
    def scope_key(self) -> str | None:
        return self._scope_key

    def handle_notification(self, payload: str) -> None:
        if self._scope_key is None:
            return
        try:
            message = json.loads(payload)
            operation = str(message["op"])
            entity_id = str(message["id"])
        except (ValueError, KeyError, TypeError):
            logger.warning("Dropping unreadable %s change notification", self._topic)
            return

        if not self._in_scope(message):
            return

        event_type = _OPERATIONS.get(operation)
        if event_type is None:
            logger.debug("Ignoring %s notification for %s", operation, entity_id)
            return

        record = message.get("record") if event_type is not EventType.DELETED else None
        if not isinstance(record, dict):
            record = None
        if event_type is EventType.UPDATED and self._claim_detector is not None:
            if self._claim_detector(message.get("old_status"), record or {"status": message.get("status")}):
                event_type = EventType.CLAIMED

        timestamp = int(message.get("timestamp") or now_ms())
        if record is None and event_type is not EventType.DELETED:
            self._load_later(event_type, entity_id, timestamp)
            return
        self._publish(event_type, entity_id, record, timestamp)

    async def drain(self) -> None:
        """Wait for records still being re-read after oversized notifications."""

        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def _cancel_pending(self) -> None:
        for task in list(self._pending):
            task.cancel()
        await self.drain()
        self._pending.clear()

    def _publish(self, event_type: EventType, entity_id: str, record: dict[str, Any] | None, timestamp: int) -> None:
        envelope = ChangeEnvelope(type=event_type.value, entity_id=entity_id, entity=record, timestamp=timestamp)
        logger.debug("Remote %s for %s %s", event_type.value, self._topic, entity_id)
        self._bus.publish(self._topic, envelope, broadcast=False)

    def _load_later(self, event_type: EventType, entity_id: str, timestamp: int) -> None:
        if self._loader is None:
            logger.warning(
                "Dropping %s notification for %s %s: no record attached", event_type.value, self._topic, entity_id
            )
            return
        task = asyncio.get_running_loop().create_task(
            self._load_and_publish(self._loader, event_type, entity_id, timestamp)
        )
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _load_and_publish(
        self, loader: EntityLoader, event_type: EventType, entity_id: str, timestamp: int
    ) -> None:
        try:
            entity = await loader(entity_id)
        except TransportError:
            logger.warning("Could not re-read %s %s after a change notification", self._topic, entity_id)
            return
        if entity is None:
            logger.debug("%s %s vanished before it could be re-read", self._topic, entity_id)
            return
        if self._scope_key is None:
            return
        self._publish(event_type, entity_id, entity.model_dump(mode="json"), timestamp)

    def _in_scope(self, message: dict[str, Any]) -> bool:
        if message.get("scope") == self._scope_key:
            return True
        participants = message.get("participants") or ()
        return self._scope_key in participants
