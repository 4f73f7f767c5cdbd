from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Generic, Iterable, Mapping, Sequence, TypeVar

from deskrelay.core.errors import NotFoundError, StaleWriteError
from deskrelay.entity import Entity
from deskrelay.events.bus import EventBus
from deskrelay.events.envelope import ChangeEnvelope, EventType, now_ms

logger = logging.getLogger(__name__)

E = TypeVar("E", bound=Entity)


def _status_values(statuses: Iterable[str | Enum] | None) -> tuple[str, ...] | None:
    if statuses is None:
        return None
    return tuple(str(getattr(status, "value", status)) for status in statuses)


@dataclass(slots=True)
class EntityFilter:
    """Selection passed to :meth:`EntityStore.list`.

    Results come back in creation order unless ``newest_first`` is set.
    """

    statuses: Sequence[str | Enum] | None = None
    scope_key: str | None = None
    participant_id: str | None = None
    newest_first: bool = False
    limit: int | None = None
    offset: int = 0

    @property
    def status_values(self) -> tuple[str, ...] | None:
        return _status_values(self.statuses)

    def matches(self, entity: Entity) -> bool:
        statuses = self.status_values
        if statuses is not None and entity.status_value() not in statuses:
            return False
        if self.scope_key is not None and entity.scope_key() != self.scope_key:
            return False
        if self.participant_id is not None and self.participant_id not in entity.participant_ids():
            return False
        return True


class EntityStore(ABC, Generic[E]):
    """Sole writer of persisted state for one entity kind.

    Every successful mutation updates the local cache first and then
    publishes exactly one envelope on ``topic``.
    """

    def __init__(self, bus: EventBus, *, topic: str, model: type[E]) -> None:
        self._bus = bus
        self._topic = topic
        self._model = model
        self._cache: dict[str, E] = {}

    @property
    def bus(self) -> EventBus:
        return self._bus

    @property
    def topic(self) -> str:
        return self._topic

    @property
    def model(self) -> type[E]:
        return self._model

    def cached(self, entity_id: str) -> E | None:
        return self._cache.get(entity_id)

    async def create(self, entity: E) -> E:
        persisted = await self._insert(entity)
        self._cache[persisted.id] = persisted
        logger.info("Created %s %s", self._topic, persisted.id)
        self._publish(EventType.CREATED, persisted)
        return persisted

    async def update(
        self,
        entity_id: str,
        changes: Mapping[str, Any],
        *,
        expected_status: Iterable[str | Enum] | str | Enum | None = None,
        event_type: EventType = EventType.UPDATED,
    ) -> E:
        """Apply ``changes`` to an existing entity.

        When ``expected_status`` is given the write only happens if the
        persisted status is one of them; otherwise :class:`StaleWriteError`
        is raised carrying the current entity. Unknown ids raise
        :class:`NotFoundError`.
        """

        if isinstance(expected_status, (str, Enum)):
            expected_status = (expected_status,)
        expected = _status_values(expected_status)

        persisted = await self._replace(entity_id, dict(changes), expected)
        self._cache[persisted.id] = persisted
        logger.info("Updated %s %s (%s)", self._topic, entity_id, ", ".join(sorted(changes)))
        self._publish(event_type, persisted)
        return persisted

    async def delete(self, entity_id: str) -> None:
        await self._remove(entity_id)
        self._cache.pop(entity_id, None)
        logger.info("Deleted %s %s", self._topic, entity_id)
        self._bus.publish(
            self._topic,
            ChangeEnvelope(type=EventType.DELETED.value, entity_id=entity_id, entity=None, timestamp=now_ms()),
        )

    async def clear(self) -> None:
        """Delete every entity of this kind and announce it with one ``cleared`` event."""

        await self._remove_all()
        self._cache.clear()
        logger.warning("Cleared all %s", self._topic)
        self._bus.publish(
            self._topic,
            ChangeEnvelope(type=EventType.CLEARED.value, entity_id=self._topic, entity=None, timestamp=now_ms()),
        )

    async def get(self, entity_id: str) -> E | None:
        entity = await self._fetch(entity_id)
        if entity is None:
            self._cache.pop(entity_id, None)
            return None
        self._cache[entity.id] = entity
        return entity

    async def require(self, entity_id: str) -> E:
        entity = await self.get(entity_id)
        if entity is None:
            raise NotFoundError(f"{self._model.__name__} {entity_id} not found")
        return entity

    async def list(self, entity_filter: EntityFilter | None = None) -> list[E]:
        entities = await self._fetch_all(entity_filter or EntityFilter())
        for entity in entities:
            self._cache[entity.id] = entity
        return entities

    def _publish(self, event_type: EventType, entity: E) -> None:
        self._bus.publish(self._topic, ChangeEnvelope.for_entity(event_type, entity))

    def _stale(self, entity_id: str, current: E, expected: tuple[str, ...]) -> StaleWriteError:
        return StaleWriteError(
            f"{self._model.__name__} {entity_id} is {current.status_value()}, expected one of {', '.join(expected)}",
            current=current,
        )

    @abstractmethod
    async def _insert(self, entity: E) -> E:
        ...

    @abstractmethod
    async def _replace(self, entity_id: str, changes: dict[str, Any], expected: tuple[str, ...] | None) -> E:
        ...

    @abstractmethod
    async def _remove(self, entity_id: str) -> None:
        ...

    @abstractmethod
    async def _remove_all(self) -> None:
        ...

    @abstractmethod
    async def _fetch(self, entity_id: str) -> E | None:
        ...

    @abstractmethod
    async def _fetch_all(self, entity_filter: EntityFilter) -> list[E]:
        ...
