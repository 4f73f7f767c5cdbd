from __future__ import annotations

from typing import Any, Generic

from deskrelay.core.errors import ConflictError, NotFoundError

from .base import E, EntityFilter, EntityStore


class MemoryStore(EntityStore[E], Generic[E]):
    """Store backed only by the in-process cache.

    Reads and guarded writes never suspend between check and write, so the
    status guard is atomic within one execution context.
    """

    async def _insert(self, entity: E) -> E:
        if entity.id in self._cache:
            raise ConflictError(f"{self._model.__name__} {entity.id} already exists")
        return entity.model_copy(deep=True)

    async def _replace(self, entity_id: str, changes: dict[str, Any], expected: tuple[str, ...] | None) -> E:
        current = self._cache.get(entity_id)
        if current is None:
            raise NotFoundError(f"{self._model.__name__} {entity_id} not found")
        if expected is not None and current.status_value() not in expected:
            raise self._stale(entity_id, current, expected)
        changes.pop("id", None)
        return current.model_copy(update=changes, deep=True)

    async def _remove(self, entity_id: str) -> None:
        if entity_id not in self._cache:
            raise NotFoundError(f"{self._model.__name__} {entity_id} not found")

    async def _remove_all(self) -> None:
        return None

    async def _fetch(self, entity_id: str) -> E | None:
        entity = self._cache.get(entity_id)
        return None if entity is None else entity.model_copy(deep=True)

    async def _fetch_all(self, entity_filter: EntityFilter) -> list[E]:
        matches = [entity for entity in self._cache.values() if entity_filter.matches(entity)]
        if entity_filter.newest_first:
            matches.reverse()
        end = None if entity_filter.limit is None else entity_filter.offset + entity_filter.limit
        return [entity.model_copy(deep=True) for entity in matches[entity_filter.offset : end]]
