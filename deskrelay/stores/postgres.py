from __future__ import annotations

import asyncio
import logging
import re
from contextlib import contextmanager
from typing import Any, Generic, Iterator, Mapping

import asyncpg

from deskrelay.core.errors import ConflictError, NotFoundError, TransportError
from deskrelay.events.bus import EventBus

from .base import E, EntityFilter, EntityStore

logger = logging.getLogger(__name__)

_IDENTIFIER_RE = re.compile(r"^[a-z_][a-z0-9_]*$")

# NOTIFY payloads must stay under 8000 bytes; larger records are re-read by the feed
INLINE_RECORD_BYTES = 6000

_TRANSPORT_ERRORS: tuple[type[BaseException], ...] = (
    OSError,
    asyncio.TimeoutError,
    asyncpg.PostgresConnectionError,
    asyncpg.InterfaceError,
)


@contextmanager
def translate_transport_errors(action: str) -> Iterator[None]:
    """Re-raise connectivity failures as :class:`TransportError`."""

    try:
        yield
    except _TRANSPORT_ERRORS as exc:
        raise TransportError(f"Remote store unreachable while trying to {action}") from exc


class PostgresStore(EntityStore[E], Generic[E]):
    """Store persisting one entity kind as JSONB documents in PostgreSQL.

    Status, scope and participant ids are denormalized into columns so that
    filters and the compare-and-set guard run inside the database. A trigger
    installed by :meth:`ensure_schema` announces every row change on the
    ``<table>_changes`` channel for :class:`~deskrelay.feeds.PostgresChangeFeed`.
    """

    def __init__(
        self,
        pool: asyncpg.Pool,
        bus: EventBus,
        *,
        topic: str,
        model: type[E],
        table: str | None = None,
    ) -> None:
        super().__init__(bus, topic=topic, model=model)
        table = table or topic
        if not _IDENTIFIER_RE.match(table):
            raise ValueError(f"Invalid table name: {table!r}")
        self._pool = pool
        self._table = table

    @property
    def table(self) -> str:
        return self._table

    @property
    def channel(self) -> str:
        return f"{self._table}_changes"

    def _sql(self, template: str) -> str:
        return template.format(table=self._table, channel=self.channel, inline_limit=INLINE_RECORD_BYTES)

    _CREATE_TABLE_SQL = """
    CREATE TABLE IF NOT EXISTS {table} (
        seq BIGSERIAL,
        id TEXT PRIMARY KEY,
        status TEXT,
        scope TEXT,
        participants TEXT[] NOT NULL DEFAULT '{{}}',
        payload JSONB NOT NULL,
        created_at TIMESTAMPTZ NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP
    )
    """

    _CREATE_NOTIFY_FUNCTION_SQL = """
    CREATE OR REPLACE FUNCTION {table}_notify_change() RETURNS trigger AS $$
    DECLARE
        row_data {table}%ROWTYPE;
    BEGIN
        IF TG_OP = 'DELETE' THEN
            row_data := OLD;
        ELSE
            row_data := NEW;
        END IF;
        PERFORM pg_notify('{channel}', json_build_object(
            'op', TG_OP,
            'id', row_data.id,
            'scope', row_data.scope,
            'participants', row_data.participants,
            'old_status', CASE WHEN TG_OP = 'UPDATE' THEN OLD.status ELSE NULL END,
            'status', row_data.status,
            'record', CASE
                WHEN octet_length(row_data.payload::text) <= {inline_limit} THEN row_data.payload
                ELSE NULL
            END,
            'timestamp', (extract(epoch FROM row_data.updated_at) * 1000)::bigint
        )::text);
        RETURN NULL;
    END;
    $$ LANGUAGE plpgsql
    """

    _DROP_TRIGGER_SQL = """
    DROP TRIGGER IF EXISTS {table}_notify_change ON {table}
    """

    _CREATE_TRIGGER_SQL = """
    CREATE TRIGGER {table}_notify_change
    AFTER INSERT OR UPDATE OR DELETE ON {table}
    FOR EACH ROW EXECUTE FUNCTION {table}_notify_change()
    """

    _INSERT_SQL = """
    INSERT INTO {table} (id, status, scope, participants, payload, created_at)
    VALUES ($1, $2, $3, $4, $5::jsonb, $6)
    RETURNING payload
    """

    _SELECT_SQL = """
    SELECT payload FROM {table} WHERE id = $1
    """

    _GUARDED_UPDATE_SQL = """
    UPDATE {table}
    SET payload = payload || $2::jsonb,
        status = $3,
        scope = $4,
        participants = $5,
        updated_at = CURRENT_TIMESTAMP
    WHERE id = $1
      AND ($6::text[] IS NULL OR status = ANY($6::text[]))
    RETURNING payload
    """

    _DELETE_SQL = """
    DELETE FROM {table} WHERE id = $1 RETURNING id
    """

    _DELETE_ALL_SQL = """
    DELETE FROM {table}
    """

    _LIST_SQL = """
    SELECT payload FROM {table}
    WHERE ($1::text[] IS NULL OR status = ANY($1::text[]))
      AND ($2::text IS NULL OR scope = $2)
      AND ($3::text IS NULL OR $3 = ANY(participants))
    ORDER BY seq {direction}
    LIMIT $4 OFFSET $5
    """

    async def ensure_schema(self) -> None:
        with translate_transport_errors(f"create the {self._table} schema"):
            async with self._pool.acquire() as connection:
                await connection.execute(self._sql(self._CREATE_TABLE_SQL))
                await connection.execute(self._sql(self._CREATE_NOTIFY_FUNCTION_SQL))
                await connection.execute(self._sql(self._DROP_TRIGGER_SQL))
                await connection.execute(self._sql(self._CREATE_TRIGGER_SQL))

    async def get(self, entity_id: str) -> E | None:
        try:
            return await super().get(entity_id)
        except TransportError:
            cached = self.cached(entity_id)
            if cached is None:
                raise
            logger.warning("Serving cached %s %s while the remote store is unreachable", self._topic, entity_id)
            return cached

    async def _insert(self, entity: E) -> E:
        with translate_transport_errors(f"create {self._topic} {entity.id}"):
            async with self._pool.acquire() as connection:
                try:
                    row = await connection.fetchrow(
                        self._sql(self._INSERT_SQL),
                        entity.id,
                        entity.status_value(),
                        entity.scope_key(),
                        list(entity.participant_ids()),
                        entity.model_dump_json(),
                        entity.created_at,
                    )
                except asyncpg.UniqueViolationError as exc:
                    raise ConflictError(f"{self._model.__name__} {entity.id} already exists") from exc
        if row is None:
            raise RuntimeError(f"Failed to insert {self._topic} {entity.id}")
        return self._row_to_entity(row)

    async def _replace(self, entity_id: str, changes: dict[str, Any], expected: tuple[str, ...] | None) -> E:
        current = await self._fetch(entity_id)
        if current is None:
            raise NotFoundError(f"{self._model.__name__} {entity_id} not found")
        changes.pop("id", None)
        merged = current.model_copy(update=changes)
        patch = merged.model_dump_json(include=set(changes))

        with translate_transport_errors(f"update {self._topic} {entity_id}"):
            async with self._pool.acquire() as connection:
                row = await connection.fetchrow(
                    self._sql(self._GUARDED_UPDATE_SQL),
                    entity_id,
                    patch,
                    merged.status_value(),
                    merged.scope_key(),
                    list(merged.participant_ids()),
                    None if expected is None else list(expected),
                )
        if row is not None:
            return self._row_to_entity(row)

        latest = await self._fetch(entity_id)
        if latest is None:
            raise NotFoundError(f"{self._model.__name__} {entity_id} not found")
        raise self._stale(entity_id, latest, expected or ())

    async def _remove(self, entity_id: str) -> None:
        with translate_transport_errors(f"delete {self._topic} {entity_id}"):
            async with self._pool.acquire() as connection:
                row = await connection.fetchrow(self._sql(self._DELETE_SQL), entity_id)
        if row is None:
            raise NotFoundError(f"{self._model.__name__} {entity_id} not found")

    async def _remove_all(self) -> None:
        with translate_transport_errors(f"clear {self._topic}"):
            async with self._pool.acquire() as connection:
                await connection.execute(self._sql(self._DELETE_ALL_SQL))

    async def _fetch(self, entity_id: str) -> E | None:
        with translate_transport_errors(f"read {self._topic} {entity_id}"):
            async with self._pool.acquire() as connection:
                row = await connection.fetchrow(self._sql(self._SELECT_SQL), entity_id)
        if row is None:
            return None
        return self._row_to_entity(row)

    async def _fetch_all(self, entity_filter: EntityFilter) -> list[E]:
        statuses = entity_filter.status_values
        sql = self._LIST_SQL.format(
            table=self._table,
            direction="DESC" if entity_filter.newest_first else "ASC",
        )
        with translate_transport_errors(f"list {self._topic}"):
            async with self._pool.acquire() as connection:
                rows = await connection.fetch(
                    sql,
                    None if statuses is None else list(statuses),
                    entity_filter.scope_key,
                    entity_filter.participant_id,
                    entity_filter.limit,
                    entity_filter.offset,
                )
        return [self._row_to_entity(row) for row in rows]

    def _row_to_entity(self, row: Mapping[str, Any]) -> E:
        payload = row["payload"]
        if isinstance(payload, (str, bytes)):
            return self._model.model_validate_json(payload)
        return self._model.model_validate(payload)
