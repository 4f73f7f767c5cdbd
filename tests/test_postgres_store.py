from __future__ import annotations

import json
from datetime import datetime, timezone
from unittest.mock import AsyncMock

import asyncpg
import pytest

from deskrelay.core.errors import ConflictError, NotFoundError, StaleWriteError, TransportError
from deskrelay.participants import Participant, ParticipantRole
from deskrelay.stores.base import EntityFilter
from deskrelay.stores.postgres import INLINE_RECORD_BYTES, PostgresStore
from deskrelay.tickets.models import Ticket
from deskrelay.tickets.state import TicketStatus

CUSTOMER = Participant(id="customer-1", role=ParticipantRole.CUSTOMER)
ENGINEER = Participant(id="engineer-1", role=ParticipantRole.ENGINEER)


class DummyAcquire:
    def __init__(self, connection):
        self._connection = connection

    async def __aenter__(self):
        return self._connection

    async def __aexit__(self, exc_type, exc, tb):
        return False


class DummyPool:
    def __init__(self, connection):
        self._connection = connection

    def acquire(self):
        return DummyAcquire(self._connection)


def _ticket(**overrides) -> Ticket:
    values = {
        "id": "TKT-1",
        "created_at": datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc),
        "problem_description": "Laptop will not boot",
        "created_by": CUSTOMER,
    }
    values.update(overrides)
    return Ticket(**values)


def _row(ticket: Ticket) -> dict:
    return {"payload": ticket.model_dump_json()}


@pytest.fixture
def connection():
    return AsyncMock()


@pytest.fixture
def store(connection, bus):
    return PostgresStore(DummyPool(connection), bus, topic="tickets", model=Ticket)


@pytest.mark.asyncio
async def test_ensure_schema_creates_table_and_trigger(store, connection):
    await store.ensure_schema()

    executed = [call.args[0] for call in connection.execute.await_args_list]
    assert connection.execute.await_count == 4
    assert any("CREATE TABLE IF NOT EXISTS tickets" in statement for statement in executed)
    assert any("pg_notify('tickets_changes'" in statement for statement in executed)
    assert any("CREATE TRIGGER tickets_notify_change" in statement for statement in executed)


@pytest.mark.asyncio
async def test_trigger_leaves_large_records_out_of_the_notification(store, connection):
    await store.ensure_schema()

    function = next(call.args[0] for call in connection.execute.await_args_list if "pg_notify" in call.args[0])
    assert f"octet_length(row_data.payload::text) <= {INLINE_RECORD_BYTES}" in function
    assert "'status', row_data.status" in function
    assert INLINE_RECORD_BYTES < 8000


def test_rejects_unsafe_table_names(connection, bus):
    with pytest.raises(ValueError):
        PostgresStore(DummyPool(connection), bus, topic="tickets; DROP TABLE x", model=Ticket)


@pytest.mark.asyncio
async def test_create_inserts_denormalized_columns(store, connection):
    ticket = _ticket()
    connection.fetchrow = AsyncMock(return_value=_row(ticket))

    created = await store.create(ticket)

    args = connection.fetchrow.await_args.args
    assert "INSERT INTO tickets" in args[0]
    assert args[1:5] == ("TKT-1", "waiting", "TKT-1", ["customer-1"])
    assert json.loads(args[5])["problem_description"] == "Laptop will not boot"
    assert created == ticket
    assert store.cached("TKT-1") == ticket


@pytest.mark.asyncio
async def test_guarded_update_sends_patch_and_expected_status(store, connection):
    current = _ticket()
    claimed_at = datetime(2024, 5, 1, 12, 5, tzinfo=timezone.utc)
    claimed = _ticket(status=TicketStatus.IN_PROGRESS, assigned_to=ENGINEER, claimed_at=claimed_at)
    connection.fetchrow = AsyncMock(side_effect=[_row(current), _row(claimed)])

    updated = await store.update(
        "TKT-1",
        {"status": TicketStatus.IN_PROGRESS, "assigned_to": ENGINEER, "claimed_at": claimed_at},
        expected_status=TicketStatus.WAITING,
    )

    args = connection.fetchrow.await_args_list[1].args
    assert "UPDATE tickets" in args[0]
    assert set(json.loads(args[2])) == {"status", "assigned_to", "claimed_at"}
    assert args[3] == "in-progress"
    assert args[5] == ["customer-1", "engineer-1"]
    assert args[6] == ["waiting"]
    assert updated.assigned_to == ENGINEER


@pytest.mark.asyncio
async def test_guarded_update_losing_race_raises_stale_write(store, connection):
    waiting = _ticket()
    claimed = _ticket(status=TicketStatus.IN_PROGRESS, assigned_to=ENGINEER, claimed_at=waiting.created_at)
    connection.fetchrow = AsyncMock(side_effect=[_row(waiting), None, _row(claimed)])

    with pytest.raises(StaleWriteError) as exc:
        await store.update("TKT-1", {"status": TicketStatus.IN_PROGRESS}, expected_status=TicketStatus.WAITING)

    assert exc.value.current.status is TicketStatus.IN_PROGRESS


@pytest.mark.asyncio
async def test_update_missing_row_raises_not_found(store, connection):
    connection.fetchrow = AsyncMock(return_value=None)

    with pytest.raises(NotFoundError):
        await store.update("TKT-404", {"summary": "x"})


@pytest.mark.asyncio
async def test_list_passes_filters_and_ordering(store, connection):
    connection.fetch = AsyncMock(return_value=[_row(_ticket())])

    tickets = await store.list(
        EntityFilter(statuses=(TicketStatus.WAITING,), participant_id="customer-1", newest_first=True, limit=10)
    )

    args = connection.fetch.await_args.args
    assert "ORDER BY seq DESC" in args[0]
    assert args[1:] == (["waiting"], None, "customer-1", 10, 0)
    assert [ticket.id for ticket in tickets] == ["TKT-1"]


@pytest.mark.asyncio
async def test_get_falls_back_to_cache_when_unreachable(store, connection):
    ticket = _ticket()
    connection.fetchrow = AsyncMock(return_value=_row(ticket))
    await store.create(ticket)
    connection.fetchrow = AsyncMock(side_effect=OSError("connection refused"))

    assert await store.get("TKT-1") == ticket
    with pytest.raises(TransportError):
        await store.get("TKT-2")


@pytest.mark.asyncio
async def test_row_payload_may_be_decoded_mapping(store, connection):
    ticket = _ticket()
    connection.fetchrow = AsyncMock(return_value={"payload": json.loads(ticket.model_dump_json())})

    assert await store.get("TKT-1") == ticket


@pytest.mark.asyncio
async def test_duplicate_insert_raises_conflict(store, connection):
    connection.fetchrow = AsyncMock(side_effect=asyncpg.UniqueViolationError("duplicate key value"))

    with pytest.raises(ConflictError):
        await store.create(_ticket())
    assert store.cached("TKT-1") is None


@pytest.mark.asyncio
async def test_clear_deletes_rows_and_announces_once(bus, store, connection):
    events = []
    bus.subscribe_local("tickets", events.append)
    ticket = _ticket()
    connection.fetchrow = AsyncMock(return_value=_row(ticket))
    await store.create(ticket)

    await store.clear()

    assert connection.execute.await_args.args[0].strip() == "DELETE FROM tickets"
    assert [event.type for event in events] == ["created", "cleared"]
    assert store.cached("TKT-1") is None
