from datetime import datetime, timedelta, timezone

import pytest

from deskrelay.core.errors import ConflictError, NotFoundError, StaleWriteError
from deskrelay.events.envelope import ChangeEnvelope, EventType
from deskrelay.participants import Participant, ParticipantRole
from deskrelay.stores.base import EntityFilter
from deskrelay.stores.memory import MemoryStore
from deskrelay.tickets.models import Ticket
from deskrelay.tickets.state import TicketStatus

BASE = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
CUSTOMER = Participant(id="customer-1", role=ParticipantRole.CUSTOMER)


def _ticket(ticket_id: str, *, minutes: int = 0, status: TicketStatus = TicketStatus.WAITING) -> Ticket:
    return Ticket(
        id=ticket_id,
        created_at=BASE + timedelta(minutes=minutes),
        status=status,
        problem_description=f"Problem {ticket_id}",
        created_by=CUSTOMER,
    )


@pytest.fixture
def store(bus):
    return MemoryStore(bus, topic="tickets", model=Ticket)


@pytest.fixture
def published(bus):
    events: list[ChangeEnvelope] = []
    bus.subscribe_local("tickets", events.append)
    return events


@pytest.mark.asyncio
async def test_create_publishes_exactly_one_event(store, published):
    created = await store.create(_ticket("TKT-1"))

    assert created.id == "TKT-1"
    assert [(event.type, event.entity_id) for event in published] == [("created", "TKT-1")]


@pytest.mark.asyncio
async def test_cache_is_updated_before_the_event_is_published(bus, store):
    observed: list[TicketStatus | None] = []

    def on_event(envelope: ChangeEnvelope) -> None:
        cached = store.cached(envelope.entity_id)
        observed.append(None if cached is None else cached.status)

    bus.subscribe_local("tickets", on_event)
    await store.create(_ticket("TKT-1"))
    await store.update("TKT-1", {"status": TicketStatus.IN_PROGRESS})

    assert observed == [TicketStatus.WAITING, TicketStatus.IN_PROGRESS]


@pytest.mark.asyncio
async def test_update_of_unknown_id_fails_without_creating(store, published):
    with pytest.raises(NotFoundError):
        await store.update("TKT-404", {"summary": "x"})

    assert await store.get("TKT-404") is None
    assert published == []


@pytest.mark.asyncio
async def test_guarded_update_reports_current_entity(store, published):
    await store.create(_ticket("TKT-1", status=TicketStatus.IN_PROGRESS))

    with pytest.raises(StaleWriteError) as exc:
        await store.update("TKT-1", {"status": TicketStatus.IN_PROGRESS}, expected_status=TicketStatus.WAITING)

    assert exc.value.current.status is TicketStatus.IN_PROGRESS
    assert len(published) == 1


@pytest.mark.asyncio
async def test_update_uses_requested_event_type(store, published):
    await store.create(_ticket("TKT-1"))

    await store.update("TKT-1", {"status": TicketStatus.IN_PROGRESS}, event_type=EventType.CLAIMED)

    assert published[-1].type == "claimed"
    assert published[-1].entity["status"] == "in-progress"


@pytest.mark.asyncio
async def test_returned_entities_are_copies(store):
    await store.create(_ticket("TKT-1"))

    fetched = await store.get("TKT-1")
    fetched.summary = "mutated"

    assert (await store.get("TKT-1")).summary == ""


@pytest.mark.asyncio
async def test_list_orders_and_filters(store):
    for index in range(5):
        status = TicketStatus.WAITING if index % 2 == 0 else TicketStatus.IN_PROGRESS
        await store.create(_ticket(f"TKT-{index}", minutes=index, status=status))

    oldest_first = await store.list()
    newest_waiting = await store.list(EntityFilter(statuses=(TicketStatus.WAITING,), newest_first=True))
    page = await store.list(EntityFilter(newest_first=True, limit=2, offset=1))

    assert [ticket.id for ticket in oldest_first] == ["TKT-0", "TKT-1", "TKT-2", "TKT-3", "TKT-4"]
    assert [ticket.id for ticket in newest_waiting] == ["TKT-4", "TKT-2", "TKT-0"]
    assert [ticket.id for ticket in page] == ["TKT-3", "TKT-2"]


@pytest.mark.asyncio
async def test_list_filters_by_scope_and_participant(store):
    await store.create(_ticket("TKT-1"))

    assert [t.id for t in await store.list(EntityFilter(scope_key="TKT-1"))] == ["TKT-1"]
    assert await store.list(EntityFilter(scope_key="TKT-2")) == []
    assert [t.id for t in await store.list(EntityFilter(participant_id="customer-1"))] == ["TKT-1"]
    assert await store.list(EntityFilter(participant_id="engineer-1")) == []


@pytest.mark.asyncio
async def test_delete_publishes_deleted_event(store, published):
    await store.create(_ticket("TKT-1"))

    await store.delete("TKT-1")

    assert published[-1].type == "deleted"
    assert published[-1].entity is None
    with pytest.raises(NotFoundError):
        await store.require("TKT-1")


@pytest.mark.asyncio
async def test_duplicate_create_is_rejected(store):
    await store.create(_ticket("TKT-1"))

    with pytest.raises(ConflictError):
        await store.create(_ticket("TKT-1"))
