from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from deskrelay.events.bus import InProcessEventBus
from deskrelay.participants import Participant, ParticipantRole
from deskrelay.scheduling.expiry import ExpiryScheduler
from deskrelay.stores.base import EntityFilter
from deskrelay.stores.memory import MemoryStore


class FakeClock:
    """Manually advanced clock returning timezone-aware datetimes."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def bus() -> InProcessEventBus:
    return InProcessEventBus()


@pytest.fixture
def customer() -> Participant:
    return Participant(id="customer-1", role=ParticipantRole.CUSTOMER, name="Casey")


@pytest.fixture
def engineer() -> Participant:
    return Participant(id="engineer-1", role=ParticipantRole.ENGINEER, name="Eden")


@pytest.fixture
def other_engineer() -> Participant:
    return Participant(id="engineer-2", role=ParticipantRole.ENGINEER, name="Emery")


@pytest.fixture
async def scheduler(clock):
    expiry = ExpiryScheduler(clock=clock)
    yield expiry
    await expiry.close()


class SuspendingMemoryStore(MemoryStore):
    """Memory store that yields to the event loop after every read, like a networked store."""

    async def _fetch(self, entity_id: str):
        entity = await super()._fetch(entity_id)
        await asyncio.sleep(0)
        return entity

    async def _fetch_all(self, entity_filter: EntityFilter):
        entities = await super()._fetch_all(entity_filter)
        await asyncio.sleep(0)
        return entities


@pytest.fixture
def suspending_store(bus):
    def factory(topic: str, model):
        return SuspendingMemoryStore(bus, topic=topic, model=model)

    return factory
