from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field

import asyncpg

from deskrelay.chat.listener import CHAT_TOPIC
from deskrelay.chat.models import ChatMessage
from deskrelay.core.config import Settings
from deskrelay.events.bus import EventBus, InProcessEventBus, SharedKeyEventBus
from deskrelay.events.shared import PostgresNotifyStorage
from deskrelay.feeds.base import ChangeFeed, ClaimDetector, NullChangeFeed
from deskrelay.feeds.postgres import PostgresChangeFeed
from deskrelay.ratings.listener import RATINGS_TOPIC
from deskrelay.ratings.models import Rating
from deskrelay.scheduling.expiry import ExpiryScheduler
from deskrelay.sharing.listener import SESSIONS_TOPIC, requests_topic
from deskrelay.sharing.models import ScreenShareSession, ShareKind, ShareRequest
from deskrelay.stores.base import EntityStore
from deskrelay.stores.memory import MemoryStore
from deskrelay.stores.postgres import PostgresStore
from deskrelay.tickets.listener import TICKETS_TOPIC
from deskrelay.tickets.manager import is_claim
from deskrelay.tickets.models import Ticket

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class SyncRuntime:
    """Process-wide wiring shared by every manager the service builds."""

    settings: Settings
    bus: EventBus
    scheduler: ExpiryScheduler
    tickets: EntityStore[Ticket]
    messages: EntityStore[ChatMessage]
    requests: dict[ShareKind, EntityStore[ShareRequest]]
    sessions: EntityStore[ScreenShareSession]
    ratings: EntityStore[Rating]
    pool: asyncpg.Pool | None = None
    notify_storage: PostgresNotifyStorage | None = None
    share_locks: dict[tuple[str, ShareKind], asyncio.Lock] = field(default_factory=dict)

    def share_lock(self, ticket_id: str, kind: ShareKind) -> asyncio.Lock:
        """Lock serializing share request creation on one ticket."""

        return self.share_locks.setdefault((ticket_id, kind), asyncio.Lock())

    def ticket_feed(self) -> ChangeFeed:
        """Feed for a long-lived ticket consumer; the caller starts and stops it."""

        return self._feed(self.tickets, claim_detector=is_claim)

    def request_feed(self, kind: ShareKind) -> ChangeFeed:
        return self._feed(self.requests[kind])

    def message_feed(self) -> ChangeFeed:
        return self._feed(self.messages)

    def rating_feed(self) -> ChangeFeed:
        return self._feed(self.ratings)

    def _feed(self, store: EntityStore, claim_detector: ClaimDetector | None = None) -> ChangeFeed:
        if self.pool is None or not isinstance(store, PostgresStore):
            return NullChangeFeed()
        dsn = self.settings.postgres_dsn
        return PostgresChangeFeed(
            lambda: asyncpg.connect(dsn=dsn),
            self.bus,
            topic=store.topic,
            channel=store.channel,
            max_retries=self.settings.change_feed_max_retries,
            backoff_seconds=self.settings.change_feed_backoff_seconds,
            max_backoff_seconds=self.settings.change_feed_max_backoff_seconds,
            claim_detector=claim_detector,
            loader=store.get,
        )

    async def close(self) -> None:
        await self.scheduler.close()
        if isinstance(self.bus, SharedKeyEventBus):
            self.bus.close()
        if self.notify_storage is not None:
            await self.notify_storage.close()
        if self.pool is not None:
            await self.pool.close()


def build_memory_runtime(settings: Settings, *, bus: EventBus | None = None) -> SyncRuntime:
    bus = bus or InProcessEventBus()
    return SyncRuntime(
        settings=settings,
        bus=bus,
        scheduler=ExpiryScheduler(),
        tickets=MemoryStore(bus, topic=TICKETS_TOPIC, model=Ticket),
        messages=MemoryStore(bus, topic=CHAT_TOPIC, model=ChatMessage),
        requests={kind: MemoryStore(bus, topic=requests_topic(kind), model=ShareRequest) for kind in ShareKind},
        sessions=MemoryStore(bus, topic=SESSIONS_TOPIC, model=ScreenShareSession),
        ratings=MemoryStore(bus, topic=RATINGS_TOPIC, model=Rating),
    )


async def build_postgres_runtime(settings: Settings) -> SyncRuntime:
    if not settings.postgres_dsn:
        raise ValueError("postgres_dsn is required for the PostgreSQL runtime")
    pool = await asyncpg.create_pool(dsn=settings.postgres_dsn, min_size=1, max_size=10)
    storage = PostgresNotifyStorage(pool)
    try:
        await storage.open()
        bus = SharedKeyEventBus(storage)
        runtime = SyncRuntime(
            settings=settings,
            bus=bus,
            scheduler=ExpiryScheduler(),
            tickets=PostgresStore(pool, bus, topic=TICKETS_TOPIC, model=Ticket),
            messages=PostgresStore(pool, bus, topic=CHAT_TOPIC, model=ChatMessage),
            requests={
                kind: PostgresStore(pool, bus, topic=requests_topic(kind), model=ShareRequest) for kind in ShareKind
            },
            sessions=PostgresStore(pool, bus, topic=SESSIONS_TOPIC, model=ScreenShareSession),
            ratings=PostgresStore(pool, bus, topic=RATINGS_TOPIC, model=Rating),
            pool=pool,
            notify_storage=storage,
        )
        for store in (
            runtime.tickets,
            runtime.messages,
            runtime.sessions,
            runtime.ratings,
            *runtime.requests.values(),
        ):
            await store.ensure_schema()
    except Exception:
        await storage.close()
        await pool.close()
        raise
    logger.info("PostgreSQL runtime ready")
    return runtime
