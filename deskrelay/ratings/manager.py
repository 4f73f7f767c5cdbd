from __future__ import annotations

import logging
import math
from typing import Callable

from opentelemetry import trace

from deskrelay.core.errors import ConflictError, InvalidInputError, PermissionDeniedError
from deskrelay.feeds.base import ChangeFeed
from deskrelay.participants import Participant
from deskrelay.scheduling.clock import Clock, utc_now
from deskrelay.stores.base import EntityFilter, EntityStore
from deskrelay.tickets.models import Ticket
from deskrelay.tickets.state import BILLING_STATUSES, RESOLVED_STATUSES

from .listener import RatingCallbacks, RatingListener
from .models import MAX_RATING, MIN_RATING, Rating, rating_id_for

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

RATEABLE_STATUSES = RESOLVED_STATUSES + BILLING_STATUSES


def _check_score(score: int) -> None:
    if not MIN_RATING <= score <= MAX_RATING:
        raise InvalidInputError(f"Rating must be between {MIN_RATING} and {MAX_RATING}")


class RatingManager:
    """Ratings left by customers on resolved tickets, seen by ``profile``.

    A ticket carries at most one rating, keyed by the ticket id, so two
    contexts rating the same ticket concurrently collide in the store.
    """

    def __init__(
        self,
        profile: Participant,
        store: EntityStore[Rating],
        tickets: EntityStore[Ticket],
        changes: ChangeFeed,
        *,
        clock: Clock = utc_now,
        on_rating: Callable[[Rating], None] | None = None,
    ) -> None:
        self.profile = profile
        self._store = store
        self._tickets = tickets
        self._changes = changes
        self._clock = clock
        self._on_rating = on_rating
        self._listener = RatingListener(
            store.bus,
            RatingCallbacks(on_created=self._observe, on_updated=self._observe),
        )

    async def start(self) -> None:
        self._listener.start()
        await self._changes.start(self.profile.id)

    async def close(self) -> None:
        self._listener.stop()
        await self._changes.stop()

    async def rate_ticket(self, ticket_id: str, score: int, notes: str | None = None) -> Rating:
        if not self.profile.is_customer:
            raise PermissionDeniedError("Only customers can rate tickets")
        _check_score(score)

        with tracer.start_as_current_span("ratings.create"):
            ticket = await self._tickets.require(ticket_id)
            if ticket.created_by.id != self.profile.id:
                raise PermissionDeniedError(f"Ticket {ticket_id} was not opened by {self.profile.id}")
            if ticket.status not in RATEABLE_STATUSES or ticket.assigned_to is None:
                raise ConflictError(f"Ticket {ticket_id} is {ticket.status.value} and cannot be rated yet")
            if await self._store.get(rating_id_for(ticket_id)) is not None:
                raise ConflictError(f"Ticket {ticket_id} has already been rated")

            rating = Rating(
                id=rating_id_for(ticket_id),
                created_at=self._clock(),
                ticket_id=ticket_id,
                created_by=self.profile,
                rating_for=ticket.assigned_to,
                rating=score,
                notes=_clean(notes),
            )
            created = await self._store.create(rating)
            logger.info("%s rated %s %d on %s", self.profile.id, ticket.assigned_to.id, score, ticket_id)
            return created

    async def update_rating(self, ticket_id: str, score: int, notes: str | None = None) -> Rating:
        _check_score(score)
        with tracer.start_as_current_span("ratings.update"):
            rating = await self._store.require(rating_id_for(ticket_id))
            if rating.created_by.id != self.profile.id:
                raise PermissionDeniedError(f"Rating on {ticket_id} was not left by {self.profile.id}")
            changes: dict[str, object] = {"rating": score, "updated_at": self._clock()}
            if notes is not None:
                changes["notes"] = _clean(notes)
            return await self._store.update(rating.id, changes)

    async def get_rating(self, ticket_id: str) -> Rating | None:
        return await self._store.get(rating_id_for(ticket_id))

    async def ratings_for(self, engineer_id: str) -> list[Rating]:
        """Ratings received by an engineer, newest first."""

        ratings = await self._store.list(EntityFilter(participant_id=engineer_id, newest_first=True))
        return [rating for rating in ratings if rating.rating_for.id == engineer_id]

    async def ratings_by(self, customer_id: str) -> list[Rating]:
        ratings = await self._store.list(EntityFilter(participant_id=customer_id, newest_first=True))
        return [rating for rating in ratings if rating.created_by.id == customer_id]

    async def average_rating(self, engineer_id: str) -> int:
        """Mean score rounded half up, or 0 when the engineer has no ratings."""

        ratings = await self.ratings_for(engineer_id)
        if not ratings:
            return 0
        return math.floor(sum(rating.rating for rating in ratings) / len(ratings) + 0.5)

    def _observe(self, rating: Rating) -> None:
        if self._on_rating is None or self.profile.id not in rating.participant_ids():
            return
        self._on_rating(rating)


def _clean(notes: str | None) -> str | None:
    if notes is None:
        return None
    return notes.strip() or None
