from __future__ import annotations

from datetime import datetime

from pydantic import Field

from deskrelay.entity import Entity
from deskrelay.participants import Participant

MIN_RATING = 0
MAX_RATING = 500


def rating_id_for(ticket_id: str) -> str:
    return f"RATING-{ticket_id}"


class Rating(Entity):
    """A customer's score for the engineer who resolved one ticket."""

    ticket_id: str
    created_by: Participant
    rating_for: Participant
    rating: int = Field(ge=MIN_RATING, le=MAX_RATING)
    notes: str | None = None
    updated_at: datetime | None = None

    def scope_key(self) -> str:
        return self.ticket_id

    def participant_ids(self) -> tuple[str, ...]:
        return (self.created_by.id, self.rating_for.id)
