from __future__ import annotations

from datetime import datetime

from deskrelay.entity import Entity
from deskrelay.participants import Participant

from .state import ASSIGNED_STATUSES, BILLING_STATUSES, RESOLVED_STATUSES, TicketStatus

SUMMARY_LENGTH = 50


def summarize(problem_description: str) -> str:
    text = problem_description.strip()
    if len(text) <= SUMMARY_LENGTH:
        return text
    return text[:SUMMARY_LENGTH] + "..."


class Ticket(Entity):
    """Support ticket opened by a customer and worked by one engineer."""

    status: TicketStatus = TicketStatus.WAITING
    problem_description: str
    summary: str = ""
    created_by: Participant
    assigned_to: Participant | None = None
    claimed_at: datetime | None = None
    marked_at: datetime | None = None
    auto_complete_timeout_at: datetime | None = None
    resolved_at: datetime | None = None
    abandoned_at: datetime | None = None

    def scope_key(self) -> str:
        return self.id

    def participant_ids(self) -> tuple[str, ...]:
        if self.assigned_to is None:
            return (self.created_by.id,)
        return (self.created_by.id, self.assigned_to.id)

    def is_assigned_to(self, participant: Participant) -> bool:
        return self.assigned_to is not None and self.assigned_to.id == participant.id

    def auto_complete_due(self, now: datetime) -> bool:
        return (
            self.status is TicketStatus.AWAITING_CONFIRMATION
            and self.auto_complete_timeout_at is not None
            and now >= self.auto_complete_timeout_at
        )

    def invariant_violations(self) -> list[str]:
        """Return human readable descriptions of broken lifecycle invariants."""

        problems: list[str] = []
        claimed_or_later = self.status is not TicketStatus.WAITING
        if claimed_or_later != (self.claimed_at is not None):
            problems.append("claimed_at must be set exactly when the ticket has been claimed")
        if claimed_or_later != (self.assigned_to is not None):
            problems.append("assigned_to must be set exactly when the ticket has been claimed")
        awaiting = self.status is TicketStatus.AWAITING_CONFIRMATION
        if awaiting != (self.auto_complete_timeout_at is not None):
            problems.append("auto_complete_timeout_at must be set exactly while awaiting confirmation")
        resolved = self.status in RESOLVED_STATUSES or self.status in BILLING_STATUSES
        if resolved != (self.resolved_at is not None):
            problems.append("resolved_at must be set exactly once the ticket is resolved")
        if self.status in ASSIGNED_STATUSES and self.assigned_to is None:
            problems.append("assigned tickets need an assignee")
        return problems
