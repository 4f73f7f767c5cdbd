from __future__ import annotations

from datetime import datetime
from enum import Enum

from deskrelay.entity import Entity
from deskrelay.participants import Participant


class ShareKind(str, Enum):
    CODE = "code"
    SCREEN = "screen"


class ShareRequestStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    EXPIRED = "expired"


class SessionStatus(str, Enum):
    INITIALIZING = "initializing"
    ACTIVE = "active"
    ENDED = "ended"


OPEN_SESSION_STATUSES: tuple[SessionStatus, ...] = (SessionStatus.INITIALIZING, SessionStatus.ACTIVE)


class ShareRequest(Entity):
    """Short-lived invitation to share code or a screen on a ticket.

    ``expires_at`` is fixed at creation; a pending request past that instant
    is expired whether or not anyone has written the transition yet.
    """

    kind: ShareKind
    ticket_id: str
    requested_by: Participant
    requested_from: Participant
    status: ShareRequestStatus = ShareRequestStatus.PENDING
    expires_at: datetime
    resolved_at: datetime | None = None
    auto_accept: bool = False

    def scope_key(self) -> str:
        return self.ticket_id

    def participant_ids(self) -> tuple[str, ...]:
        return (self.requested_by.id, self.requested_from.id)

    def is_overdue(self, now: datetime) -> bool:
        return self.status is ShareRequestStatus.PENDING and now > self.expires_at

    def involves_pair(self, requester_id: str, target_id: str) -> bool:
        return self.requested_by.id == requester_id and self.requested_from.id == target_id


class ScreenShareSession(Entity):
    """Screen-share session opened from an accepted screen request."""

    ticket_id: str
    request_id: str
    publisher: Participant
    subscriber: Participant
    status: SessionStatus = SessionStatus.INITIALIZING
    started_at: datetime | None = None
    ended_at: datetime | None = None

    def scope_key(self) -> str:
        return self.ticket_id

    def participant_ids(self) -> tuple[str, ...]:
        return (self.publisher.id, self.subscriber.id)
