from __future__ import annotations

from enum import Enum
from typing import Mapping, Sequence

from deskrelay.core.errors import ConflictError


class TicketStatus(str, Enum):
    """Canonical states of the ticket lifecycle."""

    WAITING = "waiting"
    IN_PROGRESS = "in-progress"
    AWAITING_CONFIRMATION = "awaiting-confirmation"
    COMPLETED = "completed"
    AUTO_COMPLETED = "auto-completed"
    PENDING_PAYMENT = "pending-payment"
    PAYMENT_FAILED = "payment-failed"


ACTIVE_STATUSES: tuple[TicketStatus, ...] = (
    TicketStatus.WAITING,
    TicketStatus.IN_PROGRESS,
    TicketStatus.AWAITING_CONFIRMATION,
)
ASSIGNED_STATUSES: tuple[TicketStatus, ...] = (
    TicketStatus.IN_PROGRESS,
    TicketStatus.AWAITING_CONFIRMATION,
)
RESOLVED_STATUSES: tuple[TicketStatus, ...] = (
    TicketStatus.COMPLETED,
    TicketStatus.AUTO_COMPLETED,
)
BILLING_STATUSES: tuple[TicketStatus, ...] = (
    TicketStatus.PENDING_PAYMENT,
    TicketStatus.PAYMENT_FAILED,
)


class TicketStateMachine:
    """Validate ticket status transitions."""

    _DEFAULT_TRANSITIONS: Mapping[TicketStatus, Sequence[TicketStatus]] = {
        TicketStatus.WAITING: (TicketStatus.IN_PROGRESS,),
        TicketStatus.IN_PROGRESS: (TicketStatus.AWAITING_CONFIRMATION, TicketStatus.WAITING),
        TicketStatus.AWAITING_CONFIRMATION: (
            TicketStatus.COMPLETED,
            TicketStatus.AUTO_COMPLETED,
            TicketStatus.IN_PROGRESS,
        ),
        TicketStatus.COMPLETED: (TicketStatus.PENDING_PAYMENT, TicketStatus.PAYMENT_FAILED),
        TicketStatus.AUTO_COMPLETED: (TicketStatus.PENDING_PAYMENT, TicketStatus.PAYMENT_FAILED),
        TicketStatus.PENDING_PAYMENT: (TicketStatus.PAYMENT_FAILED,),
        TicketStatus.PAYMENT_FAILED: (),
    }

    def __init__(self, transitions: Mapping[TicketStatus, Sequence[TicketStatus]] | None = None) -> None:
        self._transitions = transitions or self._DEFAULT_TRANSITIONS

    @classmethod
    def initial_state(cls) -> TicketStatus:
        return TicketStatus.WAITING

    def can_transition(self, current: TicketStatus, target: TicketStatus) -> bool:
        return target in self._transitions.get(current, ())

    def sources(self, target: TicketStatus) -> tuple[TicketStatus, ...]:
        """Statuses from which ``target`` can be reached."""

        return tuple(status for status, allowed in self._transitions.items() if target in allowed)

    def assert_transition(self, current: TicketStatus, target: TicketStatus) -> None:
        if not self.can_transition(current, target):
            raise ConflictError(f"Invalid ticket status transition: {current.value} -> {target.value}")
