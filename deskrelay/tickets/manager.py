from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any
from uuid import uuid4

from opentelemetry import trace

from deskrelay.core.errors import (
    AlreadyClaimedError,
    ConflictError,
    InvalidInputError,
    NotFoundError,
    PermissionDeniedError,
    StaleWriteError,
)
from deskrelay.events.envelope import EventType
from deskrelay.feeds.base import ChangeFeed
from deskrelay.participants import Participant
from deskrelay.scheduling.clock import Clock, utc_now
from deskrelay.scheduling.expiry import ExpiryScheduler
from deskrelay.stores.base import EntityFilter, EntityStore

from .listener import TicketCallbacks, TicketListener
from .models import Ticket, summarize
from .state import (
    ACTIVE_STATUSES,
    ASSIGNED_STATUSES,
    BILLING_STATUSES,
    RESOLVED_STATUSES,
    TicketStateMachine,
    TicketStatus,
)

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


def is_claim(old_status: str | None, record: dict[str, Any]) -> bool:
    """Recognise a remote waiting -> in-progress update as a claim."""

    return old_status == TicketStatus.WAITING.value and record.get("status") == TicketStatus.IN_PROGRESS.value


def new_ticket_id() -> str:
    return f"TKT-{uuid4().hex[:12].upper()}"


class TicketManager:
    """Lifecycle verbs for the tickets visible to one participant.

    Every transition is a guarded write against the store, so concurrent
    contexts racing on the same ticket resolve to exactly one winner. The
    auto-complete timer is armed in every context that observes a ticket
    entering awaiting-confirmation; whichever fires first wins and the
    others become no-ops.
    """

    def __init__(
        self,
        profile: Participant,
        store: EntityStore[Ticket],
        changes: ChangeFeed,
        scheduler: ExpiryScheduler,
        *,
        auto_complete_timeout_seconds: float = 30 * 60,
        max_active_tickets: int = 3,
        clock: Clock = utc_now,
        state_machine: TicketStateMachine | None = None,
    ) -> None:
        self.profile = profile
        self._store = store
        self._changes = changes
        self._scheduler = scheduler
        self._timeout = timedelta(seconds=auto_complete_timeout_seconds)
        self._max_active = max_active_tickets
        self._clock = clock
        self._states = state_machine or TicketStateMachine()
        self._listener = TicketListener(
            store.bus,
            TicketCallbacks(
                on_created=self._reconcile,
                on_updated=self._reconcile,
                on_claimed=self._reconcile,
                on_deleted=self._forget,
                on_cleared=self._forget_all,
            ),
        )
        self._timer_keys: set[tuple[str, str]] = set()
        self._started = False

    @property
    def store(self) -> EntityStore[Ticket]:
        return self._store

    async def start(self) -> None:
        """Start observing remote changes and recover pending auto-completions."""

        if self._started:
            return
        self._listener.start()
        await self._changes.start(self.profile.id)
        self._started = True

        awaiting = await self._store.list(
            EntityFilter(statuses=(TicketStatus.AWAITING_CONFIRMATION,), participant_id=self.profile.id)
        )
        for ticket in awaiting:
            if ticket.auto_complete_due(self._clock()):
                await self.auto_complete(ticket.id)
            else:
                self._reconcile(ticket)
        logger.info("Ticket manager started for %s (%d awaiting confirmation)", self.profile.id, len(awaiting))

    async def close(self) -> None:
        self._listener.stop()
        self._forget_all()
        await self._changes.stop()
        self._started = False

    async def create_ticket(self, problem_description: str) -> Ticket:
        if not self.profile.is_customer:
            raise PermissionDeniedError("Only customers can open tickets")
        description = problem_description.strip()
        if not description:
            raise InvalidInputError("problem_description must not be empty")

        with tracer.start_as_current_span("tickets.create"):
            ticket = Ticket(
                id=new_ticket_id(),
                created_at=self._clock(),
                status=TicketStateMachine.initial_state(),
                problem_description=description,
                summary=summarize(description),
                created_by=self.profile,
            )
            return await self._store.create(ticket)

    async def get_ticket(self, ticket_id: str) -> Ticket:
        """Return a ticket, completing it first if its deadline already passed."""

        ticket = await self._store.require(ticket_id)
        if ticket.auto_complete_due(self._clock()):
            return await self.auto_complete(ticket_id)
        return ticket

    async def list_tickets(
        self,
        *,
        statuses: tuple[TicketStatus, ...] | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[Ticket]:
        """List tickets visible to this participant, newest first.

        Engineers also see every waiting ticket since those are up for grabs.
        Overdue tickets are auto-completed on the way out, so a page filtered
        to awaiting-confirmation may come back shorter than ``limit``.
        """

        if self.profile.is_engineer and statuses == (TicketStatus.WAITING,):
            participant_id = None
        else:
            participant_id = self.profile.id
        tickets = await self._settle(
            await self._store.list(
                EntityFilter(
                    statuses=statuses,
                    participant_id=participant_id,
                    newest_first=True,
                    limit=limit,
                    offset=offset,
                )
            )
        )
        if statuses is None:
            return tickets
        return [ticket for ticket in tickets if ticket.status in statuses]

    async def get_active_ticket(self) -> Ticket | None:
        tickets = await self._settle(
            await self._store.list(
                EntityFilter(statuses=ACTIVE_STATUSES, participant_id=self.profile.id, newest_first=True)
            )
        )
        return next((ticket for ticket in tickets if ticket.status in ACTIVE_STATUSES), None)

    async def claim(self, ticket_id: str) -> Ticket:
        if not self.profile.is_engineer:
            raise PermissionDeniedError("Only engineers can claim tickets")

        with tracer.start_as_current_span("tickets.claim"):
            ticket = await self._store.require(ticket_id)
            if ticket.status is not TicketStatus.WAITING:
                raise AlreadyClaimedError(f"Ticket {ticket_id} is already {ticket.status.value}")

            assigned = await self._settle(
                await self._store.list(EntityFilter(statuses=ASSIGNED_STATUSES, participant_id=self.profile.id))
            )
            active = [ticket for ticket in assigned if ticket.status in ASSIGNED_STATUSES]
            if len(active) >= self._max_active:
                raise ConflictError(f"Engineer {self.profile.id} already has {len(active)} active tickets")

            try:
                return await self._store.update(
                    ticket_id,
                    {
                        "status": TicketStatus.IN_PROGRESS,
                        "assigned_to": self.profile,
                        "claimed_at": self._clock(),
                    },
                    expected_status=TicketStatus.WAITING,
                    event_type=EventType.CLAIMED,
                )
            except StaleWriteError as exc:
                logger.info("Engineer %s lost the claim on %s", self.profile.id, ticket_id)
                raise AlreadyClaimedError(f"Ticket {ticket_id} was claimed by someone else") from exc

    async def mark_as_fixed(self, ticket_id: str) -> Ticket:
        with tracer.start_as_current_span("tickets.mark_as_fixed"):
            ticket = await self._store.require(ticket_id)
            self._require_assignee(ticket)
            self._states.assert_transition(ticket.status, TicketStatus.AWAITING_CONFIRMATION)

            now = self._clock()
            updated = await self._guarded(
                ticket,
                TicketStatus.AWAITING_CONFIRMATION,
                {"marked_at": now, "auto_complete_timeout_at": now + self._timeout},
            )
            self._reconcile(updated)
            return updated

    async def mark_still_broken(self, ticket_id: str) -> Ticket:
        """Send a ticket awaiting confirmation back to its engineer."""

        with tracer.start_as_current_span("tickets.mark_still_broken"):
            ticket = await self.get_ticket(ticket_id)
            self._require_creator(ticket)
            self._states.assert_transition(ticket.status, TicketStatus.IN_PROGRESS)

            updated = await self._guarded(
                ticket,
                TicketStatus.IN_PROGRESS,
                {"marked_at": None, "auto_complete_timeout_at": None},
            )
            self._reconcile(updated)
            return updated

    async def confirm(self, ticket_id: str) -> Ticket:
        """Customer confirms the fix.

        Confirming a ticket that the auto-complete timer already resolved is
        not an error; the resolved ticket is returned unchanged.
        """

        with tracer.start_as_current_span("tickets.confirm"):
            ticket = await self._store.require(ticket_id)
            self._require_creator(ticket)
            if ticket.status in RESOLVED_STATUSES:
                logger.debug("Ticket %s already resolved as %s", ticket_id, ticket.status.value)
                return ticket
            self._states.assert_transition(ticket.status, TicketStatus.COMPLETED)

            try:
                updated = await self._store.update(
                    ticket_id,
                    {
                        "status": TicketStatus.COMPLETED,
                        "resolved_at": self._clock(),
                        "auto_complete_timeout_at": None,
                    },
                    expected_status=TicketStatus.AWAITING_CONFIRMATION,
                )
            except StaleWriteError as exc:
                current = exc.current
                if isinstance(current, Ticket) and current.status in RESOLVED_STATUSES:
                    logger.debug("Confirmation of %s lost to %s", ticket_id, current.status.value)
                    return current
                raise
            self._reconcile(updated)
            return updated

    async def auto_complete(self, ticket_id: str) -> Ticket:
        """Complete a ticket whose confirmation window has elapsed.

        Safe to call any number of times from any context: if the ticket is
        no longer awaiting confirmation, or its deadline has not passed yet,
        the current ticket is returned untouched.
        """

        ticket = await self._store.require(ticket_id)
        if not ticket.auto_complete_due(self._clock()):
            return ticket

        try:
            updated = await self._store.update(
                ticket_id,
                {
                    "status": TicketStatus.AUTO_COMPLETED,
                    "resolved_at": self._clock(),
                    "auto_complete_timeout_at": None,
                },
                expected_status=TicketStatus.AWAITING_CONFIRMATION,
            )
        except StaleWriteError as exc:
            logger.debug("Auto-complete of %s skipped: %s", ticket_id, exc)
            return exc.current if isinstance(exc.current, Ticket) else await self._store.require(ticket_id)
        logger.info("Ticket %s auto-completed", ticket_id)
        self._reconcile(updated)
        return updated

    async def abandon(self, ticket_id: str) -> Ticket:
        """Engineer hands an in-progress ticket back to the waiting queue."""

        with tracer.start_as_current_span("tickets.abandon"):
            ticket = await self._store.require(ticket_id)
            self._require_assignee(ticket)
            self._states.assert_transition(ticket.status, TicketStatus.WAITING)
            return await self._guarded(
                ticket,
                TicketStatus.WAITING,
                {
                    "assigned_to": None,
                    "claimed_at": None,
                    "marked_at": None,
                    "auto_complete_timeout_at": None,
                    "abandoned_at": self._clock(),
                },
            )

    async def record_payment_outcome(self, ticket_id: str, status: TicketStatus) -> Ticket:
        """Move a resolved ticket into a billing status."""

        if status not in BILLING_STATUSES:
            raise InvalidInputError(f"{status.value} is not a billing status")
        ticket = await self._store.require(ticket_id)
        self._states.assert_transition(ticket.status, status)
        return await self._guarded(ticket, status, {})

    async def _settle(self, tickets: list[Ticket]) -> list[Ticket]:
        now = self._clock()
        settled: list[Ticket] = []
        for ticket in tickets:
            if ticket.auto_complete_due(now):
                ticket = await self.auto_complete(ticket.id)
            settled.append(ticket)
        return settled

    async def _guarded(self, ticket: Ticket, target: TicketStatus, changes: dict[str, Any]) -> Ticket:
        try:
            return await self._store.update(
                ticket.id,
                {"status": target, **changes},
                expected_status=ticket.status,
            )
        except StaleWriteError as exc:
            raise ConflictError(
                f"Ticket {ticket.id} changed while moving to {target.value}"
            ) from exc

    def _require_assignee(self, ticket: Ticket) -> None:
        if not self.profile.is_engineer or not ticket.is_assigned_to(self.profile):
            raise PermissionDeniedError(f"Ticket {ticket.id} is not assigned to {self.profile.id}")

    def _require_creator(self, ticket: Ticket) -> None:
        if ticket.created_by.id != self.profile.id:
            raise PermissionDeniedError(f"Ticket {ticket.id} was not opened by {self.profile.id}")

    def _reconcile(self, ticket: Ticket) -> None:
        if self.profile.id not in ticket.participant_ids():
            return
        key = ("ticket", ticket.id)
        deadline = ticket.auto_complete_timeout_at
        if ticket.status is TicketStatus.AWAITING_CONFIRMATION and deadline is not None:
            armed = self._scheduler.armed(key)
            if armed is not None and armed.deadline == deadline:
                return
            self._timer_keys.add(key)
            self._scheduler.arm(deadline, lambda: self._on_deadline(ticket.id), key=key)
        else:
            self._scheduler.cancel_key(key)
            self._timer_keys.discard(key)

    def _forget(self, ticket_id: str) -> None:
        key = ("ticket", ticket_id)
        self._scheduler.cancel_key(key)
        self._timer_keys.discard(key)

    def _forget_all(self) -> None:
        for key in list(self._timer_keys):
            self._scheduler.cancel_key(key)
        self._timer_keys.clear()

    async def _on_deadline(self, ticket_id: str) -> None:
        self._timer_keys.discard(("ticket", ticket_id))
        try:
            ticket = await self.auto_complete(ticket_id)
        except NotFoundError:
            logger.debug("Ticket %s vanished before its auto-complete deadline", ticket_id)
            return
        if ticket.status is TicketStatus.AWAITING_CONFIRMATION:
            # Timer fired a hair before the persisted deadline
            self._reconcile(ticket)
