from __future__ import annotations

import asyncio
import logging
from datetime import timedelta
from uuid import uuid4

from opentelemetry import trace

from deskrelay.core.errors import (
    AlreadyResolvedError,
    ConflictError,
    InvalidInputError,
    NotFoundError,
    PermissionDeniedError,
    StaleWriteError,
)
from deskrelay.feeds.base import ChangeFeed
from deskrelay.participants import Participant
from deskrelay.scheduling.clock import Clock, utc_now
from deskrelay.scheduling.expiry import ExpiryScheduler
from deskrelay.stores.base import EntityFilter, EntityStore

from .listener import ShareRequestCallbacks, ShareRequestListener
from .models import (
    OPEN_SESSION_STATUSES,
    ScreenShareSession,
    SessionStatus,
    ShareKind,
    ShareRequest,
    ShareRequestStatus,
)

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

DEFAULT_TTL_SECONDS: dict[ShareKind, float] = {
    ShareKind.CODE: 5,
    ShareKind.SCREEN: 10,
}


class ShareRequestManager:
    """Ephemeral share requests of one kind on one ticket, seen by ``profile``.

    Requests live for ``ttl_seconds``. Expiry is applied eagerly by a timer
    armed in every context that observes the pending request, and lazily by
    every read, so a context that slept through the deadline still sees the
    request as expired.

    At most one request per pair may be pending. The check and the insert run
    under ``create_lock``, which every manager for the same ticket and kind
    must share.
    """

    def __init__(
        self,
        kind: ShareKind,
        ticket_id: str,
        profile: Participant,
        store: EntityStore[ShareRequest],
        changes: ChangeFeed,
        scheduler: ExpiryScheduler,
        *,
        ttl_seconds: float | None = None,
        session_store: EntityStore[ScreenShareSession] | None = None,
        create_lock: asyncio.Lock | None = None,
        clock: Clock = utc_now,
    ) -> None:
        if session_store is not None and kind is not ShareKind.SCREEN:
            raise ValueError("Sessions are only tracked for screen sharing")
        self.kind = kind
        self.ticket_id = ticket_id
        self.profile = profile
        self._store = store
        self._changes = changes
        self._scheduler = scheduler
        self._ttl = timedelta(seconds=ttl_seconds if ttl_seconds is not None else DEFAULT_TTL_SECONDS[kind])
        self._sessions = session_store
        self._create_lock = create_lock or asyncio.Lock()
        self._clock = clock
        self._listener = ShareRequestListener(
            store.bus,
            kind,
            ShareRequestCallbacks(
                on_created=self._reconcile,
                on_updated=self._reconcile,
                on_deleted=self._forget,
            ),
        )
        self._timer_keys: set[tuple[str, str, str]] = set()

    async def start(self) -> None:
        """Observe the ticket's requests and re-arm timers for pending ones."""

        self._listener.start()
        await self._changes.start(self.ticket_id)
        pending = await self._store.list(
            EntityFilter(statuses=(ShareRequestStatus.PENDING,), scope_key=self.ticket_id)
        )
        for request in pending:
            if request.is_overdue(self._clock()):
                await self.expire(request.id)
            else:
                self._reconcile(request)

    async def close(self) -> None:
        self._listener.stop()
        for key in list(self._timer_keys):
            self._scheduler.cancel_key(key)
        self._timer_keys.clear()
        await self._changes.stop()

    async def request_share(self, target: Participant, *, auto_accept: bool = False) -> ShareRequest:
        """Engineer asks the customer to share code or screen."""

        if not self.profile.is_engineer:
            raise PermissionDeniedError("Only engineers can request a share")
        if not target.is_customer:
            raise InvalidInputError("Share requests must target the customer")
        return await self._create(target, auto_accept=auto_accept)

    async def start_call(self, target: Participant) -> ShareRequest:
        """Customer offers the engineer a screen-share call."""

        if self.kind is not ShareKind.SCREEN:
            raise InvalidInputError("Calls are only available for screen sharing")
        if not self.profile.is_customer:
            raise PermissionDeniedError("Only customers can start a call")
        if not target.is_engineer:
            raise InvalidInputError("Calls must target the engineer")
        return await self._create(target, auto_accept=False)

    async def accept(self, request_id: str) -> ShareRequest:
        return await self._respond(request_id, ShareRequestStatus.ACCEPTED)

    async def reject(self, request_id: str) -> ShareRequest:
        return await self._respond(request_id, ShareRequestStatus.REJECTED)

    async def expire(self, request_id: str) -> ShareRequest:
        """Expire a pending request whose deadline passed; otherwise a no-op."""

        request = await self._store.require(request_id)
        if not request.is_overdue(self._clock()):
            return request
        try:
            expired = await self._store.update(
                request_id,
                {"status": ShareRequestStatus.EXPIRED, "resolved_at": self._clock()},
                expected_status=ShareRequestStatus.PENDING,
            )
        except StaleWriteError as exc:
            logger.debug("Expiry of %s request %s skipped: %s", self.kind.value, request_id, exc)
            return exc.current if isinstance(exc.current, ShareRequest) else await self._store.require(request_id)
        logger.info("%s share request %s expired", self.kind.value.capitalize(), request_id)
        self._reconcile(expired)
        return expired

    async def get_request(self, request_id: str) -> ShareRequest:
        request = await self._store.require(request_id)
        if request.is_overdue(self._clock()):
            return await self.expire(request_id)
        return request

    async def list_requests(self, *, statuses: tuple[ShareRequestStatus, ...] | None = None) -> list[ShareRequest]:
        """Requests on this ticket, newest first, with overdue ones expired."""

        requests = await self._store.list(EntityFilter(scope_key=self.ticket_id, newest_first=True))
        current: list[ShareRequest] = []
        for request in requests:
            if request.is_overdue(self._clock()):
                request = await self.expire(request.id)
            if statuses is None or request.status in statuses:
                current.append(request)
        return current

    async def get_active(self) -> ShareRequest | None:
        pending = await self.list_requests(statuses=(ShareRequestStatus.PENDING,))
        return pending[0] if pending else None

    async def start_session(self, request_id: str) -> ScreenShareSession:
        sessions = self._require_sessions()
        request = await self.get_request(request_id)
        self._require_party(request)
        if request.status is not ShareRequestStatus.ACCEPTED:
            raise ConflictError(f"Request {request_id} is {request.status.value}, not accepted")

        with tracer.start_as_current_span("sharing.start_session"):
            open_sessions = await sessions.list(
                EntityFilter(statuses=OPEN_SESSION_STATUSES, scope_key=self.ticket_id)
            )
            if open_sessions:
                raise ConflictError(f"Ticket {self.ticket_id} already has an open screen-share session")

            if request.requested_from.is_customer:
                publisher, subscriber = request.requested_from, request.requested_by
            else:
                publisher, subscriber = request.requested_by, request.requested_from
            session = ScreenShareSession(
                id=str(uuid4()),
                created_at=self._clock(),
                ticket_id=self.ticket_id,
                request_id=request.id,
                publisher=publisher,
                subscriber=subscriber,
            )
            return await sessions.create(session)

    async def activate_session(self, session_id: str) -> ScreenShareSession:
        sessions = self._require_sessions()
        session = await sessions.require(session_id)
        if self.profile.id not in session.participant_ids():
            raise PermissionDeniedError(f"{self.profile.id} is not part of session {session_id}")
        if session.status is SessionStatus.ACTIVE:
            return session
        try:
            return await sessions.update(
                session_id,
                {"status": SessionStatus.ACTIVE, "started_at": self._clock()},
                expected_status=SessionStatus.INITIALIZING,
            )
        except StaleWriteError as exc:
            raise ConflictError(f"Session {session_id} has already ended") from exc

    async def end_session(self, session_id: str) -> ScreenShareSession:
        sessions = self._require_sessions()
        session = await sessions.require(session_id)
        if self.profile.id not in session.participant_ids():
            raise PermissionDeniedError(f"{self.profile.id} is not part of session {session_id}")
        if session.status is SessionStatus.ENDED:
            return session
        try:
            return await sessions.update(
                session_id,
                {"status": SessionStatus.ENDED, "ended_at": self._clock()},
                expected_status=OPEN_SESSION_STATUSES,
            )
        except StaleWriteError as exc:
            logger.debug("Session %s ended concurrently", session_id)
            return exc.current if isinstance(exc.current, ScreenShareSession) else await sessions.require(session_id)

    async def get_active_session(self) -> ScreenShareSession | None:
        sessions = self._require_sessions()
        open_sessions = await sessions.list(
            EntityFilter(statuses=OPEN_SESSION_STATUSES, scope_key=self.ticket_id, newest_first=True, limit=1)
        )
        return open_sessions[0] if open_sessions else None

    async def _create(self, target: Participant, *, auto_accept: bool) -> ShareRequest:
        if target.id == self.profile.id:
            raise InvalidInputError("Cannot send a share request to yourself")

        with tracer.start_as_current_span("sharing.request"):
            async with self._create_lock:
                return await self._create_exclusive(target, auto_accept=auto_accept)

    async def _create_exclusive(self, target: Participant, *, auto_accept: bool) -> ShareRequest:
        pending = await self.list_requests(statuses=(ShareRequestStatus.PENDING,))
        if any(request.involves_pair(self.profile.id, target.id) for request in pending):
            raise ConflictError(
                f"A {self.kind.value} share request from {self.profile.id} to {target.id} is already pending"
            )

        now = self._clock()
        request = ShareRequest(
            id=str(uuid4()),
            created_at=now,
            kind=self.kind,
            ticket_id=self.ticket_id,
            requested_by=self.profile,
            requested_from=target,
            expires_at=now + self._ttl,
            auto_accept=auto_accept,
        )
        if auto_accept:
            request = request.model_copy(update={"status": ShareRequestStatus.ACCEPTED, "resolved_at": now})
        created = await self._store.create(request)
        self._reconcile(created)
        return created

    async def _respond(self, request_id: str, status: ShareRequestStatus) -> ShareRequest:
        with tracer.start_as_current_span(f"sharing.{status.value}"):
            request = await self.get_request(request_id)
            if request.requested_from.id != self.profile.id:
                raise PermissionDeniedError(f"Request {request_id} was not sent to {self.profile.id}")
            if request.status is not ShareRequestStatus.PENDING:
                raise AlreadyResolvedError(f"Request {request_id} is already {request.status.value}")
            try:
                updated = await self._store.update(
                    request_id,
                    {"status": status, "resolved_at": self._clock()},
                    expected_status=ShareRequestStatus.PENDING,
                )
            except StaleWriteError as exc:
                raise AlreadyResolvedError(f"Request {request_id} was resolved concurrently") from exc
            self._reconcile(updated)
            return updated

    def _require_sessions(self) -> EntityStore[ScreenShareSession]:
        if self._sessions is None:
            raise InvalidInputError(f"{self.kind.value} sharing does not track sessions")
        return self._sessions

    def _require_party(self, request: ShareRequest) -> None:
        if self.profile.id not in request.participant_ids():
            raise PermissionDeniedError(f"{self.profile.id} is not part of request {request.id}")

    def _timer_key(self, request_id: str) -> tuple[str, str, str]:
        return ("share", self.kind.value, request_id)

    def _reconcile(self, request: ShareRequest) -> None:
        if request.ticket_id != self.ticket_id:
            return
        key = self._timer_key(request.id)
        if request.status is ShareRequestStatus.PENDING:
            if self._scheduler.armed(key) is not None:
                return
            self._timer_keys.add(key)
            self._scheduler.arm(request.expires_at, lambda: self._on_deadline(request.id), key=key)
        else:
            self._scheduler.cancel_key(key)
            self._timer_keys.discard(key)

    def _forget(self, request_id: str) -> None:
        key = self._timer_key(request_id)
        self._scheduler.cancel_key(key)
        self._timer_keys.discard(key)

    async def _on_deadline(self, request_id: str) -> None:
        self._timer_keys.discard(self._timer_key(request_id))
        try:
            request = await self.expire(request_id)
        except NotFoundError:
            logger.debug("Share request %s vanished before expiring", request_id)
            return
        if request.status is ShareRequestStatus.PENDING:
            self._reconcile(request)
