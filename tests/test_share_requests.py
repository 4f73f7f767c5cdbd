from __future__ import annotations

import asyncio

import pytest

from deskrelay.core.errors import (
    AlreadyResolvedError,
    ConflictError,
    InvalidInputError,
    PermissionDeniedError,
)
from deskrelay.feeds.base import NullChangeFeed
from deskrelay.scheduling.expiry import ExpiryScheduler
from deskrelay.sharing.manager import ShareRequestManager
from deskrelay.sharing.models import ScreenShareSession, SessionStatus, ShareKind, ShareRequest, ShareRequestStatus
from deskrelay.stores.memory import MemoryStore

TICKET_ID = "TKT-1"


@pytest.fixture
def code_store(bus):
    return MemoryStore(bus, topic="code_share_requests", model=ShareRequest)


@pytest.fixture
def screen_store(bus):
    return MemoryStore(bus, topic="screen_share_requests", model=ShareRequest)


@pytest.fixture
def session_store(bus):
    return MemoryStore(bus, topic="screen_share_sessions", model=ScreenShareSession)


@pytest.fixture
def code_manager(code_store, scheduler, clock):
    def factory(profile, *, ttl_seconds=None):
        return ShareRequestManager(
            ShareKind.CODE, TICKET_ID, profile, code_store, NullChangeFeed(), scheduler,
            ttl_seconds=ttl_seconds, clock=clock,
        )

    return factory


@pytest.fixture
def screen_manager(screen_store, session_store, scheduler, clock):
    def factory(profile):
        return ShareRequestManager(
            ShareKind.SCREEN, TICKET_ID, profile, screen_store, NullChangeFeed(), scheduler,
            session_store=session_store, clock=clock,
        )

    return factory


@pytest.mark.asyncio
async def test_request_share_sets_expiry_per_kind(code_manager, screen_manager, engineer, customer, clock):
    code = await code_manager(engineer).request_share(customer)
    screen = await screen_manager(engineer).request_share(customer)

    assert code.status is ShareRequestStatus.PENDING
    assert (code.expires_at - clock()).total_seconds() == 5
    assert (screen.expires_at - clock()).total_seconds() == 10


@pytest.mark.asyncio
async def test_pending_request_blocks_duplicate_for_same_pair(code_manager, engineer, customer):
    manager = code_manager(engineer)
    await manager.request_share(customer)

    with pytest.raises(ConflictError):
        await manager.request_share(customer)


@pytest.mark.asyncio
async def test_expired_request_no_longer_blocks_new_one(code_manager, engineer, customer, clock):
    manager = code_manager(engineer)
    first = await manager.request_share(customer)
    clock.advance(5.1)

    second = await manager.request_share(customer)

    assert second.id != first.id
    assert (await manager.get_request(first.id)).status is ShareRequestStatus.EXPIRED


@pytest.mark.asyncio
async def test_read_after_deadline_presents_request_as_expired(code_manager, code_store, engineer, customer, clock):
    request = await code_manager(engineer).request_share(customer)
    clock.advance(6)

    seen = await code_manager(customer).get_request(request.id)

    assert seen.status is ShareRequestStatus.EXPIRED
    assert (await code_store.get(request.id)).status is ShareRequestStatus.EXPIRED


@pytest.mark.asyncio
async def test_accept_after_expiry_is_already_resolved(code_manager, engineer, customer, clock):
    request = await code_manager(engineer).request_share(customer)
    clock.advance(6)

    with pytest.raises(AlreadyResolvedError):
        await code_manager(customer).accept(request.id)


@pytest.mark.asyncio
async def test_accept_and_reject_are_terminal(code_manager, engineer, customer):
    request = await code_manager(engineer).request_share(customer)
    responder = code_manager(customer)

    accepted = await responder.accept(request.id)

    assert accepted.status is ShareRequestStatus.ACCEPTED
    assert accepted.resolved_at is not None
    with pytest.raises(AlreadyResolvedError):
        await responder.reject(request.id)


@pytest.mark.asyncio
async def test_only_requested_party_may_respond(code_manager, engineer, customer):
    request = await code_manager(engineer).request_share(customer)

    with pytest.raises(PermissionDeniedError):
        await code_manager(engineer).accept(request.id)


@pytest.mark.asyncio
async def test_response_disarms_expiry_timer(code_manager, scheduler, engineer, customer):
    request = await code_manager(engineer).request_share(customer)
    key = ("share", "code", request.id)
    assert scheduler.armed(key) is not None

    await code_manager(customer).reject(request.id)

    assert scheduler.armed(key) is None


@pytest.mark.asyncio
async def test_timer_expires_pending_request(code_manager, code_store, engineer, customer, clock):
    request = await code_manager(engineer, ttl_seconds=0.02).request_share(customer)

    clock.advance(1)
    await asyncio.sleep(0.1)

    assert (await code_store.get(request.id)).status is ShareRequestStatus.EXPIRED


@pytest.mark.asyncio
async def test_expire_is_noop_before_deadline_and_after_resolution(code_manager, engineer, customer, clock):
    manager = code_manager(engineer)
    request = await manager.request_share(customer)

    assert (await manager.expire(request.id)).status is ShareRequestStatus.PENDING
    await code_manager(customer).accept(request.id)
    clock.advance(60)
    assert (await manager.expire(request.id)).status is ShareRequestStatus.ACCEPTED


@pytest.mark.asyncio
async def test_auto_accept_creates_accepted_request(code_manager, scheduler, engineer, customer):
    request = await code_manager(engineer).request_share(customer, auto_accept=True)

    assert request.status is ShareRequestStatus.ACCEPTED
    assert scheduler.armed(("share", "code", request.id)) is None


@pytest.mark.asyncio
async def test_role_rules_for_requests_and_calls(code_manager, screen_manager, engineer, customer):
    with pytest.raises(PermissionDeniedError):
        await code_manager(customer).request_share(customer)
    with pytest.raises(InvalidInputError):
        await code_manager(customer).start_call(engineer)

    call = await screen_manager(customer).start_call(engineer)

    assert call.requested_by == customer
    assert call.requested_from == engineer


@pytest.mark.asyncio
async def test_list_requests_and_active(code_manager, engineer, customer, clock):
    manager = code_manager(engineer)
    first = await manager.request_share(customer)
    await code_manager(customer).reject(first.id)
    second = await manager.request_share(customer)

    assert [request.id for request in await manager.list_requests()] == [second.id, first.id]
    assert (await manager.get_active()).id == second.id
    clock.advance(10)
    assert await manager.get_active() is None


@pytest.mark.asyncio
async def test_restart_expires_overdue_and_rearms_pending(code_store, engineer, customer, clock):
    first_scheduler = ExpiryScheduler(clock=clock)
    before = ShareRequestManager(
        ShareKind.CODE, TICKET_ID, engineer, code_store, NullChangeFeed(), first_scheduler, clock=clock
    )
    overdue = await before.request_share(customer)
    await first_scheduler.close()
    clock.advance(6)
    await code_store.create(
        ShareRequest(
            id="fresh",
            created_at=clock(),
            kind=ShareKind.CODE,
            ticket_id=TICKET_ID,
            requested_by=engineer,
            requested_from=customer,
            expires_at=clock() + (overdue.expires_at - overdue.created_at),
        )
    )

    scheduler = ExpiryScheduler(clock=clock)
    after = ShareRequestManager(
        ShareKind.CODE, TICKET_ID, customer, code_store, NullChangeFeed(), scheduler, clock=clock
    )
    await after.start()

    assert (await code_store.get(overdue.id)).status is ShareRequestStatus.EXPIRED
    assert scheduler.armed(("share", "code", "fresh")) is not None
    await after.close()
    await scheduler.close()


@pytest.mark.asyncio
async def test_session_lifecycle(screen_manager, engineer, customer):
    engineer_side, customer_side = screen_manager(engineer), screen_manager(customer)
    request = await engineer_side.request_share(customer)

    with pytest.raises(ConflictError):
        await engineer_side.start_session(request.id)

    await customer_side.accept(request.id)
    session = await engineer_side.start_session(request.id)

    assert session.status is SessionStatus.INITIALIZING
    assert session.publisher == customer
    assert session.subscriber == engineer
    with pytest.raises(ConflictError):
        await customer_side.start_session(request.id)

    active = await customer_side.activate_session(session.id)
    assert active.status is SessionStatus.ACTIVE
    assert (await engineer_side.get_active_session()).id == session.id

    ended = await engineer_side.end_session(session.id)
    assert ended.status is SessionStatus.ENDED
    assert (await engineer_side.end_session(session.id)).status is SessionStatus.ENDED
    assert await engineer_side.get_active_session() is None


@pytest.mark.asyncio
async def test_code_sharing_has_no_sessions(code_manager, engineer, customer):
    manager = code_manager(engineer)
    request = await manager.request_share(customer, auto_accept=True)

    with pytest.raises(InvalidInputError):
        await manager.start_session(request.id)


@pytest.mark.asyncio
async def test_concurrent_requests_sharing_a_lock_create_one(suspending_store, scheduler, clock, engineer, customer):
    store = suspending_store("code_share_requests", ShareRequest)
    lock = asyncio.Lock()

    def manager():
        return ShareRequestManager(
            ShareKind.CODE, TICKET_ID, engineer, store, NullChangeFeed(), scheduler,
            create_lock=lock, clock=clock,
        )

    results = await asyncio.gather(
        manager().request_share(customer), manager().request_share(customer), return_exceptions=True
    )

    created = [result for result in results if isinstance(result, ShareRequest)]
    rejected = [result for result in results if isinstance(result, Exception)]
    assert len(created) == 1
    assert len(rejected) == 1
    assert isinstance(rejected[0], ConflictError)
    pending = await manager().list_requests(statuses=(ShareRequestStatus.PENDING,))
    assert [request.id for request in pending] == [created[0].id]
