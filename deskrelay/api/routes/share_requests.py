from __future__ import annotations

from fastapi import APIRouter, Query, status
from pydantic import BaseModel, Field

from deskrelay.api.errors import http_error
from deskrelay.core.errors import ConflictError, NotFoundError, PermissionDeniedError, SyncError
from deskrelay.dependencies.auth import CurrentParticipant
from deskrelay.dependencies.managers import RuntimeDep, build_share_manager, build_ticket_manager
from deskrelay.participants import Participant
from deskrelay.runtime import SyncRuntime
from deskrelay.sharing.manager import ShareRequestManager
from deskrelay.sharing.models import ScreenShareSession, ShareKind, ShareRequest

router = APIRouter(prefix="/share-requests", tags=["share-requests"])


class ShareRequestCreate(BaseModel):
    kind: ShareKind
    ticket_id: str = Field(..., min_length=1)
    auto_accept: bool = False


async def _manager_for_request(
    runtime: SyncRuntime,
    participant: Participant,
    request_id: str,
) -> ShareRequestManager:
    for kind, store in runtime.requests.items():
        request = await store.get(request_id)
        if request is not None:
            return build_share_manager(runtime, participant, kind, request.ticket_id)
    raise NotFoundError(f"Share request {request_id} not found")


@router.post("", response_model=ShareRequest, status_code=status.HTTP_201_CREATED)
async def create_share_request(
    payload: ShareRequestCreate,
    runtime: RuntimeDep,
    participant: CurrentParticipant,
) -> ShareRequest:
    try:
        ticket = await build_ticket_manager(runtime, participant).get_ticket(payload.ticket_id)
        manager = build_share_manager(runtime, participant, payload.kind, ticket.id)
        if participant.is_engineer:
            if not ticket.is_assigned_to(participant):
                raise ConflictError(f"Ticket {ticket.id} is not assigned to {participant.id}")
            return await manager.request_share(ticket.created_by, auto_accept=payload.auto_accept)
        if ticket.created_by.id != participant.id:
            raise PermissionDeniedError(f"Ticket {ticket.id} was not opened by {participant.id}")
        if ticket.assigned_to is None:
            raise ConflictError(f"Ticket {ticket.id} has no engineer to call")
        return await manager.start_call(ticket.assigned_to)
    except SyncError as exc:
        raise http_error(exc) from exc


@router.get("", response_model=list[ShareRequest])
async def list_share_requests(
    runtime: RuntimeDep,
    participant: CurrentParticipant,
    ticket_id: str = Query(..., min_length=1),
    kind: ShareKind = Query(default=ShareKind.SCREEN),
) -> list[ShareRequest]:
    try:
        requests = await build_share_manager(runtime, participant, kind, ticket_id).list_requests()
    except SyncError as exc:
        raise http_error(exc) from exc
    return [request for request in requests if participant.id in request.participant_ids()]


@router.get("/{request_id}", response_model=ShareRequest)
async def get_share_request(request_id: str, runtime: RuntimeDep, participant: CurrentParticipant) -> ShareRequest:
    try:
        manager = await _manager_for_request(runtime, participant, request_id)
        return await manager.get_request(request_id)
    except SyncError as exc:
        raise http_error(exc) from exc


@router.post("/{request_id}/accept", response_model=ShareRequest)
async def accept_share_request(
    request_id: str,
    runtime: RuntimeDep,
    participant: CurrentParticipant,
) -> ShareRequest:
    try:
        manager = await _manager_for_request(runtime, participant, request_id)
        return await manager.accept(request_id)
    except SyncError as exc:
        raise http_error(exc) from exc


@router.post("/{request_id}/reject", response_model=ShareRequest)
async def reject_share_request(
    request_id: str,
    runtime: RuntimeDep,
    participant: CurrentParticipant,
) -> ShareRequest:
    try:
        manager = await _manager_for_request(runtime, participant, request_id)
        return await manager.reject(request_id)
    except SyncError as exc:
        raise http_error(exc) from exc


@router.post("/{request_id}/session", response_model=ScreenShareSession, status_code=status.HTTP_201_CREATED)
async def start_screen_share_session(
    request_id: str,
    runtime: RuntimeDep,
    participant: CurrentParticipant,
) -> ScreenShareSession:
    try:
        manager = await _manager_for_request(runtime, participant, request_id)
        return await manager.start_session(request_id)
    except SyncError as exc:
        raise http_error(exc) from exc


@router.post("/sessions/{session_id}/end", response_model=ScreenShareSession)
async def end_screen_share_session(
    session_id: str,
    runtime: RuntimeDep,
    participant: CurrentParticipant,
) -> ScreenShareSession:
    try:
        session = await runtime.sessions.require(session_id)
        manager = build_share_manager(runtime, participant, ShareKind.SCREEN, session.ticket_id)
        return await manager.end_session(session_id)
    except SyncError as exc:
        raise http_error(exc) from exc
