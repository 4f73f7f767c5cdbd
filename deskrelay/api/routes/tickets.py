from __future__ import annotations

from fastapi import APIRouter, Query, status
from pydantic import BaseModel, Field

from deskrelay.api.errors import http_error
from deskrelay.core.errors import SyncError
from deskrelay.dependencies.managers import TicketManagerDep
from deskrelay.tickets.models import Ticket
from deskrelay.tickets.state import TicketStatus

router = APIRouter(prefix="/tickets", tags=["tickets"])


class TicketCreateRequest(BaseModel):
    problem_description: str = Field(..., min_length=1)


class PaymentOutcomeRequest(BaseModel):
    status: TicketStatus


@router.post("", response_model=Ticket, status_code=status.HTTP_201_CREATED)
async def create_ticket(payload: TicketCreateRequest, manager: TicketManagerDep) -> Ticket:
    try:
        return await manager.create_ticket(payload.problem_description)
    except SyncError as exc:
        raise http_error(exc) from exc


@router.get("", response_model=list[Ticket])
async def list_tickets(
    manager: TicketManagerDep,
    status_filter: list[TicketStatus] | None = Query(default=None, alias="status"),
    limit: int | None = Query(default=None, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
) -> list[Ticket]:
    statuses = tuple(status_filter) if status_filter else None
    try:
        return await manager.list_tickets(statuses=statuses, limit=limit, offset=offset)
    except SyncError as exc:
        raise http_error(exc) from exc


@router.get("/active", response_model=Ticket | None)
async def get_active_ticket(manager: TicketManagerDep) -> Ticket | None:
    try:
        return await manager.get_active_ticket()
    except SyncError as exc:
        raise http_error(exc) from exc


@router.get("/{ticket_id}", response_model=Ticket)
async def get_ticket(ticket_id: str, manager: TicketManagerDep) -> Ticket:
    try:
        return await manager.get_ticket(ticket_id)
    except SyncError as exc:
        raise http_error(exc) from exc


@router.post("/{ticket_id}/claim", response_model=Ticket)
async def claim_ticket(ticket_id: str, manager: TicketManagerDep) -> Ticket:
    try:
        return await manager.claim(ticket_id)
    except SyncError as exc:
        raise http_error(exc) from exc


@router.post("/{ticket_id}/mark-fixed", response_model=Ticket)
async def mark_ticket_fixed(ticket_id: str, manager: TicketManagerDep) -> Ticket:
    try:
        return await manager.mark_as_fixed(ticket_id)
    except SyncError as exc:
        raise http_error(exc) from exc


@router.post("/{ticket_id}/still-broken", response_model=Ticket)
async def mark_ticket_still_broken(ticket_id: str, manager: TicketManagerDep) -> Ticket:
    try:
        return await manager.mark_still_broken(ticket_id)
    except SyncError as exc:
        raise http_error(exc) from exc


@router.post("/{ticket_id}/confirm", response_model=Ticket)
async def confirm_ticket(ticket_id: str, manager: TicketManagerDep) -> Ticket:
    try:
        return await manager.confirm(ticket_id)
    except SyncError as exc:
        raise http_error(exc) from exc


@router.post("/{ticket_id}/abandon", response_model=Ticket)
async def abandon_ticket(ticket_id: str, manager: TicketManagerDep) -> Ticket:
    try:
        return await manager.abandon(ticket_id)
    except SyncError as exc:
        raise http_error(exc) from exc


@router.post("/{ticket_id}/payment", response_model=Ticket)
async def record_payment_outcome(
    ticket_id: str,
    payload: PaymentOutcomeRequest,
    manager: TicketManagerDep,
) -> Ticket:
    try:
        return await manager.record_payment_outcome(ticket_id, payload.status)
    except SyncError as exc:
        raise http_error(exc) from exc
