from __future__ import annotations

from typing import Annotated

from fastapi import Depends, HTTPException, Request

from deskrelay.dependencies.auth import CurrentParticipant
from deskrelay.feeds.base import NullChangeFeed
from deskrelay.participants import Participant
from deskrelay.ratings.manager import RatingManager
from deskrelay.runtime import SyncRuntime
from deskrelay.sharing.manager import ShareRequestManager
from deskrelay.sharing.models import ShareKind
from deskrelay.tickets.manager import TicketManager


async def get_runtime(request: Request) -> SyncRuntime:
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise HTTPException(status_code=503, detail="Sync runtime is not configured")
    return runtime


RuntimeDep = Annotated[SyncRuntime, Depends(get_runtime)]


def build_ticket_manager(runtime: SyncRuntime, participant: Participant) -> TicketManager:
    settings = runtime.settings
    return TicketManager(
        participant,
        runtime.tickets,
        NullChangeFeed(),
        runtime.scheduler,
        auto_complete_timeout_seconds=settings.auto_complete_timeout_seconds,
        max_active_tickets=settings.max_active_tickets_per_engineer,
    )


def build_share_manager(
    runtime: SyncRuntime,
    participant: Participant,
    kind: ShareKind,
    ticket_id: str,
) -> ShareRequestManager:
    settings = runtime.settings
    ttl = (
        settings.code_share_request_ttl_seconds
        if kind is ShareKind.CODE
        else settings.screen_share_request_ttl_seconds
    )
    return ShareRequestManager(
        kind,
        ticket_id,
        participant,
        runtime.requests[kind],
        NullChangeFeed(),
        runtime.scheduler,
        ttl_seconds=ttl,
        session_store=runtime.sessions if kind is ShareKind.SCREEN else None,
        create_lock=runtime.share_lock(ticket_id, kind),
    )


async def get_ticket_manager(runtime: RuntimeDep, participant: CurrentParticipant) -> TicketManager:
    return build_ticket_manager(runtime, participant)


TicketManagerDep = Annotated[TicketManager, Depends(get_ticket_manager)]


def build_rating_manager(runtime: SyncRuntime, participant: Participant) -> RatingManager:
    return RatingManager(participant, runtime.ratings, runtime.tickets, NullChangeFeed())


async def get_rating_manager(runtime: RuntimeDep, participant: CurrentParticipant) -> RatingManager:
    return build_rating_manager(runtime, participant)


RatingManagerDep = Annotated[RatingManager, Depends(get_rating_manager)]
