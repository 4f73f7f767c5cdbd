from __future__ import annotations

from fastapi import APIRouter, status
from pydantic import BaseModel, Field

from deskrelay.api.errors import http_error
from deskrelay.core.errors import NotFoundError, SyncError
from deskrelay.dependencies.managers import RatingManagerDep
from deskrelay.ratings.models import MAX_RATING, MIN_RATING, Rating

router = APIRouter(tags=["ratings"])


class RatingRequest(BaseModel):
    rating: int = Field(..., ge=MIN_RATING, le=MAX_RATING)
    notes: str | None = Field(default=None, max_length=2000)


class RatingSummary(BaseModel):
    engineer_id: str
    average: int
    count: int


@router.post("/tickets/{ticket_id}/rating", response_model=Rating, status_code=status.HTTP_201_CREATED)
async def rate_ticket(ticket_id: str, payload: RatingRequest, manager: RatingManagerDep) -> Rating:
    try:
        return await manager.rate_ticket(ticket_id, payload.rating, payload.notes)
    except SyncError as exc:
        raise http_error(exc) from exc


@router.put("/tickets/{ticket_id}/rating", response_model=Rating)
async def update_rating(ticket_id: str, payload: RatingRequest, manager: RatingManagerDep) -> Rating:
    try:
        return await manager.update_rating(ticket_id, payload.rating, payload.notes)
    except SyncError as exc:
        raise http_error(exc) from exc


@router.get("/tickets/{ticket_id}/rating", response_model=Rating)
async def get_rating(ticket_id: str, manager: RatingManagerDep) -> Rating:
    try:
        rating = await manager.get_rating(ticket_id)
        if rating is None:
            raise NotFoundError(f"Ticket {ticket_id} has not been rated")
        return rating
    except SyncError as exc:
        raise http_error(exc) from exc


@router.get("/engineers/{engineer_id}/ratings", response_model=RatingSummary)
async def get_engineer_ratings(engineer_id: str, manager: RatingManagerDep) -> RatingSummary:
    try:
        ratings = await manager.ratings_for(engineer_id)
        average = await manager.average_rating(engineer_id)
    except SyncError as exc:
        raise http_error(exc) from exc
    return RatingSummary(engineer_id=engineer_id, average=average, count=len(ratings))
