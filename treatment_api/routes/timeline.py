"""
Treatment AI Backend — Health Timeline Routes
==============================================

`/stats` is declared before `/{entry_id}` so it is not parsed as an id.
"""

import logging
import uuid

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from treatment_api.database import get_db_session
from treatment_api.deps import get_current_user
from treatment_api.models.user import User
from treatment_api.schemas.common import ErrorResponse, MessageResponse
from treatment_api.schemas.timeline import (
    SaveTimelineRequest,
    SaveTimelineResponse,
    TimelineDetailResponse,
    TimelineEntryDetail,
    TimelineEntryResponse,
    TimelineListResponse,
    TimelineStatsResponse,
    TimelineUser,
    UpdateTimelineRequest,
)
from treatment_api.services.timeline_service import timeline_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/health-timeline", tags=["Health Timeline"])


@router.post(
    "/save",
    response_model=SaveTimelineResponse,
    responses={400: {"model": ErrorResponse}, 401: {"model": ErrorResponse}},
    summary="Save a finished consultation to the timeline",
)
async def save_entry(
    body: SaveTimelineRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
) -> SaveTimelineResponse:
    entry = await timeline_service.save(db, user.id, body)
    return SaveTimelineResponse(
        entry_id=entry.id, entry=TimelineEntryResponse.model_validate(entry)
    )


@router.get(
    "",
    response_model=TimelineListResponse,
    responses={401: {"model": ErrorResponse}},
    summary="The caller's timeline with summary stats",
)
async def list_entries(
    limit: int = Query(default=50, ge=1, le=200),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
) -> TimelineListResponse:
    entries = await timeline_service.list_entries(db, user.id, limit=limit)
    stats = await timeline_service.stats(db, user.id)
    return TimelineListResponse(
        timeline=[TimelineEntryResponse.model_validate(e) for e in entries],
        stats=stats,
        user=TimelineUser(id=user.id, first_name=user.first_name, last_name=user.last_name),
    )


@router.get(
    "/stats",
    response_model=TimelineStatsResponse,
    responses={401: {"model": ErrorResponse}},
    summary="Entry count, last entry date and most common symptoms",
)
async def timeline_stats(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
) -> TimelineStatsResponse:
    return TimelineStatsResponse(stats=await timeline_service.stats(db, user.id))


@router.get(
    "/{entry_id}",
    response_model=TimelineDetailResponse,
    responses={404: {"model": ErrorResponse}},
    summary="One entry including the full chat transcript",
)
async def get_entry(
    entry_id: uuid.UUID,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
) -> TimelineDetailResponse:
    entry = await timeline_service.get_entry(db, user.id, entry_id)
    return TimelineDetailResponse(entry=TimelineEntryDetail.model_validate(entry))


@router.patch(
    "/{entry_id}",
    response_model=TimelineDetailResponse,
    responses={404: {"model": ErrorResponse}},
    summary="Edit symptoms, findings or summary",
)
async def update_entry(
    entry_id: uuid.UUID,
    body: UpdateTimelineRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
) -> TimelineDetailResponse:
    entry = await timeline_service.update_entry(db, user.id, entry_id, body)
    return TimelineDetailResponse(entry=TimelineEntryDetail.model_validate(entry))


@router.delete(
    "/{entry_id}",
    response_model=MessageResponse,
    responses={404: {"model": ErrorResponse}},
    summary="Delete an entry",
)
async def delete_entry(
    entry_id: uuid.UUID,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
) -> MessageResponse:
    await timeline_service.delete_entry(db, user.id, entry_id)
    return MessageResponse(message="Timeline entry deleted successfully")
