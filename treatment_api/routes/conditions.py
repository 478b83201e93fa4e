"""
Treatment AI Backend — Condition Routes
========================================

Catalog endpoints (`/api/conditions`, `/search`, `/{id}`) are public: the
onboarding screens search conditions before an account exists. Everything
under `/user` requires a session; the catalog sync additionally requires
the X-Sync-Token header.

Route order matters: `/search`, `/sync` and `/user` are declared before
`/{condition_id}` so they are not captured as ids.
"""

import hmac
import logging
from typing import List, Optional

from fastapi import APIRouter, Body, Depends, Header, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from treatment_api.config import settings
from treatment_api.database import get_db_session
from treatment_api.deps import get_current_user
from treatment_api.exceptions import PermissionDeniedError
from treatment_api.models.user import User
from treatment_api.schemas.common import ErrorResponse, MessageResponse
from treatment_api.schemas.conditions import (
    AddUserConditionRequest,
    ConditionListResponse,
    ConditionResponse,
    ConditionSearchResponse,
    ConditionSyncResponse,
    ConditionUpsert,
    RemoveUserConditionRequest,
    UserConditionCreatedResponse,
    UserConditionsResponse,
)
from treatment_api.services.condition_service import condition_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/conditions", tags=["Conditions"])


@router.get(
    "/search",
    response_model=ConditionSearchResponse,
    responses={400: {"description": "Missing q", "model": ErrorResponse}},
    summary="Search the condition catalog",
)
async def search_conditions(
    q: str = Query(default="", description="Matched against name, category and ICD-10 code"),
    limit: int = Query(default=50, ge=1, le=200),
    db: AsyncSession = Depends(get_db_session),
) -> ConditionSearchResponse:
    conditions = await condition_service.search_conditions(db, q, limit=limit)
    return ConditionSearchResponse(
        conditions=[ConditionResponse.model_validate(c) for c in conditions],
        total=len(conditions),
        query=q.strip(),
    )


@router.get("", response_model=ConditionListResponse, summary="List the whole catalog")
async def list_conditions(db: AsyncSession = Depends(get_db_session)) -> ConditionListResponse:
    conditions = await condition_service.list_conditions(db)
    return ConditionListResponse(
        conditions=[ConditionResponse.model_validate(c) for c in conditions],
        count=len(conditions),
    )


@router.post(
    "/sync",
    response_model=ConditionSyncResponse,
    responses={
        401: {"model": ErrorResponse},
        403: {"description": "Missing or wrong X-Sync-Token", "model": ErrorResponse},
    },
    summary="Insert or refresh catalog entries",
)
async def sync_conditions(
    items: List[ConditionUpsert] = Body(...),
    sync_token: Optional[str] = Header(default=None, alias="X-Sync-Token"),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
) -> ConditionSyncResponse:
    """
    The catalog is shared by every account, so a session alone is not
    enough: the caller must also present CONDITIONS_SYNC_TOKEN. With the
    setting empty the endpoint is closed.
    """
    expected = settings.conditions_sync_token
    if not expected or not sync_token or not hmac.compare_digest(
        sync_token.encode("utf-8"), expected.encode("utf-8")
    ):
        logger.warning("Condition catalog sync refused for %s", user.id)
        raise PermissionDeniedError("Catalog sync requires a valid X-Sync-Token")

    count = await condition_service.upsert_conditions(db, items)
    logger.info("Condition catalog sync by %s: %d rows", user.id, count)
    return ConditionSyncResponse(message=f"Synced {count} conditions", count=count)


# ── The caller's own conditions ───────────────────────────────────────────

@router.get(
    "/user",
    response_model=UserConditionsResponse,
    responses={401: {"model": ErrorResponse}},
    summary="List the caller's conditions",
)
async def list_user_conditions(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
) -> UserConditionsResponse:
    items = await condition_service.list_user_conditions(db, user.id)
    return UserConditionsResponse(conditions=items)


@router.post(
    "/user",
    response_model=UserConditionCreatedResponse,
    status_code=status.HTTP_201_CREATED,
    responses={
        400: {"description": "conditionId missing", "model": ErrorResponse},
        409: {"description": "Already on the caller's list", "model": ErrorResponse},
    },
    summary="Add a condition to the caller's list",
)
async def add_user_condition(
    body: AddUserConditionRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
) -> UserConditionCreatedResponse:
    item = await condition_service.add_user_condition(
        db,
        user.id,
        condition_id=body.condition_id,
        display_name=body.display_name,
        severity=body.severity,
        notes=body.notes,
    )
    return UserConditionCreatedResponse(condition=item)


@router.delete(
    "/user",
    response_model=MessageResponse,
    responses={404: {"model": ErrorResponse}},
    summary="Remove a condition from the caller's list",
)
async def remove_user_condition(
    body: RemoveUserConditionRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
) -> MessageResponse:
    await condition_service.remove_user_condition(db, user.id, body.condition_id)
    return MessageResponse(message="Condition removed successfully")


@router.get(
    "/{condition_id}",
    response_model=ConditionResponse,
    responses={404: {"model": ErrorResponse}},
    summary="Get one catalog condition",
)
async def get_condition(
    condition_id: str,
    db: AsyncSession = Depends(get_db_session),
) -> ConditionResponse:
    condition = await condition_service.get_condition(db, condition_id)
    return ConditionResponse.model_validate(condition)
