"""
Treatment AI Backend — Wearable Routes
=======================================

What:  Terra webhook receiver plus the caller's connection list.
Why:   Terra authenticates itself with an HMAC signature rather than a
       user session, so the webhook has no bearer dependency; the body
       must be read raw because the signature covers the exact bytes.
"""

import logging

from fastapi import APIRouter, Depends, Request
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from treatment_api.database import get_db_session
from treatment_api.deps import get_current_user
from treatment_api.exceptions import AuthenticationError, ValidationError
from treatment_api.models.user import User
from treatment_api.schemas.common import ErrorResponse, MessageResponse
from treatment_api.schemas.wearables import (
    TerraWebhookEvent,
    WearableConnectionItem,
    WearableConnectionsResponse,
    WebhookAck,
)
from treatment_api.services.terra_webhook_service import terra_webhook_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["Wearables"])


@router.post(
    "/webhooks/terra",
    response_model=WebhookAck,
    responses={
        400: {"description": "Body is not a Terra event", "model": ErrorResponse},
        401: {"description": "Invalid signature", "model": ErrorResponse},
    },
    summary="Terra webhook receiver",
)
async def terra_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db_session),
) -> WebhookAck:
    raw_body = await request.body()
    if not terra_webhook_service.verify_signature(raw_body, request.headers.get("terra-signature")):
        logger.warning("Rejected Terra webhook with invalid signature")
        raise AuthenticationError("Invalid signature")

    try:
        event = TerraWebhookEvent.model_validate_json(raw_body)
    except PydanticValidationError as e:
        raise ValidationError(
            "Invalid webhook payload", context={"errors": e.error_count()}
        ) from e

    message = await terra_webhook_service.handle_event(db, event)
    return WebhookAck(message=message)


@router.get(
    "/wearables/connections",
    response_model=WearableConnectionsResponse,
    responses={401: {"model": ErrorResponse}},
    summary="The caller's wearable connections",
)
async def list_connections(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
) -> WearableConnectionsResponse:
    connections = await terra_webhook_service.list_connections(db, user.id)
    return WearableConnectionsResponse(
        connections=[WearableConnectionItem.model_validate(c) for c in connections]
    )


@router.delete(
    "/wearables/{provider}",
    response_model=MessageResponse,
    responses={404: {"model": ErrorResponse}},
    summary="Disconnect a wearable provider",
)
async def disconnect(
    provider: str,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
) -> MessageResponse:
    await terra_webhook_service.disconnect(db, user.id, provider)
    return MessageResponse(message=f"{provider} disconnected successfully")
