"""
Treatment AI Backend — Chat Sharing Routes
===========================================

Endpoints:
    POST /api/share/internal      share with a linked account
    POST /api/share/send-email    200 when every recipient got it, 206 when
                                  only some did, 502 when none did
    POST /api/share/download-pdf  transcript as an attachment
"""

import re
import time

from fastapi import APIRouter, Depends, Response
from sqlalchemy.ext.asyncio import AsyncSession

from treatment_api.database import get_db_session
from treatment_api.deps import get_current_user
from treatment_api.models.user import User
from treatment_api.schemas.common import ErrorResponse
from treatment_api.schemas.sharing import (
    EmailShareDetails,
    EmailShareRequest,
    EmailShareResponse,
    InternalShareRequest,
    InternalShareResponse,
    PdfExportRequest,
)
from treatment_api.services.share_service import share_service

router = APIRouter(prefix="/api/share", tags=["Sharing"])


@router.post(
    "/internal",
    response_model=InternalShareResponse,
    responses={
        400: {"description": "Link id or messages missing", "model": ErrorResponse},
        404: {"description": "Link not found or not the caller's", "model": ErrorResponse},
    },
    summary="Share a chat transcript with a linked account",
)
async def share_internal(
    body: InternalShareRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
) -> InternalShareResponse:
    shared = await share_service.share_internal(
        db,
        user,
        linked_account_id=body.linked_account_id,
        messages=body.messages,
        session_id=body.session_id,
        title=body.title,
    )
    return InternalShareResponse(share_id=shared.share_id, recipient_email=shared.recipient_email)


@router.post(
    "/send-email",
    response_model=EmailShareResponse,
    responses={
        206: {"description": "Sent to some recipients only", "model": EmailShareResponse},
        400: {"description": "Missing or malformed addresses, or no messages", "model": ErrorResponse},
        502: {"description": "No email could be sent", "model": ErrorResponse},
    },
    summary="Email a chat transcript",
)
async def send_email(
    body: EmailShareRequest,
    response: Response,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
) -> EmailShareResponse:
    result = await share_service.send_email(
        db,
        user,
        emails=body.emails,
        messages=body.messages,
        personal_message=body.personal_message,
        session_id=body.session_id,
        title=body.title,
    )
    plural = "s" if result.successful > 1 else ""
    if result.failed:
        response.status_code = 206
        message = f"Email sent to {result.successful} recipient{plural}, failed for {result.failed}"
    else:
        message = f"Email sent successfully to {result.successful} recipient{plural}"
    return EmailShareResponse(
        message=message,
        details=EmailShareDetails(successful=result.successful, failed=result.failed),
    )


@router.post(
    "/download-pdf",
    response_class=Response,
    responses={
        200: {"content": {"application/pdf": {}}, "description": "The transcript PDF"},
        400: {"description": "No messages", "model": ErrorResponse},
    },
    summary="Download a chat transcript as PDF",
)
async def download_pdf(
    body: PdfExportRequest,
    user: User = Depends(get_current_user),
) -> Response:
    pdf = await share_service.render_pdf(body.messages, body.session_id, body.title)
    # Session ids come from the client; keep the filename header-safe
    label = re.sub(r"[^A-Za-z0-9_-]", "", body.session_id or "")[:64] or "session"
    filename = f"treatment-ai-chat-{label}-{int(time.time() * 1000)}.pdf"
    return Response(
        content=pdf,
        media_type="application/pdf",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )
