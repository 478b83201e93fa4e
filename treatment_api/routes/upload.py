"""
Treatment AI Backend — File Upload Route
=========================================

What:  POST /api/upload/file, multipart field `file`.
How:   Reads the upload into memory (bounded by MAX_FILE_SIZE) and hands it
       to UploadService, which validates, stages, analyses and cleans up.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, File, UploadFile

from treatment_api.deps import get_current_user
from treatment_api.exceptions import ValidationError
from treatment_api.models.user import User
from treatment_api.schemas.common import ErrorResponse
from treatment_api.schemas.upload import FileAnalysisResponse
from treatment_api.services.upload_service import upload_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/upload", tags=["Upload"])


@router.post(
    "/file",
    response_model=FileAnalysisResponse,
    responses={
        400: {"description": "Missing, oversized, unsupported or unreadable file", "model": ErrorResponse},
        500: {"description": "Staging the file failed", "model": ErrorResponse},
        503: {"description": "AI service unavailable", "model": ErrorResponse},
    },
    summary="Upload a medical image or document for analysis",
)
async def upload_file(
    file: Optional[UploadFile] = File(
        default=None,
        description="JPEG, PNG, GIF, WebP, PDF or Word file, max 10MB",
    ),
    user: User = Depends(get_current_user),
) -> FileAnalysisResponse:
    """
    Images are described by the vision model; documents are reduced to
    text and summarised.
    """
    if file is None:
        raise ValidationError("No file uploaded", field="file")

    try:
        content = await file.read()
        logger.info(
            "Upload from user %s: filename=%s, size=%d bytes",
            user.id, file.filename or "unknown", len(content),
        )
        return await upload_service.analyze(
            filename=file.filename or "",
            content=content,
            content_length=file.size,
        )
    finally:
        await file.close()
