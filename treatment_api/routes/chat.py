"""
Treatment AI Backend — Diagnostic Chat Routes
==============================================
"""

import logging

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from treatment_api.deps import get_current_user
from treatment_api.exceptions import ValidationError
from treatment_api.models.user import User
from treatment_api.schemas.chat import (
    AnswerDetectionFailure,
    AnswerDetectionResult,
    DetectAnswerRequest,
)
from treatment_api.schemas.common import ErrorResponse
from treatment_api.services.answer_detection_service import answer_detection_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/chat", tags=["Chat"])


@router.post(
    "/detect-answer",
    response_model=AnswerDetectionResult,
    responses={
        400: {"description": "Question or answer list missing", "model": ErrorResponse},
        500: {"description": "Detection failed", "model": AnswerDetectionFailure},
    },
    summary="Detect whether a chat message answers the current question",
)
async def detect_answer(
    body: DetectAnswerRequest,
    user: User = Depends(get_current_user),
):
    """
    The chat UI treats a failure as "not answered" and keeps the question
    open, so model errors come back as a 500 carrying a neutral result
    instead of the usual error envelope. Only a malformed request (400)
    keeps the envelope.
    """
    try:
        return await answer_detection_service.detect(
            body.user_message or "", body.diagnostic_question
        )
    except ValidationError:
        raise
    except Exception:
        logger.exception("Answer detection failed for user %s", user.id)
        return JSONResponse(
            status_code=500,
            content=AnswerDetectionFailure().model_dump(by_alias=True),
        )
