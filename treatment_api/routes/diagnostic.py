"""
Treatment AI Backend — Diagnostic Session Routes
=================================================

Endpoints:
    POST /api/session/create             open a session from free text
    POST /api/diagnostic/next-question   next Merlin question, or noMoreQuestions
    POST /api/diagnostic/submit-answer   relay the chosen option index
    POST /api/session/refresh-diagnosis  current differential, most likely first

All four require a session; a diagnostic session id is only usable by the
user who opened it.
"""

import logging

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from treatment_api.database import get_db_session
from treatment_api.deps import get_current_user
from treatment_api.models.user import User
from treatment_api.schemas.common import ErrorResponse
from treatment_api.schemas.diagnostic import (
    CreateDiagnosticSessionRequest,
    DiagnosticSessionResponse,
    NextQuestionResponse,
    RefreshDiagnosisResponse,
    SessionIdRequest,
    SubmitAnswerRequest,
    SubmitAnswerResponse,
)
from treatment_api.services.diagnostic_service import diagnostic_service

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Diagnostic"])


@router.post(
    "/api/session/create",
    response_model=DiagnosticSessionResponse,
    responses={
        400: {"description": "No symptoms given", "model": ErrorResponse},
        401: {"model": ErrorResponse},
        503: {"description": "Diagnostic engine and AI both unavailable", "model": ErrorResponse},
    },
    summary="Open a diagnostic session",
)
async def create_session(
    body: CreateDiagnosticSessionRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
) -> DiagnosticSessionResponse:
    """
    Answers 200 in both modes; `fallbackMode` tells the client the session
    was generated locally and will not serve Merlin questions.
    """
    return await diagnostic_service.create_session(db, user, body.symptoms or body.user_input)


@router.post(
    "/api/diagnostic/next-question",
    response_model=NextQuestionResponse,
    responses={
        400: {"description": "Session id missing", "model": ErrorResponse},
        404: {"description": "Unknown session", "model": ErrorResponse},
        502: {"model": ErrorResponse},
    },
    summary="Fetch the next diagnostic question",
)
async def next_question(
    body: SessionIdRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
) -> NextQuestionResponse:
    return await diagnostic_service.next_question(db, user, body.resolved_id)


@router.post(
    "/api/diagnostic/submit-answer",
    response_model=SubmitAnswerResponse,
    responses={
        400: {"description": "Session id or answer index missing", "model": ErrorResponse},
        404: {"description": "Unknown session", "model": ErrorResponse},
    },
    summary="Submit the answer to the current question",
)
async def submit_answer(
    body: SubmitAnswerRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
) -> SubmitAnswerResponse:
    return await diagnostic_service.submit_answer(
        db, user, body.resolved_id, body.answer_index, body.answer_text
    )


@router.post(
    "/api/session/refresh-diagnosis",
    response_model=RefreshDiagnosisResponse,
    responses={
        400: {"description": "Session id missing or fallback session", "model": ErrorResponse},
        404: {"description": "Unknown session", "model": ErrorResponse},
        502: {"model": ErrorResponse},
    },
    summary="Refresh the differential diagnosis",
)
async def refresh_diagnosis(
    body: SessionIdRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
) -> RefreshDiagnosisResponse:
    return await diagnostic_service.refresh_diagnosis(db, user, body.resolved_id)
