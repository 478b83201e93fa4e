"""
Treatment AI Backend — Auth & Session Routes
=============================================

Login is two-step: request-otp (or login-with-password) mails a code,
verify-login-otp exchanges it for a bearer session. None of the login
endpoints require a session.
"""

import logging

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from treatment_api.database import get_db_session
from treatment_api.deps import get_bearer_token, get_current_user
from treatment_api.exceptions import AuthenticationError, ValidationError
from treatment_api.middleware.logging import client_ip
from treatment_api.models.user import User
from treatment_api.schemas.auth import (
    LoginResponse,
    OtpSentResponse,
    PasswordLoginRequest,
    RequestOtpRequest,
    SessionInfo,
    SessionListResponse,
    UserProfile,
    ValidateSessionRequest,
    ValidateSessionResponse,
    VerifyOtpRequest,
)
from treatment_api.schemas.common import ErrorResponse, MessageResponse
from treatment_api.services.auth_service import CODE_PURPOSES, auth_service
from treatment_api.services.session_service import session_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["Auth"])


# ── Login ─────────────────────────────────────────────────────────────────

@router.post(
    "/auth/request-otp",
    response_model=OtpSentResponse,
    responses={
        400: {"description": "Malformed email or unknown purpose", "model": ErrorResponse},
        404: {"description": "No account for the email", "model": ErrorResponse},
        502: {"description": "Email could not be sent", "model": ErrorResponse},
    },
    summary="Mail a one-time login code",
)
async def request_otp(
    body: RequestOtpRequest,
    db: AsyncSession = Depends(get_db_session),
) -> OtpSentResponse:
    await auth_service.request_otp(db, body.email, body.purpose)
    return OtpSentResponse()


@router.post(
    "/auth/login-with-password",
    response_model=OtpSentResponse,
    responses={
        400: {"description": "Missing fields or no password set up", "model": ErrorResponse},
        401: {"description": "Invalid email or password", "model": ErrorResponse},
        423: {"description": "Account locked", "model": ErrorResponse},
    },
    summary="Check a password and mail a login code",
)
async def login_with_password(
    body: PasswordLoginRequest,
    db: AsyncSession = Depends(get_db_session),
) -> OtpSentResponse:
    """The password is the first factor only; the session comes from verify-login-otp."""
    await auth_service.login_with_password(db, body.email, body.password)
    return OtpSentResponse()


@router.post(
    "/auth/verify-login-otp",
    response_model=LoginResponse,
    responses={400: {"description": "Missing, wrong or expired code", "model": ErrorResponse}},
    summary="Exchange a login code for a session",
)
async def verify_login_otp(
    body: VerifyOtpRequest,
    request: Request,
    db: AsyncSession = Depends(get_db_session),
) -> LoginResponse:
    return await _login(db, request, body, "login")


@router.post(
    "/auth/verify-otp",
    response_model=LoginResponse,
    responses={400: {"description": "Missing, wrong or expired code", "model": ErrorResponse}},
    summary="Verify a login or email-verification code",
)
async def verify_otp(
    body: VerifyOtpRequest,
    request: Request,
    db: AsyncSession = Depends(get_db_session),
) -> LoginResponse:
    if body.purpose not in CODE_PURPOSES:
        raise ValidationError(
            f"Purpose must be one of: {', '.join(CODE_PURPOSES)}", field="purpose"
        )
    return await _login(db, request, body, body.purpose)


async def _login(
    db: AsyncSession, request: Request, body: VerifyOtpRequest, code_type: str
) -> LoginResponse:
    user, token = await auth_service.login_with_code(
        db,
        body.email,
        body.otp_code,
        ip_address=client_ip(request),
        user_agent=request.headers.get("User-Agent"),
        code_type=code_type,
    )
    return LoginResponse(user=UserProfile.model_validate(user), session_token=token)


@router.post(
    "/auth/validate-session",
    response_model=ValidateSessionResponse,
    responses={
        400: {"description": "No session token supplied", "model": ErrorResponse},
        401: {"description": "Unknown, inactive or expired session", "model": ErrorResponse},
    },
    summary="Validate a session token",
)
async def validate_session(
    body: ValidateSessionRequest,
    db: AsyncSession = Depends(get_db_session),
) -> ValidateSessionResponse:
    """
    Called by the clients on launch to check that the stored session is
    still good and to refresh the cached profile.
    """
    token = session_service.extract_token(body.session_token)
    if not token:
        raise ValidationError("Session token is required", field="sessionToken")

    user = await session_service.validate_session(db, token)
    if user is None:
        raise AuthenticationError("Invalid or expired session")

    return ValidateSessionResponse(user=UserProfile.model_validate(user), session_token=token)


@router.post(
    "/auth/logout",
    response_model=MessageResponse,
    responses={401: {"model": ErrorResponse}},
    summary="End the current session",
)
async def logout(
    token: str = Depends(get_bearer_token),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
) -> MessageResponse:
    await session_service.invalidate_session(db, token)
    logger.info("User %s logged out", user.id)
    return MessageResponse(message="Logged out successfully")


@router.get(
    "/profile/sessions",
    response_model=SessionListResponse,
    responses={401: {"model": ErrorResponse}},
    summary="List the caller's active sessions",
)
async def list_sessions(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
) -> SessionListResponse:
    sessions = await session_service.list_user_sessions(db, user.id)
    return SessionListResponse(sessions=[SessionInfo.model_validate(s) for s in sessions])
