"""
Treatment AI Backend — Session Schemas
=======================================

What:  Request/response bodies for code and password login, session
       validation, logout and the active-session listing on the profile page.
"""

import uuid
from datetime import date, datetime
from typing import Any, Dict, List, Optional, Union

from pydantic import Field, field_validator

from treatment_api.schemas.common import CamelModel


class ValidateSessionRequest(CamelModel):
    """
    Body of POST /api/auth/validate-session.

    Older clients post the whole stored session object instead of the bare
    token, so both shapes are accepted:
        {"sessionToken": "abc"}
        {"sessionToken": {"session_token": "abc", ...}}
        {"sessionToken": {"id": "abc"}}
    Optional at the schema level so a missing token yields our 400 message
    rather than FastAPI's generic 422.
    """
    session_token: Optional[Union[str, Dict[str, Any]]] = Field(default=None)


class UserProfile(CamelModel):
    """Public projection of a user row."""
    id: uuid.UUID
    email: str
    phone: Optional[str] = None
    first_name: str
    last_name: str
    date_of_birth: Optional[date] = None
    gender_at_birth: Optional[str] = None
    is_verified: bool = False


class ValidateSessionResponse(CamelModel):
    success: bool = True
    user: UserProfile
    session_token: str


class SessionInfo(CamelModel):
    """One active session, as listed on the profile page."""
    id: uuid.UUID
    session_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime
    last_accessed: datetime
    expires_at: datetime

    @field_validator("ip_address", mode="before")
    @classmethod
    def stringify_ip(cls, v: Any) -> Optional[str]:
        """asyncpg returns INET columns as ipaddress objects."""
        return None if v is None else str(v)


class SessionListResponse(CamelModel):
    success: bool = True
    sessions: List[SessionInfo]


# ── Login ─────────────────────────────────────────────────────────────────

class RequestOtpRequest(CamelModel):
    email: Optional[str] = None
    purpose: str = "login"


class VerifyOtpRequest(CamelModel):
    """Body of verify-login-otp (purpose fixed to login) and verify-otp."""
    email: Optional[str] = None
    otp_code: Optional[str] = None
    purpose: str = "login"


class PasswordLoginRequest(CamelModel):
    email: Optional[str] = None
    password: Optional[str] = None


class OtpSentResponse(CamelModel):
    success: bool = True
    message: str = "Verification code sent to your email"
    otp_sent: bool = True
    method: str = "email"


class LoginResponse(CamelModel):
    success: bool = True
    message: str = "Login successful"
    user: UserProfile
    session_token: str
