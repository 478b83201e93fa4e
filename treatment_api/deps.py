"""
Treatment AI Backend — Shared FastAPI Dependencies
===================================================

What:  Bearer-token extraction and current-user resolution.
Why:   One dependency replaces the per-handler "read header, look up
       session, 401 if missing" boilerplate.
How:   `HTTPBearer(auto_error=False)` parses `Authorization: Bearer <t>`
       (and documents the scheme in OpenAPI); `get_current_user` resolves
       the token through SessionService on the request's DB session.

Usage:
    @router.get("/api/conditions/user")
    async def list_mine(user: User = Depends(get_current_user), ...):
        ...
"""

from typing import Optional

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from treatment_api.database import get_db_session
from treatment_api.exceptions import AuthenticationError
from treatment_api.models.user import User
from treatment_api.services.session_service import session_service

# auto_error=False: we raise our own AuthenticationError so the 401 body
# uses the shared error envelope
bearer_scheme = HTTPBearer(auto_error=False)


async def get_bearer_token(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> str:
    """Returns the raw token or raises 401 "Authentication required"."""
    if credentials is None or not credentials.credentials.strip():
        raise AuthenticationError("Authentication required")
    return credentials.credentials.strip()


async def get_current_user(
    token: str = Depends(get_bearer_token),
    db: AsyncSession = Depends(get_db_session),
) -> User:
    """Resolves the bearer token to an active user or raises 401."""
    user = await session_service.validate_session(db, token)
    if user is None:
        raise AuthenticationError("Invalid or expired session")
    return user
