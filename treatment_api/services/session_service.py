"""
Treatment AI Backend — Session Service
=======================================

What:  Opaque bearer-session lookup, creation, logout and listing.
Why:   Every authenticated endpoint resolves its caller here; keeping the
       lookup in one service means one query shape and one expiry rule.
How:   A token is valid when its `user_sessions` row is active, unexpired
       (`expires_at > NOW()`) and joined to an existing user. There is no
       signature to verify: the database row IS the credential.
Who:   Called by the `get_current_user` dependency and the /api/auth routes.

Query plan (validate_session):
    SELECT user_sessions.*, users.* FROM user_sessions
    JOIN users ON users.id = user_sessions.user_id
    WHERE session_token = :t AND is_active AND expires_at > NOW()
    → unique index on session_token, single row
"""

import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from treatment_api.config import settings
from treatment_api.exceptions import DatabaseError
from treatment_api.models.user import User, UserSession

logger = logging.getLogger(__name__)


class SessionService:
    """Stateless; receives the request's AsyncSession on every call."""

    @staticmethod
    def extract_token(raw: Any) -> Optional[str]:
        """
        Normalize the `sessionToken` body field.

        Accepts a bare string, or the stored session object some clients
        post instead (`{"session_token": ...}` or `{"id": ...}`).
        """
        if isinstance(raw, str):
            return raw.strip() or None
        if isinstance(raw, dict):
            for key in ("session_token", "sessionToken", "id"):
                value = raw.get(key)
                if isinstance(value, str) and value.strip():
                    return value.strip()
        return None

    async def validate_session(self, db: AsyncSession, token: str) -> Optional[User]:
        """
        Resolve a bearer token to its user.

        Returns:
            The User on success (and bumps `last_accessed`), None when the
            token is unknown, inactive or expired.
        """
        try:
            result = await db.execute(
                select(UserSession, User)
                .join(User, User.id == UserSession.user_id)
                .where(
                    UserSession.session_token == token,
                    UserSession.is_active.is_(True),
                    UserSession.expires_at > func.now(),
                )
            )
            row = result.first()
            if row is None:
                return None

            user_session, user = row
            user_session.last_accessed = datetime.now(timezone.utc)
            await db.flush()
            return user

        except SQLAlchemyError as e:
            logger.error("Database error validating session: %s", str(e))
            raise DatabaseError(
                message="Could not validate the session. Please try again.",
                context={"error_type": type(e).__name__},
            ) from e

    async def create_session(
        self,
        db: AsyncSession,
        user: User,
        token: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        expires_in_hours: Optional[int] = None,
    ) -> UserSession:
        """
        Issue a new session row for a freshly authenticated user.

        `ip_address` is the address resolved by `middleware.logging.client_ip`.
        """
        hours = expires_in_hours or settings.session_expiry_hours

        user_session = UserSession(
            session_id=str(uuid.uuid4()),
            user_id=user.id,
            user_email=user.email,
            session_token=token,
            expires_at=datetime.now(timezone.utc) + timedelta(hours=hours),
            is_active=True,
            ip_address=ip_address or None,
            user_agent=user_agent,
        )
        try:
            db.add(user_session)
            await db.flush()
        except SQLAlchemyError as e:
            logger.error("Database error creating session for %s: %s", user.id, str(e))
            raise DatabaseError(context={"error_type": type(e).__name__}) from e

        logger.info("Session created for user %s (expires in %dh)", user.id, hours)
        return user_session

    async def invalidate_session(self, db: AsyncSession, token: str) -> bool:
        """Deactivate a session (logout). Returns whether a row changed."""
        try:
            result = await db.execute(
                update(UserSession)
                .where(UserSession.session_token == token, UserSession.is_active.is_(True))
                .values(is_active=False)
            )
        except SQLAlchemyError as e:
            logger.error("Database error invalidating session: %s", str(e))
            raise DatabaseError(context={"error_type": type(e).__name__}) from e
        return (result.rowcount or 0) > 0

    async def list_user_sessions(self, db: AsyncSession, user_id: uuid.UUID) -> List[UserSession]:
        """Active, unexpired sessions, most recently used first."""
        try:
            result = await db.execute(
                select(UserSession)
                .where(
                    UserSession.user_id == user_id,
                    UserSession.is_active.is_(True),
                    UserSession.expires_at > func.now(),
                )
                .order_by(UserSession.last_accessed.desc())
            )
            return list(result.scalars().all())
        except SQLAlchemyError as e:
            logger.error("Database error listing sessions for %s: %s", user_id, str(e))
            raise DatabaseError(context={"error_type": type(e).__name__}) from e


# ── Singleton Instance ────────────────────────────────────────────────────
session_service = SessionService()
