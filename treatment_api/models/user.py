"""
Treatment AI Backend — User, Session & Login Code SQLAlchemy Models
====================================================================

What:  ORM models for the `users`, `user_sessions` and `otp_codes` tables.
Why:   Every authenticated endpoint resolves its caller through these tables.
How:   A session token is an opaque string; authentication is a lookup of an
       active, unexpired `user_sessions` row joined to its `users` row.
Who:   Used by SessionService (validation, logout, session listing), by
       AuthService (password check, lockout, one-time codes) and by the
       `get_current_user` dependency.

Table Design Rationale:
    - session_token UNIQUE: the lookup key for every request; the unique
      index doubles as the access path (O(log n) per request)
    - expires_at: absolute expiry, compared against NOW() on every lookup
    - is_active: logout flips this flag instead of deleting the row, so the
      session history stays visible on the profile page
    - last_accessed: bumped on each successful validation
"""

import uuid
from datetime import date, datetime, timezone

from sqlalchemy import Boolean, Date, ForeignKey, Index, Integer, String, Text, text
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.dialects.postgresql import INET, UUID, TIMESTAMP

from treatment_api.database import Base


class User(Base):
    """
    A registered patient account.

    Address columns are owned by the signup flow and not mapped here.
    `password_hash` is NULL for accounts that only ever log in by email code.
    """

    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=text("gen_random_uuid()"),
    )
    email: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        unique=True,
        comment="Login email, also used to address account-link invitations",
    )
    phone: Mapped[str | None] = mapped_column(String(20), nullable=True)
    first_name: Mapped[str] = mapped_column(String(100), nullable=False)
    last_name: Mapped[str] = mapped_column(String(100), nullable=False)
    date_of_birth: Mapped[date | None] = mapped_column(Date, nullable=True)
    gender_at_birth: Mapped[str | None] = mapped_column(
        String(10),
        nullable=True,
        comment="male, female or other",
    )
    is_verified: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=text("false")
    )
    is_active: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=True, server_default=text("true")
    )
    password_hash: Mapped[str | None] = mapped_column(
        String(255), nullable=True, comment="bcrypt hash"
    )
    failed_login_attempts: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default=text("0")
    )
    account_locked_until: Mapped[datetime | None] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        server_default=text("CURRENT_TIMESTAMP"),
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        server_default=text("CURRENT_TIMESTAMP"),
    )

    sessions: Mapped[list["UserSession"]] = relationship(back_populates="user")

    def __repr__(self) -> str:
        return f"<User(id={self.id}, email='{self.email}')>"


class UserSession(Base):
    """
    A bearer session issued at login.

    Lifecycle:
        1. Created at login with expires_at = now + SESSION_EXPIRY_HOURS (default 4)
        2. Validated on every request (is_active AND expires_at > NOW())
        3. last_accessed bumped on each successful validation
        4. Deactivated at logout (is_active = false), never deleted
    """

    __tablename__ = "user_sessions"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=text("gen_random_uuid()"),
    )

    # What: Client-side session identifier (chat/diagnostic session), optional
    session_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
    )
    user_email: Mapped[str | None] = mapped_column(String(255), nullable=True)

    session_token: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        unique=True,
        comment="Opaque bearer token presented in the Authorization header",
    )
    expires_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
        comment="Absolute expiry; sessions past this instant never validate",
    )
    is_active: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=True, server_default=text("true")
    )
    ip_address: Mapped[str | None] = mapped_column(INET, nullable=True)
    user_agent: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        server_default=text("CURRENT_TIMESTAMP"),
    )
    last_accessed: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        server_default=text("CURRENT_TIMESTAMP"),
    )

    user: Mapped[User] = relationship(back_populates="sessions")

    __table_args__ = (
        Index("idx_user_sessions_user_id", "user_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<UserSession(user_id={self.user_id}, active={self.is_active}, "
            f"expires_at='{self.expires_at}')>"
        )


class OtpCode(Base):
    """
    A one-time login code mailed to the user.

    Only an HMAC of the code is stored. Requesting a new code for the same
    email and purpose deletes the previous one, so at most one code is live.
    """

    __tablename__ = "otp_codes"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=text("gen_random_uuid()"),
    )
    user_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=True,
    )
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    code_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    code_type: Mapped[str] = mapped_column(
        String(20), nullable=False, comment="login or verification"
    )
    expires_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), nullable=False)
    is_used: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=text("false")
    )
    attempts: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default=text("0")
    )
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        server_default=text("CURRENT_TIMESTAMP"),
    )

    __table_args__ = (
        Index("idx_otp_codes_email_type", "email", "code_type"),
    )

    def __repr__(self) -> str:
        return f"<OtpCode(email='{self.email}', type='{self.code_type}', used={self.is_used})>"
