"""
Treatment AI Backend — Login Service
=====================================

What:  Email one-time codes and password login with lockout.
Why:   Both login paths end in the same place: a six-digit code mailed to
       the account, then a bearer session once the code is verified.
How:   - Codes are stored as HMAC-SHA256(OTP_SECRET, "email:code"), compared
         with hmac.compare_digest, expire after OTP_EXPIRY_MINUTES and are
         burned after OTP_MAX_ATTEMPTS wrong guesses
       - Passwords are bcrypt hashes
       - LOGIN_MAX_FAILED_ATTEMPTS consecutive wrong passwords lock the
         account for LOGIN_LOCKOUT_MINUTES
Who:   Called by routes/auth.py; sessions are issued through SessionService.

Transactions:
    A failed attempt ends the request with an exception, which rolls back the
    request transaction. Wrong-password counters and wrong-code attempts are
    therefore written through `independent_session`.

Login flow:
    request-otp / login-with-password → code mailed
    verify-login-otp                  → {user, sessionToken}
"""

import hashlib
import hmac
import logging
import secrets
import string
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional, Tuple

import bcrypt
from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from treatment_api.config import settings
from treatment_api.database import independent_session
from treatment_api.exceptions import (
    AccountLockedError,
    AuthenticationError,
    DatabaseError,
    NotFoundError,
    ValidationError,
)
from treatment_api.models.user import OtpCode, User
from treatment_api.services.account_link_service import EMAIL_PATTERN
from treatment_api.services.email_service import EmailService, email_service
from treatment_api.services.session_service import session_service

logger = logging.getLogger(__name__)

CODE_PURPOSES = ("login", "verification")
INVALID_CODE = "Invalid or expired verification code. Please request a new one."
INVALID_CREDENTIALS = "Invalid email or password"


def normalize_email(email: Optional[str]) -> str:
    return (email or "").strip().lower()


def hash_code(email: str, code: str) -> str:
    return hmac.new(
        settings.otp_secret.encode("utf-8"),
        f"{email}:{code}".encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()


def generate_code() -> str:
    return "".join(secrets.choice(string.digits) for _ in range(settings.otp_length))


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def check_password(password: str, password_hash: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        # Malformed stored hash
        logger.warning("Unreadable password hash encountered during login")
        return False


class AuthService:

    def __init__(self, mailer: EmailService = email_service):
        self.mailer = mailer

    # ══════════════════════════════════════════════════════════════════════
    # One-time codes
    # ══════════════════════════════════════════════════════════════════════

    async def request_otp(self, db: AsyncSession, email: Optional[str], purpose: str = "login") -> None:
        """
        Mail a fresh code to an existing account.

        Raises:
            ValidationError: malformed email or unknown purpose (400)
            NotFoundError: no account for the email (404)
            UpstreamServiceError: the email could not be sent (502)
        """
        address = normalize_email(email)
        if not EMAIL_PATTERN.match(address):
            raise ValidationError("Valid email address is required", field="email")
        if purpose not in CODE_PURPOSES:
            raise ValidationError(
                f"Purpose must be one of: {', '.join(CODE_PURPOSES)}", field="purpose"
            )

        user = await self.get_user_by_email(db, address)
        if user is None:
            raise NotFoundError(
                resource="account",
                message="No account found with this email. Please sign up first.",
            )
        await self.issue_code(db, address, purpose, user.id)

    async def issue_code(
        self, db: AsyncSession, email: str, code_type: str, user_id: Optional[uuid.UUID] = None
    ) -> None:
        """Replace any live code for (email, code_type) and mail the new one."""
        code = generate_code()
        try:
            await db.execute(
                delete(OtpCode).where(OtpCode.email == email, OtpCode.code_type == code_type)
            )
            db.add(
                OtpCode(
                    user_id=user_id,
                    email=email,
                    code_hash=hash_code(email, code),
                    code_type=code_type,
                    expires_at=datetime.now(timezone.utc)
                    + timedelta(minutes=settings.otp_expiry_minutes),
                    is_used=False,
                    attempts=0,
                )
            )
            await db.flush()
        except SQLAlchemyError as e:
            logger.error("Database error storing %s code for %s: %s", code_type, email, str(e))
            raise DatabaseError(context={"error_type": type(e).__name__}) from e

        await self.mailer.send_login_code(email, code)
        logger.info("%s code issued for %s", code_type.capitalize(), email)

    async def verify_code(
        self, db: AsyncSession, email: Optional[str], code: Optional[str], code_type: str = "login"
    ) -> User:
        """
        Consume a code and return its account.

        Every failure is reported with the same message so the response
        does not tell an attacker whether the email has a live code.
        """
        address = normalize_email(email)
        code = (code or "").strip()
        if not address or not code:
            raise ValidationError("Email and verification code are required")

        try:
            result = await db.execute(
                select(OtpCode)
                .where(
                    OtpCode.email == address,
                    OtpCode.code_type == code_type,
                    OtpCode.is_used.is_(False),
                )
                .order_by(OtpCode.created_at.desc())
                .limit(1)
            )
            record = result.scalar_one_or_none()
        except SQLAlchemyError as e:
            logger.error("Database error loading code for %s: %s", address, str(e))
            raise DatabaseError(context={"error_type": type(e).__name__}) from e

        now = datetime.now(timezone.utc)
        if record is None or record.expires_at <= now:
            raise ValidationError(INVALID_CODE, field="otpCode")

        if not hmac.compare_digest(hash_code(address, code), record.code_hash):
            attempts = (record.attempts or 0) + 1
            burned = attempts >= settings.otp_max_attempts
            await self._record_wrong_code(record.id, attempts, burned)
            logger.warning("Wrong code for %s (attempt %d%s)", address, attempts, ", burned" if burned else "")
            raise ValidationError(INVALID_CODE, field="otpCode")

        record.is_used = True
        user = await self.get_user_by_email(db, address)
        if user is None or not user.is_active:
            raise NotFoundError(resource="account", message="No active account found with this email")
        return user

    async def login_with_code(
        self,
        db: AsyncSession,
        email: Optional[str],
        code: Optional[str],
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        code_type: str = "login",
    ) -> Tuple[User, str]:
        """Verify a code and open a session. A verification code also marks the email verified."""
        user = await self.verify_code(db, email, code, code_type)
        if code_type == "verification":
            user.is_verified = True

        token = secrets.token_hex(32)
        await session_service.create_session(db, user, token, ip_address, user_agent)
        logger.info("User %s logged in with a %s code", user.id, code_type)
        return user, token

    # ══════════════════════════════════════════════════════════════════════
    # Password login
    # ══════════════════════════════════════════════════════════════════════

    async def login_with_password(
        self, db: AsyncSession, email: Optional[str], password: Optional[str]
    ) -> None:
        """
        Check the password, then mail a login code.

        Raises:
            ValidationError: missing fields, or no password set up (400)
            AuthenticationError: unknown email or wrong password (401)
            AccountLockedError: too many consecutive failures (423)
        """
        address = normalize_email(email)
        if not address or not password:
            raise ValidationError("Email and password are required")

        user = await self.get_user_by_email(db, address)
        if user is None or not user.is_active:
            raise AuthenticationError(INVALID_CREDENTIALS)

        now = datetime.now(timezone.utc)
        if user.account_locked_until and user.account_locked_until > now:
            raise AccountLockedError(locked_until=user.account_locked_until.isoformat())

        if not user.password_hash:
            raise ValidationError("Password authentication not set up for this account")

        if not check_password(password, user.password_hash):
            failures = (user.failed_login_attempts or 0) + 1
            if failures >= settings.login_max_failed_attempts:
                locked_until = now + timedelta(minutes=settings.login_lockout_minutes)
                await self._record_failed_login(user.id, 0, locked_until)
                logger.warning("Account %s locked after %d failed logins", user.id, failures)
                raise AccountLockedError(locked_until=locked_until.isoformat())
            await self._record_failed_login(user.id, failures, None)
            raise AuthenticationError(INVALID_CREDENTIALS)

        user.failed_login_attempts = 0
        user.account_locked_until = None
        await self.issue_code(db, address, "login", user.id)

    # ── Helpers ───────────────────────────────────────────────────────────

    async def get_user_by_email(self, db: AsyncSession, email: str) -> Optional[User]:
        try:
            result = await db.execute(select(User).where(func.lower(User.email) == email))
            return result.scalar_one_or_none()
        except SQLAlchemyError as e:
            logger.error("Database error looking up %s: %s", email, str(e))
            raise DatabaseError(context={"error_type": type(e).__name__}) from e

    async def _record_failed_login(
        self, user_id: uuid.UUID, attempts: int, locked_until: Optional[datetime]
    ) -> None:
        try:
            async with independent_session() as side_db:
                await side_db.execute(
                    update(User)
                    .where(User.id == user_id)
                    .values(failed_login_attempts=attempts, account_locked_until=locked_until)
                )
        except SQLAlchemyError as e:
            logger.error("Failed to record login failure for %s: %s", user_id, str(e))
            raise DatabaseError(context={"error_type": type(e).__name__}) from e

    async def _record_wrong_code(self, code_id: uuid.UUID, attempts: int, burned: bool) -> None:
        try:
            async with independent_session() as side_db:
                await side_db.execute(
                    update(OtpCode)
                    .where(OtpCode.id == code_id)
                    .values(attempts=attempts, is_used=burned)
                )
        except SQLAlchemyError as e:
            logger.error("Failed to record wrong code attempt: %s", str(e))
            raise DatabaseError(context={"error_type": type(e).__name__}) from e


# ── Singleton Instance ────────────────────────────────────────────────────
auth_service = AuthService()
