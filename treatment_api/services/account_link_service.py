"""
Treatment AI Backend — Account Linking Service
===============================================

What:  Invitations, directional links, permission management and the
       access audit trail.
Why:   Patients share health data with family, caregivers and clinicians,
       and every grant, change and access must be explicit and auditable.
Who:   Called by routes/accounts.py and, for link ownership checks, by
       ShareService.

Invitation Lifecycle:
    ┌──────────┐  accept   ┌──────────┐
    │ pending  │──────────▶│ accepted │──▶ two linked_accounts rows
    └──────────┘           └──────────┘
         │ reject / expiry
         ▼
    ┌────────────────────┐
    │ rejected / expired │
    └────────────────────┘

Transactions:
    Accepting (invitation update + two upserts) and unlinking (two soft
    deletes + audit row) each run inside the request's single transaction
    (see database.get_db_session), so they commit or roll back as a unit.

Audit of denials:
    A denied access raises PermissionDeniedError, which rolls back the
    request transaction. The denial row is therefore written through its
    own short-lived session so it survives the rollback.
"""

import logging
import re
import uuid
from collections import Counter
from datetime import datetime, timedelta, timezone
from typing import Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from treatment_api.config import settings
from treatment_api.database import independent_session
from treatment_api.exceptions import (
    DatabaseError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from treatment_api.models.account_link import (
    AccountAccessLog,
    AccountLinkInvitation,
    LinkedAccount,
)
from treatment_api.models.user import User
from treatment_api.schemas.accounts import (
    AccessFrequency,
    AccessLogItem,
    AccessStatsItem,
    InvitationItem,
    LinkedAccountItem,
    LinkedAccountsData,
    LinkSummary,
    PermissionsUpdate,
    UnlinkData,
    UnlinkedAccount,
)

logger = logging.getLogger(__name__)

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

INVITE_PERMISSIONS = frozenset(
    {"health_data", "wearables", "medications", "lab_results", "vitals", "all"}
)
MANAGE_PERMISSIONS = INVITE_PERMISSIONS | {"all_data"}
WILDCARD_PERMISSIONS = frozenset({"all", "all_data"})

RELATIONSHIP_TYPES = frozenset(
    {"family", "healthcare_provider", "caregiver", "friend", "other"}
)
LINK_NOT_FOUND = "Linked account not found or access denied"


def has_permission(permissions: Iterable[str], data_type: str) -> bool:
    """True when `permissions` grants `data_type` directly or via a wildcard."""
    granted = set(permissions or [])
    return data_type in granted or bool(granted & WILDCARD_PERMISSIONS)


def _invalid_permissions(permissions: Sequence[str], allowed: frozenset) -> List[str]:
    return [p for p in permissions if p not in allowed]


class AccountLinkService:

    # ── Invitations ───────────────────────────────────────────────────────

    async def invite(
        self,
        db: AsyncSession,
        user: User,
        invitee_email: Optional[str],
        permissions: Optional[List[str]],
        relationship_type: Optional[str] = None,
        message: Optional[str] = None,
    ) -> AccountLinkInvitation:
        """
        Create a pending invitation valid for INVITATION_EXPIRY_HOURS.

        Raises:
            ValidationError: missing/invalid email, self-invite, or
                empty/unknown permissions (400)
        """
        if not invitee_email or permissions is None:
            raise ValidationError(
                "Missing required fields: inviteeEmail and permissions are required"
            )
        invitee_email = invitee_email.strip()
        if not EMAIL_PATTERN.match(invitee_email):
            raise ValidationError("Invalid email format", field="inviteeEmail")
        if invitee_email.lower() == user.email.lower():
            raise ValidationError("Cannot invite yourself", field="inviteeEmail")
        if not permissions:
            raise ValidationError("At least one permission is required", field="permissions")

        invalid = _invalid_permissions(permissions, INVITE_PERMISSIONS)
        if invalid:
            raise ValidationError(
                f"Invalid permissions: {', '.join(invalid)}",
                field="permissions",
                context={"valid_permissions": sorted(INVITE_PERMISSIONS)},
            )

        relationship = relationship_type or "family"
        if relationship not in RELATIONSHIP_TYPES:
            raise ValidationError(
                f"Invalid relationship type: {relationship}",
                field="relationshipType",
                context={"valid_relationship_types": sorted(RELATIONSHIP_TYPES)},
            )

        now = datetime.now(timezone.utc)
        invitation = AccountLinkInvitation(
            inviter_user_id=user.id,
            inviter_email=user.email,
            invitee_email=invitee_email,
            link_token=str(uuid.uuid4()),
            relationship_type=relationship,
            message=message,
            status="pending",
            permissions=list(dict.fromkeys(permissions)),
            expires_at=now + timedelta(hours=settings.invitation_expiry_hours),
            created_at=now,
        )
        try:
            db.add(invitation)
            await db.flush()
        except SQLAlchemyError as e:
            logger.error("Database error creating invitation from %s: %s", user.id, str(e))
            raise DatabaseError(
                message="Failed to create invitation",
                context={"error_type": type(e).__name__},
            ) from e

        logger.info(
            "Invitation %s created by %s for %s (%s)",
            invitation.id, user.id, invitee_email, ",".join(invitation.permissions),
        )
        return invitation

    async def respond(
        self,
        db: AsyncSession,
        user: User,
        link_token: Optional[str],
        action: Optional[str],
        reciprocal_permissions: Optional[List[str]] = None,
    ) -> Optional[LinkedAccountItem]:
        """
        Accept or reject an invitation addressed to the caller.

        Returns:
            On accept, the caller's new view of the inviter (acceptee → inviter
            link). On reject, None.
        """
        if not link_token or not action:
            raise ValidationError(
                "Missing required fields: linkToken and action are required"
            )
        if action not in ("accept", "reject"):
            raise ValidationError('Invalid action. Must be "accept" or "reject"', field="action")

        reciprocal = list(dict.fromkeys(reciprocal_permissions or []))
        invalid = _invalid_permissions(reciprocal, INVITE_PERMISSIONS)
        if invalid:
            raise ValidationError(
                f"Invalid permissions: {', '.join(invalid)}",
                field="reciprocalPermissions",
            )

        try:
            result = await db.execute(
                select(AccountLinkInvitation).where(
                    AccountLinkInvitation.link_token == link_token,
                    AccountLinkInvitation.status == "pending",
                    AccountLinkInvitation.expires_at > func.now(),
                )
            )
            invitation = result.scalar_one_or_none()
        except SQLAlchemyError as e:
            logger.error("Database error loading invitation: %s", str(e))
            raise DatabaseError(context={"error_type": type(e).__name__}) from e

        if invitation is None:
            raise NotFoundError(resource="invitation", message="Invitation not found or expired")
        if invitation.invitee_email.lower() != user.email.lower():
            raise PermissionDeniedError("You are not authorized to respond to this invitation")

        now = datetime.now(timezone.utc)
        if action == "reject":
            invitation.status = "rejected"
            invitation.rejected_at = now
            invitation.invited_user_id = user.id
            try:
                await db.flush()
            except SQLAlchemyError as e:
                logger.error("Database error rejecting invitation %s: %s", invitation.id, str(e))
                raise DatabaseError(context={"error_type": type(e).__name__}) from e
            logger.info("Invitation %s rejected by %s", invitation.id, user.id)
            return None

        invitation.status = "accepted"
        invitation.accepted_at = now
        invitation.invited_user_id = user.id

        try:
            await db.flush()
            # inviter → acceptee: what the acceptee chose to share back
            await self._upsert_link(
                db,
                user_id=invitation.inviter_user_id,
                linked_user_id=user.id,
                permissions=reciprocal,
                relationship_type=invitation.relationship_type,
                inviter_email=invitation.inviter_email,
                linked_email=user.email,
            )
            # acceptee → inviter: what the inviter granted
            link = await self._upsert_link(
                db,
                user_id=user.id,
                linked_user_id=invitation.inviter_user_id,
                permissions=list(invitation.permissions or []),
                relationship_type=invitation.relationship_type,
                inviter_email=invitation.inviter_email,
                linked_email=invitation.inviter_email,
            )
        except SQLAlchemyError as e:
            logger.error("Database error accepting invitation %s: %s", invitation.id, str(e))
            raise DatabaseError(
                message="Failed to process invitation",
                context={"error_type": type(e).__name__},
            ) from e

        logger.info(
            "Invitation %s accepted: %s <-> %s", invitation.id, invitation.inviter_user_id, user.id
        )
        return self._link_item(link, user)

    async def list_pending_invitations(
        self, db: AsyncSession, user: User
    ) -> List[AccountLinkInvitation]:
        """Pending, unexpired invitations addressed to the caller's email."""
        try:
            result = await db.execute(
                select(AccountLinkInvitation)
                .where(
                    func.lower(AccountLinkInvitation.invitee_email) == user.email.lower(),
                    AccountLinkInvitation.status == "pending",
                    AccountLinkInvitation.expires_at > func.now(),
                )
                .order_by(AccountLinkInvitation.created_at.desc())
            )
            return list(result.scalars().all())
        except SQLAlchemyError as e:
            logger.error("Database error listing invitations for %s: %s", user.id, str(e))
            raise DatabaseError(context={"error_type": type(e).__name__}) from e

    async def cleanup_expired_invitations(self, db: AsyncSession) -> int:
        """Mark pending invitations past their expiry as expired. Returns the count."""
        try:
            result = await db.execute(
                update(AccountLinkInvitation)
                .where(
                    AccountLinkInvitation.status == "pending",
                    AccountLinkInvitation.expires_at <= func.now(),
                )
                .values(status="expired")
            )
        except SQLAlchemyError as e:
            logger.error("Database error expiring invitations: %s", str(e))
            raise DatabaseError(context={"error_type": type(e).__name__}) from e

        count = result.rowcount or 0
        if count:
            logger.info("Expired %d stale invitations", count)
        return count

    # ── Links ─────────────────────────────────────────────────────────────

    async def list_linked(self, db: AsyncSession, user: User) -> LinkedAccountsData:
        """Active outbound links plus received and sent invitations."""
        try:
            links_result = await db.execute(
                select(LinkedAccount)
                .where(LinkedAccount.user_id == user.id, LinkedAccount.is_active.is_(True))
                .order_by(LinkedAccount.created_at.desc())
            )
            links = list(links_result.scalars().all())

            sent_result = await db.execute(
                select(AccountLinkInvitation)
                .where(AccountLinkInvitation.inviter_user_id == user.id)
                .order_by(AccountLinkInvitation.created_at.desc())
            )
            sent = list(sent_result.scalars().all())
        except SQLAlchemyError as e:
            logger.error("Database error listing links for %s: %s", user.id, str(e))
            raise DatabaseError(
                message="Failed to fetch linked accounts",
                context={"error_type": type(e).__name__},
            ) from e

        pending = await self.list_pending_invitations(db, user)

        return LinkedAccountsData(
            linked_accounts=[self._link_item(link, user) for link in links],
            pending_invitations=[InvitationItem.model_validate(i) for i in pending],
            sent_invitations=[InvitationItem.model_validate(i) for i in sent],
            summary=LinkSummary(
                total_links=len(links),
                pending_received=len(pending),
                pending_sent=sum(1 for i in sent if i.status == "pending"),
            ),
        )

    async def get_owned_link(
        self, db: AsyncSession, user_id: uuid.UUID, linked_account_id: uuid.UUID
    ) -> LinkedAccount:
        """The caller's active link with this id, or 404."""
        try:
            result = await db.execute(
                select(LinkedAccount).where(
                    LinkedAccount.id == linked_account_id,
                    LinkedAccount.user_id == user_id,
                    LinkedAccount.is_active.is_(True),
                )
            )
            link = result.scalar_one_or_none()
        except SQLAlchemyError as e:
            logger.error("Database error loading link %s: %s", linked_account_id, str(e))
            raise DatabaseError(context={"error_type": type(e).__name__}) from e

        if link is None:
            raise NotFoundError(
                resource="linked account",
                resource_id=str(linked_account_id),
                message=LINK_NOT_FOUND,
            )
        return link

    async def update_permissions(
        self,
        db: AsyncSession,
        user: User,
        linked_account_id: Optional[uuid.UUID],
        new_permissions: Optional[List[str]],
    ) -> PermissionsUpdate:
        if linked_account_id is None or new_permissions is None:
            raise ValidationError(
                "Missing required parameters: linkedAccountId and newPermissions"
            )
        invalid = _invalid_permissions(new_permissions, MANAGE_PERMISSIONS)
        if invalid:
            raise ValidationError(
                f"Invalid permissions: {', '.join(invalid)}",
                field="newPermissions",
                context={"valid_permissions": sorted(MANAGE_PERMISSIONS)},
            )

        link = await self.get_owned_link(db, user.id, linked_account_id)
        old_permissions = list(link.permissions or [])
        new_permissions = list(dict.fromkeys(new_permissions))

        now = datetime.now(timezone.utc)
        link.permissions = new_permissions
        link.updated_at = now
        db.add(
            AccountAccessLog(
                requesting_user_id=user.id,
                requesting_user_email=user.email,
                linked_account_id=link.id,
                data_type="permission_change",
                permission_used="admin",
                access_granted=True,
                error_message=(
                    f"Permissions updated from [{', '.join(old_permissions)}] "
                    f"to [{', '.join(new_permissions)}]"
                ),
            )
        )
        try:
            await db.flush()
        except SQLAlchemyError as e:
            logger.error("Database error updating permissions on %s: %s", link.id, str(e))
            raise DatabaseError(context={"error_type": type(e).__name__}) from e

        logger.info("Permissions on link %s changed by %s", link.id, user.id)
        return PermissionsUpdate(
            linked_account_id=link.id,
            linked_user_email=link.linked_email,
            old_permissions=old_permissions,
            new_permissions=new_permissions,
            updated_at=now,
        )

    async def unlink(
        self,
        db: AsyncSession,
        user: User,
        linked_account_id: Optional[uuid.UUID],
        confirm_email: Optional[str] = None,
    ) -> UnlinkData:
        """Soft-delete both directions of a link and audit it."""
        if linked_account_id is None:
            raise ValidationError("Missing required parameter: linkedAccountId")

        link = await self.get_owned_link(db, user.id, linked_account_id)
        if confirm_email and confirm_email != link.linked_email:
            raise ValidationError(
                "Email confirmation does not match linked account email",
                field="confirmEmail",
            )

        now = datetime.now(timezone.utc)
        try:
            await db.execute(
                update(LinkedAccount)
                .where(
                    or_(
                        and_(
                            LinkedAccount.user_id == user.id,
                            LinkedAccount.linked_user_id == link.linked_user_id,
                        ),
                        and_(
                            LinkedAccount.user_id == link.linked_user_id,
                            LinkedAccount.linked_user_id == user.id,
                        ),
                    ),
                    LinkedAccount.is_active.is_(True),
                )
                .values(is_active=False, unlinked_at=now, updated_at=now)
            )
            db.add(
                AccountAccessLog(
                    requesting_user_id=user.id,
                    requesting_user_email=user.email,
                    linked_account_id=link.id,
                    data_type="account_unlink",
                    permission_used="admin",
                    access_granted=True,
                    error_message=(
                        f"Account unlinked: {link.linked_email} ({link.relationship_type})"
                    ),
                )
            )
            await db.flush()
        except SQLAlchemyError as e:
            logger.error("Database error unlinking %s: %s", link.id, str(e))
            raise DatabaseError(context={"error_type": type(e).__name__}) from e

        logger.info("Link %s removed by %s", link.id, user.id)
        return UnlinkData(
            unlinked_account=UnlinkedAccount(
                id=link.id,
                email=link.linked_email,
                relationship_type=link.relationship_type,
                was_linked_since=link.created_at,
                had_permissions=list(link.permissions or []),
            ),
            unlinked_at=now,
        )

    # ── Access control ────────────────────────────────────────────────────

    async def validate_access(
        self,
        db: AsyncSession,
        user: User,
        linked_account_id: Optional[uuid.UUID],
        data_type: Optional[str],
        required_permission: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> LinkedAccount:
        """
        Check that the caller may read `data_type` through this link.

        Every attempt lands in account_access_logs, granted or not.

        Raises:
            NotFoundError: link missing, inactive, or not the caller's (404)
            PermissionDeniedError: permission missing (403), with
                requiredPermission and availablePermissions in details
        """
        if linked_account_id is None or not data_type:
            raise ValidationError("Missing required fields: linkedAccountId and dataType")
        permission = required_permission or data_type

        try:
            link = await self.get_owned_link(db, user.id, linked_account_id)
        except NotFoundError:
            await self._record_denial(
                user, linked_account_id, data_type, permission, LINK_NOT_FOUND,
                ip_address, user_agent,
            )
            raise

        available = list(link.permissions or [])
        if not has_permission(available, permission):
            await self._record_denial(
                user, link.id, data_type, permission, "Insufficient permissions",
                ip_address, user_agent,
            )
            logger.warning(
                "Access denied: user %s lacks %s on link %s", user.id, permission, link.id
            )
            raise PermissionDeniedError(
                "Insufficient permissions",
                required_permission=permission,
                available_permissions=available,
            )

        db.add(
            AccountAccessLog(
                requesting_user_id=user.id,
                requesting_user_email=user.email,
                linked_account_id=link.id,
                data_type=data_type,
                permission_used=permission,
                access_granted=True,
                ip_address=ip_address,
                user_agent=user_agent,
            )
        )
        try:
            await db.flush()
        except SQLAlchemyError as e:
            logger.error("Database error logging access on %s: %s", link.id, str(e))
            raise DatabaseError(context={"error_type": type(e).__name__}) from e
        return link

    async def access_history(
        self, db: AsyncSession, user: User, limit: int = 50
    ) -> Tuple[List[AccessLogItem], List[AccessStatsItem]]:
        """
        The caller's access log, newest first, plus per-link usage stats
        computed over the same window.
        """
        try:
            logs_result = await db.execute(
                select(AccountAccessLog)
                .where(AccountAccessLog.requesting_user_id == user.id)
                .order_by(AccountAccessLog.created_at.desc())
                .limit(limit)
            )
            logs = list(logs_result.scalars().all())

            links_result = await db.execute(
                select(LinkedAccount)
                .where(LinkedAccount.user_id == user.id, LinkedAccount.is_active.is_(True))
                .order_by(LinkedAccount.created_at.desc())
            )
            links = list(links_result.scalars().all())
        except SQLAlchemyError as e:
            logger.error("Database error loading access history for %s: %s", user.id, str(e))
            raise DatabaseError(context={"error_type": type(e).__name__}) from e

        return (
            [AccessLogItem.model_validate(log) for log in logs],
            [self._access_stats(link, logs) for link in links],
        )

    # ── Internals ─────────────────────────────────────────────────────────

    async def _upsert_link(
        self,
        db: AsyncSession,
        user_id: uuid.UUID,
        linked_user_id: uuid.UUID,
        permissions: List[str],
        relationship_type: str,
        inviter_email: str,
        linked_email: str,
    ) -> LinkedAccount:
        """INSERT ... ON CONFLICT (user_id, linked_user_id): reactivate and overwrite."""
        stmt = pg_insert(LinkedAccount).values(
            user_id=user_id,
            linked_user_id=linked_user_id,
            permissions=permissions,
            relationship_type=relationship_type,
            inviter_email=inviter_email,
            linked_email=linked_email,
            is_active=True,
        )
        stmt = stmt.on_conflict_do_update(
            constraint="uq_linked_accounts_pair",
            set_={
                "permissions": stmt.excluded.permissions,
                "relationship_type": stmt.excluded.relationship_type,
                "inviter_email": stmt.excluded.inviter_email,
                "linked_email": stmt.excluded.linked_email,
                "is_active": True,
                "unlinked_at": None,
                "updated_at": func.now(),
            },
        ).returning(LinkedAccount)
        result = await db.execute(stmt)
        return result.scalar_one()

    async def _record_denial(
        self,
        user: User,
        linked_account_id: Optional[uuid.UUID],
        data_type: str,
        permission: str,
        reason: str,
        ip_address: Optional[str],
        user_agent: Optional[str],
    ) -> None:
        """Write a denied-access row in its own transaction (see module docstring)."""
        try:
            async with independent_session() as log_db:
                log_db.add(
                    AccountAccessLog(
                        requesting_user_id=user.id,
                        requesting_user_email=user.email,
                        linked_account_id=linked_account_id,
                        data_type=data_type,
                        permission_used=permission,
                        access_granted=False,
                        error_message=reason,
                        ip_address=ip_address,
                        user_agent=user_agent,
                    )
                )
        except SQLAlchemyError as e:
            # The denial itself still goes out; a lost audit row is logged loudly
            logger.error("Failed to record access denial for %s: %s", user.id, str(e))

    @staticmethod
    def _link_item(link: LinkedAccount, user: User) -> LinkedAccountItem:
        return LinkedAccountItem(
            id=link.id,
            linked_user_id=link.linked_user_id,
            linked_user_email=link.linked_email,
            relationship_type=link.relationship_type,
            permissions=list(link.permissions or []),
            created_at=link.created_at,
            is_inviter=(link.inviter_email or "").lower() == user.email.lower(),
        )

    @staticmethod
    def _access_stats(link: LinkedAccount, logs: List[AccountAccessLog]) -> AccessStatsItem:
        granted = [
            log for log in logs
            if log.linked_account_id == link.id and log.access_granted
        ]
        now = datetime.now(timezone.utc)

        def since(days: int) -> int:
            cutoff = now - timedelta(days=days)
            return sum(1 for log in granted if log.created_at > cutoff)

        return AccessStatsItem(
            linked_account_id=link.id,
            linked_user_email=link.linked_email,
            total_accesses=len(granted),
            last_access=max((log.created_at for log in granted), default=None),
            data_types_accessed=list(Counter(log.data_type for log in granted)),
            access_frequency=AccessFrequency(daily=since(1), weekly=since(7), monthly=since(30)),
        )


# ── Singleton Instance ────────────────────────────────────────────────────
account_link_service = AccountLinkService()
