"""
Treatment AI Backend — Account Linking SQLAlchemy Models
=========================================================

What:  Invitations, directional links and the access audit log that let a
       patient share data with family members, caregivers or clinicians.
Why:   Sharing is opt-in and per data type, and every access decision must
       be auditable after the fact.

Link Semantics:
    A `linked_accounts` row (user_id=A, linked_user_id=B, permissions=P)
    means: A may read B's data for the data types in P.

    Accepting an invitation from inviter I to acceptee E creates two rows:
        (I → E) with the permissions E chose to give back (reciprocal)
        (E → I) with the permissions I granted in the invitation

    Unlinking soft-deletes both rows (is_active = false, unlinked_at set);
    a later re-invitation reactivates them through the unique constraint.

Permission Vocabulary:
    health_data, wearables, medications, lab_results, vitals, all
    (permission management additionally accepts all_data)
"""

import uuid
from datetime import datetime, timezone
from typing import List

from sqlalchemy import Boolean, ForeignKey, Index, String, Text, UniqueConstraint, text
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.dialects.postgresql import INET, JSONB, UUID, TIMESTAMP

from treatment_api.database import Base


class AccountLinkInvitation(Base):
    """
    Pending request from one user to link with an email address.

    status transitions:
        pending → accepted | rejected   (invitee responds)
        pending → expired               (cleanup after expires_at)
    """

    __tablename__ = "account_link_invitations"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=text("gen_random_uuid()"),
    )
    inviter_user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
    )
    inviter_email: Mapped[str] = mapped_column(String(255), nullable=False)
    invitee_email: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        comment="Address the invitation was sent to; compared case-insensitively on accept",
    )
    invited_user_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
    )
    link_token: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        unique=True,
        comment="Random token embedded in the invitation link",
    )
    relationship_type: Mapped[str] = mapped_column(
        String(50), nullable=False, default="family", server_default=text("'family'")
    )
    message: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default="pending", server_default=text("'pending'")
    )
    permissions: Mapped[List[str]] = mapped_column(
        JSONB, nullable=False, default=list, server_default=text("'[]'::jsonb")
    )
    expires_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), nullable=False)
    accepted_at: Mapped[datetime | None] = mapped_column(TIMESTAMP(timezone=True), nullable=True)
    rejected_at: Mapped[datetime | None] = mapped_column(TIMESTAMP(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        server_default=text("CURRENT_TIMESTAMP"),
    )

    __table_args__ = (
        Index("idx_link_invitations_invitee_email", "invitee_email"),
        Index("idx_link_invitations_status", "status"),
    )

    def __repr__(self) -> str:
        return (
            f"<AccountLinkInvitation(inviter={self.inviter_email}, "
            f"invitee={self.invitee_email}, status='{self.status}')>"
        )


class LinkedAccount(Base):
    """One direction of an accepted link (see module docstring)."""

    __tablename__ = "linked_accounts"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=text("gen_random_uuid()"),
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
    )
    linked_user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
    )
    relationship_type: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        default="family",
        server_default=text("'family'"),
        comment="family, healthcare_provider, caregiver, friend or other",
    )
    permissions: Mapped[List[str]] = mapped_column(
        JSONB, nullable=False, default=list, server_default=text("'[]'::jsonb")
    )
    is_active: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=True, server_default=text("true")
    )
    inviter_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    linked_email: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
        comment="Email of linked_user_id, denormalized for listings and sharing",
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
    unlinked_at: Mapped[datetime | None] = mapped_column(TIMESTAMP(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("user_id", "linked_user_id", name="uq_linked_accounts_pair"),
        Index("idx_linked_accounts_user_active", "user_id", "is_active"),
    )

    def __repr__(self) -> str:
        return (
            f"<LinkedAccount(user_id={self.user_id}, linked_user_id={self.linked_user_id}, "
            f"active={self.is_active})>"
        )


class AccountAccessLog(Base):
    """
    Audit row for every access decision and every administrative change
    (permission updates, unlinks). Rows are append-only.
    """

    __tablename__ = "account_access_logs"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=text("gen_random_uuid()"),
    )
    requesting_user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    requesting_user_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    linked_account_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)
    data_type: Mapped[str] = mapped_column(String(50), nullable=False)
    permission_used: Mapped[str | None] = mapped_column(String(50), nullable=True)
    access_granted: Mapped[bool] = mapped_column(Boolean, nullable=False)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    ip_address: Mapped[str | None] = mapped_column(INET, nullable=True)
    user_agent: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        server_default=text("CURRENT_TIMESTAMP"),
    )

    __table_args__ = (
        Index("idx_access_logs_requesting_user", "requesting_user_id", created_at.desc()),
    )

    def __repr__(self) -> str:
        return (
            f"<AccountAccessLog(user={self.requesting_user_id}, data_type='{self.data_type}', "
            f"granted={self.access_granted})>"
        )
