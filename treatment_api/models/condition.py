"""
Treatment AI Backend — Condition SQLAlchemy Models
===================================================

What:  `conditions_master` (the shared catalog) and `user_conditions`
       (conditions a patient has added to their profile).
Why:   The catalog powers condition search/autocomplete; the per-user table
       feeds the profile page and the diagnostic chat context.

Table Design Rationale:
    - conditions_master.id is a VARCHAR key supplied by the catalog source
      (stable across re-syncs, so upserts key on it)
    - clinical lists (symptoms, treatments, ...) are TEXT[]: they are only
      ever read whole, never queried element-by-element
    - user_conditions is soft-deleted (is_active) so history survives removal
"""

import uuid
from datetime import datetime, timezone
from typing import List

from sqlalchemy import Boolean, ForeignKey, Index, String, Text, text
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.dialects.postgresql import ARRAY, UUID, TIMESTAMP

from treatment_api.database import Base


class ConditionMaster(Base):
    """Catalog entry for a medical condition (ICD-10 coded where known)."""

    __tablename__ = "conditions_master"

    id: Mapped[str] = mapped_column(String(100), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    icd10_code: Mapped[str | None] = mapped_column(String(20), nullable=True)
    category: Mapped[str | None] = mapped_column(String(100), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    symptoms: Mapped[List[str]] = mapped_column(
        ARRAY(Text), nullable=False, default=list, server_default=text("'{}'")
    )
    related_conditions: Mapped[List[str]] = mapped_column(
        ARRAY(Text), nullable=False, default=list, server_default=text("'{}'")
    )
    severity_levels: Mapped[List[str]] = mapped_column(
        ARRAY(Text), nullable=False, default=list, server_default=text("'{}'")
    )
    common_treatments: Mapped[List[str]] = mapped_column(
        ARRAY(Text), nullable=False, default=list, server_default=text("'{}'")
    )
    risk_factors: Mapped[List[str]] = mapped_column(
        ARRAY(Text), nullable=False, default=list, server_default=text("'{}'")
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

    __table_args__ = (
        Index("idx_conditions_master_name", "name"),
        Index("idx_conditions_master_category", "category"),
    )

    def __repr__(self) -> str:
        return f"<ConditionMaster(id='{self.id}', name='{self.name}')>"


class UserCondition(Base):
    """A condition attached to a user's profile."""

    __tablename__ = "user_conditions"

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
    # Not a foreign key: users may add free-text conditions missing from the catalog
    condition_id: Mapped[str] = mapped_column(String(100), nullable=False)
    display_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    severity: Mapped[str | None] = mapped_column(String(50), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    added_date: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        server_default=text("CURRENT_TIMESTAMP"),
    )
    is_active: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=True, server_default=text("true")
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

    __table_args__ = (
        Index("idx_user_conditions_user_active", "user_id", "is_active"),
    )

    def __repr__(self) -> str:
        return (
            f"<UserCondition(user_id={self.user_id}, condition_id='{self.condition_id}', "
            f"active={self.is_active})>"
        )
