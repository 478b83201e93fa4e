"""
Treatment AI Backend — Medication SQLAlchemy Models
====================================================

What:  `medications_master` (drug catalog) and `user_medications`
       (what a patient takes, or took).
Why:   Catalog search drives medication autocomplete; the user table is the
       medication list shown on the profile and passed into chat context.
"""

import uuid
from datetime import date, datetime, timezone
from typing import List

from sqlalchemy import Date, ForeignKey, Index, String, Text, text
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.dialects.postgresql import ARRAY, UUID, TIMESTAMP

from treatment_api.database import Base


class MedicationMaster(Base):
    """Catalog entry for a medication."""

    __tablename__ = "medications_master"

    id: Mapped[str] = mapped_column(String(100), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    generic_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    brand_names: Mapped[List[str]] = mapped_column(
        ARRAY(Text), nullable=False, default=list, server_default=text("'{}'")
    )
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    dosage_forms: Mapped[List[str]] = mapped_column(
        ARRAY(Text), nullable=False, default=list, server_default=text("'{}'")
    )
    common_dosages: Mapped[List[str]] = mapped_column(
        ARRAY(Text), nullable=False, default=list, server_default=text("'{}'")
    )
    therapeutic_class: Mapped[str | None] = mapped_column(String(255), nullable=True)
    indications: Mapped[List[str]] = mapped_column(
        ARRAY(Text), nullable=False, default=list, server_default=text("'{}'")
    )
    warnings: Mapped[List[str]] = mapped_column(
        ARRAY(Text), nullable=False, default=list, server_default=text("'{}'")
    )
    side_effects: Mapped[List[str]] = mapped_column(
        ARRAY(Text), nullable=False, default=list, server_default=text("'{}'")
    )

    __table_args__ = (
        Index("idx_medications_master_name", "name"),
    )

    def __repr__(self) -> str:
        return f"<MedicationMaster(id='{self.id}', name='{self.name}')>"


class UserMedication(Base):
    """
    A medication on a user's list.

    status: 'active' while currently taken, 'discontinued' (or any other
    label the client sends) afterwards. Listing puts active rows first.
    """

    __tablename__ = "user_medications"

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
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    dosage: Mapped[str | None] = mapped_column(String(100), nullable=True)
    frequency: Mapped[str | None] = mapped_column(String(100), nullable=True)
    start_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    end_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    status: Mapped[str] = mapped_column(
        String(50), nullable=False, default="active", server_default=text("'active'")
    )
    prescribing_doctor: Mapped[str | None] = mapped_column(String(255), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
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
        Index("idx_user_medications_user_id", "user_id"),
    )

    def __repr__(self) -> str:
        return f"<UserMedication(user_id={self.user_id}, name='{self.name}', status='{self.status}')>"
