"""
Treatment AI Backend — Health Timeline SQLAlchemy Model
========================================================

What:  One row per completed diagnostic consultation.
Why:   Patients review past consultations; the timeline also feeds the
       "recent history" context of future chats.
How:   Symptom lists, the differential and the raw transcript are JSONB
       blobs. They are written once and read whole, except `symptoms`,
       which the stats query unnests with jsonb_array_elements_text.
"""

import uuid
from datetime import date as date_type, datetime, timezone
from typing import Any, Dict, List

from sqlalchemy import Date, ForeignKey, Index, String, Text, text
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.dialects.postgresql import JSONB, UUID, TIMESTAMP

from treatment_api.database import Base


class HealthTimelineEntry(Base):
    """A saved consultation summary."""

    __tablename__ = "health_timeline"

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
    session_id: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        comment="Diagnostic chat session this entry summarises",
    )
    date: Mapped[date_type] = mapped_column(Date, nullable=False)
    symptoms: Mapped[List[str]] = mapped_column(
        JSONB, nullable=False, default=list, server_default=text("'[]'::jsonb")
    )
    findings: Mapped[str | None] = mapped_column(Text, nullable=True)
    top_differential_diagnoses: Mapped[List[Dict[str, Any]]] = mapped_column(
        JSONB,
        nullable=False,
        default=list,
        server_default=text("'[]'::jsonb"),
        comment="Top 5 of {condition, probability, medicalTerm, laymanTerm}",
    )
    chat_summary: Mapped[str | None] = mapped_column(Text, nullable=True)
    full_chat_history: Mapped[List[Dict[str, Any]]] = mapped_column(
        JSONB, nullable=False, default=list, server_default=text("'[]'::jsonb")
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

    # Listing order is (date DESC, created_at DESC); this index serves it per user
    __table_args__ = (
        Index("idx_health_timeline_user_date", "user_id", date.desc(), created_at.desc()),
    )

    def __repr__(self) -> str:
        return f"<HealthTimelineEntry(id={self.id}, user_id={self.user_id}, date='{self.date}')>"
