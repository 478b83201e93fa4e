"""
Treatment AI Backend — Diagnostic Session SQLAlchemy Models
============================================================

What:  Local record of each diagnostic session and the symptoms it was
       opened with.
Why:   Merlin keeps the questionnaire state but knows nothing about our
       users; this table binds a Merlin (or fallback) session id to its
       owner so nobody else can read or answer it.
How:   One `diagnostic_sessions` row per session, keyed by the id returned
       to the client; `session_symptoms` keeps the extracted symptoms in
       the order they were processed.

Status values:
    active     → questions still pending
    completed  → Merlin reported no questions left
"""

import uuid
from datetime import datetime, timezone
from typing import Any, Dict

from sqlalchemy import Boolean, ForeignKey, Index, Integer, String, Text, text
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.dialects.postgresql import JSONB, UUID, TIMESTAMP

from treatment_api.database import Base


class DiagnosticSession(Base):

    __tablename__ = "diagnostic_sessions"

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
    merlin_session_id: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        unique=True,
        comment="Merlin persistence session id, or fallback_<ms>_<rand>",
    )
    patient_data: Mapped[Dict[str, Any]] = mapped_column(
        JSONB, nullable=False, default=dict, server_default=text("'{}'::jsonb")
    )
    reason_for_encounter: Mapped[str | None] = mapped_column(
        Text, nullable=True, comment="Extracted symptoms, comma-separated"
    )
    reason_for_encounter_symptom_id: Mapped[str | None] = mapped_column(
        String(255), nullable=True, comment="SDCO id sent to Merlin"
    )
    platform_id: Mapped[str] = mapped_column(
        String(50), nullable=False, default="Mobile", server_default=text("'Mobile'")
    )
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default="active", server_default=text("'active'")
    )
    fallback_mode: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=text("false")
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

    symptoms: Mapped[list["SessionSymptom"]] = relationship(
        back_populates="session", cascade="all, delete-orphan"
    )

    __table_args__ = (
        Index("idx_diagnostic_sessions_user_id", "user_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<DiagnosticSession(id='{self.merlin_session_id}', user_id={self.user_id}, "
            f"status='{self.status}')>"
        )


class SessionSymptom(Base):

    __tablename__ = "session_symptoms"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=text("gen_random_uuid()"),
    )
    session_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("diagnostic_sessions.id", ondelete="CASCADE"),
        nullable=False,
    )
    symptom_text: Mapped[str] = mapped_column(Text, nullable=False)
    # Only the primary (first) symptom is matched to an SDCO
    sdco_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    processing_order: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        server_default=text("CURRENT_TIMESTAMP"),
    )

    session: Mapped[DiagnosticSession] = relationship(back_populates="symptoms")

    __table_args__ = (
        Index("idx_session_symptoms_session_id", "session_id"),
    )
