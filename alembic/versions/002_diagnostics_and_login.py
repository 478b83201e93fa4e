"""Diagnostic sessions, login codes and health data dedupe

Revision ID: 002
Revises: 001
Create Date: 2025-02-03 00:00:00.000000+00:00

What:  - diagnostic_sessions / session_symptoms for the Merlin flow
       - otp_codes plus password and lockout columns on users
       - a unique key on health_data readings so Terra redeliveries upsert
How:   Duplicate health_data readings already stored are collapsed (newest
       sync kept) before the unique index is built.
"""

from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision: str = "002"
down_revision: Union[str, None] = "001"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _uuid_pk() -> sa.Column:
    return sa.Column(
        "id",
        postgresql.UUID(as_uuid=True),
        server_default=sa.text("gen_random_uuid()"),
        primary_key=True,
    )


def _created_at() -> sa.Column:
    return sa.Column(
        "created_at",
        sa.TIMESTAMP(timezone=True),
        server_default=sa.text("CURRENT_TIMESTAMP"),
        nullable=False,
    )


def upgrade() -> None:
    # ── Login ─────────────────────────────────────────────────────────────
    op.add_column("users", sa.Column("password_hash", sa.String(255), nullable=True))
    op.add_column(
        "users",
        sa.Column(
            "failed_login_attempts", sa.Integer(), server_default=sa.text("0"), nullable=False
        ),
    )
    op.add_column(
        "users", sa.Column("account_locked_until", sa.TIMESTAMP(timezone=True), nullable=True)
    )

    op.create_table(
        "otp_codes",
        _uuid_pk(),
        sa.Column(
            "user_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=True,
        ),
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column("code_hash", sa.String(64), nullable=False),
        sa.Column("code_type", sa.String(20), nullable=False),
        sa.Column("expires_at", sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column("is_used", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        sa.Column("attempts", sa.Integer(), server_default=sa.text("0"), nullable=False),
        _created_at(),
        sa.CheckConstraint("code_type IN ('login', 'verification')", name="ck_otp_codes_type"),
    )
    op.create_index("idx_otp_codes_email_type", "otp_codes", ["email", "code_type"])

    # ── Diagnostic sessions ───────────────────────────────────────────────
    op.create_table(
        "diagnostic_sessions",
        _uuid_pk(),
        sa.Column(
            "user_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("merlin_session_id", sa.String(255), nullable=False, unique=True),
        sa.Column(
            "patient_data",
            postgresql.JSONB(),
            server_default=sa.text("'{}'::jsonb"),
            nullable=False,
        ),
        sa.Column("reason_for_encounter", sa.Text(), nullable=True),
        sa.Column("reason_for_encounter_symptom_id", sa.String(255), nullable=True),
        sa.Column("platform_id", sa.String(50), server_default=sa.text("'Mobile'"), nullable=False),
        sa.Column("status", sa.String(20), server_default=sa.text("'active'"), nullable=False),
        sa.Column("fallback_mode", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        _created_at(),
        sa.Column(
            "updated_at",
            sa.TIMESTAMP(timezone=True),
            server_default=sa.text("CURRENT_TIMESTAMP"),
            nullable=False,
        ),
    )
    op.create_index("idx_diagnostic_sessions_user_id", "diagnostic_sessions", ["user_id"])

    op.create_table(
        "session_symptoms",
        _uuid_pk(),
        sa.Column(
            "session_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("diagnostic_sessions.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("symptom_text", sa.Text(), nullable=False),
        sa.Column("sdco_id", sa.String(255), nullable=True),
        sa.Column("processing_order", sa.Integer(), nullable=False),
        _created_at(),
    )
    op.create_index("idx_session_symptoms_session_id", "session_symptoms", ["session_id"])

    # ── Health data readings ──────────────────────────────────────────────
    op.execute(
        """
        DELETE FROM health_data a
        USING health_data b
        WHERE a.user_id = b.user_id
          AND a.provider = b.provider
          AND a.data_type = b.data_type
          AND a.recorded_at = b.recorded_at
          AND (a.synced_at, a.id) < (b.synced_at, b.id)
        """
    )
    op.create_index(
        "uq_health_data_reading",
        "health_data",
        ["user_id", "provider", "data_type", "recorded_at"],
        unique=True,
    )


def downgrade() -> None:
    op.drop_index("uq_health_data_reading", table_name="health_data")
    op.drop_table("session_symptoms")
    op.drop_table("diagnostic_sessions")
    op.drop_table("otp_codes")
    op.drop_column("users", "account_locked_until")
    op.drop_column("users", "failed_login_attempts")
    op.drop_column("users", "password_hash")
