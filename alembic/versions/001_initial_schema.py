"""Initial schema

Revision ID: 001
Revises: None
Create Date: 2025-01-15 00:00:00.000000+00:00

What:  Creates the pgvector extension and every table the API uses: users
       and sessions, condition and medication catalogs and user lists,
       account linking, health timeline, chat sharing, wearables and SDCO
       documents.
How:   PostgreSQL-specific types throughout (UUID, JSONB, TEXT[], INET,
       vector). UUID keys default to gen_random_uuid() (PostgreSQL 13+).

Rollback: downgrade() drops every table (destructive). The vector
extension is left installed because other schemas may use it.
"""

from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa
from pgvector.sqlalchemy import Vector
from sqlalchemy.dialects import postgresql

# revision identifiers
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

# Width of text-embedding-ada-002 vectors; a model change needs a new revision
EMBEDDING_DIMENSIONS = 1536


# ── Column helpers ────────────────────────────────────────────────────────

def _uuid_pk() -> sa.Column:
    return sa.Column(
        "id",
        postgresql.UUID(as_uuid=True),
        server_default=sa.text("gen_random_uuid()"),
        primary_key=True,
    )


def _user_fk(name: str = "user_id", ondelete: str = "CASCADE", nullable: bool = False) -> sa.Column:
    return sa.Column(
        name,
        postgresql.UUID(as_uuid=True),
        sa.ForeignKey("users.id", ondelete=ondelete),
        nullable=nullable,
    )


def _timestamp(name: str) -> sa.Column:
    return sa.Column(
        name,
        sa.TIMESTAMP(timezone=True),
        server_default=sa.text("CURRENT_TIMESTAMP"),
        nullable=False,
    )


def _text_array(name: str) -> sa.Column:
    return sa.Column(
        name, postgresql.ARRAY(sa.Text()), server_default=sa.text("'{}'"), nullable=False
    )


def _jsonb(name: str, default: str) -> sa.Column:
    return sa.Column(
        name, postgresql.JSONB(), server_default=sa.text(f"'{default}'::jsonb"), nullable=False
    )


def upgrade() -> None:
    op.execute("CREATE EXTENSION IF NOT EXISTS vector")

    # ── Users & sessions ──────────────────────────────────────────────────
    op.create_table(
        "users",
        _uuid_pk(),
        sa.Column("email", sa.String(255), nullable=False, unique=True),
        sa.Column("phone", sa.String(20), nullable=True),
        sa.Column("first_name", sa.String(100), nullable=False),
        sa.Column("last_name", sa.String(100), nullable=False),
        sa.Column("date_of_birth", sa.Date(), nullable=True),
        sa.Column("gender_at_birth", sa.String(10), nullable=True),
        sa.Column("is_verified", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        sa.Column("is_active", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        _timestamp("created_at"),
        _timestamp("updated_at"),
    )

    op.create_table(
        "user_sessions",
        _uuid_pk(),
        sa.Column("session_id", sa.String(255), nullable=True),
        _user_fk(),
        sa.Column("user_email", sa.String(255), nullable=True),
        sa.Column(
            "session_token",
            sa.String(255),
            nullable=False,
            unique=True,
            comment="Opaque bearer token presented in the Authorization header",
        ),
        sa.Column("expires_at", sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column("is_active", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        sa.Column("ip_address", postgresql.INET(), nullable=True),
        sa.Column("user_agent", sa.Text(), nullable=True),
        _timestamp("created_at"),
        _timestamp("last_accessed"),
    )
    op.create_index("idx_user_sessions_user_id", "user_sessions", ["user_id"])

    # ── Conditions ────────────────────────────────────────────────────────
    op.create_table(
        "conditions_master",
        sa.Column("id", sa.String(100), primary_key=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("icd10_code", sa.String(20), nullable=True),
        sa.Column("category", sa.String(100), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        _text_array("symptoms"),
        _text_array("related_conditions"),
        _text_array("severity_levels"),
        _text_array("common_treatments"),
        _text_array("risk_factors"),
        _timestamp("created_at"),
        _timestamp("updated_at"),
    )
    op.create_index("idx_conditions_master_name", "conditions_master", ["name"])
    op.create_index("idx_conditions_master_category", "conditions_master", ["category"])

    op.create_table(
        "user_conditions",
        _uuid_pk(),
        _user_fk(),
        sa.Column("condition_id", sa.String(100), nullable=False),
        sa.Column("display_name", sa.String(255), nullable=True),
        sa.Column("severity", sa.String(50), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        _timestamp("added_date"),
        sa.Column("is_active", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        _timestamp("created_at"),
        _timestamp("updated_at"),
    )
    op.create_index(
        "idx_user_conditions_user_active", "user_conditions", ["user_id", "is_active"]
    )

    # ── Medications ───────────────────────────────────────────────────────
    op.create_table(
        "medications_master",
        sa.Column("id", sa.String(100), primary_key=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("generic_name", sa.String(255), nullable=True),
        _text_array("brand_names"),
        sa.Column("description", sa.Text(), nullable=True),
        _text_array("dosage_forms"),
        _text_array("common_dosages"),
        sa.Column("therapeutic_class", sa.String(255), nullable=True),
        _text_array("indications"),
        _text_array("warnings"),
        _text_array("side_effects"),
    )
    op.create_index("idx_medications_master_name", "medications_master", ["name"])

    op.create_table(
        "user_medications",
        _uuid_pk(),
        _user_fk(),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("dosage", sa.String(100), nullable=True),
        sa.Column("frequency", sa.String(100), nullable=True),
        sa.Column("start_date", sa.Date(), nullable=True),
        sa.Column("end_date", sa.Date(), nullable=True),
        sa.Column("status", sa.String(50), server_default=sa.text("'active'"), nullable=False),
        sa.Column("prescribing_doctor", sa.String(255), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        _timestamp("created_at"),
        _timestamp("updated_at"),
    )
    op.create_index("idx_user_medications_user_id", "user_medications", ["user_id"])

    # ── Account linking ───────────────────────────────────────────────────
    op.create_table(
        "account_link_invitations",
        _uuid_pk(),
        _user_fk("inviter_user_id"),
        sa.Column("inviter_email", sa.String(255), nullable=False),
        sa.Column("invitee_email", sa.String(255), nullable=False),
        _user_fk("invited_user_id", ondelete="SET NULL", nullable=True),
        sa.Column("link_token", sa.String(255), nullable=False, unique=True),
        sa.Column(
            "relationship_type", sa.String(50), server_default=sa.text("'family'"), nullable=False
        ),
        sa.Column("message", sa.Text(), nullable=True),
        sa.Column("status", sa.String(20), server_default=sa.text("'pending'"), nullable=False),
        _jsonb("permissions", "[]"),
        sa.Column("expires_at", sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column("accepted_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("rejected_at", sa.TIMESTAMP(timezone=True), nullable=True),
        _timestamp("created_at"),
    )
    op.create_index(
        "idx_link_invitations_invitee_email", "account_link_invitations", ["invitee_email"]
    )
    op.create_index("idx_link_invitations_status", "account_link_invitations", ["status"])

    op.create_table(
        "linked_accounts",
        _uuid_pk(),
        _user_fk(),
        _user_fk("linked_user_id"),
        sa.Column(
            "relationship_type", sa.String(50), server_default=sa.text("'family'"), nullable=False
        ),
        _jsonb("permissions", "[]"),
        sa.Column("is_active", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        sa.Column("inviter_email", sa.String(255), nullable=True),
        sa.Column("linked_email", sa.String(255), nullable=True),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.Column("unlinked_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.UniqueConstraint("user_id", "linked_user_id", name="uq_linked_accounts_pair"),
    )
    op.create_index(
        "idx_linked_accounts_user_active", "linked_accounts", ["user_id", "is_active"]
    )

    op.create_table(
        "account_access_logs",
        _uuid_pk(),
        sa.Column("requesting_user_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("requesting_user_email", sa.String(255), nullable=True),
        sa.Column("linked_account_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("data_type", sa.String(50), nullable=False),
        sa.Column("permission_used", sa.String(50), nullable=True),
        sa.Column("access_granted", sa.Boolean(), nullable=False),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("ip_address", postgresql.INET(), nullable=True),
        sa.Column("user_agent", sa.Text(), nullable=True),
        _timestamp("created_at"),
    )
    op.create_index(
        "idx_access_logs_requesting_user",
        "account_access_logs",
        ["requesting_user_id", sa.text("created_at DESC")],
    )

    # ── Health timeline ───────────────────────────────────────────────────
    op.create_table(
        "health_timeline",
        _uuid_pk(),
        _user_fk(),
        sa.Column("session_id", sa.String(255), nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        _jsonb("symptoms", "[]"),
        sa.Column("findings", sa.Text(), nullable=True),
        _jsonb("top_differential_diagnoses", "[]"),
        sa.Column("chat_summary", sa.Text(), nullable=True),
        _jsonb("full_chat_history", "[]"),
        _timestamp("created_at"),
        _timestamp("updated_at"),
    )
    op.create_index(
        "idx_health_timeline_user_date",
        "health_timeline",
        ["user_id", sa.text("date DESC"), sa.text("created_at DESC")],
    )

    # ── Chat sharing ──────────────────────────────────────────────────────
    op.create_table(
        "shared_chat_sessions",
        _uuid_pk(),
        sa.Column("share_id", sa.String(100), nullable=False, unique=True),
        sa.Column("sender_user_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("sender_email", sa.String(255), nullable=False),
        sa.Column("recipient_email", sa.String(255), nullable=False),
        sa.Column("session_id", sa.String(255), nullable=True),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("messages", postgresql.JSONB(), nullable=False),
        sa.Column("view_count", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("expires_at", sa.TIMESTAMP(timezone=True), nullable=False),
        _timestamp("created_at"),
    )
    op.create_index(
        "idx_shared_chat_sessions_recipient", "shared_chat_sessions", ["recipient_email"]
    )

    op.create_table(
        "user_notifications",
        _uuid_pk(),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("type", sa.String(50), nullable=False),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("message", sa.Text(), nullable=True),
        _jsonb("data", "{}"),
        sa.Column("is_read", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        _timestamp("created_at"),
    )
    op.create_index(
        "idx_user_notifications_user_unread", "user_notifications", ["user_id", "is_read"]
    )

    op.create_table(
        "sharing_activity_log",
        _uuid_pk(),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("activity_type", sa.String(50), nullable=False),
        sa.Column("share_id", sa.String(100), nullable=True),
        sa.Column("recipient_email", sa.String(255), nullable=True),
        _jsonb("details", "{}"),
        _timestamp("created_at"),
    )

    # ── Wearables ─────────────────────────────────────────────────────────
    op.create_table(
        "wearable_connections",
        _uuid_pk(),
        _user_fk(),
        sa.Column("provider", sa.String(50), nullable=False),
        sa.Column("terra_user_id", sa.String(255), nullable=False, unique=True),
        sa.Column("status", sa.String(20), server_default=sa.text("'connected'"), nullable=False),
        _text_array("scopes"),
        _timestamp("connected_at"),
        sa.Column("last_sync", sa.TIMESTAMP(timezone=True), nullable=True),
        _jsonb("metadata", "{}"),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.UniqueConstraint("user_id", "provider", name="uq_wearable_connections_user_provider"),
    )
    op.create_index("idx_wearable_connections_user_id", "wearable_connections", ["user_id"])

    op.create_table(
        "health_data",
        _uuid_pk(),
        _user_fk(),
        sa.Column("provider", sa.String(50), nullable=False),
        sa.Column("data_type", sa.String(50), nullable=False),
        sa.Column("data", postgresql.JSONB(), nullable=False),
        sa.Column("recorded_at", sa.TIMESTAMP(timezone=True), nullable=False),
        _timestamp("synced_at"),
    )
    op.create_index("idx_health_data_user_id", "health_data", ["user_id"])
    op.create_index(
        "idx_health_data_recorded_at", "health_data", [sa.text("recorded_at DESC")]
    )

    # ── SDCO documents (vector search) ────────────────────────────────────
    op.create_table(
        "sdco_documents",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("sdco_id", sa.String(255), nullable=False, unique=True),
        sa.Column("display_name", sa.String(500), nullable=False),
        sa.Column("display_name_layman", sa.String(500), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("category", sa.String(200), nullable=True),
        sa.Column("body_system", sa.String(200), nullable=True),
        sa.Column("severity_level", sa.String(50), nullable=True),
        _text_array("synonyms"),
        _text_array("related_terms"),
        sa.Column("content", sa.Text(), nullable=True),
        sa.Column("embedding", Vector(EMBEDDING_DIMENSIONS), nullable=True),
        _timestamp("updated_at"),
    )
    op.create_index(
        "idx_sdco_documents_embedding",
        "sdco_documents",
        ["embedding"],
        postgresql_using="hnsw",
        postgresql_ops={"embedding": "vector_cosine_ops"},
    )
    op.create_index("idx_sdco_documents_body_system", "sdco_documents", ["body_system"])


def downgrade() -> None:
    """Drop every table in reverse dependency order. All data is lost."""
    for table in (
        "sdco_documents",
        "health_data",
        "wearable_connections",
        "sharing_activity_log",
        "user_notifications",
        "shared_chat_sessions",
        "health_timeline",
        "account_access_logs",
        "linked_accounts",
        "account_link_invitations",
        "user_medications",
        "medications_master",
        "user_conditions",
        "conditions_master",
        "user_sessions",
        "users",
    ):
        op.drop_table(table)
