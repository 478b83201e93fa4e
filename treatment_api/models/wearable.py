"""
Treatment AI Backend — Wearable SQLAlchemy Models
==================================================

What:  Terra device connections and the health data they push to us.
Why:   Terra delivers data asynchronously by webhook; we map each Terra user
       back to our user through `wearable_connections`.

Table Design Rationale:
    - terra_user_id UNIQUE: the only identifier present on data webhooks
    - (user_id, provider) UNIQUE: one connection per device brand per user;
      re-authenticating the same provider updates the row in place
    - health_data.data JSONB: normalized metric groups plus the raw Terra
      item, so new Terra fields never require a migration
"""

import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List

from sqlalchemy import ForeignKey, Index, String, Text, UniqueConstraint, text
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.dialects.postgresql import ARRAY, JSONB, UUID, TIMESTAMP

from treatment_api.database import Base


class WearableConnection(Base):
    """A user's authorised Terra provider (Oura, Google Fit, Samsung Health, ...)."""

    __tablename__ = "wearable_connections"

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
    provider: Mapped[str] = mapped_column(String(50), nullable=False)
    terra_user_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default="connected", server_default=text("'connected'")
    )
    scopes: Mapped[List[str]] = mapped_column(
        ARRAY(Text), nullable=False, default=list, server_default=text("'{}'")
    )
    connected_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        server_default=text("CURRENT_TIMESTAMP"),
    )
    last_sync: Mapped[datetime | None] = mapped_column(TIMESTAMP(timezone=True), nullable=True)
    # "metadata" is reserved on declarative classes, hence the attribute name
    extra_metadata: Mapped[Dict[str, Any]] = mapped_column(
        "metadata", JSONB, nullable=False, default=dict, server_default=text("'{}'::jsonb")
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
        UniqueConstraint("user_id", "provider", name="uq_wearable_connections_user_provider"),
        Index("idx_wearable_connections_user_id", "user_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<WearableConnection(user_id={self.user_id}, provider='{self.provider}', "
            f"status='{self.status}')>"
        )


class HealthData(Base):
    """A single normalized wearable payload."""

    __tablename__ = "health_data"

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
    provider: Mapped[str] = mapped_column(String(50), nullable=False)
    data_type: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        comment="daily_comprehensive for Terra daily/activity/sleep/body pushes",
    )
    data: Mapped[Dict[str, Any]] = mapped_column(JSONB, nullable=False)
    recorded_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), nullable=False)
    synced_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        server_default=text("CURRENT_TIMESTAMP"),
    )

    __table_args__ = (
        Index("idx_health_data_user_id", "user_id"),
        Index("idx_health_data_recorded_at", recorded_at.desc()),
        # Conflict target of the webhook upsert
        Index(
            "uq_health_data_reading",
            "user_id", "provider", "data_type", "recorded_at",
            unique=True,
        ),
    )
