"""
Treatment AI Backend — SDCO Document SQLAlchemy Model
======================================================

What:  Medical-taxonomy documents (one per SDCO id) with an embedding vector.
Why:   Semantic search maps free-text symptoms ("my head is pounding") to
       SDCO entries ("headache@C0018681") before diagnostic questioning.
How:   pgvector `vector(1536)` column holding an OpenAI embedding of
       `content`, queried with the cosine distance operator (<=>) through an
       HNSW index.

Why pgvector instead of an external vector store:
    The catalog is small (hundreds to low thousands of rows) and lives next
    to the rest of the schema, so a Postgres extension keeps search inside
    the same transaction and backup story.
"""

from datetime import datetime, timezone
from typing import List, Optional

from pgvector.sqlalchemy import Vector
from sqlalchemy import Index, Integer, String, Text, text
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.dialects.postgresql import ARRAY, TIMESTAMP

from treatment_api.config import settings
from treatment_api.database import Base


class SdcoDocument(Base):
    """A searchable SDCO entry."""

    __tablename__ = "sdco_documents"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    # Format: <slug>@<UMLS CUI>, e.g. "headache@C0018681"
    sdco_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    display_name: Mapped[str] = mapped_column(String(500), nullable=False)
    display_name_layman: Mapped[str | None] = mapped_column(String(500), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    category: Mapped[str | None] = mapped_column(String(200), nullable=True)
    body_system: Mapped[str | None] = mapped_column(String(200), nullable=True)
    severity_level: Mapped[str | None] = mapped_column(
        String(50),
        nullable=True,
        comment="low, moderate, high or critical; boosts relevance for high/critical",
    )
    synonyms: Mapped[List[str]] = mapped_column(
        ARRAY(Text), nullable=False, default=list, server_default=text("'{}'")
    )
    related_terms: Mapped[List[str]] = mapped_column(
        ARRAY(Text), nullable=False, default=list, server_default=text("'{}'")
    )
    content: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
        comment="Text that was embedded; also returned as the contextual snippet",
    )
    embedding: Mapped[Optional[List[float]]] = mapped_column(
        Vector(settings.embedding_dimensions),
        nullable=True,
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        server_default=text("CURRENT_TIMESTAMP"),
    )

    __table_args__ = (
        Index(
            "idx_sdco_documents_embedding",
            "embedding",
            postgresql_using="hnsw",
            postgresql_ops={"embedding": "vector_cosine_ops"},
        ),
        Index("idx_sdco_documents_body_system", "body_system"),
    )

    def __repr__(self) -> str:
        return f"<SdcoDocument(sdco_id='{self.sdco_id}', display_name='{self.display_name}')>"
