"""
Treatment AI Backend — SDCO Vector Search Service
==================================================

What:  Semantic search over `sdco_documents` using OpenAI embeddings and
       pgvector cosine distance.
Why:   Patients describe symptoms in their own words; the diagnostic engine
       needs the matching SDCO entries plus a short text context for the
       model prompt.
How:   1. Embed the query (newlines collapsed)
       2. `ORDER BY embedding <=> :q` with a distance ceiling derived from
          the similarity threshold (similarity = 1 - distance)
       3. Boost relevance for high / critical severity, capped at 1.0
Who:   Called by routes/vector.py; `upsert_document` is used when the
       catalog is (re)indexed.
"""

import logging
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from treatment_api.config import settings
from treatment_api.exceptions import DatabaseError
from treatment_api.models.sdco_document import SdcoDocument
from treatment_api.schemas.vector import SdcoDocumentItem, SdcoDocumentUpsert, SearchResult
from treatment_api.services.llm_base import LLMService
from treatment_api.services.openai_service import openai_service

logger = logging.getLogger(__name__)

NO_CONTEXT_MESSAGE = "No relevant medical information found."

SEVERITY_BOOST = {"high": 1.2, "critical": 1.3}


def relevance_score(similarity: float, severity_level: Optional[str]) -> float:
    return min(similarity * SEVERITY_BOOST.get(severity_level or "", 1.0), 1.0)


class VectorSearchService:

    def __init__(self, llm: LLMService = openai_service):
        self.llm = llm

    async def embed(self, text: str) -> List[float]:
        return await self.llm.embed(text)

    async def search(
        self,
        db: AsyncSession,
        query: str,
        limit: Optional[int] = None,
        body_system: Optional[str] = None,
        threshold: Optional[float] = None,
    ) -> List[SearchResult]:
        """
        Nearest SDCO documents to `query`, most similar first.

        Raises:
            LLMServiceError / CircuitBreakerOpenError: embedding failed (503)
            DatabaseError: query failed (500)
        """
        limit = limit or settings.vector_search_default_limit
        threshold = settings.similarity_threshold if threshold is None else threshold
        query_embedding = await self.embed(query)

        distance = SdcoDocument.embedding.cosine_distance(query_embedding)
        stmt = (
            select(SdcoDocument, distance.label("distance"))
            .where(SdcoDocument.embedding.is_not(None))
            .where(distance <= 1 - threshold)
        )
        if body_system:
            stmt = stmt.where(SdcoDocument.body_system == body_system)
        stmt = stmt.order_by(distance).limit(limit)

        try:
            result = await db.execute(stmt)
            rows = result.all()
        except SQLAlchemyError as e:
            logger.error("Vector search failed for %r: %s", query, str(e))
            raise DatabaseError(
                message="Vector search failed",
                context={"error_type": type(e).__name__},
            ) from e

        results = []
        for document, dist in rows:
            similarity = 1 - float(dist)
            results.append(
                SearchResult(
                    document=SdcoDocumentItem.model_validate(document),
                    similarity=similarity,
                    relevance_score=relevance_score(similarity, document.severity_level),
                )
            )
        logger.info("Vector search %r returned %d documents", query, len(results))
        return results

    async def contextual_information(
        self,
        db: AsyncSession,
        query: str,
        max_chars: int = 2000,
        results: Optional[List[SearchResult]] = None,
    ) -> str:
        """
        Prompt-ready context: one "display (layman): content" line per hit,
        stopping before the character budget is exceeded. When even the
        first hit is over budget it is truncated to fit.

        Pass `results` to reuse an earlier search instead of embedding again.
        """
        if results is None:
            results = await self.search(db, query, limit=5)
        if not results:
            return NO_CONTEXT_MESSAGE

        lines = [f'Relevant medical information for "{query}":\n\n']
        used = 0
        for hit in results[:5]:
            doc = hit.document
            layman = doc.display_name_layman or doc.display_name
            snippet = f"{doc.display_name} ({layman}): {doc.content or doc.category or ''}\n"
            if used + len(snippet) > max_chars:
                if not used:
                    # A single oversized hit is cut rather than dropped
                    lines.append(snippet[: max_chars - 1].rstrip() + "\n")
                break
            lines.append(snippet)
            used += len(snippet)
        return "".join(lines)

    async def upsert_document(self, db: AsyncSession, doc: SdcoDocumentUpsert) -> None:
        """Embed `doc.content` and insert or refresh the row keyed by sdco_id."""
        embedding = await self.embed(doc.content)
        now = datetime.now(timezone.utc)
        values = doc.model_dump()
        values.update(embedding=embedding, updated_at=now)

        stmt = pg_insert(SdcoDocument).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=[SdcoDocument.sdco_id],
            set_={key: stmt.excluded[key] for key in values if key != "sdco_id"},
        )
        try:
            await db.execute(stmt)
        except SQLAlchemyError as e:
            logger.error("Failed to index SDCO document %s: %s", doc.sdco_id, str(e))
            raise DatabaseError(
                message="Failed to store SDCO document",
                context={"error_type": type(e).__name__},
            ) from e
        logger.info("Indexed SDCO document %s", doc.sdco_id)


# ── Singleton Instance ────────────────────────────────────────────────────
vector_search_service = VectorSearchService()
