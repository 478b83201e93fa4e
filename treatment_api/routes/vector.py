"""
Treatment AI Backend — Vector Search Route
===========================================
"""

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from treatment_api.database import get_db_session
from treatment_api.deps import get_current_user
from treatment_api.exceptions import ValidationError
from treatment_api.models.user import User
from treatment_api.schemas.common import ErrorResponse
from treatment_api.schemas.vector import SearchMetadata, VectorSearchRequest, VectorSearchResponse
from treatment_api.services.vector_search_service import vector_search_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/vector", tags=["SDCO"])


@router.post(
    "/search",
    response_model=VectorSearchResponse,
    responses={
        400: {"description": "query missing", "model": ErrorResponse},
        503: {"description": "Embedding service unavailable", "model": ErrorResponse},
    },
    summary="Semantic search over SDCO documents",
)
async def search(
    body: VectorSearchRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
) -> VectorSearchResponse:
    """
    Returns the nearest SDCO documents plus a prompt-ready context string
    built from the same hits.
    """
    query = (body.query or "").strip()
    if not query:
        raise ValidationError("Query parameter required", field="query")

    results = await vector_search_service.search(
        db, query, limit=body.limit, body_system=body.body_system
    )
    context = await vector_search_service.contextual_information(
        db, query, max_chars=2000, results=results
    )
    return VectorSearchResponse(
        results=results,
        contextual_information=context,
        search_metadata=SearchMetadata(
            query=query,
            sdco_id=body.sdco_id,
            body_system=body.body_system,
            result_count=len(results),
            timestamp=datetime.now(timezone.utc),
        ),
    )
