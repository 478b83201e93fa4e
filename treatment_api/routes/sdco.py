"""
Treatment AI Backend — SDCO Lookup Route
=========================================
"""

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query

from treatment_api.deps import get_current_user
from treatment_api.models.user import User
from treatment_api.schemas.common import ErrorResponse
from treatment_api.services.merlin_client import merlin_client

router = APIRouter(prefix="/api/sdco", tags=["SDCO"])


@router.get(
    "/lookup",
    responses={502: {"description": "Merlin unavailable", "model": ErrorResponse}},
    summary="Look up SDCO references from Merlin",
)
async def lookup(
    term: Optional[str] = Query(default=None, description="Matched against display name and id"),
    user: User = Depends(get_current_user),
) -> Dict[str, Any]:
    """`{total_count, matches, sample_sdcos}`; Merlin's entries are passed through unchanged."""
    return await merlin_client.lookup(term)
