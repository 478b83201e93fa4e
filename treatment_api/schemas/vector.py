"""
Treatment AI Backend — Vector Search Schemas
=============================================

The search endpoint speaks snake_case (`body_system`, `search_metadata`),
matching what the diagnostic engine already sends, so these models use
plain BaseModel rather than CamelModel.
"""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class VectorSearchRequest(BaseModel):
    query: Optional[str] = None
    sdco_id: Optional[str] = Field(default=None, description="SDCO the chat is currently on")
    limit: Optional[int] = Field(default=None, ge=1, le=50)
    body_system: Optional[str] = None


class SdcoDocumentItem(BaseModel):
    """An SDCO document without its embedding vector."""
    model_config = ConfigDict(from_attributes=True)

    id: int
    sdco_id: str
    display_name: str
    display_name_layman: Optional[str] = None
    description: Optional[str] = None
    category: Optional[str] = None
    body_system: Optional[str] = None
    severity_level: Optional[str] = None
    synonyms: List[str] = Field(default_factory=list)
    related_terms: List[str] = Field(default_factory=list)
    content: Optional[str] = None
    updated_at: Optional[datetime] = None


class SearchResult(BaseModel):
    document: SdcoDocumentItem
    similarity: float
    relevance_score: float


class SearchMetadata(BaseModel):
    query: str
    sdco_id: Optional[str] = None
    body_system: Optional[str] = None
    result_count: int
    timestamp: datetime


class VectorSearchResponse(BaseModel):
    success: bool = True
    results: List[SearchResult]
    contextual_information: str
    search_metadata: SearchMetadata


class SdcoDocumentUpsert(BaseModel):
    """Input for indexing one SDCO document; `content` is what gets embedded."""
    sdco_id: str = Field(min_length=3, max_length=255, pattern=r"^[^@\s]+@[^@\s]+$")
    display_name: str = Field(min_length=1, max_length=500)
    display_name_layman: Optional[str] = None
    description: Optional[str] = None
    category: Optional[str] = None
    body_system: Optional[str] = None
    severity_level: Optional[str] = None
    synonyms: List[str] = Field(default_factory=list)
    related_terms: List[str] = Field(default_factory=list)
    content: str = Field(min_length=1)
