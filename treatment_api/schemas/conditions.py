"""
Treatment AI Backend — Condition Schemas
=========================================

Catalog rows are returned with their column names (snake_case), matching
what the condition picker on the client already reads. Only the request
bodies for the user's own list are camelCase (`conditionId`).
"""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field

from treatment_api.schemas.common import CamelModel


class ConditionResponse(BaseModel):
    """A `conditions_master` row."""
    id: str
    name: str
    icd10_code: Optional[str] = None
    category: Optional[str] = None
    description: Optional[str] = None
    symptoms: List[str] = Field(default_factory=list)
    related_conditions: List[str] = Field(default_factory=list)
    severity_levels: List[str] = Field(default_factory=list)
    common_treatments: List[str] = Field(default_factory=list)
    risk_factors: List[str] = Field(default_factory=list)

    model_config = {"from_attributes": True}


class ConditionListResponse(BaseModel):
    success: bool = True
    conditions: List[ConditionResponse]
    count: int


class ConditionSearchResponse(BaseModel):
    conditions: List[ConditionResponse]
    total: int
    query: str


class ConditionUpsert(BaseModel):
    """Catalog sync item (same shape as ConditionResponse)."""
    id: str = Field(min_length=1, max_length=100)
    name: str = Field(min_length=1, max_length=255)
    icd10_code: Optional[str] = None
    category: Optional[str] = None
    description: Optional[str] = None
    symptoms: List[str] = Field(default_factory=list)
    related_conditions: List[str] = Field(default_factory=list)
    severity_levels: List[str] = Field(default_factory=list)
    common_treatments: List[str] = Field(default_factory=list)
    risk_factors: List[str] = Field(default_factory=list)


class ConditionSyncResponse(BaseModel):
    success: bool = True
    message: str
    count: int


class UserConditionItem(BaseModel):
    """A condition on the caller's profile, keyed by its catalog id."""
    id: str
    display_name: str = Field(description="Falls back to 'Unknown Condition'")
    added_date: datetime
    severity: Optional[str] = None
    notes: Optional[str] = None


class UserConditionsResponse(BaseModel):
    success: bool = True
    conditions: List[UserConditionItem]


class AddUserConditionRequest(CamelModel):
    """Body of POST /api/conditions/user."""
    condition_id: Optional[str] = Field(default=None, description="Catalog id (required)")
    display_name: Optional[str] = None
    severity: Optional[str] = None
    notes: Optional[str] = None


class RemoveUserConditionRequest(CamelModel):
    """Body of DELETE /api/conditions/user."""
    condition_id: Optional[str] = None


class UserConditionCreatedResponse(BaseModel):
    success: bool = True
    condition: UserConditionItem
    message: str = "Condition added successfully"
