"""
Treatment AI Backend — Health Timeline Schemas
===============================================

The timeline screen reads camelCase throughout, including the stored
diagnosis summaries (`medicalTerm`, `laymanTerm`), so every model here
derives from CamelModel.
"""

import uuid
from datetime import date as date_type, datetime
from typing import Any, Dict, List, Optional

from pydantic import Field

from treatment_api.schemas.common import CamelModel


class SaveTimelineRequest(CamelModel):
    """
    Body of POST /api/health-timeline/save.

    `differentialDiagnoses` items come straight from the diagnostic engine:
    either `{"diagnosis": {"display_name", "display_name_layman"}, "probability"}`
    or the flattened `{"condition", "probability", "medicalTerm", "laymanTerm"}`.
    """
    session_id: Optional[str] = None
    symptoms: Optional[List[str]] = None
    findings: Optional[str] = None
    differential_diagnoses: Optional[List[Dict[str, Any]]] = None
    chat_history: Optional[List[Dict[str, Any]]] = None
    full_chat_history: Optional[List[Dict[str, Any]]] = Field(
        default=None, description="Alias of chatHistory"
    )
    chat_summary: Optional[str] = None


class DiagnosisSummary(CamelModel):
    condition: str = "Unknown"
    probability: float = 0
    medical_term: str = "Unknown"
    layman_term: str = "Unknown"


class TimelineEntryResponse(CamelModel):
    id: uuid.UUID
    session_id: str
    date: date_type
    symptoms: List[str]
    findings: Optional[str] = None
    top_differential_diagnoses: List[DiagnosisSummary] = Field(default_factory=list)
    chat_summary: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class TimelineEntryDetail(TimelineEntryResponse):
    full_chat_history: List[Dict[str, Any]] = Field(default_factory=list)


class SaveTimelineResponse(CamelModel):
    success: bool = True
    message: str = "Health timeline entry saved successfully"
    entry_id: uuid.UUID
    entry: TimelineEntryResponse


class SymptomCount(CamelModel):
    symptom: str
    count: int


class TimelineStats(CamelModel):
    total_entries: int
    last_entry: Optional[date_type] = None
    most_common_symptoms: List[SymptomCount] = Field(default_factory=list)


class TimelineStatsResponse(CamelModel):
    success: bool = True
    stats: TimelineStats


class TimelineUser(CamelModel):
    id: uuid.UUID
    first_name: str
    last_name: str


class TimelineListResponse(CamelModel):
    success: bool = True
    timeline: List[TimelineEntryResponse]
    stats: TimelineStats
    user: TimelineUser


class TimelineDetailResponse(CamelModel):
    success: bool = True
    entry: TimelineEntryDetail


class UpdateTimelineRequest(CamelModel):
    """PATCH body; omitted fields are left unchanged."""
    symptoms: Optional[List[str]] = None
    findings: Optional[str] = None
    chat_summary: Optional[str] = None
