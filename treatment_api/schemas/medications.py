"""
Treatment AI Backend — Medication Schemas
==========================================

The medication endpoints speak snake_case on both sides, including the
legacy field names older app builds still send (`medication_name`,
`date_started`, `date_ended`, `currently_taking`).
"""

import uuid
from datetime import date, datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class MedicationCatalogItem(BaseModel):
    """A `medications_master` row."""
    id: str
    name: str
    generic_name: Optional[str] = None
    brand_names: List[str] = Field(default_factory=list)
    description: Optional[str] = None
    dosage_forms: List[str] = Field(default_factory=list)
    common_dosages: List[str] = Field(default_factory=list)
    therapeutic_class: Optional[str] = None
    indications: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    side_effects: List[str] = Field(default_factory=list)

    model_config = {"from_attributes": True}


class MedicationSearchResponse(BaseModel):
    success: bool = True
    medications: List[MedicationCatalogItem]
    total_count: int
    query: str


class UserMedicationResponse(BaseModel):
    id: uuid.UUID
    user_id: uuid.UUID
    name: str
    dosage: Optional[str] = None
    frequency: Optional[str] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    status: str = "active"
    prescribing_doctor: Optional[str] = None
    notes: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class UserMedicationListResponse(BaseModel):
    success: bool = True
    medications: List[UserMedicationResponse]


class UserMedicationMutationResponse(BaseModel):
    success: bool = True
    medication: UserMedicationResponse
    message: str


class MedicationPayload(BaseModel):
    """
    Body of POST and PUT /api/medications/user.

    Everything is optional here; MedicationService decides what is required
    for each operation so the error messages stay the ones the app shows.
    """
    id: Optional[uuid.UUID] = Field(default=None, description="Required for PUT")
    name: Optional[str] = None
    medication_name: Optional[str] = Field(default=None, description="Legacy alias of name")
    dosage: Optional[str] = None
    frequency: Optional[str] = None
    start_date: Optional[date] = None
    date_started: Optional[date] = Field(default=None, description="Legacy alias of start_date")
    end_date: Optional[date] = None
    date_ended: Optional[date] = Field(default=None, description="Legacy alias of end_date")
    status: Optional[str] = None
    currently_taking: Optional[bool] = Field(
        default=None, description="Legacy flag; maps to status active/inactive"
    )
    prescribing_doctor: Optional[str] = None
    notes: Optional[str] = None

    def resolved_name(self) -> Optional[str]:
        value = self.name or self.medication_name
        return value.strip() if value and value.strip() else None

    def resolved_start_date(self) -> Optional[date]:
        return self.start_date or self.date_started

    def resolved_end_date(self) -> Optional[date]:
        return self.end_date or self.date_ended

    def resolved_status(self) -> Optional[str]:
        if self.status:
            return self.status
        if self.currently_taking is not None:
            return "active" if self.currently_taking else "inactive"
        return None


class PrescriptionScanResponse(BaseModel):
    """Result of POST /api/medications/scan-prescription (not persisted)."""
    success: bool = True
    extracted_data: Dict[str, Any]
    matched_medication: Optional[MedicationCatalogItem] = None
    message: str = "Prescription bottle analyzed successfully"
