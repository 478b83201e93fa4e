"""
Treatment AI Backend — Medication Routes
=========================================

This API predates the camelCase convention used elsewhere: bodies and
responses are snake_case, and the legacy field names (`medication_name`,
`date_started`, `date_ended`, `currently_taking`) are still accepted.
"""

import logging
import uuid
from typing import Optional

from fastapi import APIRouter, Depends, File, Query, UploadFile, status
from sqlalchemy.ext.asyncio import AsyncSession

from treatment_api.database import get_db_session
from treatment_api.deps import get_current_user
from treatment_api.exceptions import ValidationError
from treatment_api.models.user import User
from treatment_api.schemas.common import ErrorResponse, MessageResponse
from treatment_api.schemas.medications import (
    MedicationCatalogItem,
    MedicationPayload,
    MedicationSearchResponse,
    PrescriptionScanResponse,
    UserMedicationListResponse,
    UserMedicationMutationResponse,
    UserMedicationResponse,
)
from treatment_api.services.file_service import IMAGE_MIME_TYPES, file_service
from treatment_api.services.medication_service import medication_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/medications", tags=["Medications"])


@router.get(
    "/search",
    response_model=MedicationSearchResponse,
    responses={400: {"description": "Neither q nor class given", "model": ErrorResponse}},
    summary="Search the medication catalog",
)
async def search_medications(
    q: Optional[str] = Query(default=None, description="Name or generic name"),
    therapeutic_class: Optional[str] = Query(default=None, alias="class"),
    limit: int = Query(default=20, ge=1, le=100),
    db: AsyncSession = Depends(get_db_session),
) -> MedicationSearchResponse:
    medications = await medication_service.search_catalog(
        db, query=q, therapeutic_class=therapeutic_class, limit=limit
    )
    return MedicationSearchResponse(
        medications=[MedicationCatalogItem.model_validate(m) for m in medications],
        total_count=len(medications),
        query=(q or therapeutic_class or "").strip(),
    )


@router.get(
    "/user",
    response_model=UserMedicationListResponse,
    responses={401: {"model": ErrorResponse}},
    summary="List the caller's medications",
)
async def list_user_medications(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
) -> UserMedicationListResponse:
    medications = await medication_service.list_user_medications(db, user.id)
    return UserMedicationListResponse(
        medications=[UserMedicationResponse.model_validate(m) for m in medications]
    )


@router.post(
    "/user",
    response_model=UserMedicationMutationResponse,
    status_code=status.HTTP_201_CREATED,
    responses={400: {"description": "Name missing", "model": ErrorResponse}},
    summary="Add a medication",
)
async def add_user_medication(
    payload: MedicationPayload,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
) -> UserMedicationMutationResponse:
    medication = await medication_service.add_user_medication(db, user.id, payload)
    return UserMedicationMutationResponse(
        medication=UserMedicationResponse.model_validate(medication),
        message="Medication added successfully",
    )


@router.put(
    "/user",
    response_model=UserMedicationMutationResponse,
    responses={
        400: {"description": "id missing", "model": ErrorResponse},
        404: {"description": "Not the caller's medication", "model": ErrorResponse},
    },
    summary="Update a medication",
)
async def update_user_medication(
    payload: MedicationPayload,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
) -> UserMedicationMutationResponse:
    medication = await medication_service.update_user_medication(db, user.id, payload)
    return UserMedicationMutationResponse(
        medication=UserMedicationResponse.model_validate(medication),
        message="Medication updated successfully",
    )


@router.delete(
    "/user",
    response_model=MessageResponse,
    responses={404: {"model": ErrorResponse}},
    summary="Delete a medication",
)
async def delete_user_medication(
    id: Optional[uuid.UUID] = Query(default=None, description="Medication id"),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
) -> MessageResponse:
    await medication_service.delete_user_medication(db, user.id, id)
    return MessageResponse(message="Medication deleted successfully")


@router.post(
    "/scan-prescription",
    response_model=PrescriptionScanResponse,
    responses={
        400: {"description": "No image, or not an image", "model": ErrorResponse},
        503: {"description": "Vision model unavailable", "model": ErrorResponse},
    },
    summary="Read a prescription label photo",
)
async def scan_prescription(
    image: Optional[UploadFile] = File(default=None),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
) -> PrescriptionScanResponse:
    """
    Extracts label fields for the client to confirm. Nothing is saved until
    the client POSTs the confirmed medication to /api/medications/user.
    """
    if image is None:
        raise ValidationError("No image uploaded", field="image")

    try:
        content = await image.read()
    finally:
        await image.close()
    _, mime_type = file_service.validate(image.filename or "", content, image.size)
    if mime_type not in IMAGE_MIME_TYPES:
        raise ValidationError("Prescription scans must be an image", field="image")

    extracted, match = await medication_service.scan_prescription(db, content, mime_type)
    logger.info("Prescription scanned for user %s", user.id)
    return PrescriptionScanResponse(
        extracted_data=extracted,
        matched_medication=MedicationCatalogItem.model_validate(match) if match else None,
    )
