"""
Treatment AI Backend — Medication Service
==========================================

What:  Medication catalog search, the caller's medication list (CRUD), and
       prescription-label scanning with the vision model.
Who:   Called by routes/medications.py.

Ownership:
    Every user-medication query filters on `user_id`; a row owned by someone
    else is indistinguishable from a missing one ("Medication not found or
    access denied").
"""

import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import case, delete, func, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from treatment_api.exceptions import (
    DatabaseError,
    LLMServiceError,
    NotFoundError,
    ValidationError,
)
from treatment_api.models.medication import MedicationMaster, UserMedication
from treatment_api.schemas.medications import MedicationPayload
from treatment_api.services.llm_base import LLMService, parse_json_response
from treatment_api.services.openai_service import openai_service

logger = logging.getLogger(__name__)

NOT_FOUND_MESSAGE = "Medication not found or access denied"

SCAN_FIELDS = (
    "medication_name",
    "dosage",
    "quantity",
    "frequency",
    "doctor",
    "pharmacy",
    "date_prescribed",
    "ndc_number",
    "instructions",
    "warnings",
)

SCAN_PROMPT = (
    "Read the label in this prescription image. Reply with a single JSON object "
    "and nothing else, using these keys: " + ", ".join(SCAN_FIELDS) + ", confidence. "
    "Use null for anything that is not legible. confidence is a number between 0 and 1."
)


class MedicationService:

    def __init__(self, llm: LLMService = openai_service):
        self.llm = llm

    # ── Catalog ───────────────────────────────────────────────────────────

    async def search_catalog(
        self,
        db: AsyncSession,
        query: Optional[str] = None,
        therapeutic_class: Optional[str] = None,
        limit: int = 20,
    ) -> List[MedicationMaster]:
        """
        Name / generic-name search (exact name first), or a therapeutic
        class listing when `class` is given instead of `q`.
        """
        term = (query or "").strip()
        klass = (therapeutic_class or "").strip()
        if not term and not klass:
            raise ValidationError('Query parameter "q" or "class" is required', field="q")

        if klass:
            stmt = (
                select(MedicationMaster)
                .where(MedicationMaster.therapeutic_class.ilike(f"%{klass}%"))
                .order_by(MedicationMaster.name)
            )
        else:
            pattern = f"%{term}%"
            rank = case(
                (func.lower(MedicationMaster.name) == term.lower(), 0),
                (MedicationMaster.name.ilike(f"{term}%"), 1),
                else_=2,
            )
            stmt = (
                select(MedicationMaster)
                .where(
                    or_(
                        MedicationMaster.name.ilike(pattern),
                        MedicationMaster.generic_name.ilike(pattern),
                    )
                )
                .order_by(rank, MedicationMaster.name)
            )

        try:
            result = await db.execute(stmt.limit(limit))
            medications = list(result.scalars().all())
        except SQLAlchemyError as e:
            logger.error("Database error searching medications: %s", str(e))
            raise DatabaseError(context={"error_type": type(e).__name__}) from e

        logger.info("Medication search %r returned %d results", term or klass, len(medications))
        return medications

    # ── User medications ──────────────────────────────────────────────────

    async def list_user_medications(
        self, db: AsyncSession, user_id: uuid.UUID
    ) -> List[UserMedication]:
        """Active first, then most recently started, then by name."""
        try:
            result = await db.execute(
                select(UserMedication)
                .where(UserMedication.user_id == user_id)
                .order_by(
                    case((UserMedication.status == "active", 1), else_=2),
                    UserMedication.start_date.desc().nulls_last(),
                    UserMedication.name.asc(),
                )
            )
            return list(result.scalars().all())
        except SQLAlchemyError as e:
            logger.error("Database error listing medications for %s: %s", user_id, str(e))
            raise DatabaseError(context={"error_type": type(e).__name__}) from e

    async def add_user_medication(
        self, db: AsyncSession, user_id: uuid.UUID, payload: MedicationPayload
    ) -> UserMedication:
        name = payload.resolved_name()
        if not name:
            raise ValidationError("Medication name is required", field="name")

        medication = UserMedication(
            user_id=user_id,
            name=name,
            dosage=payload.dosage or None,
            frequency=payload.frequency or None,
            start_date=payload.resolved_start_date(),
            end_date=payload.resolved_end_date(),
            status=payload.resolved_status() or "active",
            prescribing_doctor=payload.prescribing_doctor or None,
            notes=payload.notes or None,
        )
        try:
            db.add(medication)
            await db.flush()
            await db.refresh(medication)
        except SQLAlchemyError as e:
            logger.error("Database error adding medication for %s: %s", user_id, str(e))
            raise DatabaseError(context={"error_type": type(e).__name__}) from e

        logger.info("Medication %s added for user %s", medication.id, user_id)
        return medication

    async def update_user_medication(
        self, db: AsyncSession, user_id: uuid.UUID, payload: MedicationPayload
    ) -> UserMedication:
        """
        Partial update: only fields present in the payload are written.
        `updated_at` is always bumped.
        """
        if payload.id is None:
            raise ValidationError("Medication ID is required for updates", field="id")

        medication = await self._get_owned(db, user_id, payload.id)

        changes: Dict[str, Any] = {
            "name": payload.resolved_name(),
            "dosage": payload.dosage,
            "frequency": payload.frequency,
            "start_date": payload.resolved_start_date(),
            "end_date": payload.resolved_end_date(),
            "status": payload.resolved_status(),
            "prescribing_doctor": payload.prescribing_doctor,
            "notes": payload.notes,
        }
        for field, value in changes.items():
            if value is not None:
                setattr(medication, field, value)
        medication.updated_at = datetime.now(timezone.utc)

        try:
            await db.flush()
        except SQLAlchemyError as e:
            logger.error("Database error updating medication %s: %s", payload.id, str(e))
            raise DatabaseError(context={"error_type": type(e).__name__}) from e

        logger.info("Medication %s updated for user %s", medication.id, user_id)
        return medication

    async def delete_user_medication(
        self, db: AsyncSession, user_id: uuid.UUID, medication_id: Optional[uuid.UUID]
    ) -> None:
        if medication_id is None:
            raise ValidationError("Medication ID is required", field="id")

        try:
            result = await db.execute(
                delete(UserMedication).where(
                    UserMedication.id == medication_id,
                    UserMedication.user_id == user_id,
                )
            )
        except SQLAlchemyError as e:
            logger.error("Database error deleting medication %s: %s", medication_id, str(e))
            raise DatabaseError(context={"error_type": type(e).__name__}) from e

        if not result.rowcount:
            raise NotFoundError(
                resource="medication", resource_id=str(medication_id), message=NOT_FOUND_MESSAGE
            )
        logger.info("Medication %s deleted for user %s", medication_id, user_id)

    # ── Prescription scanning ─────────────────────────────────────────────

    async def scan_prescription(
        self, db: AsyncSession, content: bytes, mime_type: str
    ) -> Tuple[Dict[str, Any], Optional[MedicationMaster]]:
        """
        Extract label fields from a prescription image and look for a
        catalog match. Nothing is persisted: the client shows the result
        for confirmation and then POSTs it as a normal medication.

        Returns:
            (extracted_data, best catalog match or None)
        """
        raw = await self.llm.describe_image(content, mime_type, SCAN_PROMPT, max_tokens=1000)
        try:
            parsed = parse_json_response(raw)
        except ValueError as e:
            logger.warning("Prescription scan returned non-JSON output (%d chars)", len(raw))
            raise LLMServiceError(
                message="Failed to parse prescription information",
                context={"reason": "The AI response could not be processed"},
            ) from e
        if not isinstance(parsed, dict):
            raise LLMServiceError(message="Failed to parse prescription information")

        extracted: Dict[str, Any] = {field: parsed.get(field) for field in SCAN_FIELDS}
        extracted["confidence"] = parsed.get("confidence")

        match: Optional[MedicationMaster] = None
        name = extracted.get("medication_name")
        if isinstance(name, str) and name.strip():
            results = await self.search_catalog(db, query=name, limit=5)
            match = results[0] if results else None

        logger.info(
            "Prescription scanned: name=%r, catalog_match=%s",
            name, match.id if match else None,
        )
        return extracted, match

    # ── Internals ─────────────────────────────────────────────────────────

    async def _get_owned(
        self, db: AsyncSession, user_id: uuid.UUID, medication_id: uuid.UUID
    ) -> UserMedication:
        try:
            result = await db.execute(
                select(UserMedication).where(
                    UserMedication.id == medication_id,
                    UserMedication.user_id == user_id,
                )
            )
            medication = result.scalar_one_or_none()
        except SQLAlchemyError as e:
            logger.error("Database error fetching medication %s: %s", medication_id, str(e))
            raise DatabaseError(context={"error_type": type(e).__name__}) from e

        if medication is None:
            raise NotFoundError(
                resource="medication", resource_id=str(medication_id), message=NOT_FOUND_MESSAGE
            )
        return medication


# ── Singleton Instance ────────────────────────────────────────────────────
medication_service = MedicationService()
