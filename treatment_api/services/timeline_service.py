"""
Treatment AI Backend — Health Timeline Service
===============================================

What:  Saves one timeline entry per completed diagnostic consultation and
       serves the patient's history back (list, detail, edit, delete, stats).
Why:   The timeline is the patient-facing record of past consultations; it
       keeps only the top five diagnoses and a readable summary, plus the
       full transcript for the detail view.
Who:   Called by routes/timeline.py.
"""

import logging
import math
import uuid
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import delete, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from treatment_api.exceptions import DatabaseError, NotFoundError, ValidationError
from treatment_api.models.health_timeline import HealthTimelineEntry
from treatment_api.schemas.timeline import (
    DiagnosisSummary,
    SaveTimelineRequest,
    SymptomCount,
    TimelineStats,
    UpdateTimelineRequest,
)

logger = logging.getLogger(__name__)

TOP_DIAGNOSES = 5


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def coerce_probability(value: Any) -> float:
    """Probability as a finite float; junk, NaN and infinities become 0."""
    try:
        probability = float(value or 0)
    except (TypeError, ValueError):
        return 0.0
    return probability if math.isfinite(probability) else 0.0


def summarize_diagnosis(raw: Dict[str, Any]) -> DiagnosisSummary:
    """
    Flatten one differential-diagnosis item.

    Nested `diagnosis.display_name` wins over the flattened keys; missing
    names become "Unknown" and a missing or non-numeric probability becomes 0.
    """
    nested = raw.get("diagnosis") if isinstance(raw.get("diagnosis"), dict) else {}
    condition = nested.get("display_name") or raw.get("condition") or "Unknown"
    return DiagnosisSummary(
        condition=condition,
        probability=coerce_probability(raw.get("probability")),
        medical_term=nested.get("display_name") or raw.get("medicalTerm") or "Unknown",
        layman_term=nested.get("display_name_layman") or raw.get("laymanTerm") or "Unknown",
    )


def generate_chat_summary(
    symptoms: List[str],
    findings: Optional[str],
    diagnoses: List[DiagnosisSummary],
    chat_history: Optional[List[Dict[str, Any]]],
) -> str:
    """
    Build the one-paragraph consultation summary shown on timeline cards.

    Example:
        "Medical consultation regarding headache, nausea. Key findings: ...
         Primary consideration: Migraine (72% probability). Other
         considerations include: Tension headache, Sinusitis. Consultation
         included 14 exchanges with comprehensive diagnostic analysis."
    """
    symptoms_text = ", ".join(symptoms) if symptoms else "various symptoms"
    parts = [f"Medical consultation regarding {symptoms_text}."]

    if findings:
        parts.append(f"Key findings: {findings}.")

    if diagnoses:
        primary = f"Primary consideration: {diagnoses[0].condition}"
        probability = coerce_probability(diagnoses[0].probability)
        if probability:
            primary += f" ({_round_half_up(probability)}% probability)"
        parts.append(primary + ".")

    if len(diagnoses) > 1:
        others = ", ".join(d.condition for d in diagnoses[1:3])
        parts.append(f"Other considerations include: {others}.")

    exchanges = len(chat_history) if chat_history else 0
    parts.append(
        f"Consultation included {exchanges} exchanges with comprehensive diagnostic analysis."
    )
    return " ".join(parts)


class TimelineService:

    async def save(
        self, db: AsyncSession, user_id: uuid.UUID, payload: SaveTimelineRequest
    ) -> HealthTimelineEntry:
        """
        Raises:
            ValidationError: sessionId/symptoms or differentialDiagnoses missing (400)
        """
        if not payload.session_id or payload.symptoms is None:
            raise ValidationError("Session ID and symptoms are required")
        if payload.differential_diagnoses is None:
            raise ValidationError("Differential diagnoses are required")

        symptoms = list(payload.symptoms)
        diagnoses = [
            summarize_diagnosis(d) for d in payload.differential_diagnoses[:TOP_DIAGNOSES]
        ]
        history = payload.chat_history or payload.full_chat_history or []

        summary = payload.chat_summary
        if not summary and history:
            summary = generate_chat_summary(symptoms, payload.findings, diagnoses, history)

        entry = HealthTimelineEntry(
            user_id=user_id,
            session_id=payload.session_id,
            date=date.today(),
            symptoms=symptoms,
            findings=payload.findings or f"Patient reported: {', '.join(symptoms)}",
            top_differential_diagnoses=[d.model_dump(by_alias=True) for d in diagnoses],
            chat_summary=summary or f"Consultation regarding {', '.join(symptoms)}",
            full_chat_history=history,
        )
        try:
            db.add(entry)
            await db.flush()
            await db.refresh(entry)
        except SQLAlchemyError as e:
            logger.error("Database error saving timeline entry for %s: %s", user_id, str(e))
            raise DatabaseError(
                message="Failed to save health timeline entry",
                context={"error_type": type(e).__name__},
            ) from e

        logger.info(
            "Timeline entry %s saved for user %s (%d symptoms, %d diagnoses)",
            entry.id, user_id, len(symptoms), len(diagnoses),
        )
        return entry

    async def list_entries(
        self, db: AsyncSession, user_id: uuid.UUID, limit: int = 50
    ) -> List[HealthTimelineEntry]:
        try:
            result = await db.execute(
                select(HealthTimelineEntry)
                .where(HealthTimelineEntry.user_id == user_id)
                .order_by(HealthTimelineEntry.date.desc(), HealthTimelineEntry.created_at.desc())
                .limit(limit)
            )
            return list(result.scalars().all())
        except SQLAlchemyError as e:
            logger.error("Database error listing timeline for %s: %s", user_id, str(e))
            raise DatabaseError(context={"error_type": type(e).__name__}) from e

    async def get_entry(
        self, db: AsyncSession, user_id: uuid.UUID, entry_id: uuid.UUID
    ) -> HealthTimelineEntry:
        try:
            result = await db.execute(
                select(HealthTimelineEntry).where(
                    HealthTimelineEntry.id == entry_id,
                    HealthTimelineEntry.user_id == user_id,
                )
            )
            entry = result.scalar_one_or_none()
        except SQLAlchemyError as e:
            logger.error("Database error fetching timeline entry %s: %s", entry_id, str(e))
            raise DatabaseError(context={"error_type": type(e).__name__}) from e

        if entry is None:
            raise NotFoundError(
                resource="timeline entry",
                resource_id=str(entry_id),
                message="Timeline entry not found",
            )
        return entry

    async def update_entry(
        self,
        db: AsyncSession,
        user_id: uuid.UUID,
        entry_id: uuid.UUID,
        payload: UpdateTimelineRequest,
    ) -> HealthTimelineEntry:
        entry = await self.get_entry(db, user_id, entry_id)

        for field, value in payload.model_dump(exclude_none=True).items():
            setattr(entry, field, value)
        entry.updated_at = datetime.now(timezone.utc)

        try:
            await db.flush()
        except SQLAlchemyError as e:
            logger.error("Database error updating timeline entry %s: %s", entry_id, str(e))
            raise DatabaseError(context={"error_type": type(e).__name__}) from e
        return entry

    async def delete_entry(
        self, db: AsyncSession, user_id: uuid.UUID, entry_id: uuid.UUID
    ) -> None:
        try:
            result = await db.execute(
                delete(HealthTimelineEntry).where(
                    HealthTimelineEntry.id == entry_id,
                    HealthTimelineEntry.user_id == user_id,
                )
            )
        except SQLAlchemyError as e:
            logger.error("Database error deleting timeline entry %s: %s", entry_id, str(e))
            raise DatabaseError(context={"error_type": type(e).__name__}) from e

        if not result.rowcount:
            raise NotFoundError(
                resource="timeline entry",
                resource_id=str(entry_id),
                message="Timeline entry not found",
            )
        logger.info("Timeline entry %s deleted by %s", entry_id, user_id)

    async def stats(self, db: AsyncSession, user_id: uuid.UUID) -> TimelineStats:
        """
        Totals plus the five most frequent symptoms.

        Symptom frequency unnests the JSONB arrays in SQL:
            SELECT symptom, count(*) FROM (
                SELECT jsonb_array_elements_text(symptoms) AS symptom
                FROM health_timeline WHERE user_id = :u
            ) GROUP BY symptom ORDER BY count DESC LIMIT 5
        """
        symptoms = (
            select(func.jsonb_array_elements_text(HealthTimelineEntry.symptoms).label("symptom"))
            .where(HealthTimelineEntry.user_id == user_id)
            .subquery()
        )
        occurrences = func.count().label("occurrences")

        try:
            totals = await db.execute(
                select(func.count(HealthTimelineEntry.id), func.max(HealthTimelineEntry.date))
                .where(HealthTimelineEntry.user_id == user_id)
            )
            total_entries, last_entry = totals.one()

            top = await db.execute(
                select(symptoms.c.symptom, occurrences)
                .group_by(symptoms.c.symptom)
                .order_by(occurrences.desc())
                .limit(5)
            )
            common = [SymptomCount(symptom=row.symptom, count=row.occurrences) for row in top.all()]
        except SQLAlchemyError as e:
            logger.error("Database error computing timeline stats for %s: %s", user_id, str(e))
            raise DatabaseError(context={"error_type": type(e).__name__}) from e

        return TimelineStats(
            total_entries=total_entries or 0,
            last_entry=last_entry,
            most_common_symptoms=common,
        )


# ── Singleton Instance ────────────────────────────────────────────────────
timeline_service = TimelineService()
