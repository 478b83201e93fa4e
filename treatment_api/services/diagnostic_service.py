"""
Treatment AI Backend — Diagnostic Session Service
==================================================

What:  Opens a diagnostic session from the patient's free-text complaint,
       then relays the question/answer loop and the differential diagnosis.
Why:   Merlin does the diagnostic reasoning but only understands SDCO ids
       and option indexes. Patients type "my stomache hurts after eating".
How:   1. Ask the model for the standardized symptom list
       2. Match the primary symptom to an SDCO id by vector search
          (DIAGNOSTIC_DEFAULT_SDCO when nothing is close enough)
       3. Start a Merlin session; fetch the differential and first question
          in parallel
       4. Record the session and its symptoms for the caller
       When Merlin is down (UpstreamServiceError, or its circuit breaker is
       open) the model generates the differential and a first question
       instead, under a `fallback_<ms>_<rand>` session id.
Who:   Called by routes/diagnostic.py.

Session ownership:
    Every follow-up call resolves the session id through
    `diagnostic_sessions` for the calling user; an id belonging to someone
    else is reported as not found.
"""

import asyncio
import logging
import secrets
import string
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from treatment_api.config import settings
from treatment_api.exceptions import (
    CircuitBreakerOpenError,
    DatabaseError,
    LLMServiceError,
    NotFoundError,
    UpstreamServiceError,
    ValidationError,
)
from treatment_api.models.diagnostic import DiagnosticSession, SessionSymptom
from treatment_api.models.user import User
from treatment_api.schemas.chat import DiagnosticQuestion
from treatment_api.schemas.diagnostic import (
    DiagnosticSessionResponse,
    NextQuestionResponse,
    RefreshDiagnosisResponse,
    SubmitAnswerResponse,
)
from treatment_api.services.llm_base import LLMService, parse_json_response
from treatment_api.services.merlin_client import PLATFORM_ID, MerlinClient, merlin_client
from treatment_api.services.openai_service import openai_service
from treatment_api.services.timeline_service import coerce_probability
from treatment_api.services.vector_search_service import VectorSearchService, vector_search_service

logger = logging.getLogger(__name__)

FALLBACK_PREFIX = "fallback_"
_FALLBACK_ALPHABET = string.ascii_lowercase + string.digits

# Merlin statuses after which an answer is acknowledged locally
ANSWER_FALLBACK_STATUSES = {404, 500, 502, 503}

PLACEHOLDER_DIFFERENTIAL = [
    {
        "diagnosis": {
            "display_name": "Symptom Assessment Required",
            "display_name_layman": "Further evaluation needed",
        },
        "probability": 0.5,
    }
]

EXTRACTION_PROMPT = (
    "List every individual symptom in the patient's message as a JSON array of "
    "strings. Fix spelling and use standard terms: stomach ache or belly pain is "
    '"abdominal pain", loose or watery stools are "diarrhea", coughing is "cough", '
    'head pain is "headache", feeling sick is "nausea", tired is "fatigue". '
    "Return the array only."
)

FALLBACK_DIFFERENTIAL_PROMPT = (
    "You are a medical assistant. From the patient's symptoms, propose 3 to 5 "
    "possible diagnoses ordered by likelihood. Reply with JSON only: a list of "
    '{"diagnosis": {"display_name": "<medical term>", "display_name_layman": '
    '"<plain description>"}, "probability": <0.1-0.8>}.'
)

FALLBACK_QUESTION_PROMPT = (
    "You write one multiple-choice follow-up question that would help narrow down "
    'the cause of the patient\'s symptoms. Reply with JSON only: {"question": '
    '"<question>", "answerList": ["<option>", ...]}.'
)


def generate_fallback_session_id() -> str:
    """`fallback_<epoch ms>_<9 random base36 chars>`"""
    suffix = "".join(secrets.choice(_FALLBACK_ALPHABET) for _ in range(9))
    return f"{FALLBACK_PREFIX}{int(time.time() * 1000)}_{suffix}"


def build_patient_info(user: User) -> Dict[str, Any]:
    """Merlin's patient block: US-style birth date, one-letter sex."""
    sex = {"male": "m", "female": "f"}.get((user.gender_at_birth or "").lower(), "o")
    return {
        "first_name": user.first_name,
        "last_name": user.last_name,
        "date_of_birth": user.date_of_birth.strftime("%m/%d/%Y") if user.date_of_birth else "",
        "sex_at_birth": sex,
        "comments": [],
        "allergy_list": [],
        "medication_list": [],
        "risk_factor_list": [],
        "problem_list": [],
    }


def parse_differential(raw: str) -> List[Dict[str, Any]]:
    """
    The model's differential as a list of dicts. It sometimes wraps the
    list in {"diagnoses": [...]}; anything unusable yields the placeholder.
    """
    try:
        parsed = parse_json_response(raw)
    except ValueError:
        return list(PLACEHOLDER_DIFFERENTIAL)
    if isinstance(parsed, dict):
        parsed = parsed.get("diagnoses")
    if not isinstance(parsed, list):
        return list(PLACEHOLDER_DIFFERENTIAL)
    return [item for item in parsed if isinstance(item, dict)] or list(PLACEHOLDER_DIFFERENTIAL)


def parse_question(raw: str) -> Optional[DiagnosticQuestion]:
    try:
        parsed = parse_json_response(raw)
    except ValueError:
        return None
    if not isinstance(parsed, dict):
        return None
    question = parsed.get("question")
    answers = parsed.get("answerList") or parsed.get("answer_list")
    if not isinstance(question, str) or not question or not isinstance(answers, list) or not answers:
        return None
    return DiagnosticQuestion(question=question, answer_list=[str(a) for a in answers])


class DiagnosticService:

    def __init__(
        self,
        llm: LLMService = openai_service,
        merlin: MerlinClient = merlin_client,
        search: VectorSearchService = vector_search_service,
    ):
        self.llm = llm
        self.merlin = merlin
        self.search = search

    # ══════════════════════════════════════════════════════════════════════
    # Session creation
    # ══════════════════════════════════════════════════════════════════════

    async def create_session(
        self, db: AsyncSession, user: User, complaint: Optional[str]
    ) -> DiagnosticSessionResponse:
        """
        Raises:
            ValidationError: no complaint text (400)
            LLMServiceError / CircuitBreakerOpenError: Merlin and the model
                are both unavailable (503)
        """
        text = (complaint or "").strip()
        if not text:
            raise ValidationError("Missing symptoms or user input", field="symptoms")

        symptoms = await self.extract_symptoms(text)
        sdco_id = await self.match_sdco(db, symptoms[0])
        patient_info = build_patient_info(user)

        try:
            session_id = await self.merlin.start_session(patient_info, sdco_id)
        except (UpstreamServiceError, CircuitBreakerOpenError) as e:
            logger.warning("Diagnostic engine unavailable (%s); using fallback session", e.message)
            return await self._create_fallback(db, user, text, symptoms, sdco_id, patient_info)

        differential, first_question = await asyncio.gather(
            self._initial_differential(session_id),
            self._initial_question(session_id),
        )
        await self._record_session(db, user, session_id, patient_info, symptoms, sdco_id, False)

        logger.info(
            "Diagnostic session %s for user %s: %d symptoms, %d diagnoses, question=%s",
            session_id, user.id, len(symptoms), len(differential), first_question is not None,
        )
        return DiagnosticSessionResponse(
            session_id=session_id,
            differential_diagnosis=differential,
            first_question=first_question,
            total_symptoms_processed=len(symptoms),
        )

    async def extract_symptoms(self, text: str) -> List[str]:
        """
        Standardized symptom list, primary symptom first. The raw text is
        used as the only symptom when the model is unavailable or replies
        with something other than a list of strings.
        """
        try:
            raw = await self.llm.complete(
                [
                    {"role": "system", "content": EXTRACTION_PROMPT},
                    {"role": "user", "content": text},
                ],
                temperature=0.1,
                max_tokens=100,
            )
            parsed = parse_json_response(raw)
        except (LLMServiceError, CircuitBreakerOpenError, ValueError) as e:
            logger.warning("Symptom extraction failed, using raw text: %s", str(e))
            return [text]

        if not isinstance(parsed, list):
            return [text]
        symptoms = [s.strip() for s in parsed if isinstance(s, str) and s.strip()]
        return symptoms or [text]

    async def match_sdco(self, db: AsyncSession, symptom: str) -> str:
        """Closest SDCO id for `symptom`, or the configured general symptom."""
        try:
            hits = await self.search.search(db, symptom, limit=3)
        except (LLMServiceError, CircuitBreakerOpenError) as e:
            logger.warning("SDCO matching for %r failed: %s", symptom, str(e))
            hits = []

        if hits:
            sdco_id = hits[0].document.sdco_id
            logger.info("Matched %r to %s", symptom, sdco_id)
            return sdco_id

        logger.info("No SDCO match for %r, using %s", symptom, settings.diagnostic_default_sdco)
        return settings.diagnostic_default_sdco

    async def _initial_differential(self, session_id: str) -> List[Dict[str, Any]]:
        try:
            return await self.merlin.get_differential(session_id)
        except (UpstreamServiceError, CircuitBreakerOpenError) as e:
            logger.warning("No initial differential for %s: %s", session_id, e.message)
            return []

    async def _initial_question(self, session_id: str) -> Optional[DiagnosticQuestion]:
        try:
            question = await self.merlin.get_question(session_id)
        except (UpstreamServiceError, CircuitBreakerOpenError) as e:
            logger.warning("No first question for %s: %s", session_id, e.message)
            return None
        if question is None:
            return None
        return DiagnosticQuestion(question=question["question"], answer_list=question["answer_list"])

    async def _create_fallback(
        self,
        db: AsyncSession,
        user: User,
        text: str,
        symptoms: List[str],
        sdco_id: str,
        patient_info: Dict[str, Any],
    ) -> DiagnosticSessionResponse:
        session_id = generate_fallback_session_id()

        raw_differential, raw_question = await asyncio.gather(
            self.llm.complete(
                [
                    {"role": "system", "content": FALLBACK_DIFFERENTIAL_PROMPT},
                    {"role": "user", "content": f"Patient presents with: {text}"},
                ],
                temperature=0.3,
                max_tokens=1000,
            ),
            self.llm.complete(
                [
                    {"role": "system", "content": FALLBACK_QUESTION_PROMPT},
                    {"role": "user", "content": f"Symptoms: {text}"},
                ],
                temperature=0.3,
                max_tokens=500,
            ),
        )
        differential = parse_differential(raw_differential)
        first_question = parse_question(raw_question)

        await self._record_session(db, user, session_id, patient_info, symptoms, sdco_id, True)

        logger.info("Fallback diagnostic session %s for user %s", session_id, user.id)
        return DiagnosticSessionResponse(
            session_id=session_id,
            differential_diagnosis=differential,
            first_question=first_question,
            total_symptoms_processed=len(symptoms),
            fallback_mode=True,
            message="Diagnostic session created in fallback mode due to server unavailability",
        )

    async def _record_session(
        self,
        db: AsyncSession,
        user: User,
        session_id: str,
        patient_info: Dict[str, Any],
        symptoms: List[str],
        sdco_id: str,
        fallback: bool,
    ) -> DiagnosticSession:
        record = DiagnosticSession(
            user_id=user.id,
            merlin_session_id=session_id,
            patient_data={**patient_info, "email": user.email},
            reason_for_encounter=", ".join(symptoms),
            reason_for_encounter_symptom_id=sdco_id,
            platform_id=PLATFORM_ID,
            status="active",
            fallback_mode=fallback,
        )
        record.symptoms = [
            SessionSymptom(
                symptom_text=symptom,
                sdco_id=sdco_id if index == 0 else None,
                processing_order=index + 1,
            )
            for index, symptom in enumerate(symptoms)
        ]
        try:
            db.add(record)
            await db.flush()
        except SQLAlchemyError as e:
            logger.error("Database error recording diagnostic session %s: %s", session_id, str(e))
            raise DatabaseError(context={"error_type": type(e).__name__}) from e
        return record

    # ══════════════════════════════════════════════════════════════════════
    # Question / answer loop
    # ══════════════════════════════════════════════════════════════════════

    async def next_question(
        self, db: AsyncSession, user: User, session_id: Optional[str]
    ) -> NextQuestionResponse:
        """
        Merlin answers its question endpoint with a 500 once a session's
        questions are used up; that is reported as `noMoreQuestions`.
        """
        record = await self.get_owned_session(db, user.id, session_id)

        question = None
        if not record.fallback_mode:
            try:
                question = await self.merlin.get_question(record.merlin_session_id)
            except UpstreamServiceError as e:
                if e.context.get("status_code") != 500:
                    raise
                logger.warning(
                    "Question endpoint failed for %s, treating as finished", record.merlin_session_id
                )

        if question is None:
            await self._touch(db, record, status="completed")
            return NextQuestionResponse(session_id=record.merlin_session_id, no_more_questions=True)

        return NextQuestionResponse(
            session_id=record.merlin_session_id,
            question=question["question"],
            answer_list=question["answer_list"],
        )

    async def submit_answer(
        self,
        db: AsyncSession,
        user: User,
        session_id: Optional[str],
        answer_index: Optional[int],
        answer_text: Optional[str] = None,
    ) -> SubmitAnswerResponse:
        """
        Relay an answer to Merlin. Fallback sessions, and Merlin answering
        404/5xx or being circuit-broken, get a local acknowledgement so the
        chat can carry on.
        """
        if not session_id or answer_index is None:
            raise ValidationError("Session ID and answerIndex are required")

        record = await self.get_owned_session(db, user.id, session_id)

        result: Optional[Dict[str, Any]] = None
        if not record.fallback_mode:
            try:
                result = await self.merlin.submit_answer(record.merlin_session_id, answer_index)
            except CircuitBreakerOpenError as e:
                logger.warning("Answer for %s kept locally: %s", session_id, e.message)
            except UpstreamServiceError as e:
                status_code = e.context.get("status_code")
                if status_code not in ANSWER_FALLBACK_STATUSES:
                    raise
                logger.warning("Answer for %s kept locally: Merlin returned %s", session_id, status_code)

        await self._touch(db, record)

        if result is not None:
            return SubmitAnswerResponse(
                session_id=record.merlin_session_id,
                answer_index=answer_index,
                answer_text=answer_text,
                result=result,
            )
        return SubmitAnswerResponse(
            message="Answer submitted successfully (fallback mode)",
            session_id=record.merlin_session_id,
            answer_index=answer_index,
            answer_text=answer_text,
            fallback_mode=True,
            result={
                "status": "processed",
                "nextAction": "continue_conversation",
                "answerProcessed": {
                    "submitted": True,
                    "answerIndex": answer_index,
                    "timestamp": datetime.now(timezone.utc).isoformat(),
                    "processedBy": "fallback_system",
                },
            },
        )

    async def refresh_diagnosis(
        self, db: AsyncSession, user: User, session_id: Optional[str]
    ) -> RefreshDiagnosisResponse:
        """Current differential, most likely first, trivial entries dropped."""
        record = await self.get_owned_session(db, user.id, session_id)
        if record.fallback_mode:
            raise ValidationError(
                "Fallback sessions have no live differential to refresh",
                field="sessionId",
            )

        diagnoses = await self.merlin.get_differential(record.merlin_session_id)
        floor = settings.diagnostic_min_probability
        ranked = sorted(
            (d for d in diagnoses if coerce_probability(d.get("probability")) > floor),
            key=lambda d: coerce_probability(d.get("probability")),
            reverse=True,
        )
        return RefreshDiagnosisResponse(
            session_id=record.merlin_session_id, differential_diagnosis=ranked
        )

    # ── Helpers ───────────────────────────────────────────────────────────

    async def get_owned_session(
        self, db: AsyncSession, user_id: uuid.UUID, session_id: Optional[str]
    ) -> DiagnosticSession:
        if not session_id:
            raise ValidationError("Session ID is required", field="sessionId")
        try:
            result = await db.execute(
                select(DiagnosticSession).where(
                    DiagnosticSession.merlin_session_id == session_id,
                    DiagnosticSession.user_id == user_id,
                )
            )
            record = result.scalar_one_or_none()
        except SQLAlchemyError as e:
            logger.error("Database error loading diagnostic session %s: %s", session_id, str(e))
            raise DatabaseError(context={"error_type": type(e).__name__}) from e

        if record is None:
            raise NotFoundError(
                resource="diagnostic session",
                resource_id=session_id,
                message="Diagnostic session not found",
            )
        return record

    async def _touch(
        self, db: AsyncSession, record: DiagnosticSession, status: Optional[str] = None
    ) -> None:
        if status:
            record.status = status
        record.updated_at = datetime.now(timezone.utc)
        try:
            await db.flush()
        except SQLAlchemyError as e:
            logger.error(
                "Database error updating diagnostic session %s: %s", record.merlin_session_id, str(e)
            )
            raise DatabaseError(context={"error_type": type(e).__name__}) from e


# ── Singleton Instance ────────────────────────────────────────────────────
diagnostic_service = DiagnosticService()
