"""
Treatment AI Backend — Diagnostic Session Schemas
==================================================

Differential items are passed through as Merlin shapes them:
    {"diagnosis": {"display_name", "display_name_layman", ...}, "probability"}
The fallback path asks the model for the same shape, so clients render
both the same way.
"""

from typing import Any, Dict, List, Optional

from pydantic import Field

from treatment_api.schemas.chat import DiagnosticQuestion
from treatment_api.schemas.common import CamelModel


class CreateDiagnosticSessionRequest(CamelModel):
    """
    Body of POST /api/session/create.

    `symptoms` is the patient's free-text complaint; `userInput` is accepted
    as an alias because the chat screen posts its raw input field.
    """
    symptoms: Optional[str] = None
    user_input: Optional[str] = None


class DiagnosticSessionResponse(CamelModel):
    session_id: str
    differential_diagnosis: List[Dict[str, Any]] = Field(default_factory=list)
    first_question: Optional[DiagnosticQuestion] = None
    total_symptoms_processed: int = 0
    fallback_mode: bool = False
    message: Optional[str] = None


class SessionIdRequest(CamelModel):
    """`persistanceSession` is Merlin's spelling, kept for older clients."""
    session_id: Optional[str] = None
    persistance_session: Optional[str] = None

    @property
    def resolved_id(self) -> Optional[str]:
        return (self.session_id or self.persistance_session or "").strip() or None


class NextQuestionResponse(CamelModel):
    session_id: str
    question: Optional[str] = None
    answer_list: Optional[List[str]] = None
    no_more_questions: bool = False


class SubmitAnswerRequest(SessionIdRequest):
    answer_index: Optional[int] = Field(default=None, ge=0)
    answer_text: Optional[str] = None


class SubmitAnswerResponse(CamelModel):
    success: bool = True
    message: str = "Answer submitted successfully"
    session_id: str
    answer_index: int
    answer_text: Optional[str] = None
    fallback_mode: bool = False
    result: Dict[str, Any] = Field(default_factory=dict)


class RefreshDiagnosisResponse(CamelModel):
    session_id: str
    differential_diagnosis: List[Dict[str, Any]] = Field(default_factory=list)
