"""
Treatment AI Backend — Diagnostic Chat Schemas
===============================================
"""

from typing import List, Optional

from pydantic import Field, StrictBool, StrictInt, StrictStr

from treatment_api.schemas.common import CamelModel


class DiagnosticQuestion(CamelModel):
    question: Optional[str] = None
    answer_list: Optional[List[str]] = None


class DetectAnswerRequest(CamelModel):
    """
    Body of POST /api/chat/detect-answer.

    Example:
        {"userMessage": "no, nothing like that",
         "diagnosticQuestion": {"question": "Do you have chest pain?",
                                "answerList": ["Absent", "Present"]}}
    """
    user_message: Optional[str] = ""
    diagnostic_question: Optional[DiagnosticQuestion] = None


class AnswerDetectionResult(CamelModel):
    """
    What the model must return; strict types so "true" or "95" strings are
    rejected as malformed output instead of being coerced.
    """
    answered: StrictBool
    answer_index: Optional[StrictInt] = None
    confidence: float = Field(strict=True, ge=0, le=100, description="0-100")
    explanation: StrictStr


class AnswerDetectionFailure(CamelModel):
    """Body returned with HTTP 500 when detection could not be completed."""
    error: str = "Answer detection failed"
    answered: bool = False
    answer_index: Optional[int] = None
    confidence: float = 0
    explanation: str = "Error analyzing response"
