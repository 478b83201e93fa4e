"""
Treatment AI Backend — Diagnostic Answer Detection
===================================================

What:  Decides whether a free-text chat message answers the diagnostic
       question currently on screen, and which option it picked.
Why:   Patients rarely click the answer buttons; they type "nope" or
       "only in the mornings". The diagnostic engine needs an option index.
How:   One low-temperature chat completion asked for JSON only. The reply
       is de-fenced, parsed and validated against AnswerDetectionResult;
       anything malformed is an LLMServiceError.
Who:   Called by routes/chat.py.
"""

import logging
from typing import List, Optional

from pydantic import ValidationError as PydanticValidationError

from treatment_api.exceptions import LLMServiceError, ValidationError
from treatment_api.schemas.chat import AnswerDetectionResult, DiagnosticQuestion
from treatment_api.services.llm_base import LLMService, parse_json_response
from treatment_api.services.openai_service import openai_service

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You classify patient replies to multiple-choice medical questions. "
    "Reply with one JSON object only."
)


def build_detection_prompt(question: str, options: List[str], user_message: str) -> str:
    numbered = "\n".join(f"{index}: {option}" for index, option in enumerate(options))
    return (
        f"Question asked: {question}\n"
        f"Options:\n{numbered}\n"
        f"Patient reply: {user_message}\n\n"
        "Does the reply answer the question? Treat synonyms and clear implications "
        "as answers, but only when you are more than 70% sure. Return JSON with keys "
        "answered (boolean), answerIndex (option number or null), confidence "
        "(0-100) and explanation (one short sentence)."
    )


class AnswerDetectionService:

    def __init__(self, llm: LLMService = openai_service):
        self.llm = llm

    async def detect(
        self, user_message: str, question: Optional[DiagnosticQuestion]
    ) -> AnswerDetectionResult:
        """
        Raises:
            ValidationError: question text or answer list missing (400)
            LLMServiceError: model failed or returned unusable output
        """
        if question is None or not question.question or not question.answer_list:
            raise ValidationError("Missing diagnostic question data", field="diagnosticQuestion")

        raw = await self.llm.complete(
            [
                {"role": "system", "content": SYSTEM_PROMPT},
                {
                    "role": "user",
                    "content": build_detection_prompt(
                        question.question, question.answer_list, user_message or ""
                    ),
                },
            ],
            temperature=0.1,
            max_tokens=200,
        )
        if not raw:
            raise LLMServiceError(message="No response from the AI service")

        try:
            result = AnswerDetectionResult.model_validate(parse_json_response(raw))
        except (ValueError, PydanticValidationError) as e:
            logger.warning("Answer detection returned malformed output: %r", raw[:200])
            raise LLMServiceError(
                message="Invalid response structure from the AI service",
                context={"error_type": type(e).__name__},
            ) from e

        if result.answer_index is not None and not 0 <= result.answer_index < len(question.answer_list):
            raise LLMServiceError(
                message="AI service selected an answer option that does not exist",
                context={"answer_index": result.answer_index},
            )

        logger.info(
            "Answer detection: answered=%s index=%s confidence=%.0f",
            result.answered, result.answer_index, result.confidence,
        )
        return result


# ── Singleton Instance ────────────────────────────────────────────────────
answer_detection_service = AnswerDetectionService()
