"""
Treatment AI Backend — Answer Detection Unit Tests
===================================================

What:  Prompt construction, reply validation and failure mapping of
       AnswerDetectionService.
"""

import pytest

from treatment_api.exceptions import LLMServiceError, ValidationError
from treatment_api.schemas.chat import DiagnosticQuestion
from treatment_api.services.answer_detection_service import (
    AnswerDetectionService,
    build_detection_prompt,
)

CHEST_PAIN = DiagnosticQuestion(question="Do you have chest pain?", answer_list=["Absent", "Present"])


def test_prompt_numbers_options_from_zero():
    prompt = build_detection_prompt("Fever?", ["No", "Yes"], "burning up")
    assert "0: No\n1: Yes" in prompt
    assert "Patient reply: burning up" in prompt


class TestAnswerDetectionService:

    @pytest.mark.asyncio
    async def test_answer_detected(self, mock_llm):
        mock_llm.complete.return_value = (
            '{"answered": true, "answerIndex": 0, "confidence": 95, '
            '"explanation": "Patient denies chest pain."}'
        )
        service = AnswerDetectionService(llm=mock_llm)

        result = await service.detect("no, nothing like that", CHEST_PAIN)

        assert result.answered is True
        assert result.answer_index == 0
        assert result.confidence == 95
        assert mock_llm.complete.await_args.kwargs == {"temperature": 0.1, "max_tokens": 200}

    @pytest.mark.asyncio
    async def test_fenced_reply_without_answer(self, mock_llm):
        mock_llm.complete.return_value = (
            '```json\n{"answered": false, "answerIndex": null, "confidence": 20, '
            '"explanation": "The reply is about a headache."}\n```'
        )
        service = AnswerDetectionService(llm=mock_llm)

        result = await service.detect("my head hurts", CHEST_PAIN)

        assert result.answered is False
        assert result.answer_index is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize("question", [None, DiagnosticQuestion(question="Fever?", answer_list=[])])
    async def test_missing_question(self, mock_llm, question):
        service = AnswerDetectionService(llm=mock_llm)

        with pytest.raises(ValidationError, match="Missing diagnostic question data"):
            await service.detect("yes", question)
        mock_llm.complete.assert_not_awaited()

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "reply",
        [
            "Yes, they answered.",
            '{"answered": "true", "answerIndex": 1, "confidence": 90, "explanation": "x"}',
            '{"answered": true, "answerIndex": 1, "confidence": 140, "explanation": "x"}',
            '{"answered": true, "answerIndex": 1, "confidence": 90}',
        ],
    )
    async def test_malformed_reply(self, mock_llm, reply):
        mock_llm.complete.return_value = reply
        service = AnswerDetectionService(llm=mock_llm)

        with pytest.raises(LLMServiceError, match="Invalid response structure"):
            await service.detect("yes", CHEST_PAIN)

    @pytest.mark.asyncio
    async def test_out_of_range_index(self, mock_llm):
        mock_llm.complete.return_value = (
            '{"answered": true, "answerIndex": 5, "confidence": 90, "explanation": "x"}'
        )
        service = AnswerDetectionService(llm=mock_llm)

        with pytest.raises(LLMServiceError):
            await service.detect("yes", CHEST_PAIN)

    @pytest.mark.asyncio
    async def test_empty_reply(self, mock_llm):
        mock_llm.complete.return_value = ""
        service = AnswerDetectionService(llm=mock_llm)

        with pytest.raises(LLMServiceError, match="No response"):
            await service.detect("yes", CHEST_PAIN)
