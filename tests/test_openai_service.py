"""
Treatment AI Backend — OpenAI Service Unit Tests (Mocked)
==========================================================

What:  OpenAIService with a mocked AsyncOpenAI client, plus the circuit
       breaker and JSON reply parsing it relies on.
How:   No network: the SDK client is a MagicMock injected via the
       constructor. Failure tests use non-retryable errors so tenacity
       does not sleep.
"""

import time
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest
from openai import APIConnectionError, OpenAIError
from tenacity import wait_none

from treatment_api.exceptions import CircuitBreakerOpenError, LLMServiceError
from treatment_api.services.llm_base import parse_json_response
from treatment_api.services.openai_service import CircuitBreaker, OpenAIService


def _chat_response(content):
    response = MagicMock()
    response.choices = [MagicMock(message=MagicMock(content=content))]
    return response


def _mock_client():
    client = MagicMock()
    client.chat.completions.create = AsyncMock(return_value=_chat_response("  ok  "))
    embedding = MagicMock(embedding=[0.1, 0.2, 0.3])
    client.embeddings.create = AsyncMock(return_value=MagicMock(data=[embedding]))
    client.models.list = AsyncMock(return_value=[])
    return client


class TestCircuitBreaker:

    def test_initial_state_is_closed(self):
        cb = CircuitBreaker(failure_threshold=5, recovery_timeout=60)
        assert cb.state == "closed"
        assert cb.failure_count == 0

    def test_stays_closed_under_threshold(self):
        cb = CircuitBreaker(failure_threshold=5, recovery_timeout=60)
        for _ in range(4):
            cb.record_failure()
        assert cb.state == "closed"
        assert cb.can_execute() is True

    def test_open_circuit_rejects_calls(self):
        cb = CircuitBreaker(failure_threshold=2, recovery_timeout=60)
        cb.record_failure()
        cb.record_failure()

        with pytest.raises(CircuitBreakerOpenError) as exc_info:
            cb.can_execute()
        assert 0 < exc_info.value.recovery_time <= 60

    def test_half_open_after_recovery_timeout(self):
        cb = CircuitBreaker(failure_threshold=1, recovery_timeout=60)
        cb.record_failure()
        cb.last_failure_time = time.time() - 61

        assert cb.can_execute() is True
        assert cb.state == "half_open"

    def test_failure_while_half_open_reopens(self):
        cb = CircuitBreaker(failure_threshold=3, recovery_timeout=60)
        cb.state = cb.HALF_OPEN
        cb.record_failure()
        assert cb.state == "open"

    def test_success_closes_and_resets(self):
        cb = CircuitBreaker(failure_threshold=1, recovery_timeout=60)
        cb.record_failure()
        cb.state = cb.HALF_OPEN

        cb.record_success()
        assert cb.state == "closed"
        assert cb.failure_count == 0


class TestParseJsonResponse:

    def test_plain_json(self):
        assert parse_json_response('{"answered": true}') == {"answered": True}

    def test_fenced_json(self):
        raw = '```json\n{"answered": false, "answerIndex": null}\n```'
        assert parse_json_response(raw) == {"answered": False, "answerIndex": None}

    def test_invalid_json(self):
        with pytest.raises(ValueError):
            parse_json_response("I think the answer is yes")


class TestOpenAIServiceMocked:

    def setup_method(self):
        self.client = _mock_client()
        self.service = OpenAIService(client=self.client)

    @pytest.mark.asyncio
    async def test_complete_returns_stripped_text(self):
        result = await self.service.complete(
            [{"role": "user", "content": "hi"}], temperature=0.1, max_tokens=200
        )

        assert result == "ok"
        kwargs = self.client.chat.completions.create.await_args.kwargs
        assert kwargs["temperature"] == 0.1
        assert kwargs["max_tokens"] == 200

    @pytest.mark.asyncio
    async def test_complete_without_choices_returns_empty(self):
        self.client.chat.completions.create.return_value = MagicMock(choices=[])
        assert await self.service.complete([{"role": "user", "content": "hi"}]) == ""

    @pytest.mark.asyncio
    async def test_describe_image_sends_data_url(self):
        await self.service.describe_image(b"\xff\xd8", "image/jpeg", "Describe", max_tokens=500)

        messages = self.client.chat.completions.create.await_args.kwargs["messages"]
        image_part = messages[0]["content"][1]
        assert image_part["image_url"]["url"] == "data:image/jpeg;base64,/9g="

    @pytest.mark.asyncio
    async def test_embed_collapses_newlines(self):
        result = await self.service.embed("chest\npain")

        assert result == [0.1, 0.2, 0.3]
        assert self.client.embeddings.create.await_args.kwargs["input"] == "chest pain"

    @pytest.mark.asyncio
    async def test_embed_empty_text(self):
        with pytest.raises(LLMServiceError, match="empty"):
            await self.service.embed(" \n ")
        self.client.embeddings.create.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_sdk_error_wrapped_and_counted(self):
        self.client.chat.completions.create.side_effect = OpenAIError("invalid key")

        with pytest.raises(LLMServiceError) as exc_info:
            await self.service.complete([{"role": "user", "content": "hi"}])

        assert exc_info.value.retry_after == self.service.circuit_breaker.recovery_timeout
        assert self.service.circuit_breaker.failure_count == 1
        # Not transient: a single attempt
        assert self.client.chat.completions.create.await_count == 1

    @pytest.mark.asyncio
    async def test_transient_error_is_retried(self):
        request = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")
        self.client.chat.completions.create.side_effect = [
            APIConnectionError(request=request),
            _chat_response("recovered"),
        ]

        with patch.object(OpenAIService._create_chat_completion.retry, "wait", wait_none()):
            result = await self.service.complete([{"role": "user", "content": "hi"}])

        assert result == "recovered"
        assert self.client.chat.completions.create.await_count == 2
        assert self.service.circuit_breaker.failure_count == 0

    @pytest.mark.asyncio
    async def test_open_circuit_skips_sdk(self):
        for _ in range(self.service.circuit_breaker.failure_threshold):
            self.service.circuit_breaker.record_failure()

        with pytest.raises(CircuitBreakerOpenError):
            await self.service.complete([{"role": "user", "content": "hi"}])
        self.client.chat.completions.create.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_health_check(self):
        assert await self.service.health_check() is True

        self.client.models.list.side_effect = OpenAIError("unreachable")
        assert await self.service.health_check() is False
