"""
Treatment AI Backend — OpenAI Service Implementation
=====================================================

What:  Concrete LLM service wrapping `openai.AsyncOpenAI` for chat
       completions, vision and embeddings.
Why:   Every AI-backed endpoint (answer detection, upload analysis,
       prescription scanning, vector search) shares one resilient client.
How:   Each call passes through a circuit breaker, then a tenacity-retried
       SDK call. The SDK's own retry loop is disabled (max_retries=0) so
       tenacity is the only layer deciding when to try again.
Who:   Instantiated once at import; used through the `openai_service`
       singleton.

Resilience Strategy:
    1. Tenacity retry with exponential backoff + jitter, only for transient
       errors (connection, timeout, 429, 5xx)
    2. Circuit breaker so a dead upstream fails fast instead of holding
       requests for the full retry window
    3. Every failure surfaces as LLMServiceError (503) with a request-scoped
       trace ID in the logs
"""

import base64
import logging
import time
import uuid
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

from openai import (
    APIConnectionError,
    APITimeoutError,
    AsyncOpenAI,
    InternalServerError,
    OpenAIError,
    RateLimitError,
)
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)

from treatment_api.config import settings
from treatment_api.exceptions import CircuitBreakerOpenError, LLMServiceError
from treatment_api.services.llm_base import LLMService

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Errors worth retrying. Authentication and bad-request errors are not:
# sending the same request again cannot fix them.
TRANSIENT_ERRORS = (
    APIConnectionError,
    APITimeoutError,
    RateLimitError,
    InternalServerError,
)


# ══════════════════════════════════════════════════════════════════════════
# Circuit Breaker Implementation
# ══════════════════════════════════════════════════════════════════════════

class CircuitBreaker:
    """
    Implements the circuit breaker pattern to prevent cascade failures.

    State Machine:
        CLOSED (normal operation)
            → On failure: increment failure_count
            → When failure_count >= threshold: transition to OPEN

        OPEN (rejecting all requests)
            → All calls raise CircuitBreakerOpenError immediately
            → After recovery_timeout seconds: transition to HALF_OPEN

        HALF_OPEN (testing recovery)
            → Allow ONE request through
            → On success: transition to CLOSED (reset failure_count)
            → On failure: transition back to OPEN (reset timer)

    Thread Safety:
        Plain counters, no locks. uvicorn async workers run every request of
        a process on one event loop, so there is no concurrent mutation.
        Each worker process keeps its own breaker.
    """

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"

    def __init__(
        self,
        failure_threshold: int = 5,
        recovery_timeout: int = 60,
        service: str = "AI service",
    ):
        self.service = service
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.failure_count = 0
        self.state = self.CLOSED
        self.last_failure_time: Optional[float] = None

    def can_execute(self) -> bool:
        """
        Check if a request is allowed through the circuit breaker.

        Raises:
            CircuitBreakerOpenError if the circuit is OPEN and the recovery
            timeout hasn't elapsed.
        """
        if self.state == self.CLOSED:
            return True

        if self.state == self.OPEN:
            elapsed = time.time() - (self.last_failure_time or 0)
            if elapsed >= self.recovery_timeout:
                logger.info(
                    "Circuit breaker transitioning to HALF_OPEN after %.1fs",
                    elapsed,
                )
                self.state = self.HALF_OPEN
                return True
            remaining = int(self.recovery_timeout - elapsed)
            raise CircuitBreakerOpenError(recovery_time=remaining, service=self.service)

        # HALF_OPEN: allow the test request through
        return True

    def record_success(self) -> None:
        """Record a successful call. Resets the breaker to CLOSED."""
        if self.state == self.HALF_OPEN:
            logger.info("Circuit breaker transitioning to CLOSED (service recovered)")
        self.failure_count = 0
        self.state = self.CLOSED
        self.last_failure_time = None

    def record_failure(self) -> None:
        """Record a failed call. May trigger CLOSED → OPEN."""
        self.failure_count += 1
        self.last_failure_time = time.time()

        if self.state == self.HALF_OPEN:
            logger.warning("Circuit breaker returning to OPEN (test request failed)")
            self.state = self.OPEN
        elif self.failure_count >= self.failure_threshold:
            logger.warning(
                "Circuit breaker OPENING after %d consecutive failures",
                self.failure_count,
            )
            self.state = self.OPEN


# ── Shared retry policy ───────────────────────────────────────────────────
# wait = min(max_wait, min_wait * 2^attempt) + random(0, 1)
# attempt 1 → ~2s, attempt 2 → ~4s, attempt 3 → ~8s (+jitter)
openai_retry = retry(
    retry=retry_if_exception_type(TRANSIENT_ERRORS),
    stop=stop_after_attempt(settings.retry_max_attempts),
    wait=wait_exponential_jitter(
        initial=settings.retry_min_wait,
        max=settings.retry_max_wait,
        jitter=1,
    ),
    before_sleep=before_sleep_log(logger, logging.WARNING),
    reraise=True,
)


# ══════════════════════════════════════════════════════════════════════════
# OpenAI Service
# ══════════════════════════════════════════════════════════════════════════

class OpenAIService(LLMService):
    """
    OpenAI implementation of LLMService.

    Error Handling Chain:
        SDK call fails with a transient error → tenacity retries
        → all retries fail → circuit breaker records a failure
        → threshold reached → later calls rejected instantly (503)
        → recovery timeout → one test call (HALF_OPEN)
        → success → CLOSED
    """

    def __init__(self, client: Optional[AsyncOpenAI] = None):
        # Built lazily: AsyncOpenAI refuses an empty key at construction, and
        # the app must still boot (and report "unavailable") without one.
        self._client = client
        self.chat_model = settings.openai_chat_model
        self.embedding_model = settings.openai_embedding_model
        self.circuit_breaker = CircuitBreaker(
            failure_threshold=settings.cb_failure_threshold,
            recovery_timeout=settings.cb_recovery_timeout,
        )
        logger.info(
            "OpenAIService initialized with chat_model=%s, embedding_model=%s, "
            "circuit_breaker(threshold=%d, recovery=%ds)",
            self.chat_model,
            self.embedding_model,
            settings.cb_failure_threshold,
            settings.cb_recovery_timeout,
        )

    @property
    def client(self) -> AsyncOpenAI:
        if self._client is None:
            if not settings.openai_api_key:
                raise LLMServiceError(
                    message="AI service is not configured.",
                    context={"reason": "OPENAI_API_KEY is not set"},
                )
            self._client = AsyncOpenAI(
                api_key=settings.openai_api_key,
                timeout=settings.openai_timeout,
                max_retries=0,
            )
        return self._client

    # ── Public API ────────────────────────────────────────────────────────

    async def complete(
        self,
        messages: List[Dict[str, str]],
        temperature: float = 0.7,
        max_tokens: Optional[int] = None,
    ) -> str:
        return await self._execute(
            "chat",
            lambda trace_id: self._create_chat_completion(
                trace_id, messages, temperature, max_tokens
            ),
        )

    async def describe_image(
        self,
        content: bytes,
        mime_type: str,
        prompt: str,
        max_tokens: int = 1000,
    ) -> str:
        encoded = base64.b64encode(content).decode("ascii")
        messages: List[Dict[str, Any]] = [
            {
                "role": "user",
                "content": [
                    {"type": "text", "text": prompt},
                    {
                        "type": "image_url",
                        "image_url": {"url": f"data:{mime_type};base64,{encoded}"},
                    },
                ],
            }
        ]
        return await self._execute(
            "vision",
            lambda trace_id: self._create_chat_completion(
                trace_id, messages, 0.2, max_tokens
            ),
        )

    async def embed(self, text: str) -> List[float]:
        # Newlines degrade ada-002 embedding quality
        cleaned = text.replace("\n", " ").strip()
        if not cleaned:
            raise LLMServiceError(
                message="Cannot embed empty text.",
                context={"operation": "embed"},
            )
        return await self._execute(
            "embed",
            lambda trace_id: self._create_embedding(trace_id, cleaned),
        )

    async def health_check(self) -> bool:
        """
        What:    Lists models (no token cost) to verify key and connectivity.
        Returns: True if reachable and authenticated, False otherwise.
        """
        try:
            await self.client.models.list()
            return True
        except (OpenAIError, LLMServiceError) as e:
            logger.warning("OpenAI health check failed: %s", str(e))
            return False

    # ── Internals ─────────────────────────────────────────────────────────

    async def _execute(self, operation: str, call: Callable[[str], Awaitable[T]]) -> T:
        """
        Run one SDK operation behind the circuit breaker.

        Why the breaker is checked here and not inside the retried method:
            tenacity wraps the whole decorated function; a breaker check
            inside it would be retried too.
        """
        trace_id = str(uuid.uuid4())[:8]
        self.circuit_breaker.can_execute()

        try:
            result = await call(trace_id)
        except LLMServiceError:
            raise
        except OpenAIError as e:
            self.circuit_breaker.record_failure()
            logger.error("[%s] OpenAI %s failed: %s", trace_id, operation, str(e))
            raise LLMServiceError(
                message="AI service request failed after multiple attempts. Please try again later.",
                retry_after=self.circuit_breaker.recovery_timeout,
                context={"trace_id": trace_id, "operation": operation,
                         "error_type": type(e).__name__},
            ) from e
        except Exception as e:
            self.circuit_breaker.record_failure()
            logger.error(
                "[%s] Unexpected OpenAI %s error: %s", trace_id, operation, str(e),
                exc_info=True,
            )
            raise LLMServiceError(
                message="An unexpected error occurred while contacting the AI service.",
                context={"trace_id": trace_id, "operation": operation,
                         "error_type": type(e).__name__},
            ) from e

        self.circuit_breaker.record_success()
        return result

    @openai_retry
    async def _create_chat_completion(
        self,
        trace_id: str,
        messages: List[Dict[str, Any]],
        temperature: float,
        max_tokens: Optional[int],
    ) -> str:
        start_time = time.time()
        kwargs: Dict[str, Any] = {
            "model": self.chat_model,
            "messages": messages,
            "temperature": temperature,
        }
        if max_tokens is not None:
            kwargs["max_tokens"] = max_tokens

        try:
            response = await self.client.chat.completions.create(**kwargs)
        except OpenAIError as e:
            logger.warning(
                "[%s] OpenAI chat call failed after %.0fms: %s",
                trace_id, (time.time() - start_time) * 1000, str(e),
            )
            raise  # Let tenacity decide

        content = response.choices[0].message.content if response.choices else None
        text = (content or "").strip()
        logger.info(
            "[%s] OpenAI chat completed in %.0fms, %d chars",
            trace_id, (time.time() - start_time) * 1000, len(text),
        )
        return text

    @openai_retry
    async def _create_embedding(self, trace_id: str, text: str) -> List[float]:
        start_time = time.time()
        response = await self.client.embeddings.create(
            model=self.embedding_model,
            input=text,
        )
        logger.debug(
            "[%s] OpenAI embedding completed in %.0fms",
            trace_id, (time.time() - start_time) * 1000,
        )
        return list(response.data[0].embedding)


# ── Singleton Instance ────────────────────────────────────────────────────
# The breaker state must be shared across requests; a per-request instance
# would reset it.
openai_service = OpenAIService()
