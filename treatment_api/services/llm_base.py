"""
Treatment AI Backend — Abstract LLM Service Interface
======================================================

What:  Abstract base class defining the contract for AI model providers.
Why:   Chat helpers, upload analysis, prescription scanning and vector search
       all need a model, but none of them should care which SDK is behind it.
How:   Concrete implementations inherit from LLMService and implement the
       four primitives below.
Who:   Called by AnswerDetectionService, UploadService, MedicationService
       and VectorSearchService.

Design Decision:
    Why an abstract class instead of calling the OpenAI SDK directly:
    1. Testing: services receive a mock that satisfies this interface
    2. Resilience lives in one place (retry + circuit breaker), not in
       every caller
    3. A second provider can be added without touching the callers
"""

import json
import re
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional


class LLMService(ABC):
    """
    Abstract interface for text, vision and embedding models.

    Contract:
        - All provider-specific errors are wrapped in LLMServiceError
        - CircuitBreakerOpenError is raised (not wrapped) when the provider
          is being protected after repeated failures
        - Text results are stripped strings, never None
    """

    @abstractmethod
    async def complete(
        self,
        messages: List[Dict[str, str]],
        temperature: float = 0.7,
        max_tokens: Optional[int] = None,
    ) -> str:
        """
        Run a chat completion and return the assistant's text.

        Args:
            messages: OpenAI-style `[{"role": ..., "content": ...}]` list
            temperature: Sampling temperature (0.1 for classification tasks)
            max_tokens: Upper bound on the generated tokens

        Raises:
            LLMServiceError: Provider failed after all retries
            CircuitBreakerOpenError: Too many recent failures
        """
        ...

    @abstractmethod
    async def describe_image(
        self,
        content: bytes,
        mime_type: str,
        prompt: str,
        max_tokens: int = 1000,
    ) -> str:
        """
        Send an image plus an instruction to a vision model.

        Args:
            content: Raw image bytes (already validated by FileService)
            mime_type: Sniffed MIME type, used to build the data URL
            prompt: Instruction describing what to extract
        """
        ...

    @abstractmethod
    async def embed(self, text: str) -> List[float]:
        """Return the embedding vector for `text`."""
        ...

    @abstractmethod
    async def health_check(self) -> bool:
        """
        Check if the provider is reachable and the key is accepted.

        Who:     Called by the health check endpoint.
        Returns: True if reachable, False otherwise. Never raises.
        """
        ...


def parse_json_response(raw: str) -> Any:
    """
    Parse a model reply that should be JSON.

    Models sometimes wrap JSON in ``` or ```json fences even when told not
    to; those are stripped first. Raises ValueError when the remainder is
    not valid JSON.
    """
    cleaned = re.sub(r"```(?:json)?\s*", "", raw or "").replace("```", "").strip()
    return json.loads(cleaned)
