"""
Treatment AI Backend — Merlin API Client
=========================================

What:  Talks to the Merlin diagnostic engine: the SDCO reference list and
       the dx-session calls (start a session, read the differential,
       fetch the next question, submit an answer).
Why:   Merlin owns the diagnostic reasoning; this service only relays the
       patient's symptoms and answers and keeps a record of the session.
How:   httpx PUT with the Merlin JWT as a bearer token. Connection errors,
       timeouts and 5xx answers are retried by tenacity; anything still
       failing becomes UpstreamServiceError (502). A circuit breaker stops
       calling Merlin after repeated transient failures so the diagnostic
       service can switch to its OpenAI fallback without waiting on retries.

Merlin endpoints (all PUT, JSON):
    /api/v1/diagnostic/get-platform-sdco-list     {platform_id}
    /api/v1/diagnostic/start-new-session          {platform_id, patient_info,
                                                   reason_for_encounter}
    /api/v1/dx-session/get-differential-diagnosis {persistanceSession, platform_id}
    /api/v1/dx-session/get-diagnostic-question    {persistanceSession}
    /api/v1/dx-session/submit-diagnostic-answer   {persistanceSession, answer_index}
"""

import logging
from typing import Any, Dict, List, Optional

import httpx
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential_jitter,
)

from treatment_api.config import settings
from treatment_api.exceptions import UpstreamServiceError
from treatment_api.services.openai_service import CircuitBreaker

logger = logging.getLogger(__name__)

SDCO_LIST_PATH = "/api/v1/diagnostic/get-platform-sdco-list"
START_SESSION_PATH = "/api/v1/diagnostic/start-new-session"
DIFFERENTIAL_PATH = "/api/v1/dx-session/get-differential-diagnosis"
QUESTION_PATH = "/api/v1/dx-session/get-diagnostic-question"
SUBMIT_ANSWER_PATH = "/api/v1/dx-session/submit-diagnostic-answer"

# Merlin's sentinel question once the questionnaire is exhausted
NO_QUESTIONS_LEFT = "No Questions Left"
PLATFORM_ID = "Mobile"
SAMPLE_SIZE = 10


def _is_transient(exc: BaseException) -> bool:
    if isinstance(exc, httpx.TransportError):
        return True
    return isinstance(exc, httpx.HTTPStatusError) and exc.response.status_code >= 500


merlin_retry = retry(
    retry=retry_if_exception(_is_transient),
    stop=stop_after_attempt(settings.retry_max_attempts),
    wait=wait_exponential_jitter(
        initial=settings.retry_min_wait,
        max=settings.retry_max_wait,
        jitter=1,
    ),
    before_sleep=before_sleep_log(logger, logging.WARNING),
    reraise=True,
)


class MerlinClient:

    def __init__(
        self,
        base_url: Optional[str] = None,
        token: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
    ):
        self.base_url = (base_url or settings.merlin_base_url).rstrip("/")
        self.token = token if token is not None else settings.merlin_jwt_token
        # Injected by tests (httpx.MockTransport)
        self._transport = transport
        self.circuit_breaker = circuit_breaker or CircuitBreaker(
            failure_threshold=settings.cb_failure_threshold,
            recovery_timeout=settings.cb_recovery_timeout,
            service="Diagnostic engine",
        )

    # ── SDCO references ───────────────────────────────────────────────────

    async def get_sdco_list(self, platform_id: str = PLATFORM_ID) -> List[Dict[str, Any]]:
        """
        Returns Merlin's `sdco_references` list (empty when absent).

        Raises:
            UpstreamServiceError: Merlin unreachable or answered with an error
            CircuitBreakerOpenError: Merlin failed repeatedly, not called
        """
        payload = await self._call(SDCO_LIST_PATH, {"platform_id": platform_id}, "fetch SDCO list")
        references = payload.get("sdco_references") if isinstance(payload, dict) else None
        logger.info("Merlin returned %d SDCO references", len(references or []))
        return references or []

    async def lookup(self, term: Optional[str] = None) -> Dict[str, Any]:
        """
        Filter the SDCO list by a term matched against the display name, the
        layman name and the id. Entries that are not JSON objects are ignored.

        Returns:
            {"total_count", "matches", "sample_sdcos"}; without a term,
            `matches` is empty.
        """
        references = [item for item in await self.get_sdco_list() if isinstance(item, dict)]
        needle = (term or "").strip().lower()

        matches = []
        if needle:
            matches = [
                item for item in references
                if any(
                    needle in str(item.get(key) or "").lower()
                    for key in ("display_name", "display_name_layman", "sdco_id")
                )
            ]

        return {
            "total_count": len(references),
            "matches": matches,
            "sample_sdcos": [
                {
                    "sdco_id": item.get("sdco_id"),
                    "display_name": item.get("display_name"),
                    "display_name_layman": item.get("display_name_layman"),
                }
                for item in references[:SAMPLE_SIZE]
            ],
        }

    # ── Diagnostic sessions ───────────────────────────────────────────────

    async def start_session(self, patient_info: Dict[str, Any], reason_for_encounter: str) -> str:
        """
        Open a dx-session for `reason_for_encounter` (an SDCO id).

        Returns:
            Merlin's persistence session id.
        """
        payload = await self._call(
            START_SESSION_PATH,
            {
                "platform_id": PLATFORM_ID,
                "patient_info": patient_info,
                "reason_for_encounter": reason_for_encounter,
            },
            "start diagnostic session",
        )
        session_id = None
        if isinstance(payload, dict):
            session_id = payload.get("persistanceSession") or payload.get("session_id")
        if not session_id:
            raise UpstreamServiceError(
                message="Diagnostic engine returned no session id",
                service="merlin",
            )
        logger.info("Merlin session %s started for %s", session_id, reason_for_encounter)
        return str(session_id)

    async def get_differential(self, session_id: str) -> List[Dict[str, Any]]:
        payload = await self._call(
            DIFFERENTIAL_PATH,
            {"persistanceSession": session_id, "platform_id": PLATFORM_ID},
            "fetch differential diagnosis",
        )
        diagnoses = payload.get("differential_diagnosis") if isinstance(payload, dict) else None
        return [d for d in diagnoses or [] if isinstance(d, dict)]

    async def get_question(self, session_id: str) -> Optional[Dict[str, Any]]:
        """
        The next unanswered question as {"question", "answer_list"}.

        Returns None when Merlin has no questions left, either through its
        sentinel text or a 404.
        """
        try:
            payload = await self._call(
                QUESTION_PATH, {"persistanceSession": session_id}, "fetch diagnostic question"
            )
        except UpstreamServiceError as e:
            if e.context.get("status_code") == 404:
                return None
            raise

        if not isinstance(payload, dict):
            return None
        question = payload.get("question")
        if not question or question == NO_QUESTIONS_LEFT:
            return None
        return {"question": question, "answer_list": payload.get("answer_list") or []}

    async def submit_answer(self, session_id: str, answer_index: int) -> Dict[str, Any]:
        payload = await self._call(
            SUBMIT_ANSWER_PATH,
            {"persistanceSession": session_id, "answer_index": answer_index},
            "submit diagnostic answer",
        )
        return payload if isinstance(payload, dict) else {}

    # ── Transport ─────────────────────────────────────────────────────────

    async def _call(self, path: str, body: Dict[str, Any], action: str) -> Any:
        """
        One breaker-guarded, retried PUT. Error responses and unusable
        bodies become UpstreamServiceError.
        """
        self.circuit_breaker.can_execute()

        try:
            payload = await self._put(path, body)
        except httpx.HTTPStatusError as e:
            status_code = e.response.status_code
            if _is_transient(e):
                self.circuit_breaker.record_failure()
            else:
                # Merlin answered; the request itself was refused
                self.circuit_breaker.record_success()
            logger.error(
                "Merlin returned %d for %s: %s", status_code, path, e.response.text[:500]
            )
            raise UpstreamServiceError(
                message=f"Failed to {action}",
                service="merlin",
                context={"status_code": status_code},
            ) from e
        except (httpx.HTTPError, ValueError) as e:
            self.circuit_breaker.record_failure()
            logger.error("Merlin request %s failed: %s", path, str(e))
            raise UpstreamServiceError(
                message=f"Failed to {action}",
                service="merlin",
                context={"error_type": type(e).__name__},
            ) from e

        self.circuit_breaker.record_success()
        return payload

    @merlin_retry
    async def _put(self, path: str, body: Dict[str, Any]) -> Any:
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"

        async with httpx.AsyncClient(
            base_url=self.base_url,
            timeout=settings.merlin_timeout,
            transport=self._transport,
        ) as client:
            response = await client.put(path, json=body, headers=headers)
            response.raise_for_status()
            return response.json()


# ── Singleton Instance ────────────────────────────────────────────────────
merlin_client = MerlinClient()
