"""
Treatment AI Backend — Rate Limiting Middleware
================================================

What:  Per-client sliding-window rate limit (default 1000 requests / hour).
Why:   Every chat turn can cost an OpenAI call; one runaway client must not
       drain the quota for everybody.
How:   Timestamps per client IP in memory. Old ones are pruned on each
       request; at the limit the request is answered 429 with Retry-After,
       in the same error envelope the exception handlers use.
       `client_ip` only believes X-Forwarded-For from TRUSTED_PROXIES, so
       rotating that header does not buy a fresh window.

Limitations:
    State is per process. With several uvicorn workers each enforces its
    own window, so the effective limit is workers × rate_limit_requests.
"""

import logging
import time
from collections import defaultdict, deque
from typing import Deque, Dict, Optional

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from treatment_api.config import settings
from treatment_api.exceptions import RateLimitExceededError
from treatment_api.middleware.logging import client_ip
from treatment_api.middleware.request_id import request_id_var

logger = logging.getLogger(__name__)

# Terra retries failed deliveries itself; throttling them only loses data
EXCLUDED_PATHS = {"/health", "/docs", "/openapi.json", "/redoc", "/api/webhooks/terra"}

CLEANUP_EVERY = 1000


class RateLimitMiddleware(BaseHTTPMiddleware):

    def __init__(
        self,
        app,
        max_requests: Optional[int] = None,
        window_seconds: Optional[int] = None,
        **kwargs,
    ):
        super().__init__(app, **kwargs)
        self.max_requests = max_requests or settings.rate_limit_requests
        self.window_seconds = window_seconds or settings.rate_limit_window
        self._requests: Dict[str, Deque[float]] = defaultdict(deque)
        self._seen = 0

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        if request.url.path in EXCLUDED_PATHS:
            return await call_next(request)

        ip = client_ip(request)
        now = time.time()
        window_start = now - self.window_seconds

        timestamps = self._requests[ip]
        while timestamps and timestamps[0] <= window_start:
            timestamps.popleft()

        if len(timestamps) >= self.max_requests:
            retry_after = int(timestamps[0] + self.window_seconds - now) + 1
            logger.warning(
                "Rate limit exceeded for %s: %d requests in %ds window",
                ip, len(timestamps), self.window_seconds,
            )
            error = RateLimitExceededError(retry_after=retry_after)
            return JSONResponse(
                status_code=429,
                content={
                    "error": "rate_limit_exceeded",
                    "message": error.message,
                    "details": error.context,
                    "request_id": request_id_var.get("") or None,
                },
                headers={"Retry-After": str(retry_after)},
            )

        timestamps.append(now)

        self._seen += 1
        if self._seen % CLEANUP_EVERY == 0:
            self._cleanup_inactive(window_start)

        return await call_next(request)

    def _cleanup_inactive(self, window_start: float) -> None:
        """Drop clients with no request inside the current window."""
        inactive = [ip for ip, ts in self._requests.items() if not ts or ts[-1] <= window_start]
        for ip in inactive:
            del self._requests[ip]
        if inactive:
            logger.debug("Cleaned up %d inactive rate-limit entries", len(inactive))
