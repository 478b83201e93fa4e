"""
Treatment AI Backend — Request ID Middleware
=============================================

What:  Gives each request a correlation ID and echoes it in `X-Request-ID`.
Why:   Mobile clients show the ID on error screens; support pastes it into
       a log search and gets every line the request produced.
How:   Client-supplied `X-Request-ID` is reused, otherwise a short UUID is
       generated. The value lives in a ContextVar (coroutine-local) and on
       `request.state` for the exception handlers.
"""

import uuid
from contextvars import ContextVar

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

# ContextVar, not threading.local: concurrent requests share one thread
request_id_var: ContextVar[str] = ContextVar("request_id", default="")

# Longer client IDs are truncated to keep log lines bounded
MAX_REQUEST_ID_LENGTH = 64


class RequestIDMiddleware(BaseHTTPMiddleware):

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        supplied = request.headers.get("X-Request-ID", "").strip()
        rid = supplied[:MAX_REQUEST_ID_LENGTH] if supplied else str(uuid.uuid4())[:8]

        token = request_id_var.set(rid)
        request.state.request_id = rid
        try:
            response = await call_next(request)
        finally:
            request_id_var.reset(token)

        response.headers["X-Request-ID"] = rid
        return response
