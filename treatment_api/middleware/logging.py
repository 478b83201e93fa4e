"""
Treatment AI Backend — Access Log Middleware
=============================================

What:  One log line per HTTP request on the `treatment_api.access` logger.
How:   Measures wall time around the downstream app and logs method, path,
       status, duration, request ID and client IP. 5xx log at ERROR, 4xx at
       WARNING, everything else at INFO.

Privacy:
    Request bodies, query strings and the Authorization header are never
    logged: they carry session tokens and health data.

Example line:
    2025-01-15 12:00:00 [INFO] treatment_api.access: POST /api/upload/file 200 3456.8ms [a1b2c3d4] from 10.0.0.7
"""

import logging
import time

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from treatment_api.config import settings
from treatment_api.middleware.request_id import request_id_var

logger = logging.getLogger("treatment_api.access")

# Polled every few seconds by the load balancer
QUIET_PATHS = {"/health"}


def client_ip(request: Request) -> str:
    """
    The socket peer address. When the peer is a trusted proxy
    (TRUSTED_PROXIES), the nearest X-Forwarded-For hop that is not itself a
    trusted proxy; the header is client-controlled otherwise.
    """
    peer = request.client.host if request.client else "unknown"
    trusted = settings.trusted_proxies_list
    if peer not in trusted:
        return peer

    hops = [hop.strip() for hop in request.headers.get("X-Forwarded-For", "").split(",")]
    for hop in reversed(hops):
        if hop and hop not in trusted:
            return hop
    return peer


class RequestLoggingMiddleware(BaseHTTPMiddleware):

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        path = request.url.path
        if path in QUIET_PATHS:
            return await call_next(request)

        start_time = time.perf_counter()
        response = await call_next(request)
        duration_ms = (time.perf_counter() - start_time) * 1000

        status = response.status_code
        if status >= 500:
            level = logging.ERROR
        elif status >= 400:
            level = logging.WARNING
        else:
            level = logging.INFO

        rid = request_id_var.get("")
        ip = client_ip(request)
        logger.log(
            level,
            "%s %s %d %.1fms [%s] from %s",
            request.method, path, status, duration_ms, rid, ip,
            extra={
                "request_id": rid,
                "method": request.method,
                "path": path,
                "status": status,
                "duration_ms": round(duration_ms, 2),
                "client_ip": ip,
            },
        )
        return response
