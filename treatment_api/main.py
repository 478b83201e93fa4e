"""
Treatment AI Backend — FastAPI Application Factory
===================================================

What:  Creates and configures the FastAPI application instance.
How:   create_app() wires middleware, exception handlers and routers;
       uvicorn serves the module-level `app` (uvicorn treatment_api.main:app).

Application Architecture:
    ┌──────────────────────────────────────────────────────────┐
    │                       FastAPI App                        │
    │                                                          │
    │  Middleware: RateLimit → RequestID → AccessLog → GZip → CORS
    │                                                          │
    │  Routes:                                                 │
    │    auth · conditions · medications · accounts · timeline │
    │    sharing · upload · wearables · vector · sdco · chat   │
    │    diagnostic · health                                   │
    │                                                          │
    │  Exception handlers: TreatmentAPIError subclasses → JSON │
    │    {"error", "message", "details", "request_id"}         │
    └──────────────────────────────────────────────────────────┘

Lifecycle:
    Startup:  logging → configuration check (logged, never fatal) →
              storage directory
    Shutdown: dispose the database engine
"""

import logging
import sys
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncGenerator, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from treatment_api import __version__
from treatment_api.config import settings
from treatment_api.database import dispose_engine, independent_session
from treatment_api.exceptions import (
    AccountLockedError,
    AuthenticationError,
    CircuitBreakerOpenError,
    ConflictError,
    DatabaseError,
    FileStorageError,
    LLMServiceError,
    NotFoundError,
    PermissionDeniedError,
    RateLimitExceededError,
    TreatmentAPIError,
    UpstreamServiceError,
    ValidationError,
)
from treatment_api.middleware.logging import RequestLoggingMiddleware
from treatment_api.middleware.rate_limit import RateLimitMiddleware
from treatment_api.middleware.request_id import RequestIDMiddleware, request_id_var
from treatment_api.routes import (
    accounts,
    auth,
    chat,
    conditions,
    diagnostic,
    health,
    medications,
    sdco,
    sharing,
    timeline,
    upload,
    vector,
    wearables,
)
from treatment_api.services.account_link_service import account_link_service

logger = logging.getLogger(__name__)


# ══════════════════════════════════════════════════════════════════════════
# Logging Configuration
# ══════════════════════════════════════════════════════════════════════════

def setup_logging() -> None:
    """
    Configure the root logger once, at startup.

    Format: 2025-01-15T12:00:00 [INFO] treatment_api.services.upload_service: ...
    """
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
        handlers=[logging.StreamHandler(sys.stdout)],
        force=True,
    )

    # These log every request / statement at INFO
    for noisy in ("uvicorn.access", "sqlalchemy.engine", "httpcore", "httpx", "openai"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


async def expire_stale_invitations() -> None:
    """Flip pending invitations past their expiry to "expired" once per boot."""
    try:
        async with independent_session() as session:
            count = await account_link_service.cleanup_expired_invitations(session)
    except (DatabaseError, SQLAlchemyError, OSError) as e:
        logger.warning("Skipped invitation cleanup, database unavailable: %s", str(e))
        return
    logger.info("Invitation cleanup: %d expired", count)


# ══════════════════════════════════════════════════════════════════════════
# Application Lifespan
# ══════════════════════════════════════════════════════════════════════════

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    # ── Startup ───────────────────────────────────────────────────────────
    setup_logging()
    logger.info("=" * 60)
    logger.info("Treatment AI Backend %s starting up...", __version__)

    # Missing keys are reported but do not stop the server: /health still
    # answers and the affected endpoints fail with clear errors.
    try:
        settings.validate_required_for_production()
    except ValueError as e:
        logger.error("Configuration error: %s", str(e))

    storage = Path(settings.storage_root)
    storage.mkdir(parents=True, exist_ok=True)
    logger.info("Storage directory: %s", storage.resolve())
    await expire_stale_invitations()
    logger.info("Server ready at http://%s:%d", settings.backend_host, settings.backend_port)
    logger.info("=" * 60)

    yield

    # ── Shutdown ──────────────────────────────────────────────────────────
    logger.info("Treatment AI Backend shutting down...")
    await dispose_engine()
    logger.info("Shutdown complete.")


# ══════════════════════════════════════════════════════════════════════════
# Exception Handlers
# ══════════════════════════════════════════════════════════════════════════

def _request_id(request: Request) -> str:
    # The catch-all handler runs outside RequestIDMiddleware, after the
    # ContextVar has been reset; request.state still has the ID.
    return request_id_var.get("") or getattr(request.state, "request_id", "")


def _error_response(
    request: Request,
    status_code: int,
    error: str,
    message: str,
    details: Optional[Dict[str, Any]] = None,
    headers: Optional[Dict[str, str]] = None,
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "error": error,
            "message": message,
            "details": details or None,
            "request_id": _request_id(request),
        },
        headers=headers,
    )


# exception → (status, error code); 4xx only, their context is safe to return
CLIENT_ERRORS = {
    ValidationError: (400, "validation_error"),
    AuthenticationError: (401, "authentication_required"),
    PermissionDeniedError: (403, "permission_denied"),
    NotFoundError: (404, "not_found"),
    ConflictError: (409, "conflict"),
    AccountLockedError: (423, "account_locked"),
}


def register_exception_handlers(app: FastAPI) -> None:
    """
    Map the exception hierarchy onto HTTP responses.

        ValidationError / Authentication / PermissionDenied / NotFound /
        Conflict / AccountLocked → 4xx with `details` = exception context
        RateLimitExceededError  → 429 + Retry-After
        FileStorageError        → 500, message kept, context logged only
        DatabaseError           → 500, generic message
        UpstreamServiceError    → 502
        LLMServiceError         → 503 (+ Retry-After when known)
        CircuitBreakerOpenError → 503 + Retry-After
        Exception               → 500, stack trace logged only
    """

    async def handle_client_error(request: Request, exc: TreatmentAPIError):
        status_code, code = CLIENT_ERRORS[type(exc)]
        logger.warning("[%s] %s: %s", _request_id(request), code, exc.message)
        return _error_response(request, status_code, code, exc.message, exc.context)

    for exc_class in CLIENT_ERRORS:
        app.add_exception_handler(exc_class, handle_client_error)

    @app.exception_handler(RateLimitExceededError)
    async def handle_rate_limit(request: Request, exc: RateLimitExceededError):
        return _error_response(
            request, 429, "rate_limit_exceeded", exc.message, exc.context,
            headers={"Retry-After": str(exc.retry_after)},
        )

    @app.exception_handler(CircuitBreakerOpenError)
    async def handle_circuit_breaker(request: Request, exc: CircuitBreakerOpenError):
        logger.warning("[%s] Circuit breaker open: %s", _request_id(request), exc.message)
        return _error_response(
            request, 503, "service_unavailable", exc.message,
            {"recovery_time": exc.recovery_time},
            headers={"Retry-After": str(exc.recovery_time)},
        )

    @app.exception_handler(LLMServiceError)
    async def handle_llm_error(request: Request, exc: LLMServiceError):
        logger.error("[%s] LLM service error: %s | Context: %s",
                     _request_id(request), exc.message, exc.context)
        headers = {"Retry-After": str(exc.retry_after)} if exc.retry_after else None
        return _error_response(
            request, 503, "llm_service_error", exc.message,
            {"retry_after": exc.retry_after} if exc.retry_after else None,
            headers=headers,
        )

    @app.exception_handler(UpstreamServiceError)
    async def handle_upstream_error(request: Request, exc: UpstreamServiceError):
        logger.error("[%s] Upstream error: %s | Context: %s",
                     _request_id(request), exc.message, exc.context)
        return _error_response(
            request, 502, "upstream_error", exc.message, {"service": exc.service}
        )

    @app.exception_handler(DatabaseError)
    async def handle_database_error(request: Request, exc: DatabaseError):
        # Context may contain SQL details: logged, never returned
        logger.error("[%s] Database error: %s | Context: %s",
                     _request_id(request), exc.message, exc.context)
        return _error_response(
            request, 500, "server_error",
            "An internal error occurred. Please try again later.",
        )

    @app.exception_handler(FileStorageError)
    async def handle_file_storage_error(request: Request, exc: FileStorageError):
        logger.error("[%s] File storage error: %s | Context: %s",
                     _request_id(request), exc.message, exc.context)
        return _error_response(request, 500, "server_error", exc.message)

    @app.exception_handler(Exception)
    async def handle_unexpected_error(request: Request, exc: Exception):
        logger.error("[%s] Unexpected error: %s", _request_id(request), str(exc), exc_info=True)
        return _error_response(
            request, 500, "internal_server_error",
            "An unexpected error occurred. Please try again or contact support.",
        )


# ══════════════════════════════════════════════════════════════════════════
# Application Factory
# ══════════════════════════════════════════════════════════════════════════

def create_app() -> FastAPI:
    app = FastAPI(
        title="Treatment AI API",
        description=(
            "Backend for the Treatment AI health assistant: sessions, conditions, "
            "medications, linked accounts, health timeline, sharing, file analysis, "
            "wearable ingestion and SDCO search."
        ),
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    # Added innermost first; the last one added runs first on a request
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID", "Retry-After"],
    )
    app.add_middleware(GZipMiddleware, minimum_size=500)
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(RequestIDMiddleware)
    app.add_middleware(RateLimitMiddleware)

    register_exception_handlers(app)

    for module in (
        auth, conditions, medications, accounts, timeline, sharing,
        upload, wearables, vector, sdco, chat, diagnostic, health,
    ):
        app.include_router(module.router)

    return app


app = create_app()
