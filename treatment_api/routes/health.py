"""
Treatment AI Backend — Health Check Route
==========================================

What:  Health check endpoint for monitoring and load balancer health checks.
How:   Checks the database (SELECT 1) and OpenAI (circuit breaker state,
       then a model listing) and reports an aggregate status.
Who:   Docker health checks, load balancers, monitoring.

Status levels:
    healthy:   database and OpenAI reachable
    degraded:  database up, OpenAI unavailable or circuit open
    unhealthy: database unreachable
"""

import logging
import time

from fastapi import APIRouter
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from treatment_api import __version__
from treatment_api.database import engine
from treatment_api.schemas.common import HealthResponse
from treatment_api.services.openai_service import openai_service

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Health"])

_start_time = time.time()


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Service health check",
)
async def health_check() -> HealthResponse:
    db_status = "connected"
    openai_status = "available"
    overall = "healthy"

    # ── Database ──────────────────────────────────────────────────────────
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except (SQLAlchemyError, OSError) as e:
        db_status = "disconnected"
        overall = "unhealthy"
        logger.warning("Health check: database unreachable: %s", str(e))

    # ── OpenAI ────────────────────────────────────────────────────────────
    if openai_service.circuit_breaker.state == "open":
        openai_status = "circuit_open"
    elif not await openai_service.health_check():
        openai_status = "unavailable"

    if openai_status != "available" and overall == "healthy":
        overall = "degraded"

    return HealthResponse(
        status=overall,
        version=__version__,
        database=db_status,
        openai=openai_status,
        uptime_seconds=round(time.time() - _start_time, 2),
    )
