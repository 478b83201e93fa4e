"""
Treatment AI Backend — Shared Pydantic Schemas
===============================================

What:  Base model and envelope types reused by every route module.
Why:   The web and mobile clients speak camelCase JSON (`sessionToken`,
       `linkedAccountId`), while Python code uses snake_case. CamelModel
       bridges both: it accepts either spelling on input and emits camelCase.
How:   Pydantic alias generator + populate_by_name. FastAPI serializes
       response models by alias, so outputs are camelCase automatically.

Design Decision:
    Schemas are separate from SQLAlchemy models because:
    1. API contracts change independently of the database schema
    2. We control exactly which columns are exposed
    3. OpenAPI docs are generated from schemas, not ORM classes
"""

from typing import Optional

from pydantic import BaseModel, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Base for request/response bodies exchanged in camelCase."""

    model_config = {
        "alias_generator": to_camel,
        "populate_by_name": True,
        "from_attributes": True,
    }


class MessageResponse(CamelModel):
    """Generic acknowledgement for mutations without a payload."""
    success: bool = Field(default=True)
    message: str = Field(description="Human-readable outcome")


# ══════════════════════════════════════════════════════════════════════════
# Error Response Models — Consistent error format across all endpoints
# ══════════════════════════════════════════════════════════════════════════


class ErrorResponse(BaseModel):
    """
    What:  Standardized error response format for all API errors.

    Fields:
        error: Machine-readable error code (e.g., "validation_error", "not_found")
        message: Human-readable description for display to users
        details: Optional extra context (e.g., which permission was missing)
        request_id: Correlation ID for tracing this error in server logs

    Example:
        {
            "error": "permission_denied",
            "message": "Insufficient permissions",
            "details": {"requiredPermission": "medications",
                        "availablePermissions": ["vitals"]},
            "request_id": "a1b2c3d4"
        }
    """
    error: str = Field(description="Machine-readable error code")
    message: str = Field(description="Human-readable error description")
    details: Optional[dict] = Field(default=None, description="Additional error context")
    request_id: Optional[str] = Field(default=None, description="Request correlation ID")


class HealthResponse(BaseModel):
    """
    What:  Health check response showing service and dependency status.
    Who:   Returned by GET /health for monitoring and load balancer health checks.
    """
    status: str = Field(description="Overall service status: healthy, degraded, unhealthy")
    version: str = Field(description="Application version")
    database: str = Field(description="Database connectivity: connected, disconnected")
    openai: str = Field(description="OpenAI status: available, unavailable, circuit_open")
    uptime_seconds: float = Field(description="Seconds since service started")
