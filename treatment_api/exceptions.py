"""
Treatment AI Backend — Custom Exception Hierarchy
==================================================

What:  Defines application-specific exceptions for different error scenarios.
Why:   Custom exceptions enable targeted error handling with appropriate HTTP
       status codes and user-friendly messages, without leaking internals.
How:   Each exception class carries a message and optional context dict.
       Global exception handlers (registered in main.py) catch these and
       return structured JSON error responses with correct HTTP status codes.
Who:   Raised by services, dependencies and middleware; caught by global handlers.
When:  During request processing when recoverable errors occur.

Exception Hierarchy:
    TreatmentAPIError (base)
    ├── ValidationError          → 400 Bad Request (client can fix)
    ├── AuthenticationError      → 401 Unauthorized (missing/expired session)
    ├── PermissionDeniedError    → 403 Forbidden (linked-account permission)
    ├── NotFoundError            → 404 Not Found
    ├── ConflictError            → 409 Conflict (duplicate resource)
    ├── AccountLockedError       → 423 Locked (password login lockout)
    ├── RateLimitExceededError   → 429 Too Many Requests
    ├── FileStorageError         → 500 Internal Server Error
    ├── DatabaseError            → 500 Internal Server Error
    ├── UpstreamServiceError     → 502 Bad Gateway (Merlin)
    ├── LLMServiceError          → 503 Service Unavailable (retry later)
    └── CircuitBreakerOpenError  → 503 Service Unavailable (circuit open)
"""

from typing import Any, Dict, List, Optional


class TreatmentAPIError(Exception):
    """
    Base exception for all application errors.

    Attributes:
        message:  User-facing error description (safe to return in API response)
        context:  Additional debug info (returned as `details` for 4xx errors,
                  logged only for 5xx errors)
    """

    def __init__(
        self,
        message: str = "An unexpected error occurred",
        context: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.context = context or {}
        super().__init__(self.message)


class ValidationError(TreatmentAPIError):
    """
    Raised when client input fails a business rule.

    HTTP: 400 Bad Request. Schema-level problems (wrong JSON type) are still
    reported by FastAPI as 422; this class covers the rules the services own,
    such as "Session token is required" or an unknown permission name.
    """

    def __init__(
        self,
        message: str = "Validation failed",
        field: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = context or {}
        if field:
            ctx["field"] = field
        super().__init__(message=message, context=ctx)
        self.field = field


class AuthenticationError(TreatmentAPIError):
    """
    Raised when a request carries no usable session.

    When: Missing `Authorization: Bearer` header, unknown token, inactive or
          expired session, or a Terra webhook with a bad signature.
    HTTP: 401 Unauthorized
    """

    def __init__(
        self,
        message: str = "Authentication required",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)


class PermissionDeniedError(TreatmentAPIError):
    """
    Raised when an authenticated user may not perform the action.

    When: Accepting an invitation addressed to someone else, or reading
          linked-account data without the required permission.
    HTTP: 403 Forbidden
    """

    def __init__(
        self,
        message: str = "Insufficient permissions",
        required_permission: Optional[str] = None,
        available_permissions: Optional[List[str]] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = context or {}
        if required_permission is not None:
            ctx["requiredPermission"] = required_permission
        if available_permissions is not None:
            ctx["availablePermissions"] = available_permissions
        super().__init__(message=message, context=ctx)
        self.required_permission = required_permission
        self.available_permissions = available_permissions


class NotFoundError(TreatmentAPIError):
    """
    Raised when a requested resource does not exist (or is not visible to
    the caller, which we deliberately report the same way).

    HTTP: 404 Not Found
    """

    def __init__(
        self,
        resource: str = "resource",
        resource_id: Optional[str] = None,
        message: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        if message is None:
            message = f"The requested {resource} was not found"
            if resource_id:
                message = f"{resource} with ID '{resource_id}' was not found"
        ctx = context or {}
        ctx["resource"] = resource
        if resource_id:
            ctx["resource_id"] = resource_id
        super().__init__(message=message, context=ctx)


class ConflictError(TreatmentAPIError):
    """
    Raised when a create would duplicate an existing active resource.

    HTTP: 409 Conflict
    """

    def __init__(
        self,
        message: str = "Resource already exists",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)


class AccountLockedError(TreatmentAPIError):
    """
    Raised when password login is refused because of repeated failures.

    HTTP: 423 Locked. `details.lockedUntil` carries the ISO timestamp.
    """

    def __init__(
        self,
        message: str = "Account temporarily locked due to too many failed login attempts",
        locked_until: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = context or {}
        if locked_until:
            ctx["lockedUntil"] = locked_until
        super().__init__(message=message, context=ctx)


class FileStorageError(TreatmentAPIError):
    """
    Raised when file system operations fail (disk full, permission denied).

    HTTP: 500 Internal Server Error
    """

    def __init__(
        self,
        message: str = "File storage operation failed",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)


class LLMServiceError(TreatmentAPIError):
    """
    Raised when the OpenAI service fails after all retries, or returns a
    response we cannot use.

    HTTP: 503 Service Unavailable, with Retry-After when known.
    """

    def __init__(
        self,
        message: str = "AI service is temporarily unavailable",
        retry_after: Optional[int] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = context or {}
        if retry_after:
            ctx["retry_after"] = retry_after
        super().__init__(message=message, context=ctx)
        self.retry_after = retry_after


class CircuitBreakerOpenError(TreatmentAPIError):
    """
    Raised when the circuit breaker is in OPEN state.

    How circuit breaker works:
        CLOSED (normal) → failures increment counter
        → After N failures → OPEN (reject all calls for the recovery timeout)
        → After the timeout → HALF-OPEN (allow one test call)
        → If test succeeds → CLOSED
        → If test fails → OPEN again

    HTTP: 503 Service Unavailable
    """

    def __init__(
        self,
        recovery_time: int = 60,
        context: Optional[Dict[str, Any]] = None,
        service: str = "AI service",
    ):
        message = (
            f"{service} is temporarily unavailable due to repeated failures. "
            f"The service will automatically retry in approximately {recovery_time} seconds."
        )
        ctx = context or {}
        ctx["recovery_time"] = recovery_time
        super().__init__(message=message, context=ctx)
        self.recovery_time = recovery_time


class UpstreamServiceError(TreatmentAPIError):
    """
    Raised when a non-AI upstream API (Merlin) fails or answers with an error.

    HTTP: 502 Bad Gateway
    """

    def __init__(
        self,
        message: str = "Upstream service request failed",
        service: str = "upstream",
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = context or {}
        ctx["service"] = service
        super().__init__(message=message, context=ctx)
        self.service = service


class DatabaseError(TreatmentAPIError):
    """
    Raised when database operations fail unexpectedly.

    Security Note:
        The message returned to the client is always generic. Detailed error
        info (SQL, constraint name) is logged server-side only.
    """

    def __init__(
        self,
        message: str = "A database error occurred. Please try again later.",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)


class RateLimitExceededError(TreatmentAPIError):
    """
    Raised when a client exceeds the per-IP request rate limit.

    HTTP: 429 Too Many Requests with a Retry-After header.
    """

    def __init__(
        self,
        retry_after: int = 60,
        context: Optional[Dict[str, Any]] = None,
    ):
        message = (
            f"Rate limit exceeded. Please wait {retry_after} seconds before making more requests."
        )
        ctx = context or {}
        ctx["retry_after"] = retry_after
        super().__init__(message=message, context=ctx)
        self.retry_after = retry_after
