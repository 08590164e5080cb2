"""
Error types raised by the coordination services and their HTTP mapping.

Services raise a GuardianError subclass; register_error_handlers() turns it
into the shared ``{"error": {code, message, status, details}}`` envelope.
Outside production the envelope also echoes the request method and path.

    raise NotFoundError("Emergency", emergency_id=emergency_id)
    raise InactiveEmergencyError(emergency.id, emergency.status)

Channels catch ChannelDeliveryError themselves, so it only shows up in logs.
"""

from __future__ import annotations

import logging
import traceback
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from guardian.app.core.config import settings

logger = logging.getLogger(__name__)


# ── Exceptions ──────────────────────────────────────────────────────────────

class GuardianError(Exception):
    """Base exception for all application errors."""

    def __init__(
        self,
        message: str = "An unexpected error occurred",
        *,
        status_code: int = 500,
        error_code: str = "INTERNAL_ERROR",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.error_code = error_code
        self.details = details or {}


class NotFoundError(GuardianError):
    """Resource not found (404)."""

    def __init__(self, resource: str, **identifiers: Any):
        details = {"resource": resource, **identifiers}
        super().__init__(
            message=f"{resource} not found",
            status_code=404,
            error_code="NOT_FOUND",
            details=details,
        )


class ValidationError(GuardianError):
    """Input validation failed (422)."""

    def __init__(
        self,
        message: str,
        *,
        field: Optional[str] = None,
        error_code: str = "VALIDATION_ERROR",
        **details: Any,
    ):
        d = {**details}
        if field:
            d["field"] = field
        super().__init__(
            message=message,
            status_code=422,
            error_code=error_code,
            details=d,
        )


class AuthenticationError(GuardianError):
    """Missing or invalid credentials (401)."""

    def __init__(self, message: str = "Authentication required"):
        super().__init__(
            message=message,
            status_code=401,
            error_code="UNAUTHENTICATED",
        )


class ForbiddenError(GuardianError):
    """Caller is authenticated but not allowed to act (403)."""

    def __init__(self, message: str, **details: Any):
        super().__init__(
            message=message,
            status_code=403,
            error_code="FORBIDDEN",
            details=details,
        )


class ConflictError(GuardianError):
    """Request conflicts with current state (409)."""

    def __init__(self, message: str, **details: Any):
        super().__init__(
            message=message,
            status_code=409,
            error_code="CONFLICT",
            details=details,
        )


class InactiveEmergencyError(GuardianError):
    """Operation needs an active emergency (409)."""

    def __init__(self, emergency_id: str, status: str):
        super().__init__(
            message="Emergency is not active",
            status_code=409,
            error_code="EMERGENCY_INACTIVE",
            details={"emergency_id": emergency_id, "status": status},
        )


class RateLimitError(GuardianError):
    """Rate limit exceeded (429)."""

    def __init__(self, message: str = "Rate limit exceeded", retry_after: int = 60):
        super().__init__(
            message=message,
            status_code=429,
            error_code="RATE_LIMIT_EXCEEDED",
            details={"retry_after_seconds": retry_after},
        )


class ChannelDeliveryError(GuardianError):
    """A notification channel could not deliver. Never reaches a client."""

    def __init__(self, channel: str, recipient_id: str, message: str = ""):
        super().__init__(
            message=f"Delivery to {recipient_id} failed on {channel}: {message}",
            status_code=502,
            error_code="CHANNEL_DELIVERY_ERROR",
            details={"channel": channel, "recipient_id": recipient_id},
        )


# ── HTTP mapping ────────────────────────────────────────────────────────────

def error_envelope(
    request: Optional[Request],
    status: int,
    code: str,
    message: str,
    details: Optional[Dict[str, Any]] = None,
) -> JSONResponse:
    """``{"error": {...}}`` body shared by every handler below."""
    error: Dict[str, Any] = {"code": code, "message": message, "status": status}
    if details:
        error["details"] = details
    if request is not None and not settings.is_production:
        error["path"] = request.url.path
        error["method"] = request.method

    headers = {}
    retry_after = (details or {}).get("retry_after_seconds")
    if status == 429 and retry_after is not None:
        headers["Retry-After"] = str(retry_after)

    return JSONResponse({"error": error}, status_code=status, headers=headers or None)


def register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(GuardianError)
    async def on_guardian_error(request: Request, exc: GuardianError):
        logger.log(
            logging.ERROR if exc.status_code >= 500 else logging.WARNING,
            "%s %s rejected with %s: %s",
            request.method, request.url.path, exc.error_code, exc.message,
            extra={"status_code": exc.status_code},
        )
        return error_envelope(request, exc.status_code, exc.error_code, exc.message, exc.details)

    @app.exception_handler(RequestValidationError)
    async def on_invalid_request(request: Request, exc: RequestValidationError):
        errors = jsonable_errors(exc)
        logger.warning("Invalid request body for %s: %d error(s)", request.url.path, len(errors))
        return error_envelope(
            request, 422, "VALIDATION_ERROR", "Request validation failed", {"errors": errors},
        )

    @app.exception_handler(ValueError)
    async def on_value_error(request: Request, exc: ValueError):
        logger.warning("Rejected value on %s: %s", request.url.path, exc)
        return error_envelope(request, 422, "VALIDATION_ERROR", str(exc))

    @app.exception_handler(Exception)
    async def on_crash(request: Request, exc: Exception):
        logger.error(
            "Unhandled %s on %s %s", type(exc).__name__, request.method, request.url.path,
            exc_info=exc,
        )
        if settings.DEBUG:
            trace = traceback.format_exception(type(exc), exc, exc.__traceback__)
            return error_envelope(
                request, 500, "INTERNAL_ERROR", str(exc), {"traceback": "".join(trace).splitlines()},
            )
        return error_envelope(request, 500, "INTERNAL_ERROR", "Internal server error")


def jsonable_errors(exc: RequestValidationError) -> list:
    """Pydantic error entries without their (possibly unserialisable) ctx."""
    return [
        {"loc": list(e.get("loc", ())), "msg": e.get("msg", ""), "type": e.get("type", "")}
        for e in exc.errors()
    ]
