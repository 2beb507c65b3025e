"""
Centralised error handling — exception hierarchy + FastAPI handlers.

Provides:
    • Domain-specific exception classes for the alert lifecycle
    • Consistent JSON error response format
    • Automatic logging of unhandled errors
    • Request context in error responses (non-production)

Taxonomy:

    Error                 Status   Raised by
    ──────────────────    ──────   ─────────────────────────────────────
    ValidationError       422      missing/invalid submission fields
    OutOfBoundsError      422      location outside the service area
    QuotaExceededError    429      identity at its active-alert ceiling
    NotFoundError         404      unknown alert id / identity / token
    TransientSyncError    503      fetch failure during a sync refresh
    PersistenceError      503      store write/read failed or bad row

Usage:
    from backend.app.core.errors import NotFoundError, register_error_handlers

    raise NotFoundError("Alert", id="3FA2C91B")
"""

from __future__ import annotations

import logging
import traceback
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from backend.app.core.config import settings

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
# Exception Hierarchy
# ═══════════════════════════════════════════════════════════════════════════

class FloodAlertError(Exception):
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


class ValidationError(FloodAlertError):
    """Input validation failed (422)."""

    def __init__(self, message: str, *, field: Optional[str] = None, **details: Any):
        d = {**details}
        if field:
            d["field"] = field
        super().__init__(
            message=message,
            status_code=422,
            error_code="VALIDATION_ERROR",
            details=d,
        )


class OutOfBoundsError(FloodAlertError):
    """Location lies outside the configured service area (422)."""

    def __init__(self, latitude: float, longitude: float, **details: Any):
        super().__init__(
            message=f"Location ({latitude}, {longitude}) is outside the service area",
            status_code=422,
            error_code="OUT_OF_BOUNDS",
            details={"latitude": latitude, "longitude": longitude, **details},
        )


class QuotaExceededError(FloodAlertError):
    """Identity already holds the maximum number of active alerts (429)."""

    def __init__(self, identity_id: str, active_count: int, limit: int):
        super().__init__(
            message=(
                f"Identity already has {active_count} active alerts "
                f"(limit {limit}); resolve one before creating another"
            ),
            status_code=429,
            error_code="QUOTA_EXCEEDED",
            details={
                "identity_id": identity_id,
                "active_count": active_count,
                "limit": limit,
            },
        )


class NotFoundError(FloodAlertError):
    """Resource not found (404)."""

    def __init__(self, resource: str, **identifiers: Any):
        details = {"resource": resource, **identifiers}
        super().__init__(
            message=f"{resource} not found",
            status_code=404,
            error_code="NOT_FOUND",
            details=details,
        )


class TransientSyncError(FloodAlertError):
    """Refresh fetch failed; the view is stale until the next tick (503)."""

    def __init__(self, message: str = "", **details: Any):
        super().__init__(
            message=f"Alert refresh failed: {message}",
            status_code=503,
            error_code="SYNC_UNAVAILABLE",
            details=details,
        )


class PersistenceError(FloodAlertError):
    """The backing store rejected a read/write (503)."""

    def __init__(self, operation: str, message: str = "", **details: Any):
        super().__init__(
            message=f"Store operation '{operation}' failed: {message}",
            status_code=503,
            error_code="PERSISTENCE_ERROR",
            details={"operation": operation, **details},
        )


# ═══════════════════════════════════════════════════════════════════════════
# Error Response Builder
# ═══════════════════════════════════════════════════════════════════════════

def _build_error_response(
    status_code: int,
    error_code: str,
    message: str,
    details: Optional[Dict[str, Any]] = None,
    request: Optional[Request] = None,
) -> JSONResponse:
    """Build a consistent JSON error response."""
    body: Dict[str, Any] = {
        "error": {
            "code": error_code,
            "message": message,
            "status": status_code,
        }
    }

    if details:
        body["error"]["details"] = details

    # Include request path in non-production
    if request and not settings.is_production:
        body["error"]["path"] = str(request.url.path)
        body["error"]["method"] = request.method

    return JSONResponse(status_code=status_code, content=body)


# ═══════════════════════════════════════════════════════════════════════════
# FastAPI Exception Handlers
# ═══════════════════════════════════════════════════════════════════════════

def register_error_handlers(app: FastAPI) -> None:
    """Register all exception handlers on the FastAPI app."""

    @app.exception_handler(FloodAlertError)
    async def handle_flood_alert_error(request: Request, exc: FloodAlertError):
        log_level = logging.ERROR if exc.status_code >= 500 else logging.WARNING
        logger.log(
            log_level,
            "API Error [%s]: %s | details=%s",
            exc.error_code, exc.message, exc.details,
        )
        return _build_error_response(
            exc.status_code, exc.error_code, exc.message,
            exc.details, request,
        )

    @app.exception_handler(ValueError)
    async def handle_value_error(request: Request, exc: ValueError):
        logger.warning("ValueError: %s", exc)
        return _build_error_response(
            422, "VALIDATION_ERROR", str(exc), request=request,
        )

    @app.exception_handler(Exception)
    async def handle_unhandled(request: Request, exc: Exception):
        logger.critical(
            "Unhandled exception: %s\n%s",
            exc, traceback.format_exc(),
        )
        message = str(exc) if settings.DEBUG else "Internal server error"
        return _build_error_response(
            500, "INTERNAL_ERROR", message, request=request,
        )
