"""
Centralised error handling — exception hierarchy + FastAPI handlers.

Error taxonomy of the alert engine:

    Error                      Scope of containment        HTTP
    ─────────────────────      ────────────────────────    ────
    AlertDeliveryError         one recipient × channel     500
    PersistenceError           one unit of work            500
    ValidationError            request                     422
    NotFoundError              request                     404
    AuthenticationError        request                     401

Duplicate suppression by the idempotency guard is not an error. An
unavailable forecast is not raised either: the fetcher returns an
unavailable ForecastResult and the run skips that region.

Usage:
    from backend.app.core.errors import PersistenceError

    raise PersistenceError("notification", "insert failed", user_id="F1")
"""

from __future__ import annotations

import logging
import traceback
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from backend.app.core.config import settings

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
# Exception Hierarchy
# ═══════════════════════════════════════════════════════════════════════════

class AlertEngineError(Exception):
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


class NotFoundError(AlertEngineError):
    """Resource not found (404)."""

    def __init__(self, resource: str, **identifiers: Any):
        details = {"resource": resource, **identifiers}
        super().__init__(
            message=f"{resource} not found",
            status_code=404,
            error_code="NOT_FOUND",
            details=details,
        )


class ValidationError(AlertEngineError):
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


class AuthenticationError(AlertEngineError):
    """Missing or wrong service credential (401)."""

    def __init__(self, message: str = "Invalid service credential"):
        super().__init__(
            message=message,
            status_code=401,
            error_code="UNAUTHORIZED",
        )


class PersistenceError(AlertEngineError):
    """Store write or read failed (500)."""

    def __init__(self, entity: str, message: str = "", **details: Any):
        super().__init__(
            message=f"Persisting {entity} failed: {message}",
            status_code=500,
            error_code="PERSISTENCE_ERROR",
            details={"entity": entity, **details},
        )


class AlertDeliveryError(AlertEngineError):
    """A channel provider rejected or could not take a send (500)."""

    def __init__(self, channel: str, message: str = "", **details: Any):
        super().__init__(
            message=f"{channel} delivery failed: {message}",
            status_code=500,
            error_code="ALERT_DELIVERY_ERROR",
            details={"channel": channel, **details},
        )


# ═══════════════════════════════════════════════════════════════════════════
# Error Envelope
# ═══════════════════════════════════════════════════════════════════════════

def error_envelope(
    status_code: int,
    error_code: str,
    message: str,
    details: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """{"error": {code, message, status, details?}}, the shape every non-2xx shares."""
    error: Dict[str, Any] = {"code": error_code, "message": message, "status": status_code}
    if details:
        error["details"] = details
    return {"error": error}


def _respond(request: Request, body: Dict[str, Any]) -> JSONResponse:
    if not settings.is_production:
        body["error"]["path"] = request.url.path
    return JSONResponse(status_code=body["error"]["status"], content=body)


# ═══════════════════════════════════════════════════════════════════════════
# FastAPI Exception Handlers
# ═══════════════════════════════════════════════════════════════════════════

def register_error_handlers(app: FastAPI) -> None:
    """Render engine errors, request validation and crashes in one envelope."""

    @app.exception_handler(AlertEngineError)
    async def handle_engine_error(request: Request, exc: AlertEngineError):
        logger.log(
            logging.WARNING if exc.status_code < 500 else logging.ERROR,
            "%s on %s: %s", exc.error_code, request.url.path, exc.message,
            extra={"status_code": exc.status_code},
        )
        return _respond(request, error_envelope(exc.status_code, exc.error_code, exc.message, exc.details))

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        problems = [
            {"field": ".".join(str(p) for p in err.get("loc", ())), "message": err.get("msg", "")}
            for err in exc.errors()
        ]
        return _respond(request, error_envelope(
            422, "VALIDATION_ERROR", "Request validation failed", {"errors": problems},
        ))

    @app.exception_handler(Exception)
    async def handle_unhandled(request: Request, exc: Exception):
        logger.critical(
            "Unhandled %s on %s: %s\n%s",
            type(exc).__name__, request.url.path, exc, traceback.format_exc(),
        )
        message = str(exc) if settings.DEBUG else "Internal server error"
        return _respond(request, error_envelope(500, "INTERNAL_ERROR", message))
