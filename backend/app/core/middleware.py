"""
Request middleware — request id, timing, one log line per call.

Job triggers come from the scheduler and can run for minutes, so they are
logged at INFO with their duration; notification and dashboard reads are
logged at DEBUG; health probes and docs are not logged at all.
"""

from __future__ import annotations

import logging
import time
import uuid

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from backend.app.core.logging_config import log_context

logger = logging.getLogger(__name__)

_UNLOGGED_PREFIXES = ("/health", "/docs", "/redoc", "/openapi", "/favicon")
_JOB_PREFIX = "/api/v1/jobs"


def _level_for(path: str, status_code: int) -> int:
    if status_code >= 500:
        return logging.ERROR
    if status_code >= 400:
        return logging.WARNING
    return logging.INFO if path.startswith(_JOB_PREFIX) else logging.DEBUG


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Tag the request with X-Request-ID and log its outcome."""

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:16]
        path = request.url.path
        started = time.perf_counter()

        with log_context(request_id=request_id, endpoint=path):
            try:
                response = await call_next(request)
            except Exception:
                elapsed_ms = round((time.perf_counter() - started) * 1000, 1)
                logger.exception(
                    "%s %s failed after %.1fms", request.method, path, elapsed_ms,
                    extra={"duration_ms": elapsed_ms, "status_code": 500},
                )
                raise

            elapsed_ms = round((time.perf_counter() - started) * 1000, 1)
            response.headers["X-Request-ID"] = request_id
            response.headers["X-Process-Time"] = f"{elapsed_ms}ms"

            if not path.startswith(_UNLOGGED_PREFIXES):
                logger.log(
                    _level_for(path, response.status_code),
                    "%s %s → %d (%.1fms)",
                    request.method, path, response.status_code, elapsed_ms,
                    extra={"duration_ms": elapsed_ms, "status_code": response.status_code},
                )

        return response
