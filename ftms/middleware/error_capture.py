"""FastAPI middleware that captures unhandled exceptions and logs them to the DB.

Every 5xx response is recorded in the error_logs table; 4xx responses are
recorded with WARNING severity so rejected revenue submissions can be traced.
"""

from __future__ import annotations

import logging
import time
from typing import Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import JSONResponse

from ftms.models.error_log import ErrorSeverity
from ftms.services.error_logger import log_error_standalone

logger = logging.getLogger("ftms.middleware")

# Payment endpoints never have their bodies captured
_SENSITIVE_MARKERS = ("/payments", "/pay", "/with-attachments")

_MAX_BODY_SIZE = 4096


def _is_sensitive(path: str) -> bool:
    return any(marker in path for marker in _SENSITIVE_MARKERS)


class ErrorCaptureMiddleware(BaseHTTPMiddleware):
    """Catches unhandled exceptions, returns 500, and persists the error."""

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        start = time.time()
        request_body: Optional[str] = None
        path = request.url.path

        if request.method in ("POST", "PUT", "PATCH") and not _is_sensitive(path):
            body_bytes = await request.body()
            if len(body_bytes) <= _MAX_BODY_SIZE:
                request_body = body_bytes.decode("utf-8", errors="replace")

        ip_address = request.client.host if request.client else None

        try:
            response = await call_next(request)
        except Exception as exc:
            elapsed_ms = round((time.time() - start) * 1000, 2)
            severity = ErrorSeverity.CRITICAL if "database" in str(exc).lower() else ErrorSeverity.ERROR
            await log_error_standalone(
                exc,
                severity=severity,
                module="middleware.error_capture",
                request_method=request.method,
                request_path=path,
                request_body=request_body,
                status_code=500,
                response_time_ms=elapsed_ms,
                ip_address=ip_address,
            )
            logger.exception("Unhandled exception on %s %s", request.method, path)
            return JSONResponse(
                status_code=500,
                content={"detail": "Internal Server Error", "details": str(exc)},
            )

        elapsed_ms = round((time.time() - start) * 1000, 2)
        if response.status_code >= 400 and response.status_code not in (401, 403):
            severity = ErrorSeverity.ERROR if response.status_code >= 500 else ErrorSeverity.WARNING
            await log_error_standalone(
                Exception(f"HTTP {response.status_code} on {request.method} {path}"),
                severity=severity,
                module="middleware.error_capture",
                function_name="dispatch",
                request_method=request.method,
                request_path=path,
                request_body=request_body,
                status_code=response.status_code,
                response_time_ms=elapsed_ms,
                ip_address=ip_address,
            )
        return response
