"""
Request middleware: correlation id, timing and one access-log line.

Every request under ``/api/v1/emergencies/<id>`` carries that id in its log
context, so coordinator, dispatcher and channel logs for the request are
tagged with the emergency without each call site passing it.
"""

from __future__ import annotations

import logging
import re
import time
import uuid

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from guardian.app.core.logging_config import clear_request_context, set_request_context

logger = logging.getLogger(__name__)

_SKIP_ACCESS_LOG = ("/docs", "/redoc", "/openapi", "/favicon", "/health")
_EMERGENCY_PATH = re.compile(r"^/api/v1/emergencies/(?!create$|pending$|active$)([^/]+)")
_VALID_REQUEST_ID = re.compile(r"^[A-Za-z0-9._-]{1,64}$")


def _request_id(request: Request) -> str:
    inbound = request.headers.get("X-Request-ID", "")
    return inbound if _VALID_REQUEST_ID.match(inbound) else uuid.uuid4().hex[:16]


def emergency_id_from_path(path: str):
    match = _EMERGENCY_PATH.match(path)
    return match.group(1) if match else None


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Sets X-Request-ID / X-Process-Time and logs method, path, status, latency."""

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = _request_id(request)
        path = request.url.path
        client_ip = request.client.host if request.client else "unknown"

        set_request_context(
            request_id=request_id,
            method=request.method,
            endpoint=path,
            client_ip=client_ip,
            emergency_id=emergency_id_from_path(path),
        )
        start = time.perf_counter()

        try:
            response = await call_next(request)
        except Exception:
            logger.exception(
                "%s %s failed after %.1fms", request.method, path,
                (time.perf_counter() - start) * 1000,
                extra={"status_code": 500},
            )
            clear_request_context()
            raise

        duration_ms = round((time.perf_counter() - start) * 1000, 1)
        response.headers["X-Request-ID"] = request_id
        response.headers["X-Process-Time"] = f"{duration_ms}ms"

        if not path.startswith(_SKIP_ACCESS_LOG):
            logger.log(
                logging.WARNING if response.status_code >= 400 else logging.INFO,
                "%s %s → %d (%.1fms)",
                request.method, path, response.status_code, duration_ms,
                extra={"duration_ms": duration_ms, "status_code": response.status_code},
            )

        clear_request_context()
        return response
