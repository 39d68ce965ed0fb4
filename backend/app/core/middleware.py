"""
Request middleware: correlation IDs and the per-request access log.

A caller-supplied ``X-Request-ID`` is reused when it looks like an ID
(letters, digits, ``-``/``_``/``.``, at most 64 characters) so a send can be
traced from the admin dashboard through every delivery log line; anything
else is replaced with a fresh one. The ID is bound to the logging request
context for the duration of the call and echoed back with ``X-Process-Time``.
"""

from __future__ import annotations

import logging
import re
import time
import uuid
from typing import Optional

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from backend.app.core.config import settings
from backend.app.core.logging_config import bind_request_context, reset_request_context

logger = logging.getLogger(__name__)

_QUIET_PREFIXES = ("/docs", "/redoc", "/openapi", "/favicon", "/health/live")
_REQUEST_ID_RE = re.compile(r"^[A-Za-z0-9._-]{1,64}$")


def resolve_request_id(incoming: Optional[str]) -> str:
    if incoming and _REQUEST_ID_RE.match(incoming):
        return incoming
    return uuid.uuid4().hex[:16]


def _access_level(status_code: int, duration_ms: float) -> int:
    if status_code >= 500:
        return logging.ERROR
    if status_code >= 400 or duration_ms > settings.SLOW_REQUEST_MS:
        return logging.WARNING
    return logging.INFO


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Bind request context, time the call, write one access log line."""

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = resolve_request_id(request.headers.get("X-Request-ID"))
        client_ip = request.client.host if request.client else "unknown"
        path = request.url.path

        token = bind_request_context(
            request_id=request_id,
            client_ip=client_ip,
            endpoint=path,
            method=request.method,
        )
        start = time.perf_counter()
        try:
            try:
                response = await call_next(request)
            except Exception:
                logger.exception(
                    "%s %s failed after %.1fms",
                    request.method, path, (time.perf_counter() - start) * 1000,
                    extra={"status_code": 500, "endpoint": path},
                )
                raise

            duration_ms = (time.perf_counter() - start) * 1000
            response.headers["X-Request-ID"] = request_id
            response.headers["X-Process-Time"] = f"{duration_ms:.1f}ms"

            if not path.startswith(_QUIET_PREFIXES):
                logger.log(
                    _access_level(response.status_code, duration_ms),
                    "%s %s %d %.1fms [%s]",
                    request.method, path, response.status_code, duration_ms, client_ip,
                    extra={
                        "duration_ms": round(duration_ms, 1),
                        "status_code": response.status_code,
                        "endpoint": path,
                    },
                )
            return response
        finally:
            reset_request_context(token)
