"""
HTTP error layer for the notification API.

Every failure leaves the service in the same envelope::

    {"error": {"code": "NOT_FOUND", "message": "...", "status": 404,
               "request_id": "3f9a1c2e...", "details": {...}}}

``request_id`` matches the ``X-Request-ID`` header so a failed send can be
looked up in the delivery logs. Outside production the path and method
are added as well.

Two families are mapped:
    • ``WelfareAPIError`` subclasses raised by the route handlers
    • engine errors from ``backend.app.notifications.errors`` that escape
      the orchestrator (disabled features, double-resolved attempts)
"""

from __future__ import annotations

import logging
import traceback
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from backend.app.core.config import settings
from backend.app.core.logging_config import get_request_context
from backend.app.notifications.errors import (
    FeatureDisabledError,
    InvalidTransitionError,
    NotificationError,
)

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
# API exceptions
# ═══════════════════════════════════════════════════════════════════════════

class WelfareAPIError(Exception):
    """Base for errors raised by route handlers."""

    status_code = 500
    error_code = "INTERNAL_ERROR"

    def __init__(
        self,
        message: str = "An unexpected error occurred",
        *,
        status_code: Optional[int] = None,
        error_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.details = details or {}


class NotFoundError(WelfareAPIError):
    """Delivery record, subscription or other resource missing (404)."""

    status_code = 404
    error_code = "NOT_FOUND"

    def __init__(self, resource: str, **identifiers: Any):
        super().__init__(f"{resource} not found", details={"resource": resource, **identifiers})


class ValidationError(WelfareAPIError):
    """Request passed schema validation but is still unusable (422)."""

    status_code = 422
    error_code = "VALIDATION_ERROR"

    def __init__(self, message: str, *, field: Optional[str] = None, **details: Any):
        if field:
            details["field"] = field
        super().__init__(message, details=details)


class NotificationPreconditionError(WelfareAPIError):
    """A send could not start: no usable channel or no recipient (422)."""

    status_code = 422
    error_code = "NOTIFICATION_PRECONDITION_FAILED"

    def __init__(self, message: str, **details: Any):
        super().__init__(message, details=details)


# ═══════════════════════════════════════════════════════════════════════════
# Engine error mapping
# ═══════════════════════════════════════════════════════════════════════════

def describe_engine_error(exc: NotificationError) -> tuple[int, str, Dict[str, Any]]:
    """Status code, error code and details for an engine exception."""
    if isinstance(exc, FeatureDisabledError):
        return 503, f"{exc.feature.upper()}_DISABLED", {"feature": exc.feature}
    if isinstance(exc, InvalidTransitionError):
        return 409, "DELIVERY_STATE_CONFLICT", {
            "channel": exc.channel, "current": exc.current, "target": exc.target,
        }
    return 500, "DELIVERY_ENGINE_ERROR", {"type": type(exc).__name__}


# ═══════════════════════════════════════════════════════════════════════════
# Response envelope
# ═══════════════════════════════════════════════════════════════════════════

def _error_response(
    request: Request,
    status_code: int,
    error_code: str,
    message: str,
    details: Optional[Dict[str, Any]] = None,
) -> JSONResponse:
    error: Dict[str, Any] = {"code": error_code, "message": message, "status": status_code}

    request_id = get_request_context().get("request_id")
    if request_id:
        error["request_id"] = request_id
    if details:
        error["details"] = details
    if not settings.is_production:
        error["path"] = request.url.path
        error["method"] = request.method

    return JSONResponse(status_code=status_code, content={"error": error})


def register_error_handlers(app: FastAPI) -> None:
    """Attach the handlers above to ``app``; call before including routers."""

    @app.exception_handler(WelfareAPIError)
    async def handle_api_error(request: Request, exc: WelfareAPIError):
        logger.log(
            logging.WARNING if exc.status_code < 500 else logging.ERROR,
            "%s on %s: %s", exc.error_code, request.url.path, exc.message,
            extra={"status_code": exc.status_code},
        )
        return _error_response(request, exc.status_code, exc.error_code, exc.message, exc.details)

    @app.exception_handler(NotificationError)
    async def handle_engine_error(request: Request, exc: NotificationError):
        status_code, error_code, details = describe_engine_error(exc)
        logger.log(
            logging.WARNING if status_code < 500 else logging.ERROR,
            "%s on %s: %s", error_code, request.url.path, exc,
            extra={"status_code": status_code},
        )
        return _error_response(request, status_code, error_code, str(exc), details)

    @app.exception_handler(ValueError)
    async def handle_value_error(request: Request, exc: ValueError):
        logger.warning("Rejected input on %s: %s", request.url.path, exc)
        return _error_response(request, 422, "VALIDATION_ERROR", str(exc))

    @app.exception_handler(Exception)
    async def handle_unhandled(request: Request, exc: Exception):
        logger.critical("Unhandled %s on %s", type(exc).__name__, request.url.path, exc_info=exc)
        if settings.DEBUG:
            return _error_response(
                request, 500, "INTERNAL_ERROR", str(exc),
                {"traceback": traceback.format_exception(type(exc), exc, exc.__traceback__)},
            )
        return _error_response(request, 500, "INTERNAL_ERROR", "Internal server error")
