"""
Shared FastAPI dependencies.

The notification service is a process-wide instance built lazily from
settings. The analytics scheduler is created by the application lifespan
and kept on ``app.state``. Tests swap either out with
``app.dependency_overrides``.
"""

from __future__ import annotations

from typing import Optional

from fastapi import Request

from backend.app.core.config import settings
from backend.app.notifications.errors import FeatureDisabledError
from backend.app.notifications.factory import build_notification_service
from backend.app.notifications.jobs import AnalyticsScheduler
from backend.app.notifications.orchestrator import NotificationService

_service: Optional[NotificationService] = None


def get_notification_service() -> NotificationService:
    """Get or create the global notification service."""
    global _service
    if _service is None:
        _service = build_notification_service(settings)
    return _service


def get_analytics_scheduler(request: Request) -> AnalyticsScheduler:
    scheduler = getattr(request.app.state, "analytics_scheduler", None)
    if scheduler is None:
        raise FeatureDisabledError("analytics_scheduler")
    return scheduler


async def shutdown_notification_service() -> None:
    global _service
    if _service is not None:
        await _service.aclose()
    _service = None
