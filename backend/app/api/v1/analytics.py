"""
FastAPI route: Notification analytics.

Provides endpoints to:
    GET  /api/v1/notifications/analytics               range summary (start/end or days)
    POST /api/v1/notifications/analytics/recompute     recompute one day
    POST /api/v1/notifications/analytics/backfill      fill missing days
    POST /api/v1/notifications/analytics/jobs/range    recompute a range in the background
    GET  /api/v1/notifications/analytics/jobs          background jobs, newest first
    GET  /api/v1/notifications/analytics/jobs/{id}     one background job

Registered before the notifications router so ``/analytics`` is not
captured by ``/{delivery_id}``.
"""

from __future__ import annotations

from datetime import date
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query

from backend.app.api.deps import get_analytics_scheduler, get_notification_service
from backend.app.api.schemas import BackfillRequest, RangeJobRequest, RecomputeRequest
from backend.app.core.errors import NotFoundError, ValidationError
from backend.app.notifications.analytics import AnalyticsAggregator
from backend.app.notifications.errors import FeatureDisabledError
from backend.app.notifications.jobs import AnalyticsScheduler, JobStatus
from backend.app.notifications.orchestrator import NotificationService

router = APIRouter(prefix="/api/v1/notifications/analytics", tags=["notification-analytics"])


def _aggregator(service: NotificationService) -> AnalyticsAggregator:
    if service.analytics is None:
        raise FeatureDisabledError("analytics")
    return service.analytics


@router.get("", summary="Analytics for a date range")
async def get_analytics(
    start: Optional[date] = Query(None, description="First day (UTC), inclusive"),
    end: Optional[date] = Query(None, description="Last day (UTC), inclusive"),
    days: int = Query(7, ge=1, le=365, description="Used when start/end are omitted"),
    service: NotificationService = Depends(get_notification_service),
) -> Dict[str, Any]:
    aggregator = _aggregator(service)
    if (start is None) != (end is None):
        raise ValidationError("start and end must be given together", field="start")
    if start is not None:
        if end < start:
            raise ValidationError("end must not be before start", field="end")
        summary = await aggregator.get_range(start, end)
    else:
        summary = await aggregator.get_recent(days)
    return summary.to_dict()


@router.post("/recompute", summary="Recompute one day")
async def recompute_day(
    request: RecomputeRequest,
    service: NotificationService = Depends(get_notification_service),
) -> Dict[str, Any]:
    row = await _aggregator(service).recompute_day(request.day)
    return row.to_dict()


@router.post("/backfill", summary="Recompute days with no analytics row")
async def backfill(
    request: BackfillRequest,
    service: NotificationService = Depends(get_notification_service),
) -> Dict[str, Any]:
    filled = await _aggregator(service).backfill_missing(request.days_back)
    return {"days_back": request.days_back, "filled": [d.isoformat() for d in filled]}


# ---------------------------------------------------------------------------
# Background jobs
# ---------------------------------------------------------------------------

@router.post("/jobs/range", status_code=202, summary="Queue a range recompute")
async def submit_range_job(
    request: RangeJobRequest,
    scheduler: AnalyticsScheduler = Depends(get_analytics_scheduler),
) -> Dict[str, Any]:
    if request.end < request.start:
        raise ValidationError("end must not be before start", field="end")
    task_id = scheduler.submit_range(request.start, request.end)
    return scheduler.get_progress(task_id).to_dict()


@router.get("/jobs", summary="Background analytics jobs")
async def list_jobs(
    status: Optional[JobStatus] = Query(None),
    scheduler: AnalyticsScheduler = Depends(get_analytics_scheduler),
) -> Dict[str, Any]:
    jobs = scheduler.list_jobs(status)
    return {"count": len(jobs), "jobs": [j.to_dict() for j in jobs]}


@router.get("/jobs/{task_id}", summary="One background analytics job")
async def get_job(
    task_id: str,
    scheduler: AnalyticsScheduler = Depends(get_analytics_scheduler),
) -> Dict[str, Any]:
    progress = scheduler.get_progress(task_id)
    if progress is None:
        raise NotFoundError("AnalyticsJob", task_id=task_id)
    return progress.to_dict()
