"""
Health probes for the notification service.

Components:
    • storage            PostgreSQL round trip when NOTIFY_STORAGE=database
    • channels           which delivery channels have credentials
    • recent_deliveries  success rate over the latest delivery records
    • analytics          state of the background analytics scheduler

Overall status is the worst component status. Losing a channel or a
falling delivery success rate only DEGRADES the service: sends through
the remaining channels still go out. An unreachable database or a
service with no channel at all is UNHEALTHY.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from sqlalchemy import text

from backend.app.core.config import settings

if TYPE_CHECKING:
    from backend.app.notifications.jobs import AnalyticsScheduler
    from backend.app.notifications.orchestrator import NotificationService

logger = logging.getLogger(__name__)

# Recent-delivery probe: how many records to look at, and below which
# success rate (with at least MIN_ATTEMPTS behind it) to report DEGRADED.
RECENT_WINDOW = 50
MIN_ATTEMPTS = 20
DEGRADED_SUCCESS_RATE = 50.0

_started = time.monotonic()


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


_SEVERITY = {HealthStatus.HEALTHY: 0, HealthStatus.DEGRADED: 1, HealthStatus.UNHEALTHY: 2}


@dataclass
class ComponentHealth:
    name: str
    status: HealthStatus = HealthStatus.HEALTHY
    message: str = ""
    latency_ms: float = 0.0
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "name": self.name,
            "status": self.status.value,
            "latency_ms": round(self.latency_ms, 2),
        }
        if self.message:
            d["message"] = self.message
        if self.details:
            d["details"] = self.details
        return d


@dataclass
class HealthReport:
    components: List[ComponentHealth] = field(default_factory=list)
    checked_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def status(self) -> HealthStatus:
        if not self.components:
            return HealthStatus.HEALTHY
        return max((c.status for c in self.components), key=_SEVERITY.__getitem__)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "version": settings.APP_VERSION,
            "environment": settings.ENVIRONMENT,
            "timestamp": self.checked_at.isoformat(),
            "uptime_seconds": round(time.monotonic() - _started, 1),
            "components": [c.to_dict() for c in self.components],
        }


# ═══════════════════════════════════════════════════════════════════════════
# Component probes
# ═══════════════════════════════════════════════════════════════════════════

async def check_storage() -> ComponentHealth:
    comp = ComponentHealth(name="storage", details={"backend": settings.NOTIFY_STORAGE})
    if settings.NOTIFY_STORAGE != "database":
        comp.message = "In-memory stores (records are lost on restart)"
        return comp

    from backend.app.core.database import get_engine

    try:
        async with get_engine().connect() as conn:
            await conn.execute(text("SELECT 1"))
        comp.message = "Database reachable"
        comp.details["host"] = settings.DATABASE_URL.split("@")[-1]
    except Exception as exc:
        logger.error("Storage health check failed: %s", exc)
        comp.status = HealthStatus.UNHEALTHY
        comp.message = str(exc)
    return comp


async def check_channels() -> ComponentHealth:
    from backend.app.notifications.availability import validate_channel_configuration

    report = validate_channel_configuration(settings)
    configured = report["configured"]
    comp = ComponentHealth(
        name="channels",
        details={
            "configured": configured,
            "transport_mode": settings.NOTIFY_TRANSPORT_MODE,
            "missing": {c["channel"]: c["missing"] for c in report["channels"] if c["missing"]},
        },
    )
    if not configured:
        comp.status = HealthStatus.UNHEALTHY
        comp.message = "No delivery channel is configured"
    elif report["status"] == "error":
        comp.status = HealthStatus.DEGRADED
        comp.message = "Required channel missing credentials"
    else:
        comp.message = f"{len(configured)} channel(s) configured"
    return comp


async def check_recent_deliveries(service: "NotificationService") -> ComponentHealth:
    """Success rate over the last ``RECENT_WINDOW`` delivery records."""
    from backend.app.notifications.models import success_rate

    comp = ComponentHealth(name="recent_deliveries")
    try:
        records = await service.list_recent_deliveries(RECENT_WINDOW)
    except Exception as exc:
        logger.error("Delivery history unavailable: %s", exc)
        comp.status = HealthStatus.DEGRADED
        comp.message = f"Delivery history unavailable: {exc}"
        return comp

    sent = sum(r.total_sent for r in records)
    failed = sum(r.total_failed for r in records)
    rate = success_rate(sent, failed)
    comp.details = {"records": len(records), "sent": sent, "failed": failed, "success_rate": rate}

    if sent + failed >= MIN_ATTEMPTS and rate < DEGRADED_SUCCESS_RATE:
        comp.status = HealthStatus.DEGRADED
        comp.message = f"Only {rate}% of recent channel attempts succeeded"
    elif records:
        comp.message = f"{rate}% of recent channel attempts succeeded"
    else:
        comp.message = "No deliveries yet"
    return comp


async def check_analytics(
    service: "NotificationService",
    scheduler: Optional["AnalyticsScheduler"],
) -> ComponentHealth:
    comp = ComponentHealth(name="analytics")
    if service.analytics is None:
        comp.message = "Analytics disabled"
        return comp
    if scheduler is None:
        comp.message = "Analytics on demand only (scheduler not running)"
        return comp

    comp.details = scheduler.status()
    failed_jobs = comp.details["jobs"]["failed"]
    if not comp.details["running"]:
        comp.status = HealthStatus.DEGRADED
        comp.message = "Analytics scheduler stopped"
    elif failed_jobs:
        comp.status = HealthStatus.DEGRADED
        comp.message = f"{failed_jobs} analytics job(s) failed"
    else:
        comp.message = "Analytics scheduler running"
    return comp


# ═══════════════════════════════════════════════════════════════════════════
# Aggregation
# ═══════════════════════════════════════════════════════════════════════════

async def _timed(probe) -> ComponentHealth:
    start = time.monotonic()
    comp = await probe
    comp.latency_ms = (time.monotonic() - start) * 1000
    return comp


async def run_health_check(
    service: "NotificationService",
    scheduler: Optional["AnalyticsScheduler"] = None,
) -> HealthReport:
    """Run every probe concurrently and collect them into one report."""
    components = await asyncio.gather(
        _timed(check_storage()),
        _timed(check_channels()),
        _timed(check_recent_deliveries(service)),
        _timed(check_analytics(service, scheduler)),
    )
    return HealthReport(components=list(components))
