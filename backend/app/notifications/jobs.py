"""
Background jobs for notification analytics.

═══════════════════════════════════════════════════════════════════════════
BACKGROUND TASKS
═══════════════════════════════════════════════════════════════════════════

1. STARTUP BACKFILL
   - Recompute every day in the last ANALYTICS_BACKFILL_DAYS with no row
   - Covers downtime and sends whose background recompute was lost

2. DAILY COLLECTION (first check after 00:00 UTC)
   - Recompute yesterday, now that it is complete
   - Prune analytics rows older than ANALYTICS_RETENTION_DAYS

3. ON-DEMAND JOBS
   - Range recompute / backfill submitted from the API, tracked by task id
   - Finished jobs are forgotten after job_ttl, and at most max_finished_jobs
     are kept

The scheduler runs inside the FastAPI process. Every job goes through the
AnalyticsAggregator, whose recomputes are idempotent, so overlapping runs
are harmless.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from backend.app.notifications.analytics import AnalyticsAggregator

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ═══════════════════════════════════════════════════════════════════════════
# Job Status Model
# ═══════════════════════════════════════════════════════════════════════════

class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class JobProgress:
    """Progress tracking for a background job."""
    task_id: str
    job_type: str
    status: JobStatus
    message: str
    started_at: datetime
    completed_at: Optional[datetime] = None
    error: Optional[str] = None
    result: Optional[Dict[str, Any]] = None

    @property
    def is_finished(self) -> bool:
        return self.status in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "task_id": self.task_id,
            "job_type": self.job_type,
            "status": self.status.value,
            "message": self.message,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "elapsed_seconds": (
                (self.completed_at or _utcnow()) - self.started_at
            ).total_seconds(),
            "error": self.error,
            "result": self.result,
        }


# ═══════════════════════════════════════════════════════════════════════════
# Scheduler
# ═══════════════════════════════════════════════════════════════════════════

class AnalyticsScheduler:
    """
    Runs analytics jobs in the background and tracks them.

    Usage:
        scheduler = AnalyticsScheduler(service.analytics)
        await scheduler.start()          # backfill, then daily loop
        task_id = scheduler.submit_range(date(2024, 1, 1), date(2024, 1, 31))
        scheduler.get_progress(task_id)
        await scheduler.stop()
    """

    def __init__(
        self,
        aggregator: AnalyticsAggregator,
        *,
        backfill_days: int = 30,
        retention_days: int = 365,
        check_interval: float = 300.0,
        job_ttl: timedelta = timedelta(hours=24),
        max_finished_jobs: int = 200,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.aggregator = aggregator
        self.backfill_days = backfill_days
        self.retention_days = retention_days
        self.check_interval = check_interval
        self.job_ttl = job_ttl
        self.max_finished_jobs = max_finished_jobs
        self._clock = clock
        self._jobs: Dict[str, JobProgress] = {}
        self._running_tasks: Dict[str, asyncio.Task] = {}
        self._scheduler_task: Optional[asyncio.Task] = None
        self._running = False
        self._last_daily_run: Optional[date] = None

    # ── Job tracking ──

    def _generate_task_id(self) -> str:
        return str(uuid.uuid4())[:8]

    def get_progress(self, task_id: str) -> Optional[JobProgress]:
        return self._jobs.get(task_id)

    def prune_finished(self) -> int:
        """Drop finished jobs past ``job_ttl``, then the oldest beyond ``max_finished_jobs``."""
        cutoff = self._clock() - self.job_ttl
        finished = sorted(
            (j for j in self._jobs.values() if j.is_finished),
            key=lambda j: j.completed_at or j.started_at,
        )
        expired = [j for j in finished if (j.completed_at or j.started_at) < cutoff]
        kept = finished[len(expired):]
        if len(kept) > self.max_finished_jobs:
            expired.extend(kept[:len(kept) - self.max_finished_jobs])
        for job in expired:
            del self._jobs[job.task_id]
        if expired:
            logger.debug("Pruned %d finished analytics job(s)", len(expired))
        return len(expired)

    def list_jobs(self, status: Optional[JobStatus] = None) -> List[JobProgress]:
        self.prune_finished()
        jobs = list(self._jobs.values())
        if status:
            jobs = [j for j in jobs if j.status == status]
        return sorted(jobs, key=lambda j: j.started_at, reverse=True)

    def _submit(
        self,
        job_type: str,
        message: str,
        run: Callable[[], Awaitable[Dict[str, Any]]],
    ) -> str:
        self.prune_finished()
        task_id = self._generate_task_id()
        progress = JobProgress(
            task_id=task_id,
            job_type=job_type,
            status=JobStatus.PENDING,
            message=message,
            started_at=self._clock(),
        )
        self._jobs[task_id] = progress

        async def run_job():
            progress.status = JobStatus.RUNNING
            try:
                progress.result = await run()
            except asyncio.CancelledError:
                progress.status = JobStatus.CANCELLED
                progress.completed_at = self._clock()
                raise
            except Exception as exc:
                logger.exception("Analytics job %s (%s) failed", task_id, job_type)
                progress.status = JobStatus.FAILED
                progress.error = str(exc)
            else:
                progress.status = JobStatus.COMPLETED
                progress.message = f"{job_type} finished"
            progress.completed_at = self._clock()

        task = asyncio.create_task(run_job())
        self._running_tasks[task_id] = task
        task.add_done_callback(lambda _t: self._running_tasks.pop(task_id, None))
        return task_id

    def submit_range(self, start: date, end: date) -> str:
        """Recompute every day in ``[start, end]`` in the background."""
        if end < start:
            raise ValueError("end date must not be before start date")

        async def run():
            results = await self.aggregator.collect_range(start, end)
            return {
                "days": len(results),
                "failed": [r.day.isoformat() for r in results if not r.success],
            }

        return self._submit(
            "range_recompute",
            f"Queued recompute {start.isoformat()} → {end.isoformat()}",
            run,
        )

    def submit_backfill(self, days_back: Optional[int] = None) -> str:
        days = days_back or self.backfill_days

        async def run():
            filled = await self.aggregator.backfill_missing(days)
            return {"filled": [d.isoformat() for d in filled]}

        return self._submit("backfill", f"Queued backfill of last {days} days", run)

    async def wait_for(self, task_id: str) -> Optional[JobProgress]:
        task = self._running_tasks.get(task_id)
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)
        return self._jobs.get(task_id)

    def status(self) -> Dict[str, Any]:
        counts = {s.value: 0 for s in JobStatus}
        for job in self._jobs.values():
            counts[job.status.value] += 1
        return {
            "running": self._running,
            "last_daily_run": self._last_daily_run.isoformat() if self._last_daily_run else None,
            "jobs": counts,
        }

    # ── Scheduled work ──

    async def run_daily_maintenance(self) -> Dict[str, Any]:
        """Recompute yesterday and prune old rows."""
        collected = await self.aggregator.run_daily_collection()
        deleted = await self.aggregator.cleanup_old(self.retention_days)
        self._last_daily_run = self._clock().date()
        return {"collected": collected.to_dict(), "deleted": deleted}

    async def _tick(self) -> None:
        today = self._clock().date()
        if self._last_daily_run != today:
            await self.run_daily_maintenance()

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._last_daily_run = self._clock().date()
        self.submit_backfill()
        self._scheduler_task = asyncio.create_task(self._run_scheduler())
        logger.info("Analytics scheduler started")

    async def stop(self) -> None:
        self._running = False
        if self._scheduler_task:
            self._scheduler_task.cancel()
            try:
                await self._scheduler_task
            except asyncio.CancelledError:
                pass
            self._scheduler_task = None
        for task in list(self._running_tasks.values()):
            task.cancel()
        if self._running_tasks:
            await asyncio.gather(*self._running_tasks.values(), return_exceptions=True)
        logger.info("Analytics scheduler stopped")

    async def _run_scheduler(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self.check_interval)
                await self._tick()
            except asyncio.CancelledError:
                break
            except Exception as exc:
                logger.exception("Analytics scheduler error: %s", exc)
