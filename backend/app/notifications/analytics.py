"""
analytics.py — Analytics Aggregator.

Turns DeliveryRecords into one DailyAnalytics row per UTC day. Rows are
always *recomputed* from the records, never incremented, so running the
same day twice (a send-triggered recompute racing the nightly job, a
manual backfill) converges on the same row.

═══════════════════════════════════════════════════════════════════════════
AGGREGATION RULES
═══════════════════════════════════════════════════════════════════════════

    window        [day 00:00 UTC, day+1 00:00 UTC)
    totals        Σ record.total_sent / Σ record.total_failed
    channel_stats per ChannelAttempt: sent → +1 sent, failed → +1 failed
                  (all four channels always present, zero-filled)
    role_stats    each record's totals added to *every* one of its target
                  roles (a record targeting two roles counts for both)
    success rate  round(sent / (sent + failed) × 100, 2), 0 with no traffic

Entry points:
    recompute_day          deterministic rebuild + upsert
    recompute_day_safely   background entry point; never raises
    collect_range          recompute every day in an inclusive range
    backfill_missing       recompute days in the window that have no row
    get_range / get_recent summary for dashboards
    cleanup_old            drop rows past the retention window
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from backend.app.notifications.models import (
    AttemptStatus,
    Channel,
    ChannelCounts,
    DailyAnalytics,
    success_rate,
)
from backend.app.notifications.stores import AnalyticsStore, DeliveryStore

logger = logging.getLogger(__name__)

TOP_ROLES_LIMIT = 10


def _today_utc() -> date:
    return datetime.now(timezone.utc).date()


def day_window(day: date):
    """Half-open UTC window covering ``day``."""
    start = datetime.combine(day, time.min, tzinfo=timezone.utc)
    return start, start + timedelta(days=1)


# ═══════════════════════════════════════════════════════════════════════════
# Result types
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class CollectionResult:
    day: date
    success: bool
    total_sent: int = 0
    total_failed: int = 0
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        d = {
            "date": self.day.isoformat(),
            "success": self.success,
            "total_sent": self.total_sent,
            "total_failed": self.total_failed,
        }
        if self.error:
            d["error"] = self.error
        return d


@dataclass
class AnalyticsRange:
    """Summary over an inclusive range of days."""
    start: date
    end: date
    total_sent: int = 0
    total_failed: int = 0
    daily_stats: List[Dict[str, Any]] = field(default_factory=list)
    channel_effectiveness: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    top_roles: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def success_rate(self) -> float:
        return success_rate(self.total_sent, self.total_failed)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "start_date": self.start.isoformat(),
            "end_date": self.end.isoformat(),
            "total_sent": self.total_sent,
            "total_failed": self.total_failed,
            "success_rate": self.success_rate,
            "daily_stats": list(self.daily_stats),
            "channel_effectiveness": dict(self.channel_effectiveness),
            "top_roles": list(self.top_roles),
        }


def _counts_entry(counts: ChannelCounts) -> Dict[str, Any]:
    return {"sent": counts.sent, "failed": counts.failed, "success_rate": counts.success_rate}


# ═══════════════════════════════════════════════════════════════════════════
# Aggregator
# ═══════════════════════════════════════════════════════════════════════════

class AnalyticsAggregator:
    """
    Parameters
    ----------
    delivery_store : DeliveryStore
        Source of DeliveryRecords.
    analytics_store : AnalyticsStore
        Destination of DailyAnalytics rows.
    today : callable, optional
        Returns the current UTC date; injectable for tests.
    """

    def __init__(
        self,
        delivery_store: DeliveryStore,
        analytics_store: AnalyticsStore,
        *,
        today: Callable[[], date] = _today_utc,
    ):
        self.delivery_store = delivery_store
        self.analytics_store = analytics_store
        self._today = today

    # ── Recompute ──

    async def build_day(self, day: date) -> DailyAnalytics:
        """Aggregate one day without storing it."""
        start, end = day_window(day)
        records = await self.delivery_store.find_created_between(start, end)

        row = DailyAnalytics(day=day)
        roles: Dict[str, ChannelCounts] = {}

        for record in records:
            row.total_sent += record.total_sent
            row.total_failed += record.total_failed

            for _, attempt in record.iter_attempts():
                bucket = row.channel_stats.setdefault(attempt.channel.value, ChannelCounts())
                if attempt.status == AttemptStatus.SENT:
                    bucket.sent += 1
                elif attempt.status == AttemptStatus.FAILED:
                    bucket.failed += 1

            for role in record.target_roles:
                bucket = roles.setdefault(role, ChannelCounts())
                bucket.sent += record.total_sent
                bucket.failed += record.total_failed

        row.role_stats = {role: roles[role] for role in sorted(roles)}
        return row

    async def recompute_day(self, day: date) -> DailyAnalytics:
        row = await self.build_day(day)
        await self.analytics_store.upsert(row)
        logger.debug(
            "Analytics for %s: %d sent, %d failed",
            day.isoformat(), row.total_sent, row.total_failed,
            extra={"day": day.isoformat()},
        )
        return row

    async def recompute_day_safely(self, day: date) -> Optional[DailyAnalytics]:
        """Background entry point: logs every failure, never raises."""
        try:
            return await self.recompute_day(day)
        except Exception as exc:
            logger.error(
                "Analytics recompute for %s failed: %s", day.isoformat(), exc,
                extra={"day": day.isoformat()},
            )
            return None

    async def _collect(self, day: date) -> CollectionResult:
        try:
            row = await self.recompute_day(day)
        except Exception as exc:
            logger.error("Failed to collect analytics for %s: %s", day.isoformat(), exc,
                         extra={"day": day.isoformat()})
            return CollectionResult(day=day, success=False, error=str(exc))
        return CollectionResult(
            day=day, success=True, total_sent=row.total_sent, total_failed=row.total_failed,
        )

    async def collect_range(self, start: date, end: date) -> List[CollectionResult]:
        """Recompute every day in ``[start, end]``; one failing day does not stop the rest."""
        if end < start:
            raise ValueError("end date must not be before start date")
        results = []
        current = start
        while current <= end:
            results.append(await self._collect(current))
            current += timedelta(days=1)

        failed = [r for r in results if not r.success]
        logger.info(
            "Collected analytics %s → %s: %d days, %d failed",
            start.isoformat(), end.isoformat(), len(results), len(failed),
        )
        return results

    async def backfill_missing(self, days_back: int = 30) -> List[date]:
        """
        Recompute days in the last ``days_back`` days (today included) that
        have no stored row. Returns the days that were filled.
        """
        if days_back < 1:
            return []
        end = self._today()
        start = end - timedelta(days=days_back - 1)
        existing = await self.analytics_store.existing_days(start, end)

        missing = []
        current = start
        while current <= end:
            if current not in existing:
                missing.append(current)
            current += timedelta(days=1)

        if not missing:
            logger.debug("No missing analytics in the last %d days", days_back)
            return []

        logger.info("Backfilling analytics for %d missing days", len(missing))
        filled = []
        for day in missing:
            result = await self._collect(day)
            if result.success:
                filled.append(day)
        if len(filled) < len(missing):
            logger.warning(
                "Failed to backfill analytics for %s",
                ", ".join(d.isoformat() for d in missing if d not in filled),
            )
        return filled

    async def run_daily_collection(self) -> CollectionResult:
        """Nightly job: recompute yesterday, which is now complete."""
        yesterday = self._today() - timedelta(days=1)
        result = await self._collect(yesterday)
        if result.success:
            logger.info("Daily analytics collection completed for %s", yesterday.isoformat())
        return result

    async def cleanup_old(self, retention_days: int = 365) -> int:
        """Delete analytics rows older than the retention window."""
        cutoff = self._today() - timedelta(days=retention_days)
        deleted = await self.analytics_store.delete_before(cutoff)
        logger.info("Cleaned up %d analytics rows older than %s", deleted, cutoff.isoformat())
        return deleted

    # ── Reporting ──

    async def get_range(self, start: date, end: date) -> AnalyticsRange:
        if end < start:
            raise ValueError("end date must not be before start date")
        rows = await self.analytics_store.find_between(start, end)

        summary = AnalyticsRange(start=start, end=end)
        channels = {c.value: ChannelCounts() for c in Channel}
        roles: Dict[str, ChannelCounts] = {}

        for row in rows:
            summary.total_sent += row.total_sent
            summary.total_failed += row.total_failed
            summary.daily_stats.append({
                "date": row.day.isoformat(),
                "sent": row.total_sent,
                "failed": row.total_failed,
                "success_rate": row.success_rate,
            })
            for name, counts in row.channel_stats.items():
                bucket = channels.setdefault(name, ChannelCounts())
                bucket.sent += counts.sent
                bucket.failed += counts.failed
            for role, counts in row.role_stats.items():
                bucket = roles.setdefault(role, ChannelCounts())
                bucket.sent += counts.sent
                bucket.failed += counts.failed

        summary.channel_effectiveness = {
            name: _counts_entry(counts) for name, counts in channels.items()
        }
        ranked = sorted(roles.items(), key=lambda item: (-(item[1].sent + item[1].failed), item[0]))
        summary.top_roles = [
            {"role": role, **_counts_entry(counts)}
            for role, counts in ranked[:TOP_ROLES_LIMIT]
        ]
        return summary

    async def get_recent(self, days: int = 7) -> AnalyticsRange:
        end = self._today()
        return await self.get_range(end - timedelta(days=max(days, 1) - 1), end)
