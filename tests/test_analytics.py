"""
test_analytics.py — Tests for the analytics aggregator.

Covers:
    • Day window boundaries (UTC, half-open)
    • Totals, per-channel and per-role aggregation
    • Idempotent recompute
    • Range summaries (ordering, success rates, top roles)
    • Backfill, daily collection and retention cleanup

Run with:
    pytest tests/test_analytics.py -v
"""

from __future__ import annotations

import asyncio
from datetime import date, datetime, timezone

import pytest

from backend.app.notifications.analytics import AnalyticsAggregator, day_window
from backend.app.notifications.models import (
    Channel,
    ChannelAttempt,
    DailyAnalytics,
    DeliveryRecord,
    DeliveryState,
    RecipientEntry,
)
from backend.app.notifications.stores import InMemoryAnalyticsStore, InMemoryDeliveryStore

TODAY = date(2024, 3, 10)


# ═══════════════════════════════════════════════════════════════════════════
# Test Fixtures
# ═══════════════════════════════════════════════════════════════════════════

def _make_record(created_at, roles, outcomes):
    """outcomes: one list of (channel, sent?) per recipient."""
    record = DeliveryRecord(
        title="Eid Clothing Drive", body="Drop-off at the centre.",
        target_roles=list(roles), created_at=created_at,
    )
    for i, attempts in enumerate(outcomes):
        entry = RecipientEntry(user_id=f"u{i}")
        for channel, ok in attempts:
            attempt = ChannelAttempt(channel=channel)
            if ok:
                attempt.mark_sent()
            else:
                attempt.mark_failed("The delivery service timed out", attempts=3)
            entry.channels.append(attempt)
        record.recipients.append(entry)
    record.compute_totals()
    record.state = DeliveryState.DONE
    return record


def _utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


def _seeded():
    """Aggregator over four records around 2024-03-10."""
    deliveries = InMemoryDeliveryStore()
    analytics = InMemoryAnalyticsStore()
    records = [
        # 2024-03-10: 2 sent + 1 failed, two roles
        _make_record(_utc(2024, 3, 10, 0, 0), ["donor", "volunteer"], [
            [(Channel.EMAIL, True), (Channel.SMS, False)],
            [(Channel.EMAIL, True)],
        ]),
        # 2024-03-10, last second: 1 sent
        _make_record(_utc(2024, 3, 10, 23, 59, 59), ["donor"], [
            [(Channel.WEB_PUSH, True)],
        ]),
        # next day, outside the window
        _make_record(_utc(2024, 3, 11, 0, 0), ["admin"], [
            [(Channel.SMS, True)],
        ]),
        # previous day, outside the window
        _make_record(_utc(2024, 3, 9, 23, 59, 59), [], [
            [(Channel.WHATSAPP, False)],
        ]),
    ]

    async def seed():
        for record in records:
            await deliveries.save(record)

    asyncio.run(seed())
    return AnalyticsAggregator(deliveries, analytics, today=lambda: TODAY), analytics


# ═══════════════════════════════════════════════════════════════════════════
# Recompute
# ═══════════════════════════════════════════════════════════════════════════

class TestDayWindow:

    def test_half_open_utc(self):
        start, end = day_window(date(2024, 3, 10))
        assert start == _utc(2024, 3, 10)
        assert end == _utc(2024, 3, 11)


class TestRecomputeDay:

    def test_totals(self):
        aggregator, _ = _seeded()
        row = asyncio.run(aggregator.recompute_day(TODAY))
        assert row.total_sent == 3
        assert row.total_failed == 1
        assert row.success_rate == 75.0

    def test_channel_stats(self):
        aggregator, _ = _seeded()
        row = asyncio.run(aggregator.recompute_day(TODAY))
        assert row.channel_stats["email"].sent == 2
        assert row.channel_stats["sms"].failed == 1
        assert row.channel_stats["web_push"].sent == 1
        assert row.channel_stats["whatsapp"].sent == 0
        assert row.channel_stats["whatsapp"].failed == 0

    def test_role_stats_count_record_for_each_role(self):
        aggregator, _ = _seeded()
        row = asyncio.run(aggregator.recompute_day(TODAY))
        assert row.role_stats["donor"].sent == 3
        assert row.role_stats["donor"].failed == 1
        assert row.role_stats["volunteer"].sent == 2
        assert row.role_stats["volunteer"].failed == 1
        assert "admin" not in row.role_stats

    def test_idempotent(self):
        aggregator, analytics = _seeded()

        async def scenario():
            first = await aggregator.recompute_day(TODAY)
            second = await aggregator.recompute_day(TODAY)
            stored = await analytics.find_between(TODAY, TODAY)
            return first, second, stored

        first, second, stored = asyncio.run(scenario())
        assert first == second
        assert len(stored) == 1
        assert stored[0] == first

    def test_empty_day(self):
        aggregator, _ = _seeded()
        row = asyncio.run(aggregator.recompute_day(date(2024, 1, 1)))
        assert row == DailyAnalytics(day=date(2024, 1, 1))
        assert row.success_rate == 0.0

    def test_safe_variant_swallows_failures(self):
        aggregator, analytics = _seeded()

        async def broken(row):
            raise RuntimeError("disk full")

        analytics.upsert = broken
        assert asyncio.run(aggregator.recompute_day_safely(TODAY)) is None

    def test_collect_range_rejects_reversed_range(self):
        aggregator, _ = _seeded()
        with pytest.raises(ValueError):
            asyncio.run(aggregator.collect_range(date(2024, 3, 10), date(2024, 3, 9)))

    def test_collect_range_covers_each_day(self):
        aggregator, analytics = _seeded()
        results = asyncio.run(aggregator.collect_range(date(2024, 3, 9), date(2024, 3, 11)))
        assert [r.day for r in results] == [date(2024, 3, 9), date(2024, 3, 10), date(2024, 3, 11)]
        assert all(r.success for r in results)
        assert results[1].total_sent == 3


# ═══════════════════════════════════════════════════════════════════════════
# Reporting
# ═══════════════════════════════════════════════════════════════════════════

class TestGetRange:

    def _summary(self):
        aggregator, _ = _seeded()

        async def scenario():
            await aggregator.collect_range(date(2024, 3, 9), date(2024, 3, 11))
            return await aggregator.get_range(date(2024, 3, 9), date(2024, 3, 11))

        return asyncio.run(scenario())

    def test_totals(self):
        summary = self._summary()
        assert summary.total_sent == 4
        assert summary.total_failed == 2
        assert summary.success_rate == 66.67

    def test_daily_stats_newest_first(self):
        summary = self._summary()
        assert [d["date"] for d in summary.daily_stats] == [
            "2024-03-11", "2024-03-10", "2024-03-09",
        ]
        rates = {d["date"]: d["success_rate"] for d in summary.daily_stats}
        assert rates == {"2024-03-11": 100.0, "2024-03-10": 75.0, "2024-03-09": 0.0}

    def test_channel_effectiveness(self):
        summary = self._summary()
        assert set(summary.channel_effectiveness) == {"web_push", "email", "whatsapp", "sms"}
        assert summary.channel_effectiveness["sms"] == {
            "sent": 1, "failed": 1, "success_rate": 50.0,
        }
        assert summary.channel_effectiveness["whatsapp"]["success_rate"] == 0.0

    def test_top_roles_by_volume(self):
        summary = self._summary()
        assert [r["role"] for r in summary.top_roles] == ["donor", "volunteer", "admin"]
        assert summary.top_roles[0]["success_rate"] == 75.0

    def test_to_dict(self):
        d = self._summary().to_dict()
        assert d["start_date"] == "2024-03-09"
        assert d["end_date"] == "2024-03-11"
        assert d["success_rate"] == 66.67

    def test_rejects_reversed_range(self):
        aggregator, _ = _seeded()
        with pytest.raises(ValueError):
            asyncio.run(aggregator.get_range(date(2024, 3, 11), date(2024, 3, 9)))

    def test_get_recent_ends_today(self):
        aggregator, _ = _seeded()

        async def scenario():
            await aggregator.recompute_day(TODAY)
            return await aggregator.get_recent(7)

        summary = asyncio.run(scenario())
        assert summary.end == TODAY
        assert summary.start == date(2024, 3, 4)
        assert summary.total_sent == 3


# ═══════════════════════════════════════════════════════════════════════════
# Maintenance
# ═══════════════════════════════════════════════════════════════════════════

class TestMaintenance:

    def test_backfill_fills_missing_days_once(self):
        aggregator, _ = _seeded()

        async def scenario():
            first = await aggregator.backfill_missing(days_back=3)
            second = await aggregator.backfill_missing(days_back=3)
            return first, second

        first, second = asyncio.run(scenario())
        assert first == [date(2024, 3, 8), date(2024, 3, 9), date(2024, 3, 10)]
        assert second == []

    def test_backfill_skips_existing(self):
        aggregator, _ = _seeded()

        async def scenario():
            await aggregator.recompute_day(date(2024, 3, 9))
            return await aggregator.backfill_missing(days_back=3)

        assert asyncio.run(scenario()) == [date(2024, 3, 8), date(2024, 3, 10)]

    def test_daily_collection_targets_yesterday(self):
        aggregator, analytics = _seeded()
        result = asyncio.run(aggregator.run_daily_collection())
        assert result.day == date(2024, 3, 9)
        assert result.success is True
        assert result.total_failed == 1

    def test_cleanup_old(self):
        aggregator, analytics = _seeded()

        async def scenario():
            await aggregator.collect_range(date(2024, 3, 7), date(2024, 3, 10))
            deleted = await aggregator.cleanup_old(retention_days=2)
            remaining = await analytics.existing_days(date(2024, 3, 1), date(2024, 3, 31))
            return deleted, remaining

        deleted, remaining = asyncio.run(scenario())
        assert deleted == 1
        assert remaining == {date(2024, 3, 8), date(2024, 3, 9), date(2024, 3, 10)}
