"""
stores.py — Persistence and directory interfaces used by the engine.

The delivery engine only talks to storage through these protocols. Two
implementations ship with the service:

    • In-memory (this module)       — development, tests, NOTIFY_STORAGE=memory
    • SQLAlchemy (persistence.py)   — NOTIFY_STORAGE=database

All ``save``/``upsert`` operations are keyed upserts, so re-saving the
same record or recomputing the same day never duplicates rows.
"""

from __future__ import annotations

import asyncio
from datetime import date, datetime
from typing import Dict, Iterable, List, Optional, Protocol, Set, Tuple

from backend.app.notifications.models import (
    EVERYONE_ROLE,
    DailyAnalytics,
    DeliveryRecord,
    DirectoryUser,
    InboxItem,
    PushSubscription,
)


# ═══════════════════════════════════════════════════════════════════════════
# Protocols
# ═══════════════════════════════════════════════════════════════════════════

class UserDirectory(Protocol):
    async def list_users(self, roles: Iterable[str]) -> List[DirectoryUser]:
        ...

    async def get_users(self, user_ids: Iterable[str]) -> List[DirectoryUser]:
        ...


class DeliveryStore(Protocol):
    async def save(self, record: DeliveryRecord) -> None:
        ...

    async def get(self, delivery_id: str) -> Optional[DeliveryRecord]:
        ...

    async def find_created_between(self, start: datetime, end: datetime) -> List[DeliveryRecord]:
        """Records with ``start <= created_at < end``."""
        ...

    async def list_recent(self, limit: int = 50) -> List[DeliveryRecord]:
        ...


class AnalyticsStore(Protocol):
    async def upsert(self, row: DailyAnalytics) -> None:
        ...

    async def get(self, day: date) -> Optional[DailyAnalytics]:
        ...

    async def find_between(self, start: date, end: date) -> List[DailyAnalytics]:
        """Rows with ``start <= day <= end``, newest first."""
        ...

    async def existing_days(self, start: date, end: date) -> Set[date]:
        ...

    async def delete_before(self, cutoff: date) -> int:
        ...


class TemplateStore(Protocol):
    async def increment_usage(self, template_id: str) -> None:
        ...


class PushSubscriptionStore(Protocol):
    async def get(self, user_id: str) -> Optional[PushSubscription]:
        ...

    async def save(self, subscription: PushSubscription) -> None:
        ...

    async def delete(self, user_id: str) -> bool:
        ...


class InboxStore(Protocol):
    async def add_many(self, items: List[InboxItem]) -> None:
        ...

    async def list_for_user(
        self,
        user_id: str,
        *,
        offset: int = 0,
        limit: int = 20,
        unread_only: bool = False,
        notification_type: Optional[str] = None,
    ) -> Tuple[List[InboxItem], int]:
        """A page of matching items, newest first, and the total match count."""
        ...

    async def count_unread(self, user_id: str) -> int:
        ...

    async def mark_read(self, user_id: str, item_id: str) -> Optional[InboxItem]:
        """None when the item does not exist or belongs to someone else."""
        ...

    async def mark_all_read(self, user_id: str) -> int:
        ...


# ═══════════════════════════════════════════════════════════════════════════
# In-memory implementations
# ═══════════════════════════════════════════════════════════════════════════

class InMemoryUserDirectory:
    """Static directory, seeded at construction or via ``add``."""

    def __init__(self, users: Optional[Iterable[DirectoryUser]] = None):
        self._users: Dict[str, DirectoryUser] = {}
        for user in users or []:
            self.add(user)

    def add(self, user: DirectoryUser) -> None:
        self._users[user.user_id] = user

    async def list_users(self, roles: Iterable[str]) -> List[DirectoryUser]:
        wanted = {r.lower() for r in roles}
        if EVERYONE_ROLE in wanted:
            return list(self._users.values())
        return [u for u in self._users.values() if (u.role or "").lower() in wanted]

    async def get_users(self, user_ids: Iterable[str]) -> List[DirectoryUser]:
        found = []
        seen = set()
        for user_id in user_ids:
            if user_id in seen:
                continue
            seen.add(user_id)
            user = self._users.get(user_id)
            if user is not None:
                found.append(user)
        return found


class InMemoryDeliveryStore:
    """
    Keeps DeliveryRecords as serialised dicts, so callers cannot mutate a
    stored record by holding on to the object they saved.
    """

    def __init__(self):
        self._records: Dict[str, dict] = {}
        self._lock = asyncio.Lock()
        self.save_calls = 0

    async def save(self, record: DeliveryRecord) -> None:
        async with self._lock:
            self.save_calls += 1
            self._records[record.id] = record.to_dict()

    async def get(self, delivery_id: str) -> Optional[DeliveryRecord]:
        data = self._records.get(delivery_id)
        return DeliveryRecord.from_dict(data) if data else None

    async def find_created_between(self, start: datetime, end: datetime) -> List[DeliveryRecord]:
        records = [DeliveryRecord.from_dict(d) for d in self._records.values()]
        matched = [r for r in records if start <= r.created_at < end]
        return sorted(matched, key=lambda r: (r.created_at, r.id))

    async def list_recent(self, limit: int = 50) -> List[DeliveryRecord]:
        records = [DeliveryRecord.from_dict(d) for d in self._records.values()]
        records.sort(key=lambda r: r.created_at, reverse=True)
        return records[:limit]

    def __len__(self) -> int:
        return len(self._records)


class InMemoryAnalyticsStore:
    def __init__(self):
        self._rows: Dict[date, dict] = {}

    async def upsert(self, row: DailyAnalytics) -> None:
        self._rows[row.day] = row.to_dict()

    async def get(self, day: date) -> Optional[DailyAnalytics]:
        data = self._rows.get(day)
        return DailyAnalytics.from_dict(data) if data else None

    async def find_between(self, start: date, end: date) -> List[DailyAnalytics]:
        days = sorted((d for d in self._rows if start <= d <= end), reverse=True)
        return [DailyAnalytics.from_dict(self._rows[d]) for d in days]

    async def existing_days(self, start: date, end: date) -> Set[date]:
        return {d for d in self._rows if start <= d <= end}

    async def delete_before(self, cutoff: date) -> int:
        stale = [d for d in self._rows if d < cutoff]
        for d in stale:
            del self._rows[d]
        return len(stale)


class InMemoryTemplateStore:
    def __init__(self):
        self.usage: Dict[str, int] = {}

    async def increment_usage(self, template_id: str) -> None:
        self.usage[template_id] = self.usage.get(template_id, 0) + 1


class InMemoryPushSubscriptionStore:
    def __init__(self):
        self._subscriptions: Dict[str, PushSubscription] = {}

    async def get(self, user_id: str) -> Optional[PushSubscription]:
        return self._subscriptions.get(user_id)

    async def save(self, subscription: PushSubscription) -> None:
        self._subscriptions[subscription.user_id] = subscription

    async def delete(self, user_id: str) -> bool:
        return self._subscriptions.pop(user_id, None) is not None


class InMemoryInboxStore:
    """Items kept as serialised dicts, like InMemoryDeliveryStore."""

    def __init__(self):
        self._items: Dict[str, dict] = {}

    async def add_many(self, items: List[InboxItem]) -> None:
        for item in items:
            self._items[item.id] = item.to_dict()

    def _for_user(self, user_id: str) -> List[InboxItem]:
        return [InboxItem.from_dict(d) for d in self._items.values() if d["user_id"] == user_id]

    async def list_for_user(
        self,
        user_id: str,
        *,
        offset: int = 0,
        limit: int = 20,
        unread_only: bool = False,
        notification_type: Optional[str] = None,
    ) -> Tuple[List[InboxItem], int]:
        items = self._for_user(user_id)
        if unread_only:
            items = [i for i in items if not i.read]
        if notification_type:
            items = [i for i in items if i.notification_type == notification_type]
        items.sort(key=lambda i: (i.created_at, i.id), reverse=True)
        return items[offset:offset + limit], len(items)

    async def count_unread(self, user_id: str) -> int:
        return sum(1 for i in self._for_user(user_id) if not i.read)

    async def mark_read(self, user_id: str, item_id: str) -> Optional[InboxItem]:
        data = self._items.get(item_id)
        if data is None or data["user_id"] != user_id:
            return None
        data["read"] = True
        return InboxItem.from_dict(data)

    async def mark_all_read(self, user_id: str) -> int:
        marked = 0
        for data in self._items.values():
            if data["user_id"] == user_id and not data["read"]:
                data["read"] = True
                marked += 1
        return marked

    def __len__(self) -> int:
        return len(self._items)
