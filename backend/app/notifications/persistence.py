"""
persistence.py — SQLAlchemy implementations of the notification stores.

Tables:
    notification_users           recipient directory (synced from the identity provider)
    notification_deliveries      one row per DeliveryRecord; recipients kept as JSON
    notification_daily_analytics one row per UTC day
    notification_templates       template usage counters
    push_subscriptions           one browser subscription per user
    notification_inbox           in-app notifications, one row per (send, recipient)

Delivery recipients are stored as a JSON document rather than a child
table: a record is written once, read whole, and never queried by
attempt.

Writes use ``session.merge`` so ``save``/``upsert`` are keyed upserts on
every dialect (asyncpg in production, aiosqlite in tests).
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    Integer,
    String,
    Text,
    delete,
    func,
    select,
    update,
)
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import Mapped, mapped_column

from backend.app.core.database import Base
from backend.app.notifications.models import (
    EVERYONE_ROLE,
    ChannelCounts,
    DailyAnalytics,
    DeliveryRecord,
    DeliveryState,
    DirectoryUser,
    InboxItem,
    PushSubscription,
    RecipientEntry,
    empty_channel_stats,
)

logger = logging.getLogger(__name__)


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; everything stored is UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# ═══════════════════════════════════════════════════════════════════════════
# ORM rows
# ═══════════════════════════════════════════════════════════════════════════

class UserRow(Base):
    __tablename__ = "notification_users"

    user_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), default="")
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    phone: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    role: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)

    def to_user(self) -> DirectoryUser:
        return DirectoryUser(
            user_id=self.user_id, name=self.name,
            email=self.email, phone=self.phone, role=self.role,
        )


class DeliveryRow(Base):
    __tablename__ = "notification_deliveries"

    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    state: Mapped[str] = mapped_column(String(16))
    title: Mapped[str] = mapped_column(String(255))
    body: Mapped[str] = mapped_column(Text)
    requested_channels: Mapped[List[str]] = mapped_column(JSON, default=list)
    target_roles: Mapped[List[str]] = mapped_column(JSON, default=list)
    sender_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    metadata_json: Mapped[Dict[str, Any]] = mapped_column("metadata", JSON, default=dict)
    template_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    total_sent: Mapped[int] = mapped_column(Integer, default=0)
    total_failed: Mapped[int] = mapped_column(Integer, default=0)
    recipients: Mapped[List[Dict[str, Any]]] = mapped_column(JSON, default=list)

    @classmethod
    def from_record(cls, record: DeliveryRecord) -> "DeliveryRow":
        return cls(
            id=record.id,
            created_at=record.created_at,
            completed_at=record.completed_at,
            state=record.state.value,
            title=record.title,
            body=record.body,
            requested_channels=list(record.requested_channels),
            target_roles=list(record.target_roles),
            sender_id=record.sender_id,
            metadata_json=dict(record.metadata),
            template_id=record.template_id,
            total_sent=record.total_sent,
            total_failed=record.total_failed,
            recipients=[r.to_dict() for r in record.recipients],
        )

    def to_record(self) -> DeliveryRecord:
        return DeliveryRecord(
            id=self.id,
            created_at=_aware(self.created_at),
            completed_at=_aware(self.completed_at),
            state=DeliveryState(self.state),
            title=self.title,
            body=self.body,
            requested_channels=list(self.requested_channels or []),
            target_roles=list(self.target_roles or []),
            sender_id=self.sender_id,
            metadata=dict(self.metadata_json or {}),
            template_id=self.template_id,
            total_sent=self.total_sent,
            total_failed=self.total_failed,
            recipients=[RecipientEntry.from_dict(r) for r in self.recipients or []],
        )


class DailyAnalyticsRow(Base):
    __tablename__ = "notification_daily_analytics"

    day: Mapped[date] = mapped_column(Date, primary_key=True)
    total_sent: Mapped[int] = mapped_column(Integer, default=0)
    total_failed: Mapped[int] = mapped_column(Integer, default=0)
    channel_stats: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)
    role_stats: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)

    @classmethod
    def from_analytics(cls, row: DailyAnalytics) -> "DailyAnalyticsRow":
        return cls(
            day=row.day,
            total_sent=row.total_sent,
            total_failed=row.total_failed,
            channel_stats={k: v.to_dict() for k, v in row.channel_stats.items()},
            role_stats={k: v.to_dict() for k, v in row.role_stats.items()},
        )

    def to_analytics(self) -> DailyAnalytics:
        channel_stats = empty_channel_stats()
        for key, value in (self.channel_stats or {}).items():
            channel_stats[key] = ChannelCounts.from_dict(value)
        return DailyAnalytics(
            day=self.day,
            total_sent=self.total_sent,
            total_failed=self.total_failed,
            channel_stats=channel_stats,
            role_stats={
                k: ChannelCounts.from_dict(v)
                for k, v in sorted((self.role_stats or {}).items())
            },
        )


class TemplateRow(Base):
    __tablename__ = "notification_templates"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), default="")
    usage_count: Mapped[int] = mapped_column(Integer, default=0)
    last_used_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)


class PushSubscriptionRow(Base):
    __tablename__ = "push_subscriptions"

    user_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    endpoint: Mapped[str] = mapped_column(Text)
    p256dh: Mapped[str] = mapped_column(String(255))
    auth: Mapped[str] = mapped_column(String(255))
    user_agent: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))

    def to_subscription(self) -> PushSubscription:
        return PushSubscription(
            user_id=self.user_id, endpoint=self.endpoint,
            p256dh=self.p256dh, auth=self.auth,
            user_agent=self.user_agent, created_at=_aware(self.created_at),
        )


class InboxRow(Base):
    __tablename__ = "notification_inbox"

    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), index=True)
    title: Mapped[str] = mapped_column(String(255))
    body: Mapped[str] = mapped_column(Text)
    url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    notification_type: Mapped[Optional[str]] = mapped_column("type", String(64), nullable=True)
    delivery_id: Mapped[Optional[str]] = mapped_column(String(32), nullable=True, index=True)
    read: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)

    @classmethod
    def from_item(cls, item: InboxItem) -> "InboxRow":
        return cls(
            id=item.id, user_id=item.user_id, title=item.title, body=item.body,
            url=item.url, notification_type=item.notification_type,
            delivery_id=item.delivery_id, read=item.read, created_at=item.created_at,
        )

    def to_item(self) -> InboxItem:
        return InboxItem(
            id=self.id, user_id=self.user_id, title=self.title, body=self.body,
            url=self.url, notification_type=self.notification_type,
            delivery_id=self.delivery_id, read=bool(self.read),
            created_at=_aware(self.created_at),
        )


# ═══════════════════════════════════════════════════════════════════════════
# Stores
# ═══════════════════════════════════════════════════════════════════════════

class _SqlStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory


class SqlUserDirectory(_SqlStore):
    async def add(self, user: DirectoryUser) -> None:
        async with self._session_factory() as session:
            await session.merge(UserRow(
                user_id=user.user_id, name=user.name,
                email=user.email, phone=user.phone, role=user.role,
            ))
            await session.commit()

    async def list_users(self, roles: Iterable[str]) -> List[DirectoryUser]:
        wanted = {r.lower() for r in roles}
        if not wanted:
            return []
        stmt = select(UserRow).order_by(UserRow.user_id)
        if EVERYONE_ROLE not in wanted:
            stmt = stmt.where(func.lower(UserRow.role).in_(wanted))
        async with self._session_factory() as session:
            rows = (await session.scalars(stmt)).all()
        return [row.to_user() for row in rows]

    async def get_users(self, user_ids: Iterable[str]) -> List[DirectoryUser]:
        ids = list(dict.fromkeys(user_ids))
        if not ids:
            return []
        async with self._session_factory() as session:
            rows = (await session.scalars(select(UserRow).where(UserRow.user_id.in_(ids)))).all()
        by_id = {row.user_id: row.to_user() for row in rows}
        return [by_id[i] for i in ids if i in by_id]


class SqlDeliveryStore(_SqlStore):
    async def save(self, record: DeliveryRecord) -> None:
        async with self._session_factory() as session:
            await session.merge(DeliveryRow.from_record(record))
            await session.commit()

    async def get(self, delivery_id: str) -> Optional[DeliveryRecord]:
        async with self._session_factory() as session:
            row = await session.get(DeliveryRow, delivery_id)
        return row.to_record() if row else None

    async def find_created_between(self, start: datetime, end: datetime) -> List[DeliveryRecord]:
        stmt = (
            select(DeliveryRow)
            .where(DeliveryRow.created_at >= start, DeliveryRow.created_at < end)
            .order_by(DeliveryRow.created_at, DeliveryRow.id)
        )
        async with self._session_factory() as session:
            rows = (await session.scalars(stmt)).all()
        return [row.to_record() for row in rows]

    async def list_recent(self, limit: int = 50) -> List[DeliveryRecord]:
        stmt = select(DeliveryRow).order_by(DeliveryRow.created_at.desc()).limit(limit)
        async with self._session_factory() as session:
            rows = (await session.scalars(stmt)).all()
        return [row.to_record() for row in rows]


class SqlAnalyticsStore(_SqlStore):
    async def upsert(self, row: DailyAnalytics) -> None:
        async with self._session_factory() as session:
            await session.merge(DailyAnalyticsRow.from_analytics(row))
            await session.commit()

    async def get(self, day: date) -> Optional[DailyAnalytics]:
        async with self._session_factory() as session:
            row = await session.get(DailyAnalyticsRow, day)
        return row.to_analytics() if row else None

    async def find_between(self, start: date, end: date) -> List[DailyAnalytics]:
        stmt = (
            select(DailyAnalyticsRow)
            .where(DailyAnalyticsRow.day >= start, DailyAnalyticsRow.day <= end)
            .order_by(DailyAnalyticsRow.day.desc())
        )
        async with self._session_factory() as session:
            rows = (await session.scalars(stmt)).all()
        return [row.to_analytics() for row in rows]

    async def existing_days(self, start: date, end: date) -> Set[date]:
        stmt = select(DailyAnalyticsRow.day).where(
            DailyAnalyticsRow.day >= start, DailyAnalyticsRow.day <= end,
        )
        async with self._session_factory() as session:
            return set((await session.scalars(stmt)).all())

    async def delete_before(self, cutoff: date) -> int:
        async with self._session_factory() as session:
            result = await session.execute(
                delete(DailyAnalyticsRow).where(DailyAnalyticsRow.day < cutoff)
            )
            await session.commit()
        return result.rowcount or 0


class SqlTemplateStore(_SqlStore):
    async def increment_usage(self, template_id: str) -> None:
        async with self._session_factory() as session:
            row = await session.get(TemplateRow, template_id)
            if row is None:
                logger.warning("Template %s not found, creating usage counter", template_id)
                row = TemplateRow(id=template_id, usage_count=0)
                session.add(row)
            row.usage_count = (row.usage_count or 0) + 1
            row.last_used_at = datetime.now(timezone.utc)
            await session.commit()

    async def get_usage(self, template_id: str) -> int:
        async with self._session_factory() as session:
            row = await session.get(TemplateRow, template_id)
        return row.usage_count if row else 0


class SqlPushSubscriptionStore(_SqlStore):
    async def get(self, user_id: str) -> Optional[PushSubscription]:
        async with self._session_factory() as session:
            row = await session.get(PushSubscriptionRow, user_id)
        return row.to_subscription() if row else None

    async def save(self, subscription: PushSubscription) -> None:
        async with self._session_factory() as session:
            await session.merge(PushSubscriptionRow(
                user_id=subscription.user_id,
                endpoint=subscription.endpoint,
                p256dh=subscription.p256dh,
                auth=subscription.auth,
                user_agent=subscription.user_agent,
                created_at=subscription.created_at,
            ))
            await session.commit()

    async def delete(self, user_id: str) -> bool:
        async with self._session_factory() as session:
            result = await session.execute(
                delete(PushSubscriptionRow).where(PushSubscriptionRow.user_id == user_id)
            )
            await session.commit()
        return bool(result.rowcount)


class SqlInboxStore(_SqlStore):
    async def add_many(self, items: List[InboxItem]) -> None:
        if not items:
            return
        async with self._session_factory() as session:
            session.add_all([InboxRow.from_item(item) for item in items])
            await session.commit()

    async def list_for_user(
        self,
        user_id: str,
        *,
        offset: int = 0,
        limit: int = 20,
        unread_only: bool = False,
        notification_type: Optional[str] = None,
    ) -> Tuple[List[InboxItem], int]:
        conditions = [InboxRow.user_id == user_id]
        if unread_only:
            conditions.append(InboxRow.read.is_(False))
        if notification_type:
            conditions.append(InboxRow.notification_type == notification_type)
        stmt = (
            select(InboxRow)
            .where(*conditions)
            .order_by(InboxRow.created_at.desc(), InboxRow.id.desc())
            .offset(offset)
            .limit(limit)
        )
        async with self._session_factory() as session:
            rows = (await session.scalars(stmt)).all()
            total = await session.scalar(select(func.count(InboxRow.id)).where(*conditions))
        return [row.to_item() for row in rows], total or 0

    async def count_unread(self, user_id: str) -> int:
        stmt = select(func.count(InboxRow.id)).where(
            InboxRow.user_id == user_id, InboxRow.read.is_(False),
        )
        async with self._session_factory() as session:
            return (await session.scalar(stmt)) or 0

    async def mark_read(self, user_id: str, item_id: str) -> Optional[InboxItem]:
        async with self._session_factory() as session:
            row = await session.get(InboxRow, item_id)
            if row is None or row.user_id != user_id:
                return None
            row.read = True
            await session.commit()
            return row.to_item()

    async def mark_all_read(self, user_id: str) -> int:
        async with self._session_factory() as session:
            result = await session.execute(
                update(InboxRow)
                .where(InboxRow.user_id == user_id, InboxRow.read.is_(False))
                .values(read=True)
            )
            await session.commit()
        return result.rowcount or 0
