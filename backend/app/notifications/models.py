"""
models.py — Shared data structures for the notification delivery engine.

Defines:
    • Channel          — closed set of delivery transports
    • AttemptStatus    — per-(recipient, channel) outcome
    • DeliveryState    — lifecycle of one send operation
    • DirectoryUser    — a user as returned by the recipient directory
    • NotificationPayload / NotificationRequest — what to send, to whom
    • ChannelAttempt   — one (recipient, channel) outcome
    • RecipientEntry   — one target user and their channel attempts
    • DeliveryRecord   — durable record of one send operation
    • DailyAnalytics   — recomputed per-day counters
    • SendResult       — what callers of the engine get back
    • PushSubscription — one browser push subscription per user
    • InboxItem / InboxPage — in-app notifications kept per user

═══════════════════════════════════════════════════════════════════════════
DELIVERY RECORD LIFECYCLE
═══════════════════════════════════════════════════════════════════════════

    building ──► dispatching ──► finalizing ──► done

    building     recipients resolved, one PENDING attempt per
                 (recipient, available channel)
    dispatching  attempts in flight; each moves PENDING → SENT or
                 PENDING → FAILED exactly once
    finalizing   totals computed, record persisted
    done         analytics recompute scheduled

Invariant once finalised:

    total_sent + total_failed == Σ len(recipient.channels)

and no attempt is left PENDING.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from backend.app.notifications.errors import InvalidTransitionError


# ═══════════════════════════════════════════════════════════════════════════
# Enums
# ═══════════════════════════════════════════════════════════════════════════

class Channel(str, Enum):
    """Available delivery channels."""
    WEB_PUSH = "web_push"
    EMAIL    = "email"
    WHATSAPP = "whatsapp"   # chat-app messaging
    SMS      = "sms"


class AttemptStatus(str, Enum):
    """Outcome of one recipient/channel pair."""
    PENDING = "pending"
    SENT    = "sent"
    FAILED  = "failed"


class DeliveryState(str, Enum):
    """Lifecycle of a DeliveryRecord."""
    BUILDING    = "building"
    DISPATCHING = "dispatching"
    FINALIZING  = "finalizing"
    DONE        = "done"


# Role that bypasses role filtering in recipient lookup
EVERYONE_ROLE = "everyone"


# ═══════════════════════════════════════════════════════════════════════════
# Helpers
# ═══════════════════════════════════════════════════════════════════════════

def _generate_id() -> str:
    return f"NTF-{uuid.uuid4().hex[:12].upper()}"


def _generate_inbox_id() -> str:
    return f"INB-{uuid.uuid4().hex[:12].upper()}"


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def success_rate(sent: int, failed: int) -> float:
    """sent / (sent + failed) × 100, 2 dp; 0.0 when there was no traffic."""
    total = sent + failed
    if total == 0:
        return 0.0
    return round(sent / total * 100, 2)


# ═══════════════════════════════════════════════════════════════════════════
# Inputs
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class DirectoryUser:
    """
    A user as resolved by the recipient directory.

    Attributes
    ----------
    user_id : str
        Identity-provider user id.
    name : str
        Display name.
    email : str | None
        Email address, if the user has one on file.
    phone : str | None
        Phone number in any format; channels normalise it.
    role : str | None
        Application role (admin, moderator, volunteer, donor, ...).
    """
    user_id: str
    name: str
    email: Optional[str] = None
    phone: Optional[str] = None
    role: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "name": self.name,
            "email": self.email,
            "phone": self.phone,
            "role": self.role,
        }


@dataclass
class NotificationPayload:
    """Already-composed content handed to every channel."""
    title: str
    body: str
    url: Optional[str] = None
    sender_name: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {"title": self.title, "body": self.body, "url": self.url}


@dataclass
class NotificationRequest:
    """
    One call into the delivery engine. Not persisted as such.

    ``channels`` holds raw identifiers; unknown ones are rejected by the
    availability checker rather than here. When ``user_ids`` is set the
    recipients are those users and ``target_roles`` is informational.
    """
    title: str
    body: str
    channels: List[str] = field(default_factory=list)
    target_roles: List[str] = field(default_factory=list)
    sender_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    template_id: Optional[str] = None
    user_ids: Optional[List[str]] = None

    @property
    def url(self) -> Optional[str]:
        return self.metadata.get("url")

    def payload(self, sender_name: str = "") -> NotificationPayload:
        return NotificationPayload(
            title=self.title,
            body=self.body,
            url=self.url,
            sender_name=sender_name,
        )


# ═══════════════════════════════════════════════════════════════════════════
# Delivery Record
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class ChannelAttempt:
    """Outcome of sending one notification to one recipient over one channel."""
    channel: Channel
    status: AttemptStatus = AttemptStatus.PENDING
    resolved_at: Optional[datetime] = None
    error: Optional[str] = None          # user-facing, never the raw message
    attempts: int = 0                    # transport invocations

    @property
    def is_resolved(self) -> bool:
        return self.status != AttemptStatus.PENDING

    def _resolve(self, status: AttemptStatus) -> None:
        if self.status != AttemptStatus.PENDING:
            raise InvalidTransitionError(self.channel.value, self.status.value, status.value)
        self.status = status
        self.resolved_at = _now()

    def mark_sent(self, attempts: int = 1) -> None:
        self._resolve(AttemptStatus.SENT)
        self.attempts = attempts
        self.error = None

    def mark_failed(self, error: str, attempts: int = 0) -> None:
        self._resolve(AttemptStatus.FAILED)
        self.attempts = attempts
        self.error = error

    def to_dict(self) -> Dict[str, Any]:
        return {
            "channel": self.channel.value,
            "status": self.status.value,
            "resolved_at": _iso(self.resolved_at),
            "error": self.error,
            "attempts": self.attempts,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChannelAttempt":
        return cls(
            channel=Channel(data["channel"]),
            status=AttemptStatus(data.get("status", "pending")),
            resolved_at=_parse_dt(data.get("resolved_at")),
            error=data.get("error"),
            attempts=data.get("attempts", 0),
        )


@dataclass
class RecipientEntry:
    """One target user within a DeliveryRecord."""
    user_id: str
    name: str = ""
    email: Optional[str] = None
    phone: Optional[str] = None
    role: Optional[str] = None
    channels: List[ChannelAttempt] = field(default_factory=list)

    @classmethod
    def for_user(cls, user: DirectoryUser, channels: List[Channel]) -> "RecipientEntry":
        return cls(
            user_id=user.user_id,
            name=user.name,
            email=user.email,
            phone=user.phone,
            role=user.role,
            channels=[ChannelAttempt(channel=c) for c in channels],
        )

    @property
    def is_reached(self) -> bool:
        """True if at least one channel succeeded."""
        return any(a.status == AttemptStatus.SENT for a in self.channels)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "name": self.name,
            "email": self.email,
            "phone": self.phone,
            "role": self.role,
            "channels": [a.to_dict() for a in self.channels],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RecipientEntry":
        return cls(
            user_id=data["user_id"],
            name=data.get("name", ""),
            email=data.get("email"),
            phone=data.get("phone"),
            role=data.get("role"),
            channels=[ChannelAttempt.from_dict(a) for a in data.get("channels", [])],
        )


@dataclass
class DeliveryRecord:
    """
    Durable record of one send operation.

    Created in ``building`` state, mutated in place while attempts resolve,
    persisted once at the end of the run. Never deleted by the engine.
    """
    title: str
    body: str
    requested_channels: List[str] = field(default_factory=list)
    target_roles: List[str] = field(default_factory=list)
    sender_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    template_id: Optional[str] = None
    recipients: List[RecipientEntry] = field(default_factory=list)
    total_sent: int = 0
    total_failed: int = 0
    state: DeliveryState = DeliveryState.BUILDING
    id: str = field(default_factory=_generate_id)
    created_at: datetime = field(default_factory=_now)
    completed_at: Optional[datetime] = None

    def iter_attempts(self):
        for recipient in self.recipients:
            for attempt in recipient.channels:
                yield recipient, attempt

    @property
    def attempt_count(self) -> int:
        return sum(len(r.channels) for r in self.recipients)

    @property
    def pending_count(self) -> int:
        return sum(1 for _, a in self.iter_attempts() if a.status == AttemptStatus.PENDING)

    def compute_totals(self) -> None:
        """Recount totals from the attempt list (never incrementally)."""
        sent = failed = 0
        for _, attempt in self.iter_attempts():
            if attempt.status == AttemptStatus.SENT:
                sent += 1
            elif attempt.status == AttemptStatus.FAILED:
                failed += 1
        self.total_sent = sent
        self.total_failed = failed

    def channel_counts(self) -> Dict[str, "ChannelCounts"]:
        """Per-channel sent/failed counts for this record."""
        counts: Dict[str, ChannelCounts] = {}
        for _, attempt in self.iter_attempts():
            bucket = counts.setdefault(attempt.channel.value, ChannelCounts())
            if attempt.status == AttemptStatus.SENT:
                bucket.sent += 1
            elif attempt.status == AttemptStatus.FAILED:
                bucket.failed += 1
        return counts

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "created_at": _iso(self.created_at),
            "completed_at": _iso(self.completed_at),
            "state": self.state.value,
            "title": self.title,
            "body": self.body,
            "requested_channels": list(self.requested_channels),
            "target_roles": list(self.target_roles),
            "sender_id": self.sender_id,
            "metadata": dict(self.metadata),
            "template_id": self.template_id,
            "total_sent": self.total_sent,
            "total_failed": self.total_failed,
            "recipients": [r.to_dict() for r in self.recipients],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DeliveryRecord":
        return cls(
            id=data["id"],
            created_at=_parse_dt(data["created_at"]),
            completed_at=_parse_dt(data.get("completed_at")),
            state=DeliveryState(data.get("state", "done")),
            title=data.get("title", ""),
            body=data.get("body", ""),
            requested_channels=list(data.get("requested_channels", [])),
            target_roles=list(data.get("target_roles", [])),
            sender_id=data.get("sender_id"),
            metadata=dict(data.get("metadata", {})),
            template_id=data.get("template_id"),
            total_sent=data.get("total_sent", 0),
            total_failed=data.get("total_failed", 0),
            recipients=[RecipientEntry.from_dict(r) for r in data.get("recipients", [])],
        )


# ═══════════════════════════════════════════════════════════════════════════
# Counters & Results
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class ChannelCounts:
    sent: int = 0
    failed: int = 0

    @property
    def success_rate(self) -> float:
        return success_rate(self.sent, self.failed)

    def to_dict(self) -> Dict[str, Any]:
        return {"sent": self.sent, "failed": self.failed}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChannelCounts":
        return cls(sent=int(data.get("sent", 0)), failed=int(data.get("failed", 0)))


def empty_channel_stats() -> Dict[str, ChannelCounts]:
    return {c.value: ChannelCounts() for c in Channel}


@dataclass
class DailyAnalytics:
    """
    One row per calendar day (UTC), rebuilt from DeliveryRecords.

    Contains no wall-clock fields, so recomputing a day over the same
    records yields an equal object.
    """
    day: date
    total_sent: int = 0
    total_failed: int = 0
    channel_stats: Dict[str, ChannelCounts] = field(default_factory=empty_channel_stats)
    role_stats: Dict[str, ChannelCounts] = field(default_factory=dict)

    @property
    def success_rate(self) -> float:
        return success_rate(self.total_sent, self.total_failed)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "date": self.day.isoformat(),
            "total_sent": self.total_sent,
            "total_failed": self.total_failed,
            "success_rate": self.success_rate,
            "channel_stats": {k: v.to_dict() for k, v in self.channel_stats.items()},
            "role_stats": {k: v.to_dict() for k, v in self.role_stats.items()},
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DailyAnalytics":
        channel_stats = empty_channel_stats()
        for key, value in data.get("channel_stats", {}).items():
            channel_stats[key] = ChannelCounts.from_dict(value)
        return cls(
            day=date.fromisoformat(data["date"]),
            total_sent=data.get("total_sent", 0),
            total_failed=data.get("total_failed", 0),
            channel_stats=channel_stats,
            role_stats={
                k: ChannelCounts.from_dict(v)
                for k, v in sorted(data.get("role_stats", {}).items())
            },
        )


@dataclass
class SendResult:
    """What ``send_notification`` returns to its caller."""
    success: bool
    results: Dict[str, ChannelCounts] = field(default_factory=dict)
    total_users: int = 0
    error: Optional[str] = None
    delivery_id: Optional[str] = None
    warnings: List[str] = field(default_factory=list)
    record: Optional[DeliveryRecord] = None

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "success": self.success,
            "results": {k: v.to_dict() for k, v in self.results.items()},
            "total_users": self.total_users,
            "delivery_id": self.delivery_id,
            "warnings": list(self.warnings),
        }
        if self.record is not None:
            d["total_sent"] = self.record.total_sent
            d["total_failed"] = self.record.total_failed
        if self.error:
            d["error"] = self.error
        return d


@dataclass
class PushSubscription:
    """Browser push subscription stored per user."""
    user_id: str
    endpoint: str
    p256dh: str
    auth: str
    user_agent: Optional[str] = None
    created_at: datetime = field(default_factory=_now)

    def subscription_info(self) -> Dict[str, Any]:
        """Shape expected by the web push library."""
        return {"endpoint": self.endpoint, "keys": {"p256dh": self.p256dh, "auth": self.auth}}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "endpoint": self.endpoint,
            "keys": {"p256dh": self.p256dh, "auth": self.auth},
            "user_agent": self.user_agent,
            "created_at": _iso(self.created_at),
        }


# ═══════════════════════════════════════════════════════════════════════════
# In-app inbox
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class InboxItem:
    """
    One in-app notification, as shown in a user's notification bell.

    Written once per recipient of every send (whatever its channel
    outcomes) and by ``create_notification``. Only ``read`` ever changes.
    """
    user_id: str
    title: str
    body: str
    url: Optional[str] = None
    notification_type: Optional[str] = None
    delivery_id: Optional[str] = None
    read: bool = False
    id: str = field(default_factory=_generate_inbox_id)
    created_at: datetime = field(default_factory=_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "title": self.title,
            "body": self.body,
            "url": self.url,
            "type": self.notification_type,
            "delivery_id": self.delivery_id,
            "read": self.read,
            "created_at": _iso(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "InboxItem":
        return cls(
            id=data["id"],
            user_id=data["user_id"],
            title=data.get("title", ""),
            body=data.get("body", ""),
            url=data.get("url"),
            notification_type=data.get("type"),
            delivery_id=data.get("delivery_id"),
            read=bool(data.get("read", False)),
            created_at=_parse_dt(data["created_at"]),
        )


@dataclass
class InboxPage:
    """One page of a user's inbox, newest first."""
    items: List[InboxItem]
    total: int
    page: int
    limit: int
    unread_count: int = 0

    @property
    def pages(self) -> int:
        return max(1, -(-self.total // self.limit))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "items": [item.to_dict() for item in self.items],
            "total": self.total,
            "page": self.page,
            "limit": self.limit,
            "pages": self.pages,
            "unread_count": self.unread_count,
        }
