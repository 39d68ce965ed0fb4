"""
Pydantic schemas for the notification API.

Separated from the route handlers so they are reusable across the
codebase (background workers, tests).
"""

from __future__ import annotations

from datetime import date
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator


def _clean_list(values: Optional[List[str]]) -> Optional[List[str]]:
    if values is None:
        return None
    return [v.strip() for v in values if v and v.strip()]


# ---------------------------------------------------------------------------
# Request schemas
# ---------------------------------------------------------------------------

class SendNotificationRequest(BaseModel):
    """Full control over one send: content, channels and audience."""
    title: str = Field(..., min_length=1, max_length=200, examples=["New campaign: Winter Relief"])
    body: str = Field(..., min_length=1, max_length=2000,
                      examples=["Help us distribute 500 blankets this winter."])
    channels: List[str] = Field(
        ..., min_length=1, examples=[["web_push", "email"]],
        description="web_push / email / whatsapp / sms",
    )
    target_roles: List[str] = Field(
        default_factory=list, examples=[["donor", "volunteer"]],
        description="Roles to reach; 'everyone' reaches all users",
    )
    user_ids: Optional[List[str]] = Field(
        None, description="Explicit recipients; when set, roles are informational",
    )
    sender_id: Optional[str] = Field(None, examples=["admin-1"])
    template_id: Optional[str] = Field(None)
    metadata: Dict[str, Any] = Field(default_factory=dict, examples=[{"url": "/campaigns/42"}])

    @field_validator("channels", "target_roles", "user_ids")
    @classmethod
    def strip_values(cls, values: Optional[List[str]]) -> Optional[List[str]]:
        return _clean_list(values)


class _PayloadFields(BaseModel):
    title: str = Field(..., min_length=1, max_length=200)
    body: str = Field(..., min_length=1, max_length=2000)
    url: Optional[str] = Field(None, examples=["/donations/123"])
    type: Optional[str] = Field(
        None, max_length=64, examples=["collection_request"],
        description="Inbox category shown next to the notification",
    )
    channels: Optional[List[str]] = Field(
        None, description="Omit to use the configured default channels",
    )
    sender_id: Optional[str] = None
    template_id: Optional[str] = None


class NotifyUsersRequest(_PayloadFields):
    user_ids: List[str] = Field(..., min_length=1, examples=[["user-1", "user-2"]])


class NotifyRolesRequest(_PayloadFields):
    roles: List[str] = Field(..., min_length=1, examples=[["admin", "moderator"]])


class PushKeys(BaseModel):
    p256dh: str = Field(..., min_length=1)
    auth: str = Field(..., min_length=1)


class PushSubscriptionRequest(BaseModel):
    """Browser PushSubscription as produced by ``subscription.toJSON()``."""
    user_id: str = Field(..., min_length=1)
    endpoint: str = Field(..., min_length=1, examples=["https://fcm.googleapis.com/fcm/send/abc"])
    keys: PushKeys
    user_agent: Optional[str] = None


class InboxItemRequest(BaseModel):
    """An in-app notification for one user, delivered through no channel."""
    title: str = Field(..., min_length=1, max_length=200)
    body: str = Field(..., min_length=1, max_length=2000)
    url: Optional[str] = Field(None, examples=["/notifications"])
    type: Optional[str] = Field(None, max_length=64)


class RecomputeRequest(BaseModel):
    day: date = Field(..., examples=["2024-01-15"])


class BackfillRequest(BaseModel):
    days_back: int = Field(30, ge=1, le=365)


class RangeJobRequest(BaseModel):
    """Recompute ``[start, end]`` in the background."""
    start: date
    end: date


# ---------------------------------------------------------------------------
# Response schemas
# ---------------------------------------------------------------------------

class ChannelCountsResponse(BaseModel):
    sent: int
    failed: int


class SendResponse(BaseModel):
    """Send result summary."""
    success: bool
    delivery_id: Optional[str]
    total_users: int
    total_sent: int
    total_failed: int
    results: Dict[str, ChannelCountsResponse]
    warnings: List[str] = Field(default_factory=list)
