"""
FastAPI route: Multi-channel notification delivery.

Provides endpoints to:
    POST   /api/v1/notifications/send                      — send with full control
    POST   /api/v1/notifications/notify/users              — notify specific users
    POST   /api/v1/notifications/notify/roles              — notify by role
    GET    /api/v1/notifications/channels                  — channel configuration
    GET    /api/v1/notifications/history                   — recent deliveries
    GET    /api/v1/notifications/{delivery_id}             — one delivery record
    POST   /api/v1/notifications/push/subscriptions        — store a push subscription
    DELETE /api/v1/notifications/push/subscriptions/{uid}  — remove it
    GET    /api/v1/notifications/inbox/{uid}                — in-app inbox page
    POST   /api/v1/notifications/inbox/{uid}                — add an inbox item
    POST   /api/v1/notifications/inbox/{uid}/read-all       — mark everything read
    POST   /api/v1/notifications/inbox/{uid}/{id}/read      — mark one item read
"""

from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query

from backend.app.api.deps import get_notification_service
from backend.app.api.schemas import (
    InboxItemRequest,
    NotifyRolesRequest,
    NotifyUsersRequest,
    PushSubscriptionRequest,
    SendNotificationRequest,
    SendResponse,
)
from backend.app.core.config import settings
from backend.app.core.errors import NotFoundError, NotificationPreconditionError
from backend.app.notifications.availability import validate_channel_configuration
from backend.app.notifications.models import NotificationPayload, NotificationRequest, SendResult
from backend.app.notifications.orchestrator import NotificationService

router = APIRouter(prefix="/api/v1/notifications", tags=["notifications"])


# ---------------------------------------------------------------------------
# Helper Functions
# ---------------------------------------------------------------------------

def _to_response(result: SendResult) -> SendResponse:
    """Raise on precondition failure, otherwise summarise the send."""
    if result.error:
        raise NotificationPreconditionError(result.error, warnings=result.warnings)
    record = result.record
    return SendResponse(
        success=result.success,
        delivery_id=result.delivery_id,
        total_users=result.total_users,
        total_sent=record.total_sent if record else 0,
        total_failed=record.total_failed if record else 0,
        results={k: v.to_dict() for k, v in result.results.items()},
        warnings=result.warnings,
    )


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@router.post(
    "/send",
    response_model=SendResponse,
    summary="Send a notification",
    description=(
        "Filters the requested channels to configured ones, resolves recipients "
        "by user id or role, and delivers through every available channel."
    ),
)
async def send_notification(
    request: SendNotificationRequest,
    service: NotificationService = Depends(get_notification_service),
):
    result = await service.send_notification(NotificationRequest(
        title=request.title,
        body=request.body,
        channels=request.channels,
        target_roles=request.target_roles,
        sender_id=request.sender_id,
        metadata=request.metadata,
        template_id=request.template_id,
        user_ids=request.user_ids,
    ))
    return _to_response(result)


@router.post("/notify/users", response_model=SendResponse, summary="Notify specific users")
async def notify_users(
    request: NotifyUsersRequest,
    service: NotificationService = Depends(get_notification_service),
):
    result = await service.notify_users(
        request.user_ids,
        NotificationPayload(title=request.title, body=request.body, url=request.url),
        request.channels,
        sender_id=request.sender_id,
        template_id=request.template_id,
        notification_type=request.type,
    )
    return _to_response(result)


@router.post("/notify/roles", response_model=SendResponse, summary="Notify users by role")
async def notify_roles(
    request: NotifyRolesRequest,
    service: NotificationService = Depends(get_notification_service),
):
    result = await service.notify_by_role(
        request.roles,
        NotificationPayload(title=request.title, body=request.body, url=request.url),
        request.channels,
        sender_id=request.sender_id,
        template_id=request.template_id,
        notification_type=request.type,
    )
    return _to_response(result)


@router.get("/channels", summary="Channel configuration status")
async def list_channels(
    service: NotificationService = Depends(get_notification_service),
) -> Dict[str, Any]:
    report = validate_channel_configuration(settings)
    report["service"] = service.describe()
    return report


@router.get("/history", summary="Recent delivery records")
async def delivery_history(
    limit: int = Query(20, ge=1, le=200),
    service: NotificationService = Depends(get_notification_service),
) -> Dict[str, Any]:
    records = await service.list_recent_deliveries(limit)
    return {"count": len(records), "deliveries": [r.to_dict() for r in records]}


@router.post("/push/subscriptions", status_code=201, summary="Store a push subscription")
async def subscribe_push(
    request: PushSubscriptionRequest,
    service: NotificationService = Depends(get_notification_service),
) -> Dict[str, Any]:
    subscription = await service.subscribe_push(
        request.user_id,
        {"endpoint": request.endpoint, "keys": request.keys.model_dump()},
        user_agent=request.user_agent,
    )
    return subscription.to_dict()


@router.delete("/push/subscriptions/{user_id}", summary="Remove a push subscription")
async def unsubscribe_push(
    user_id: str,
    service: NotificationService = Depends(get_notification_service),
) -> Dict[str, Any]:
    if not await service.unsubscribe_push(user_id):
        raise NotFoundError("PushSubscription", user_id=user_id)
    return {"user_id": user_id, "removed": True}


# ---------------------------------------------------------------------------
# In-app inbox
# ---------------------------------------------------------------------------

@router.get("/inbox/{user_id}", summary="A user's in-app notifications")
async def list_inbox(
    user_id: str,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    unread_only: bool = Query(False),
    notification_type: Optional[str] = Query(None, alias="type"),
    service: NotificationService = Depends(get_notification_service),
) -> Dict[str, Any]:
    inbox = await service.list_inbox(
        user_id, page=page, limit=limit,
        unread_only=unread_only, notification_type=notification_type,
    )
    return inbox.to_dict()


@router.post("/inbox/{user_id}", status_code=201, summary="Add an in-app notification")
async def create_inbox_item(
    user_id: str,
    request: InboxItemRequest,
    service: NotificationService = Depends(get_notification_service),
) -> Dict[str, Any]:
    item = await service.create_notification(
        user_id,
        NotificationPayload(title=request.title, body=request.body, url=request.url),
        notification_type=request.type,
    )
    return item.to_dict()


@router.post("/inbox/{user_id}/read-all", summary="Mark every inbox item read")
async def mark_all_read(
    user_id: str,
    service: NotificationService = Depends(get_notification_service),
) -> Dict[str, Any]:
    return {"user_id": user_id, "marked": await service.mark_all_read(user_id)}


@router.post("/inbox/{user_id}/{item_id}/read", summary="Mark one inbox item read")
async def mark_read(
    user_id: str,
    item_id: str,
    service: NotificationService = Depends(get_notification_service),
) -> Dict[str, Any]:
    item = await service.mark_read(user_id, item_id)
    if item is None:
        raise NotFoundError("InboxItem", id=item_id)
    return item.to_dict()


@router.get("/{delivery_id}", summary="One delivery record")
async def get_delivery(
    delivery_id: str,
    service: NotificationService = Depends(get_notification_service),
) -> Dict[str, Any]:
    record = await service.get_delivery(delivery_id)
    if record is None:
        raise NotFoundError("DeliveryRecord", id=delivery_id)
    return record.to_dict()
