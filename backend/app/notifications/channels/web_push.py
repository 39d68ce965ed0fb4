"""
web_push.py — Web push notification channel.

Delivery mechanism:
    • Web Push Protocol (RFC 8030) with VAPID authentication
    • Payload: JSON with title, body, icon and click-through URL
    • The browser's service worker displays it

A recipient is reachable only if their browser registered a push
subscription (endpoint + p256dh/auth keys), stored through
``NotificationService.subscribe_push``.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from backend.app.notifications.channels.base import ChannelSender, Transport, contact_missing
from backend.app.notifications.errors import IneligibleRecipientError
from backend.app.notifications.models import Channel, NotificationPayload, RecipientEntry

logger = logging.getLogger(__name__)


class WebPushSender(ChannelSender):
    channel = Channel.WEB_PUSH

    def __init__(self, transport: Transport, subscriptions: Any):
        super().__init__(transport)
        self.subscriptions = subscriptions

    async def check_eligibility(self, recipient: RecipientEntry) -> Optional[str]:
        subscription = await self.subscriptions.get(recipient.user_id)
        if subscription is None:
            return contact_missing("no push subscription registered")
        return None

    def render(self, payload: NotificationPayload) -> Dict[str, Any]:
        return {
            "title": payload.title,
            "body": payload.body,
            "icon": "/icons/icon-192x192.png",
            "badge": "/icons/badge-72x72.png",
            "data": {"url": payload.url or "/"},
        }

    async def send(self, recipient: RecipientEntry, payload: NotificationPayload) -> None:
        subscription = await self.subscriptions.get(recipient.user_id)
        if subscription is None:
            raise IneligibleRecipientError(contact_missing("no push subscription registered"))
        await self.transport.deliver(subscription.subscription_info(), self.render(payload))
        logger.debug(
            "[WEB_PUSH] %s → %s", payload.title, recipient.user_id,
            extra={"channel": self.channel.value, "recipient_id": recipient.user_id},
        )
