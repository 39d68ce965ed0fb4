"""
whatsapp.py — Chat-app messaging channel (WhatsApp Cloud API).

Same phone rules as SMS, but the Cloud API wants the number as bare
digits (no ``+``). Messages use WhatsApp's lightweight markdown:

    *{title}*

    {body}

    {url}
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from backend.app.notifications.channels.base import ChannelSender, Transport, contact_missing
from backend.app.notifications.models import Channel, NotificationPayload, RecipientEntry
from backend.app.notifications.phone import format_e164

logger = logging.getLogger(__name__)


class WhatsAppSender(ChannelSender):
    channel = Channel.WHATSAPP

    def __init__(self, transport: Transport, *, country_code: Optional[str] = None):
        super().__init__(transport)
        self.country_code = country_code

    async def check_eligibility(self, recipient: RecipientEntry) -> Optional[str]:
        if not recipient.phone:
            return contact_missing("no phone number on file")
        if format_e164(recipient.phone, self.country_code) is None:
            return contact_missing("phone number is not valid")
        return None

    def render(self, payload: NotificationPayload) -> Dict[str, Any]:
        parts = [f"*{payload.title}*", payload.body]
        if payload.url:
            parts.append(payload.url)
        if payload.sender_name:
            parts.append(f"_{payload.sender_name}_")
        return {"text": "\n\n".join(parts), "preview_url": bool(payload.url)}

    async def send(self, recipient: RecipientEntry, payload: NotificationPayload) -> None:
        await self._require_eligible(recipient)
        digits = format_e164(recipient.phone, self.country_code).lstrip("+")
        await self.transport.deliver(digits, self.render(payload))
        logger.debug(
            "[WHATSAPP] %s → %s", payload.title, recipient.user_id,
            extra={"channel": self.channel.value, "recipient_id": recipient.user_id},
        )
