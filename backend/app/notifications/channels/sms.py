"""
sms.py — SMS delivery channel.

Plain text, one segment: ``"{title}: {body} - {sender}"`` truncated to the
gateway's message length. Numbers are normalised to E.164 with the default
country code before they reach the gateway.
"""

from __future__ import annotations

import logging
from typing import Optional

from backend.app.notifications.channels.base import ChannelSender, Transport, contact_missing
from backend.app.notifications.models import Channel, NotificationPayload, RecipientEntry
from backend.app.notifications.phone import format_e164

logger = logging.getLogger(__name__)


def build_sms_text(payload: NotificationPayload, max_length: int = 160) -> str:
    text = f"{payload.title}: {payload.body}"
    if payload.sender_name:
        text += f" - {payload.sender_name}"
    if len(text) > max_length:
        text = text[: max_length - 3].rstrip() + "..."
    return text


class SmsSender(ChannelSender):
    channel = Channel.SMS

    def __init__(
        self,
        transport: Transport,
        *,
        country_code: Optional[str] = None,
        max_length: int = 160,
    ):
        super().__init__(transport)
        self.country_code = country_code
        self.max_length = max_length

    async def check_eligibility(self, recipient: RecipientEntry) -> Optional[str]:
        if not recipient.phone:
            return contact_missing("no phone number on file")
        if format_e164(recipient.phone, self.country_code) is None:
            return contact_missing("phone number is not valid")
        return None

    async def send(self, recipient: RecipientEntry, payload: NotificationPayload) -> None:
        await self._require_eligible(recipient)
        number = format_e164(recipient.phone, self.country_code)
        await self.transport.deliver(
            number, {"text": build_sms_text(payload, self.max_length)},
        )
        logger.debug(
            "[SMS] %s → %s", payload.title, recipient.user_id,
            extra={"channel": self.channel.value, "recipient_id": recipient.user_id},
        )
