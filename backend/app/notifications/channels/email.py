"""
email.py — Email delivery channel.

Eligibility:
    • recipient must have an email address
    • addresses on the organisation's own staff domain are excluded from
      broadcast email (staff get these through the admin dashboard)

═══════════════════════════════════════════════════════════════════════════
EMAIL TEMPLATE STRUCTURE
═══════════════════════════════════════════════════════════════════════════

    Subject: {title}
    Body:
        ┌─────────────────────────────────────────┐
        │  {organisation}                          │
        ├─────────────────────────────────────────┤
        │  {title}                                 │
        │  {body}                                  │
        │                                          │
        │  [View details]  (when a url is given)   │
        └─────────────────────────────────────────┘
"""

from __future__ import annotations

import html
import logging
from typing import Any, Dict, Optional

from backend.app.notifications.channels.base import ChannelSender, Transport, contact_missing
from backend.app.notifications.models import Channel, NotificationPayload, RecipientEntry

logger = logging.getLogger(__name__)

EXCLUDED_INTERNAL = "Excluded: internal staff address is not sent broadcast email"


def _build_text_body(payload: NotificationPayload) -> str:
    lines = [payload.title, "", payload.body]
    if payload.url:
        lines += ["", f"View details: {payload.url}"]
    if payload.sender_name:
        lines += ["", payload.sender_name]
    return "\n".join(lines)


def _build_html_body(payload: NotificationPayload) -> str:
    """Render a simple HTML email body."""
    title = html.escape(payload.title)
    body = html.escape(payload.body).replace("\n", "<br>")
    org = html.escape(payload.sender_name)
    button = ""
    if payload.url:
        button = (
            f'<p><a href="{html.escape(payload.url, quote=True)}" '
            f'style="background:#2E7D32;color:#fff;padding:10px 18px;'
            f'border-radius:4px;text-decoration:none">View details</a></p>'
        )
    return (
        '<div style="font-family:Arial,sans-serif;max-width:600px;margin:auto">'
        f'<div style="background:#2E7D32;color:#fff;padding:12px 16px">{org}</div>'
        f'<div style="padding:16px"><h2>{title}</h2><p>{body}</p>{button}</div>'
        "</div>"
    )


class EmailSender(ChannelSender):
    channel = Channel.EMAIL

    def __init__(self, transport: Transport, *, internal_domain: Optional[str] = None):
        super().__init__(transport)
        self.internal_domain = (internal_domain or "").lower().lstrip("@")

    def _is_internal(self, address: str) -> bool:
        if not self.internal_domain:
            return False
        return address.lower().rsplit("@", 1)[-1] == self.internal_domain

    async def check_eligibility(self, recipient: RecipientEntry) -> Optional[str]:
        address = (recipient.email or "").strip()
        if not address or "@" not in address:
            return contact_missing("no email address on file")
        if self._is_internal(address):
            return EXCLUDED_INTERNAL
        return None

    def render(self, payload: NotificationPayload) -> Dict[str, Any]:
        return {
            "subject": payload.title,
            "text": _build_text_body(payload),
            "html": _build_html_body(payload),
        }

    async def send(self, recipient: RecipientEntry, payload: NotificationPayload) -> None:
        await self._require_eligible(recipient)
        await self.transport.deliver(recipient.email.strip(), self.render(payload))
        logger.debug(
            "[EMAIL] %s → %s", payload.title, recipient.user_id,
            extra={"channel": self.channel.value, "recipient_id": recipient.user_id},
        )
