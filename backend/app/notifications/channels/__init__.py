"""
channels — Per-channel senders.

Each sender exposes:
    check_eligibility(recipient) → reason | None
    send(recipient, payload)     → None (raises on failure)

Senders own an injected transport. Retry logic lives in the orchestrator.
"""

from backend.app.notifications.channels.base import ChannelSender
from backend.app.notifications.channels.email import EmailSender
from backend.app.notifications.channels.sms import SmsSender
from backend.app.notifications.channels.web_push import WebPushSender
from backend.app.notifications.channels.whatsapp import WhatsAppSender

__all__ = ["ChannelSender", "EmailSender", "SmsSender", "WebPushSender", "WhatsAppSender"]
