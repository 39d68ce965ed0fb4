"""
Service wiring — builds a NotificationService from settings.

    NOTIFY_TRANSPORT_MODE=simulation  every channel gets a SimulatedTransport
    NOTIFY_TRANSPORT_MODE=live        configured channels get their real
                                      transport; unconfigured ones keep no
                                      sender at all

    NOTIFY_STORAGE=memory             in-process stores (lost on restart)
    NOTIFY_STORAGE=database           SQLAlchemy stores on DATABASE_URL
"""

from __future__ import annotations

import logging
from typing import Dict, Optional

from backend.app.core.config import Settings
from backend.app.notifications.analytics import AnalyticsAggregator
from backend.app.notifications.channels import (
    ChannelSender,
    EmailSender,
    SmsSender,
    WebPushSender,
    WhatsAppSender,
)
from backend.app.notifications.channels.base import Transport
from backend.app.notifications.channels.transports import (
    HttpSmsTransport,
    ResendEmailTransport,
    SimulatedTransport,
    WebPushTransport,
    WhatsAppCloudTransport,
)
from backend.app.notifications.models import Channel
from backend.app.notifications.orchestrator import NotificationService
from backend.app.notifications.retry import RetryExecutor, RetryPolicy
from backend.app.notifications.stores import (
    InMemoryAnalyticsStore,
    InMemoryDeliveryStore,
    InMemoryInboxStore,
    InMemoryPushSubscriptionStore,
    InMemoryTemplateStore,
    InMemoryUserDirectory,
)

logger = logging.getLogger(__name__)


def build_transports(settings: Settings) -> Dict[Channel, Transport]:
    if settings.NOTIFY_TRANSPORT_MODE != "live":
        return {channel: SimulatedTransport(channel) for channel in Channel}

    timeout = settings.NOTIFY_TRANSPORT_TIMEOUT
    transports: Dict[Channel, Transport] = {}
    if settings.is_channel_configured(Channel.WEB_PUSH.value):
        transports[Channel.WEB_PUSH] = WebPushTransport(
            settings.VAPID_PRIVATE_KEY, settings.VAPID_SUBJECT, timeout=timeout,
        )
    if settings.is_channel_configured(Channel.EMAIL.value):
        transports[Channel.EMAIL] = ResendEmailTransport(
            settings.RESEND_API_KEY,
            settings.NOTIFICATION_EMAIL,
            api_url=settings.RESEND_API_URL,
            from_name=settings.ORGANIZATION_NAME,
            timeout=timeout,
        )
    if settings.is_channel_configured(Channel.WHATSAPP.value):
        transports[Channel.WHATSAPP] = WhatsAppCloudTransport(
            settings.WHATSAPP_ACCESS_TOKEN,
            settings.WHATSAPP_PHONE_NUMBER_ID,
            api_url=settings.WHATSAPP_API_URL,
            timeout=timeout,
        )
    if settings.is_channel_configured(Channel.SMS.value):
        transports[Channel.SMS] = HttpSmsTransport(
            settings.SMS_API_URL,
            settings.SMS_API_KEY,
            sender_id=settings.SMS_SENDER_ID,
            timeout=timeout,
        )
    return transports


def build_senders(
    settings: Settings,
    transports: Dict[Channel, Transport],
    push_subscriptions,
) -> Dict[Channel, ChannelSender]:
    senders: Dict[Channel, ChannelSender] = {}
    for channel, transport in transports.items():
        if channel == Channel.WEB_PUSH:
            senders[channel] = WebPushSender(transport, push_subscriptions)
        elif channel == Channel.EMAIL:
            senders[channel] = EmailSender(
                transport, internal_domain=settings.NOTIFY_INTERNAL_EMAIL_DOMAIN,
            )
        elif channel == Channel.WHATSAPP:
            senders[channel] = WhatsAppSender(
                transport, country_code=settings.DEFAULT_COUNTRY_CODE,
            )
        elif channel == Channel.SMS:
            senders[channel] = SmsSender(
                transport,
                country_code=settings.DEFAULT_COUNTRY_CODE,
                max_length=settings.SMS_MAX_LENGTH,
            )
    return senders


def build_notification_service(
    settings: Settings,
    *,
    session_factory=None,
    transports: Optional[Dict[Channel, Transport]] = None,
) -> NotificationService:
    """Assemble the engine with the stores and transports the settings ask for."""
    if settings.NOTIFY_STORAGE == "database":
        from backend.app.core.database import get_session_factory
        from backend.app.notifications.persistence import (
            SqlAnalyticsStore,
            SqlDeliveryStore,
            SqlInboxStore,
            SqlPushSubscriptionStore,
            SqlTemplateStore,
            SqlUserDirectory,
        )

        factory = session_factory or get_session_factory()
        directory = SqlUserDirectory(factory)
        delivery_store = SqlDeliveryStore(factory)
        analytics_store = SqlAnalyticsStore(factory)
        template_store = SqlTemplateStore(factory)
        push_subscriptions = SqlPushSubscriptionStore(factory)
        inbox = SqlInboxStore(factory)
    else:
        directory = InMemoryUserDirectory()
        delivery_store = InMemoryDeliveryStore()
        analytics_store = InMemoryAnalyticsStore()
        template_store = InMemoryTemplateStore()
        push_subscriptions = InMemoryPushSubscriptionStore()
        inbox = InMemoryInboxStore()

    if transports is None:
        transports = build_transports(settings)
    senders = build_senders(settings, transports, push_subscriptions)

    service = NotificationService(
        senders=senders,
        directory=directory,
        delivery_store=delivery_store,
        is_configured=settings.is_channel_configured,
        analytics=AnalyticsAggregator(delivery_store, analytics_store),
        template_store=template_store,
        push_subscriptions=push_subscriptions,
        inbox=inbox,
        retry_executor=RetryExecutor(RetryPolicy.from_settings(settings)),
        max_concurrency=settings.NOTIFY_MAX_CONCURRENCY,
        transport_timeout=settings.NOTIFY_TRANSPORT_TIMEOUT,
        default_channels=settings.NOTIFY_DEFAULT_CHANNELS,
        sender_name=settings.ORGANIZATION_NAME,
    )
    logger.info(
        "Notification service ready: transport=%s storage=%s senders=%s",
        settings.NOTIFY_TRANSPORT_MODE, settings.NOTIFY_STORAGE,
        sorted(c.value for c in senders),
    )
    return service
