"""
test_channels.py — Tests for channel senders, transports and service wiring.

Covers:
    • Eligibility rules for web push, email, WhatsApp and SMS
    • Message rendering per channel (escaping, truncation, markdown)
    • HTTP transports against httpx.MockTransport
    • WebPushTransport error mapping (pywebpush patched)
    • build_notification_service for simulation and live modes

Run with:
    pytest tests/test_channels.py -v
"""

from __future__ import annotations

import asyncio
import json
from unittest.mock import MagicMock, patch

import httpx
import pytest
from pywebpush import WebPushException

from backend.app.core.config import Settings
from backend.app.notifications.channels import (
    EmailSender,
    SmsSender,
    WebPushSender,
    WhatsAppSender,
)
from backend.app.notifications.channels.email import EXCLUDED_INTERNAL
from backend.app.notifications.channels.sms import build_sms_text
from backend.app.notifications.channels.transports import (
    HttpSmsTransport,
    ResendEmailTransport,
    SimulatedTransport,
    WebPushTransport,
    WhatsAppCloudTransport,
)
from backend.app.notifications.errors import IneligibleRecipientError, TransportError
from backend.app.notifications.factory import build_notification_service
from backend.app.notifications.models import (
    Channel,
    NotificationPayload,
    PushSubscription,
    RecipientEntry,
)
from backend.app.notifications.stores import InMemoryPushSubscriptionStore


# ═══════════════════════════════════════════════════════════════════════════
# Test Fixtures
# ═══════════════════════════════════════════════════════════════════════════

def _make_recipient(uid="u1", *, email=None, phone=None):
    return RecipientEntry(user_id=uid, name="Test User", email=email, phone=phone, role="donor")


def _make_payload(**overrides):
    values = dict(
        title="Food Kit Drive",
        body="Help us pack 500 kits this Friday.",
        url="https://kmwf.org/campaigns/12",
        sender_name="KMWF",
    )
    values.update(overrides)
    return NotificationPayload(**values)


def _mock_client(handler):
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


# ═══════════════════════════════════════════════════════════════════════════
# Email
# ═══════════════════════════════════════════════════════════════════════════

class TestEmailSender:

    def _sender(self):
        return EmailSender(SimulatedTransport(Channel.EMAIL), internal_domain="kmwf.org")

    def test_missing_address(self):
        reason = asyncio.run(self._sender().check_eligibility(_make_recipient()))
        assert reason == "Contact info not available: no email address on file"

    def test_malformed_address(self):
        reason = asyncio.run(self._sender().check_eligibility(_make_recipient(email="not-an-email")))
        assert reason.startswith("Contact info not available")

    def test_internal_domain_excluded(self):
        reason = asyncio.run(self._sender().check_eligibility(_make_recipient(email="ops@kmwf.org")))
        assert reason == EXCLUDED_INTERNAL

    def test_subdomain_lookalike_allowed(self):
        reason = asyncio.run(
            self._sender().check_eligibility(_make_recipient(email="me@notkmwf.org"))
        )
        assert reason is None

    def test_no_internal_domain_configured(self):
        sender = EmailSender(SimulatedTransport(Channel.EMAIL))
        assert asyncio.run(sender.check_eligibility(_make_recipient(email="ops@kmwf.org"))) is None

    def test_render_escapes_html(self):
        message = self._sender().render(_make_payload(title="<b>Urgent</b>", body="A & B"))
        assert message["subject"] == "<b>Urgent</b>"
        assert "&lt;b&gt;Urgent&lt;/b&gt;" in message["html"]
        assert "A &amp; B" in message["html"]

    def test_render_text_body(self):
        text = self._sender().render(_make_payload())["text"]
        assert "View details: https://kmwf.org/campaigns/12" in text
        assert text.endswith("KMWF")

    def test_send_delivers_to_address(self):
        sender = self._sender()
        asyncio.run(sender.send(_make_recipient(email=" donor@example.com "), _make_payload()))
        assert sender.transport.delivered[0]["destination"] == "donor@example.com"

    def test_send_refuses_ineligible(self):
        sender = self._sender()
        with pytest.raises(IneligibleRecipientError):
            asyncio.run(sender.send(_make_recipient(), _make_payload()))
        assert sender.transport.calls == []


# ═══════════════════════════════════════════════════════════════════════════
# SMS
# ═══════════════════════════════════════════════════════════════════════════

class TestSmsSender:

    def _sender(self, max_length=160):
        return SmsSender(SimulatedTransport(Channel.SMS), country_code="91", max_length=max_length)

    def test_missing_phone(self):
        reason = asyncio.run(self._sender().check_eligibility(_make_recipient()))
        assert reason == "Contact info not available: no phone number on file"

    def test_invalid_phone(self):
        reason = asyncio.run(self._sender().check_eligibility(_make_recipient(phone="12345")))
        assert reason == "Contact info not available: phone number is not valid"

    def test_send_uses_e164(self):
        sender = self._sender()
        asyncio.run(sender.send(_make_recipient(phone="98765 43210"), _make_payload()))
        delivered = sender.transport.delivered[0]
        assert delivered["destination"] == "+919876543210"
        assert delivered["message"]["text"] == (
            "Food Kit Drive: Help us pack 500 kits this Friday. - KMWF"
        )

    def test_text_truncated(self):
        text = build_sms_text(_make_payload(body="x" * 300), max_length=160)
        assert len(text) == 160
        assert text.endswith("...")

    def test_text_without_sender(self):
        assert build_sms_text(_make_payload(sender_name="")) == (
            "Food Kit Drive: Help us pack 500 kits this Friday."
        )


# ═══════════════════════════════════════════════════════════════════════════
# WhatsApp
# ═══════════════════════════════════════════════════════════════════════════

class TestWhatsAppSender:

    def _sender(self):
        return WhatsAppSender(SimulatedTransport(Channel.WHATSAPP), country_code="91")

    def test_missing_phone(self):
        reason = asyncio.run(self._sender().check_eligibility(_make_recipient()))
        assert reason.startswith("Contact info not available")

    def test_digits_without_plus(self):
        sender = self._sender()
        asyncio.run(sender.send(_make_recipient(phone="+91 98765 43210"), _make_payload()))
        assert sender.transport.delivered[0]["destination"] == "919876543210"

    def test_render(self):
        message = self._sender().render(_make_payload())
        assert message["text"] == (
            "*Food Kit Drive*\n\nHelp us pack 500 kits this Friday.\n\n"
            "https://kmwf.org/campaigns/12\n\n_KMWF_"
        )
        assert message["preview_url"] is True

    def test_render_without_url(self):
        message = self._sender().render(_make_payload(url=None))
        assert message["preview_url"] is False
        assert "https://" not in message["text"]


# ═══════════════════════════════════════════════════════════════════════════
# Web push
# ═══════════════════════════════════════════════════════════════════════════

class TestWebPushSender:

    def _sender(self):
        store = InMemoryPushSubscriptionStore()
        asyncio.run(store.save(PushSubscription(
            user_id="u1", endpoint="https://push.example/u1", p256dh="p", auth="a",
        )))
        return WebPushSender(SimulatedTransport(Channel.WEB_PUSH), store)

    def test_unsubscribed_user(self):
        reason = asyncio.run(self._sender().check_eligibility(_make_recipient("u2")))
        assert reason == "Contact info not available: no push subscription registered"

    def test_subscribed_user(self):
        assert asyncio.run(self._sender().check_eligibility(_make_recipient("u1"))) is None

    def test_render_defaults_url(self):
        message = self._sender().render(_make_payload(url=None))
        assert message["data"] == {"url": "/"}
        assert message["title"] == "Food Kit Drive"

    def test_send_to_endpoint(self):
        sender = self._sender()
        asyncio.run(sender.send(_make_recipient("u1"), _make_payload()))
        assert sender.transport.delivered[0]["destination"] == "https://push.example/u1"

    def test_send_without_subscription(self):
        with pytest.raises(IneligibleRecipientError):
            asyncio.run(self._sender().send(_make_recipient("u2"), _make_payload()))


# ═══════════════════════════════════════════════════════════════════════════
# Transports
# ═══════════════════════════════════════════════════════════════════════════

class TestSimulatedTransport:

    def test_scripted_errors_then_success(self):
        transport = SimulatedTransport(Channel.SMS)
        transport.script("+911", TransportError("boom", 503))

        async def scenario():
            with pytest.raises(TransportError):
                await transport.deliver("+911", {"text": "hi"})
            return await transport.deliver("+911", {"text": "hi"})

        assert asyncio.run(scenario())["mode"] == "simulated"
        assert transport.calls_for("+911") == 2
        assert len(transport.delivered) == 1


class TestHttpTransports:

    def test_resend_request(self):
        seen = {}

        def handler(request):
            seen["auth"] = request.headers["Authorization"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"id": "email-1"})

        transport = ResendEmailTransport(
            "re_key", "noreply@kmwf.org", from_name="KMWF", client=_mock_client(handler),
        )
        response = asyncio.run(transport.deliver(
            "donor@example.com", {"subject": "Hi", "text": "t", "html": "<p>t</p>"},
        ))
        assert response == {"id": "email-1"}
        assert seen["auth"] == "Bearer re_key"
        assert seen["body"]["from"] == "KMWF <noreply@kmwf.org>"
        assert seen["body"]["to"] == ["donor@example.com"]

    def test_error_status_raises_transport_error(self):
        transport = ResendEmailTransport(
            "re_key", "noreply@kmwf.org",
            client=_mock_client(lambda request: httpx.Response(503, text="unavailable")),
        )
        with pytest.raises(TransportError) as info:
            asyncio.run(transport.deliver("a@b.com", {"subject": "s", "text": "t", "html": "h"}))
        assert info.value.status_code == 503

    def test_whatsapp_request(self):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"messages": [{"id": "wamid.1"}]})

        transport = WhatsAppCloudTransport(
            "token", "12345", api_url="https://graph.example/v18.0/", client=_mock_client(handler),
        )
        asyncio.run(transport.deliver("919876543210", {"text": "hello", "preview_url": False}))
        assert seen["url"] == "https://graph.example/v18.0/12345/messages"
        assert seen["body"]["to"] == "919876543210"
        assert seen["body"]["text"] == {"preview_url": False, "body": "hello"}

    def test_sms_request(self):
        seen = {}

        def handler(request):
            seen["body"] = json.loads(request.content)
            return httpx.Response(202, text="queued")

        transport = HttpSmsTransport(
            "https://sms.example/send", "key", sender_id="KMWF", client=_mock_client(handler),
        )
        response = asyncio.run(transport.deliver("+919876543210", {"text": "hello"}))
        assert response == {"status_code": 202}
        assert seen["body"] == {"to": "+919876543210", "message": "hello", "sender": "KMWF"}


class TestWebPushTransport:

    def test_gone_subscription_maps_status(self):
        transport = WebPushTransport("private-key", "mailto:ops@kmwf.org")
        error = WebPushException("Push failed: 410 Gone", response=MagicMock(status_code=410))

        with patch(
            "backend.app.notifications.channels.transports.webpush", side_effect=error,
        ):
            with pytest.raises(TransportError) as info:
                asyncio.run(transport.deliver(
                    {"endpoint": "https://push.example/u1", "keys": {"p256dh": "p", "auth": "a"}},
                    {"title": "t"},
                ))
        assert info.value.status_code == 410

    def test_success(self):
        transport = WebPushTransport("private-key", "mailto:ops@kmwf.org")
        with patch(
            "backend.app.notifications.channels.transports.webpush",
            return_value=MagicMock(status_code=201),
        ) as mock_push:
            result = asyncio.run(transport.deliver({"endpoint": "e", "keys": {}}, {"title": "t"}))
        assert result == {"status_code": 201}
        assert mock_push.call_args.kwargs["vapid_claims"] == {"sub": "mailto:ops@kmwf.org"}


# ═══════════════════════════════════════════════════════════════════════════
# Service wiring
# ═══════════════════════════════════════════════════════════════════════════

class TestBuildNotificationService:

    def test_simulation_mode_wires_every_channel(self):
        settings = Settings(_env_file=None, NOTIFY_TRANSPORT_MODE="simulation", NOTIFY_STORAGE="memory")
        service = build_notification_service(settings)
        assert set(service.senders) == set(Channel)
        assert all(
            isinstance(s.transport, SimulatedTransport) for s in service.senders.values()
        )
        assert service.analytics is not None

    def test_live_mode_only_configured_channels(self):
        settings = Settings(
            _env_file=None,
            NOTIFY_TRANSPORT_MODE="live",
            NOTIFY_STORAGE="memory",
            VAPID_PUBLIC_KEY=None,
            VAPID_PRIVATE_KEY=None,
            RESEND_API_KEY="re_test",
            NOTIFICATION_EMAIL="noreply@kmwf.org",
            WHATSAPP_ACCESS_TOKEN=None,
            WHATSAPP_PHONE_NUMBER_ID=None,
            SMS_ENABLED=False,
        )
        service = build_notification_service(settings)
        assert list(service.senders) == [Channel.EMAIL]
        assert isinstance(service.senders[Channel.EMAIL].transport, ResendEmailTransport)
        asyncio.run(service.aclose())

    def test_retry_policy_from_settings(self):
        settings = Settings(_env_file=None, NOTIFY_RETRY_MAX_ATTEMPTS=5, NOTIFY_RETRY_BASE_DELAY=0.5)
        service = build_notification_service(settings)
        assert service.retry.policy.max_attempts == 5
        assert service.retry.policy.base_delay == 0.5
