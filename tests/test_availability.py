"""
test_availability.py — Tests for channel availability and configuration.

Covers:
    • ChannelAvailabilityChecker filtering (configured, unknown, duplicates)
    • Settings.is_channel_configured / missing_channel_vars
    • validate_channel_configuration report (required vs optional channels)

Run with:
    pytest tests/test_availability.py -v
"""

from __future__ import annotations

from backend.app.core.config import Settings
from backend.app.notifications.availability import (
    ChannelAvailabilityChecker,
    validate_channel_configuration,
)
from backend.app.notifications.models import Channel


def _make_settings(**overrides) -> Settings:
    """Settings with every channel credential blank unless given."""
    values = dict(
        VAPID_PUBLIC_KEY=None,
        VAPID_PRIVATE_KEY=None,
        RESEND_API_KEY=None,
        NOTIFICATION_EMAIL=None,
        WHATSAPP_ACCESS_TOKEN=None,
        WHATSAPP_PHONE_NUMBER_ID=None,
        SMS_API_KEY=None,
        SMS_API_URL=None,
        SMS_ENABLED=False,
    )
    values.update(overrides)
    return Settings(_env_file=None, **values)


EMAIL_ONLY = dict(RESEND_API_KEY="re_test", NOTIFICATION_EMAIL="noreply@example.org")
PUSH = dict(VAPID_PUBLIC_KEY="BPub", VAPID_PRIVATE_KEY="priv")


# ═══════════════════════════════════════════════════════════════════════════
# Checker
# ═══════════════════════════════════════════════════════════════════════════

class TestChannelAvailabilityChecker:

    def test_only_configured_channels_available(self):
        checker = ChannelAvailabilityChecker(lambda c: c == "email")
        result = checker.filter(["email", "sms"])
        assert result.available == [Channel.EMAIL]
        assert result.unavailable == ["sms"]
        assert result.warnings == ["sms is not configured (missing credentials)"]

    def test_unknown_channel_warned(self):
        checker = ChannelAvailabilityChecker(lambda c: True)
        result = checker.filter(["email", "fax"])
        assert result.available == [Channel.EMAIL]
        assert result.unavailable == ["fax"]
        assert result.warnings == ["Unknown channel 'fax'"]

    def test_unknown_channel_never_reaches_predicate(self):
        seen = []
        checker = ChannelAvailabilityChecker(lambda c: seen.append(c) or True)
        checker.filter(["pigeon", "sms"])
        assert seen == ["sms"]

    def test_duplicates_collapsed(self):
        checker = ChannelAvailabilityChecker(lambda c: True)
        result = checker.filter(["email", "EMAIL", " email "])
        assert result.available == [Channel.EMAIL]

    def test_requested_order_kept(self):
        checker = ChannelAvailabilityChecker(lambda c: True)
        result = checker.filter(["sms", "web_push", "email"])
        assert result.available == [Channel.SMS, Channel.WEB_PUSH, Channel.EMAIL]

    def test_nothing_configured_is_empty(self):
        checker = ChannelAvailabilityChecker(lambda c: False)
        result = checker.filter(["email", "sms", "whatsapp"])
        assert result.is_empty
        assert len(result.warnings) == 3

    def test_empty_request(self):
        result = ChannelAvailabilityChecker(lambda c: True).filter([])
        assert result.is_empty
        assert result.warnings == []


# ═══════════════════════════════════════════════════════════════════════════
# Settings predicates
# ═══════════════════════════════════════════════════════════════════════════

class TestSettingsChannelConfig:

    def test_email_configured(self):
        settings = _make_settings(**EMAIL_ONLY)
        assert settings.is_channel_configured("email")
        assert not settings.is_channel_configured("web_push")

    def test_missing_vars_listed(self):
        settings = _make_settings(RESEND_API_KEY="re_test")
        assert settings.missing_channel_vars("email") == ["NOTIFICATION_EMAIL"]

    def test_sms_requires_enabled_flag(self):
        settings = _make_settings(SMS_API_KEY="k", SMS_API_URL="https://sms.example.org/send")
        assert not settings.is_channel_configured("sms")
        enabled = _make_settings(
            SMS_API_KEY="k", SMS_API_URL="https://sms.example.org/send", SMS_ENABLED=True,
        )
        assert enabled.is_channel_configured("sms")

    def test_unknown_channel_never_configured(self):
        assert not _make_settings().is_channel_configured("fax")


# ═══════════════════════════════════════════════════════════════════════════
# Configuration report
# ═══════════════════════════════════════════════════════════════════════════

class TestValidateChannelConfiguration:

    def test_missing_required_channel_is_error(self):
        report = validate_channel_configuration(_make_settings(**EMAIL_ONLY))
        by_channel = {c["channel"]: c for c in report["channels"]}
        assert by_channel["web_push"]["status"] == "error"
        assert by_channel["web_push"]["required"] is True
        assert by_channel["email"]["status"] == "ok"
        assert report["status"] == "error"

    def test_missing_optional_channel_is_warning(self):
        report = validate_channel_configuration(_make_settings(**EMAIL_ONLY, **PUSH))
        by_channel = {c["channel"]: c for c in report["channels"]}
        assert by_channel["whatsapp"]["status"] == "warning"
        assert by_channel["sms"]["status"] == "warning"
        assert report["status"] == "warning"

    def test_everything_configured(self):
        settings = _make_settings(
            **EMAIL_ONLY, **PUSH,
            WHATSAPP_ACCESS_TOKEN="t", WHATSAPP_PHONE_NUMBER_ID="123",
            SMS_API_KEY="k", SMS_API_URL="https://sms.example.org/send", SMS_ENABLED=True,
        )
        report = validate_channel_configuration(settings)
        assert report["status"] == "ok"
        assert report["summary"] == {"total": 4, "configured": 4, "errors": 0, "warnings": 0}

    def test_configured_list(self):
        report = validate_channel_configuration(_make_settings(**EMAIL_ONLY))
        assert report["configured"] == ["email"]
