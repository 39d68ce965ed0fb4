"""
Channel Availability Checker.

Filters a requested channel list down to the channels that are both known
and configured, so the orchestrator never dispatches through a channel
with missing credentials.

Also produces the channel configuration report used at startup, by the
health probe and by ``GET /api/v1/notifications/channels``.

Usage:
    checker = ChannelAvailabilityChecker(settings.is_channel_configured)
    result = checker.filter(["email", "sms"])
    result.available     # [Channel.EMAIL]
    result.warnings      # ["sms is not configured (missing credentials)"]
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List

from backend.app.core.config import CHANNEL_ENV_VARS, Settings
from backend.app.notifications.models import Channel

logger = logging.getLogger(__name__)

# Channels the organisation cannot operate without
REQUIRED_CHANNELS = (Channel.WEB_PUSH, Channel.EMAIL)

CHANNEL_LABELS: Dict[Channel, str] = {
    Channel.WEB_PUSH: "Web Push Notifications",
    Channel.EMAIL: "Email Notifications",
    Channel.WHATSAPP: "WhatsApp Notifications",
    Channel.SMS: "SMS Notifications",
}


@dataclass
class AvailabilityResult:
    available: List[Channel] = field(default_factory=list)
    unavailable: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.available

    def to_dict(self) -> Dict[str, Any]:
        return {
            "available": [c.value for c in self.available],
            "unavailable": list(self.unavailable),
            "warnings": list(self.warnings),
        }


class ChannelAvailabilityChecker:
    """
    Pure filter over requested channel identifiers.

    Parameters
    ----------
    is_configured : callable
        ``is_configured(channel_value) -> bool``, normally
        ``Settings.is_channel_configured``.
    """

    def __init__(self, is_configured: Callable[[str], bool]):
        self._is_configured = is_configured

    def filter(self, requested: Iterable[str]) -> AvailabilityResult:
        result = AvailabilityResult()
        seen = set()

        for raw in requested:
            key = str(raw).strip().lower()
            if key in seen:
                continue
            seen.add(key)

            try:
                channel = Channel(key)
            except ValueError:
                result.unavailable.append(str(raw))
                result.warnings.append(f"Unknown channel '{raw}'")
                continue

            if self._is_configured(channel.value):
                result.available.append(channel)
            else:
                result.unavailable.append(channel.value)
                result.warnings.append(
                    f"{channel.value} is not configured (missing credentials)"
                )

        return result


# ═══════════════════════════════════════════════════════════════════════════
# Configuration report
# ═══════════════════════════════════════════════════════════════════════════

def validate_channel_configuration(settings: Settings) -> Dict[str, Any]:
    """
    Report which channels are configured.

    A missing required channel is an ``error``; a missing optional channel
    only a ``warning``. The overall ``status`` is the worst of the two.
    """
    channels = []
    for channel in Channel:
        missing = settings.missing_channel_vars(channel.value)
        required = channel in REQUIRED_CHANNELS
        if not missing:
            status = "ok"
        elif required:
            status = "error"
        else:
            status = "warning"
        channels.append({
            "channel": channel.value,
            "name": CHANNEL_LABELS[channel],
            "required": required,
            "env_vars": list(CHANNEL_ENV_VARS[channel.value]),
            "missing": missing,
            "configured": not missing,
            "status": status,
        })

    errors = [c for c in channels if c["status"] == "error"]
    warnings = [c for c in channels if c["status"] == "warning"]
    overall = "error" if errors else ("warning" if warnings else "ok")

    return {
        "status": overall,
        "configured": [c["channel"] for c in channels if c["configured"]],
        "channels": channels,
        "summary": {
            "total": len(channels),
            "configured": sum(1 for c in channels if c["configured"]),
            "errors": len(errors),
            "warnings": len(warnings),
        },
    }


def log_channel_configuration(settings: Settings) -> Dict[str, Any]:
    """Log the configuration report once, at startup."""
    report = validate_channel_configuration(settings)
    for entry in report["channels"]:
        if entry["status"] == "ok":
            logger.info("✅ %s configured", entry["name"])
        elif entry["status"] == "error":
            logger.error(
                "❌ %s not configured (missing %s)",
                entry["name"], ", ".join(entry["missing"]),
            )
        else:
            logger.warning(
                "⚠️ %s not configured (missing %s) — channel disabled",
                entry["name"], ", ".join(entry["missing"]),
            )
    return report
