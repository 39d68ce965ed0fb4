"""
Structured logging for the notification service.

Every log line can carry two kinds of context:

    request   bound by the middleware for the lifetime of one HTTP call
              (request_id, client_ip, endpoint, method)
    delivery  passed per call through ``extra=`` by the delivery engine
              (notification_id, channel, recipient_id, attempt, ...)

Production emits one JSON object per line with the delivery fields grouped
under ``"delivery"``; development gets a coloured single-line format.
Recipient e-mail addresses and phone numbers are masked before either
formatter sees the message unless ``LOG_REDACT_CONTACTS`` is off.

Usage:
    from backend.app.core.logging_config import setup_logging, get_logger

    setup_logging()
    logger = get_logger(__name__)
    logger.info("Dispatching", extra={"notification_id": "NTF-...", "channel": "sms"})
"""

from __future__ import annotations

import json
import logging
import re
import sys
from contextvars import ContextVar, Token
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from backend.app.core.config import settings

_request_context: ContextVar[Dict[str, Any]] = ContextVar(
    "request_context", default={}
)

DELIVERY_FIELDS = (
    "notification_id", "channel", "recipient_id", "attempt",
    "recipient_count", "day",
)
HTTP_FIELDS = ("duration_ms", "status_code", "endpoint")

_EMAIL_RE = re.compile(r"\b([A-Za-z0-9._%+-])[A-Za-z0-9._%+-]*@([A-Za-z0-9.-]+\.[A-Za-z]{2,})\b")
_PHONE_RE = re.compile(r"(?<![\w-])\+?\d[\d ]{7,}(\d{2})\b")


# ═══════════════════════════════════════════════════════════════════════════
# Request context
# ═══════════════════════════════════════════════════════════════════════════

def bind_request_context(**fields: Any) -> Token:
    """Bind request-scoped fields; hand the token back to ``reset_request_context``."""
    return _request_context.set(fields)


def reset_request_context(token: Token) -> None:
    _request_context.reset(token)


def get_request_context() -> Dict[str, Any]:
    return _request_context.get()


# ═══════════════════════════════════════════════════════════════════════════
# Contact redaction
# ═══════════════════════════════════════════════════════════════════════════

def redact_contacts(text: str) -> str:
    """
    Mask e-mail addresses and phone numbers in ``text``.

    ``asha@example.com`` becomes ``a***@example.com`` and
    ``+919876543210`` becomes ``***10``; the domain and the last two
    digits survive so operators can still tell recipients apart.
    """
    text = _EMAIL_RE.sub(r"\1***@\2", text)
    return _PHONE_RE.sub(r"***\1", text)


class ContactRedactionFilter(logging.Filter):
    """Rewrites the rendered message of each record through ``redact_contacts``."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        redacted = redact_contacts(message)
        if redacted != message:
            record.msg = redacted
            record.args = None
        return True


# ═══════════════════════════════════════════════════════════════════════════
# Formatters
# ═══════════════════════════════════════════════════════════════════════════

def _pick(record: logging.LogRecord, names) -> Dict[str, Any]:
    return {name: getattr(record, name) for name in names if hasattr(record, name)}


class JSONFormatter(logging.Formatter):
    """One JSON object per line for the log shipper."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "location": f"{record.module}.{record.funcName}:{record.lineno}",
        }

        request = get_request_context()
        if request:
            entry["request"] = request

        delivery = _pick(record, DELIVERY_FIELDS)
        if delivery:
            entry["delivery"] = delivery
        entry.update(_pick(record, HTTP_FIELDS))

        if record.exc_info and record.exc_info[1]:
            entry["exception"] = {
                "type": type(record.exc_info[1]).__name__,
                "message": str(record.exc_info[1]),
            }

        return json.dumps(entry, default=str)


class PrettyFormatter(logging.Formatter):
    """
    Coloured console output for local development::

        09:14:02 INFO     [3f9a1c2e] <NTF-0A1B2C3D4E5F sms→u7 #2> notifications.orchestrator: ...
    """

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    @staticmethod
    def _delivery_tag(record: logging.LogRecord) -> str:
        parts = []
        notification_id = getattr(record, "notification_id", None)
        if notification_id:
            parts.append(notification_id)
        channel = getattr(record, "channel", None)
        if channel:
            recipient = getattr(record, "recipient_id", None)
            parts.append(f"{channel}→{recipient}" if recipient else str(channel))
        attempt = getattr(record, "attempt", None)
        if attempt:
            parts.append(f"#{attempt}")
        return f" <{' '.join(parts)}>" if parts else ""

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, self.RESET)
        request_id = get_request_context().get("request_id")
        prefix = f" [{request_id[:8]}]" if request_id else ""

        line = (
            f"{color}{self.formatTime(record, '%H:%M:%S')} {record.levelname:8s}{self.RESET}"
            f"{prefix}{self._delivery_tag(record)} {record.name}: {record.getMessage()}"
        )
        if record.exc_info and record.exc_info[1]:
            line += f"\n  {type(record.exc_info[1]).__name__}: {record.exc_info[1]}"
        return line


# ═══════════════════════════════════════════════════════════════════════════
# Setup
# ═══════════════════════════════════════════════════════════════════════════

def setup_logging(
    level: Optional[str] = None,
    *,
    json_output: Optional[bool] = None,
    redact: Optional[bool] = None,
) -> logging.Handler:
    """
    Install a single stdout handler on the root logger.

    Arguments default to ``LOG_LEVEL``, ``is_production`` and
    ``LOG_REDACT_CONTACTS``. Returns the installed handler.
    """
    root = logging.getLogger()
    root.setLevel(getattr(logging, (level or settings.LOG_LEVEL).upper(), logging.INFO))
    root.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    if json_output is None:
        json_output = settings.is_production
    if redact is None:
        redact = settings.LOG_REDACT_CONTACTS

    handler.setFormatter(JSONFormatter() if json_output else PrettyFormatter())
    if redact:
        handler.addFilter(ContactRedactionFilter())
    root.addHandler(handler)

    for noisy in ("uvicorn.access", "httpx", "httpcore", "sqlalchemy.engine"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    return handler


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
