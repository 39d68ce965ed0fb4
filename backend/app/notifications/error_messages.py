"""
User-facing error translation.

Transport errors are technical ("HTTP 410 from fcm.googleapis.com",
"getaddrinfo ENOTFOUND api.resend.com"). Operators reading delivery
history get a short readable sentence instead; the raw message only goes
to the logs.
"""

from __future__ import annotations

import asyncio
from typing import Optional

from backend.app.notifications.errors import IneligibleRecipientError, RetryError
from backend.app.notifications.retry import error_status_code, is_retryable_error

GENERIC_FAILURE = "Delivery failed. Please try again later."

_MESSAGE_RULES = (
    (("invalid registration", "not registered", "unsubscribed", "expired subscription"),
     "Recipient's device is no longer registered"),
    (("timeout", "timed out"),
     "The delivery service timed out"),
    (("rate limit", "too many requests"),
     "The delivery service is rate limiting requests"),
    (("unauthorized", "forbidden", "invalid api key", "authentication"),
     "The delivery service rejected our credentials"),
    (("invalid phone", "invalid number", "not a valid phone"),
     "The recipient's phone number was rejected"),
    (("invalid email", "invalid address", "not a valid email"),
     "The recipient's email address was rejected"),
    (("getaddrinfo", "enotfound", "network", "connection"),
     "Could not reach the delivery service"),
    (("service unavailable",),
     "The delivery service is temporarily unavailable"),
)


def _translate_status(status: int) -> Optional[str]:
    if status in (404, 410):
        return "Recipient's device is no longer registered"
    if status == 408:
        return "The delivery service timed out"
    if status == 429:
        return "The delivery service is rate limiting requests"
    if status in (401, 403):
        return "The delivery service rejected our credentials"
    if status >= 500:
        return "The delivery service is temporarily unavailable"
    if status == 400:
        return "The delivery service rejected the message"
    return None


def translate_error(exc: BaseException) -> str:
    """Map an exception raised while sending to an operator-readable message."""
    attempts = None
    if isinstance(exc, RetryError):
        attempts = exc.attempts
        exc = exc.last_error

    if isinstance(exc, IneligibleRecipientError):
        return exc.reason

    message = _match(exc)
    if attempts and attempts > 1 and is_retryable_error(exc):
        message = f"{message} (gave up after {attempts} attempts)"
    return message


def _match(exc: BaseException) -> str:
    status = error_status_code(exc)
    if status is not None:
        translated = _translate_status(status)
        if translated:
            return translated

    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
        return "The delivery service timed out"

    text = str(exc).lower()
    for needles, translated in _MESSAGE_RULES:
        if any(n in text for n in needles):
            return translated
    return GENERIC_FAILURE
