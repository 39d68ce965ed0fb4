"""
Domain exceptions raised inside the delivery engine.

Per-attempt failures never reach HTTP clients: the orchestrator turns each
one into a ChannelAttempt error string, and precondition failures come back
on the SendResult. The rest are mapped to HTTP responses by
``backend.app.core.errors.register_error_handlers``.
"""

from __future__ import annotations

from typing import Optional


class NotificationError(Exception):
    """Base class for delivery engine errors."""


class TransportError(NotificationError):
    """
    A transport call failed.

    ``status_code`` carries the HTTP status returned by the external
    service when there was one; the retry classifier reads it.
    """

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class IneligibleRecipientError(NotificationError):
    """The recipient lacks the contact data a channel needs. Never retried."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class RetryError(NotificationError):
    """An operation failed for good, after ``attempts`` invocations."""

    def __init__(self, attempts: int, last_error: BaseException):
        super().__init__(
            f"Operation failed after {attempts} attempt(s): {last_error}"
        )
        self.attempts = attempts
        self.last_error = last_error


class InvalidTransitionError(NotificationError):
    """A ChannelAttempt was resolved twice."""

    def __init__(self, channel: str, current: str, target: str):
        super().__init__(
            f"Cannot move {channel} attempt from '{current}' to '{target}'"
        )
        self.channel = channel
        self.current = current
        self.target = target


class FeatureDisabledError(NotificationError):
    """An optional part of the service (analytics, push subscriptions) was not wired in."""

    def __init__(self, feature: str):
        label = feature.replace("_", " ")
        verb = "are" if label.endswith("s") else "is"
        super().__init__(f"{label.capitalize()} {verb} not enabled")
        self.feature = feature
