"""Abstract base for channel senders."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Dict, Optional, Protocol

from backend.app.notifications.errors import IneligibleRecipientError
from backend.app.notifications.models import Channel, NotificationPayload, RecipientEntry

CONTACT_MISSING = "Contact info not available"


class Transport(Protocol):
    """External collaborator that actually moves bytes."""

    async def deliver(self, destination: Any, message: Dict[str, Any]) -> Dict[str, Any]:
        ...

    async def aclose(self) -> None:
        ...


class ChannelSender(ABC):
    """
    One delivery channel.

    Senders decide *whether* a recipient can be reached and *what* to send;
    the injected transport does the network I/O. Retries belong to the
    orchestrator's RetryExecutor, never to a sender.
    """

    channel: Channel

    def __init__(self, transport: Transport):
        self.transport = transport

    @abstractmethod
    async def check_eligibility(self, recipient: RecipientEntry) -> Optional[str]:
        """Return a user-facing reason if the recipient cannot be reached, else None."""
        raise NotImplementedError

    @abstractmethod
    async def send(self, recipient: RecipientEntry, payload: NotificationPayload) -> None:
        """Deliver one message. Raises on failure."""
        raise NotImplementedError

    async def _require_eligible(self, recipient: RecipientEntry) -> None:
        reason = await self.check_eligibility(recipient)
        if reason:
            raise IneligibleRecipientError(reason)

    async def aclose(self) -> None:
        await self.transport.aclose()


def contact_missing(detail: str) -> str:
    return f"{CONTACT_MISSING}: {detail}"
