"""
transports.py — Thin adapters to the external delivery services.

Each transport implements ``deliver(destination, message)`` for one
provider and nothing else: no retries, no eligibility rules, no
formatting. Failures raise ``TransportError`` carrying the provider's HTTP
status so the retry classifier can tell a 503 from a 400.

═══════════════════════════════════════════════════════════════════════════
TRANSPORTS
═══════════════════════════════════════════════════════════════════════════

    SimulatedTransport      logs + records; scripted failures for dev/tests
    WebPushTransport        pywebpush (VAPID), run in a worker thread
    ResendEmailTransport    POST https://api.resend.com/emails
    WhatsAppCloudTransport  POST {graph}/{phone_number_id}/messages
    HttpSmsTransport        POST {SMS_API_URL} (generic JSON gateway)

``NOTIFY_TRANSPORT_MODE=simulation`` (the default) wires a
SimulatedTransport to every channel, so development never sends real
messages.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections import defaultdict, deque
from typing import Any, Deque, Dict, List, Optional

import httpx
from pywebpush import WebPushException, webpush

from backend.app.notifications.errors import TransportError
from backend.app.notifications.models import Channel

logger = logging.getLogger(__name__)


def _destination_key(destination: Any) -> str:
    if isinstance(destination, dict):
        return str(destination.get("endpoint", ""))
    return str(destination)


# ═══════════════════════════════════════════════════════════════════════════
# Simulation
# ═══════════════════════════════════════════════════════════════════════════

class SimulatedTransport:
    """
    Records every delivery instead of sending it.

    Failures can be scripted per destination: each call for that
    destination pops the next queued exception and raises it. Once the
    queue is empty, calls succeed.

        transport.script("+919876543210", TransportError("boom", 503))
        transport.fail_always("user@example.com", TransportError("bad", 400))
    """

    def __init__(self, channel: Channel):
        self.channel = channel
        self.calls: List[Dict[str, Any]] = []
        self.delivered: List[Dict[str, Any]] = []
        self._scripted: Dict[str, Deque[BaseException]] = defaultdict(deque)
        self._permanent: Dict[str, BaseException] = {}
        self.closed = False

    def script(self, destination: str, *errors: BaseException) -> None:
        self._scripted[destination].extend(errors)

    def fail_always(self, destination: str, error: BaseException) -> None:
        self._permanent[destination] = error

    def calls_for(self, destination: str) -> int:
        return sum(1 for c in self.calls if c["key"] == destination)

    async def deliver(self, destination: Any, message: Dict[str, Any]) -> Dict[str, Any]:
        key = _destination_key(destination)
        self.calls.append({"key": key, "message": message})

        if key in self._permanent:
            raise self._permanent[key]
        queue = self._scripted.get(key)
        if queue:
            raise queue.popleft()

        self.delivered.append({"destination": key, "message": message})
        logger.info(
            "[%s] simulated delivery → %s",
            self.channel.value.upper(), key,
            extra={"channel": self.channel.value},
        )
        return {"mode": "simulated", "destination": key}

    async def aclose(self) -> None:
        self.closed = True


# ═══════════════════════════════════════════════════════════════════════════
# HTTP transports
# ═══════════════════════════════════════════════════════════════════════════

class _HttpTransport:
    """Shared httpx client handling for the JSON-over-HTTP providers."""

    service: str = "http"

    def __init__(self, timeout: float = 15.0, client: Optional[httpx.AsyncClient] = None):
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def _post(self, url: str, body: Dict[str, Any], headers: Dict[str, str]) -> Dict[str, Any]:
        response = await self._client.post(url, json=body, headers=headers)
        if response.status_code >= 400:
            raise TransportError(
                f"{self.service} returned HTTP {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
            )
        try:
            return response.json()
        except ValueError:
            return {"status_code": response.status_code}

    async def aclose(self) -> None:
        await self._client.aclose()


class ResendEmailTransport(_HttpTransport):
    """Email through the Resend API."""

    service = "resend"

    def __init__(
        self,
        api_key: str,
        from_address: str,
        *,
        api_url: str = "https://api.resend.com/emails",
        from_name: str = "",
        timeout: float = 15.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        super().__init__(timeout, client)
        self._api_key = api_key
        self._api_url = api_url
        self._from = f"{from_name} <{from_address}>" if from_name else from_address

    async def deliver(self, destination: Any, message: Dict[str, Any]) -> Dict[str, Any]:
        body = {
            "from": self._from,
            "to": [destination],
            "subject": message["subject"],
            "text": message["text"],
            "html": message["html"],
        }
        return await self._post(
            self._api_url, body, {"Authorization": f"Bearer {self._api_key}"},
        )


class WhatsAppCloudTransport(_HttpTransport):
    """Text messages through the WhatsApp Cloud API."""

    service = "whatsapp"

    def __init__(
        self,
        access_token: str,
        phone_number_id: str,
        *,
        api_url: str = "https://graph.facebook.com/v18.0",
        timeout: float = 15.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        super().__init__(timeout, client)
        self._token = access_token
        self._url = f"{api_url.rstrip('/')}/{phone_number_id}/messages"

    async def deliver(self, destination: Any, message: Dict[str, Any]) -> Dict[str, Any]:
        body = {
            "messaging_product": "whatsapp",
            "recipient_type": "individual",
            "to": destination,
            "type": "text",
            "text": {"preview_url": bool(message.get("preview_url")), "body": message["text"]},
        }
        return await self._post(self._url, body, {"Authorization": f"Bearer {self._token}"})


class HttpSmsTransport(_HttpTransport):
    """Generic JSON SMS gateway: ``{"to", "message", "sender"}``."""

    service = "sms"

    def __init__(
        self,
        api_url: str,
        api_key: str,
        *,
        sender_id: str = "",
        timeout: float = 15.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        super().__init__(timeout, client)
        self._url = api_url
        self._api_key = api_key
        self._sender_id = sender_id

    async def deliver(self, destination: Any, message: Dict[str, Any]) -> Dict[str, Any]:
        body = {"to": destination, "message": message["text"], "sender": self._sender_id}
        return await self._post(self._url, body, {"Authorization": f"Bearer {self._api_key}"})


# ═══════════════════════════════════════════════════════════════════════════
# Web push
# ═══════════════════════════════════════════════════════════════════════════

class WebPushTransport:
    """
    VAPID web push via pywebpush.

    pywebpush is synchronous, so each call runs in a worker thread.
    Constructed once with its credentials by the service factory.
    """

    def __init__(
        self,
        vapid_private_key: str,
        vapid_subject: str,
        *,
        timeout: float = 15.0,
        ttl: int = 86400,
    ):
        self._private_key = vapid_private_key
        self._claims = {"sub": vapid_subject}
        self._timeout = timeout
        self._ttl = ttl

    def _push(self, subscription_info: Dict[str, Any], data: str) -> int:
        try:
            response = webpush(
                subscription_info=subscription_info,
                data=data,
                vapid_private_key=self._private_key,
                vapid_claims=dict(self._claims),
                timeout=self._timeout,
                ttl=self._ttl,
            )
        except WebPushException as exc:
            status = getattr(exc.response, "status_code", None)
            raise TransportError(f"web push failed: {exc}", status_code=status) from exc
        return getattr(response, "status_code", 201)

    async def deliver(self, destination: Any, message: Dict[str, Any]) -> Dict[str, Any]:
        status = await asyncio.to_thread(self._push, destination, json.dumps(message))
        return {"status_code": status}

    async def aclose(self) -> None:
        return None
