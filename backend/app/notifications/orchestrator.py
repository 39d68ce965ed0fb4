"""
orchestrator.py — Delivery Orchestrator (NotificationService).

This is the central coordinator that:
    1. Filters the requested channels down to configured ones
    2. Resolves recipients (explicit user ids, or by role)
    3. Builds a DeliveryRecord with one PENDING attempt per
       (recipient, available channel)
    4. Dispatches every attempt concurrently, each through the retry executor
    5. Finalises totals, persists the record once and drops an in-app
       inbox entry for every recipient
    6. Schedules the day's analytics recompute in the background

═══════════════════════════════════════════════════════════════════════════
ORCHESTRATION FLOW
═══════════════════════════════════════════════════════════════════════════

    ┌─────────────────────┐
    │  Caller (API, job,  │
    │  domain event)      │
    └─────────┬───────────┘
              │
              ▼
    ┌─────────────────────┐
    │  1. Availability    │  Unknown / unconfigured channels dropped
    │     Check           │  None left → fail, nothing persisted
    └─────────┬───────────┘
              │
              ▼
    ┌─────────────────────┐
    │  2. Recipients      │  user_ids → directory.get_users
    │                     │  roles    → directory.list_users ("everyone" = all)
    └─────────┬───────────┘
              │
              ▼
    ┌─────────────────────┐
    │  3. Dispatch        │  recipient × channel, bounded by a semaphore
    │     with Retry      │  ineligible → FAILED without a transport call
    │                     │  eligible   → RetryExecutor → sender.send
    └─────────┬───────────┘
              │
              ▼
    ┌─────────────────────┐
    │  4. Finalise        │  totals recounted, one save, template usage +1,
    │                     │  one inbox entry per recipient
    └─────────┬───────────┘
              │
              ▼
    ┌─────────────────────┐
    │  5. Analytics       │  recompute_day(today) as a background task
    └─────────────────────┘

═══════════════════════════════════════════════════════════════════════════
FAILURE ISOLATION
═══════════════════════════════════════════════════════════════════════════

    • Each (recipient, channel) attempt resolves independently; one failing
      transport never blocks another recipient or channel.
    • Operators see translated error messages; raw transport errors are
      logged only.
    • A persistence or inbox failure is logged and the result is still returned.
    • Analytics failures never reach the caller.

``success`` is ``total_sent > 0``: a broadcast that reached anyone
counts as a success, with the failures itemised in the record.
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

from backend.app.notifications.analytics import AnalyticsAggregator
from backend.app.notifications.availability import AvailabilityResult, ChannelAvailabilityChecker
from backend.app.notifications.channels.base import ChannelSender
from backend.app.notifications.error_messages import translate_error
from backend.app.notifications.errors import FeatureDisabledError, RetryError
from backend.app.notifications.models import (
    AttemptStatus,
    Channel,
    ChannelAttempt,
    ChannelCounts,
    DeliveryRecord,
    DeliveryState,
    DirectoryUser,
    InboxItem,
    InboxPage,
    NotificationPayload,
    NotificationRequest,
    PushSubscription,
    RecipientEntry,
    SendResult,
)
from backend.app.notifications.retry import RetryExecutor
from backend.app.notifications.stores import (
    DeliveryStore,
    InboxStore,
    PushSubscriptionStore,
    TemplateStore,
    UserDirectory,
)

logger = logging.getLogger(__name__)

DELIVERY_INCOMPLETE = "Delivery did not complete"
NO_CHANNELS = "No notification channels available"
NO_RECIPIENTS = "No recipients found for the selected audience"


def _payload_metadata(
    payload: NotificationPayload, notification_type: Optional[str],
) -> Dict[str, Any]:
    metadata: Dict[str, Any] = {}
    if payload.url:
        metadata["url"] = payload.url
    if notification_type:
        metadata["type"] = notification_type
    return metadata


class NotificationService:
    """
    Multi-channel delivery engine.

    Parameters
    ----------
    senders : dict
        ``Channel → ChannelSender`` for every channel the process can use.
    directory : UserDirectory
        Recipient lookup.
    delivery_store : DeliveryStore
        Where finished DeliveryRecords are saved.
    is_configured : callable
        ``is_configured(channel_value) -> bool``; normally
        ``Settings.is_channel_configured``.
    analytics : AnalyticsAggregator, optional
        Recomputed in the background after every send.
    template_store : TemplateStore, optional
        Usage counter for ``template_id``.
    push_subscriptions : PushSubscriptionStore, optional
        Backing store for ``subscribe_push`` / ``unsubscribe_push``.
    inbox : InboxStore, optional
        In-app notifications; written on every send when present.
    retry_executor : RetryExecutor, optional
        Shared by every send.
    max_concurrency : int
        Upper bound on in-flight transport calls per send.
    transport_timeout : float, optional
        Seconds before a single transport call is abandoned (retryable).
    default_channels : list of str
        Used by ``notify_users`` / ``notify_by_role`` when no channels are given.
    sender_name : str
        Organisation name appended to outgoing messages.
    """

    def __init__(
        self,
        *,
        senders: Dict[Channel, ChannelSender],
        directory: UserDirectory,
        delivery_store: DeliveryStore,
        is_configured: Callable[[str], bool],
        analytics: Optional[AnalyticsAggregator] = None,
        template_store: Optional[TemplateStore] = None,
        push_subscriptions: Optional[PushSubscriptionStore] = None,
        inbox: Optional[InboxStore] = None,
        retry_executor: Optional[RetryExecutor] = None,
        max_concurrency: int = 20,
        transport_timeout: Optional[float] = None,
        default_channels: Optional[List[str]] = None,
        sender_name: str = "",
    ):
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        self.senders = dict(senders)
        self.directory = directory
        self.delivery_store = delivery_store
        self.analytics = analytics
        self.template_store = template_store
        self.push_subscriptions = push_subscriptions
        self.inbox = inbox
        self.retry = retry_executor or RetryExecutor()
        self.max_concurrency = max_concurrency
        self.transport_timeout = transport_timeout
        self.default_channels = list(default_channels or [c.value for c in Channel])
        self.sender_name = sender_name
        self.checker = ChannelAvailabilityChecker(
            lambda channel: is_configured(channel) and Channel(channel) in self.senders
        )
        self._background: Set[asyncio.Task] = set()

    # ═══════════════════════════════════════════════════════════════════════
    # Produced interface
    # ═══════════════════════════════════════════════════════════════════════

    async def send_notification(self, request: NotificationRequest) -> SendResult:
        """
        Deliver one notification to every resolved recipient.

        Returns
        -------
        SendResult
            ``error`` set and no record when no channel or no recipient was
            usable; otherwise per-channel counts and the finished record.
        """
        started = time.perf_counter()

        # ── Step 1: Availability ──
        availability = self.checker.filter(request.channels)
        if availability.is_empty:
            error = NO_CHANNELS
            if availability.warnings:
                error = f"{error}: {'; '.join(availability.warnings)}"
            logger.warning("Send '%s' rejected: %s", request.title, error)
            return SendResult(success=False, error=error, warnings=availability.warnings)

        for warning in availability.warnings:
            logger.warning("Send '%s': %s", request.title, warning)

        # ── Step 2: Recipients ──
        users = await self._resolve_recipients(request)
        if not users:
            logger.warning(
                "Send '%s' rejected: no recipients (roles=%s, user_ids=%s)",
                request.title, request.target_roles,
                len(request.user_ids) if request.user_ids is not None else None,
            )
            return SendResult(
                success=False, error=NO_RECIPIENTS, warnings=availability.warnings,
            )

        # ── Step 3: Build record ──
        record = self._build_record(request, users, availability)
        log_extra = {"notification_id": record.id, "recipient_count": len(users)}
        logger.info(
            "Dispatching %s '%s' to %d recipients via %s",
            record.id, record.title, len(users),
            [c.value for c in availability.available],
            extra=log_extra,
        )

        # ── Step 4: Dispatch ──
        record.state = DeliveryState.DISPATCHING
        await self._dispatch(record, request.payload(self.sender_name))

        # ── Step 5: Finalise ──
        record.state = DeliveryState.FINALIZING
        self._fail_unresolved(record)
        record.compute_totals()
        record.completed_at = datetime.now(timezone.utc)
        record.state = DeliveryState.DONE

        await self._persist(record)
        await self._write_inbox(record)
        if record.template_id:
            await self._increment_template_usage(record)

        self._schedule_analytics(record)

        duration_ms = (time.perf_counter() - started) * 1000
        logger.info(
            "Delivery %s complete: %d sent, %d failed (%.1fms)",
            record.id, record.total_sent, record.total_failed, duration_ms,
            extra={**log_extra, "duration_ms": duration_ms},
        )

        results = {c.value: ChannelCounts() for c in availability.available}
        results.update(record.channel_counts())
        return SendResult(
            success=record.total_sent > 0,
            results=results,
            total_users=len(users),
            delivery_id=record.id,
            warnings=availability.warnings,
            record=record,
        )

    async def notify_users(
        self,
        user_ids: Iterable[str],
        payload: NotificationPayload,
        channels: Optional[List[str]] = None,
        *,
        sender_id: Optional[str] = None,
        template_id: Optional[str] = None,
        notification_type: Optional[str] = None,
    ) -> SendResult:
        """Notify specific users. ``channels=None`` means the default channel set."""
        request = NotificationRequest(
            title=payload.title,
            body=payload.body,
            channels=list(channels) if channels is not None else list(self.default_channels),
            sender_id=sender_id,
            metadata=_payload_metadata(payload, notification_type),
            template_id=template_id,
            user_ids=list(user_ids),
        )
        return await self.send_notification(request)

    async def notify_by_role(
        self,
        roles: Iterable[str],
        payload: NotificationPayload,
        channels: Optional[List[str]] = None,
        *,
        sender_id: Optional[str] = None,
        template_id: Optional[str] = None,
        notification_type: Optional[str] = None,
    ) -> SendResult:
        """Notify every user holding one of ``roles``."""
        request = NotificationRequest(
            title=payload.title,
            body=payload.body,
            channels=list(channels) if channels is not None else list(self.default_channels),
            target_roles=list(roles),
            sender_id=sender_id,
            metadata=_payload_metadata(payload, notification_type),
            template_id=template_id,
        )
        return await self.send_notification(request)

    # ═══════════════════════════════════════════════════════════════════════
    # History & subscriptions
    # ═══════════════════════════════════════════════════════════════════════

    async def get_delivery(self, delivery_id: str) -> Optional[DeliveryRecord]:
        return await self.delivery_store.get(delivery_id)

    async def list_recent_deliveries(self, limit: int = 50) -> List[DeliveryRecord]:
        return await self.delivery_store.list_recent(limit)

    async def subscribe_push(
        self,
        user_id: str,
        subscription: Dict[str, Any],
        *,
        user_agent: Optional[str] = None,
    ) -> PushSubscription:
        """Store a browser subscription (``{"endpoint", "keys": {"p256dh", "auth"}}``)."""
        if self.push_subscriptions is None:
            raise FeatureDisabledError("push_subscriptions")
        keys = subscription.get("keys") or {}
        if not subscription.get("endpoint") or not keys.get("p256dh") or not keys.get("auth"):
            raise ValueError("Push subscription requires endpoint, keys.p256dh and keys.auth")
        subscription = PushSubscription(
            user_id=user_id,
            endpoint=subscription["endpoint"],
            p256dh=keys["p256dh"],
            auth=keys["auth"],
            user_agent=user_agent,
        )
        await self.push_subscriptions.save(subscription)
        logger.info("Stored push subscription for %s", subscription.user_id)
        return subscription

    async def unsubscribe_push(self, user_id: str) -> bool:
        if self.push_subscriptions is None:
            raise FeatureDisabledError("push_subscriptions")
        removed = await self.push_subscriptions.delete(user_id)
        if removed:
            logger.info("Removed push subscription for %s", user_id)
        return removed

    # ═══════════════════════════════════════════════════════════════════════
    # In-app inbox
    # ═══════════════════════════════════════════════════════════════════════

    def _require_inbox(self) -> InboxStore:
        if self.inbox is None:
            raise FeatureDisabledError("inbox")
        return self.inbox

    async def create_notification(
        self,
        user_id: str,
        payload: NotificationPayload,
        *,
        notification_type: Optional[str] = None,
    ) -> InboxItem:
        """Put one item in a user's inbox without going through any channel."""
        item = InboxItem(
            user_id=user_id,
            title=payload.title,
            body=payload.body,
            url=payload.url,
            notification_type=notification_type,
        )
        await self._require_inbox().add_many([item])
        return item

    async def list_inbox(
        self,
        user_id: str,
        *,
        page: int = 1,
        limit: int = 20,
        unread_only: bool = False,
        notification_type: Optional[str] = None,
    ) -> InboxPage:
        """
        One page of a user's inbox, newest first.

        Parameters
        ----------
        page : int
            1-based page number.
        limit : int
            Page size.
        unread_only : bool
            Only items not yet marked read.
        notification_type : str, optional
            Only items of this type.
        """
        if page < 1 or limit < 1:
            raise ValueError("page and limit must be at least 1")
        inbox = self._require_inbox()
        items, total = await inbox.list_for_user(
            user_id,
            offset=(page - 1) * limit,
            limit=limit,
            unread_only=unread_only,
            notification_type=notification_type,
        )
        unread = await inbox.count_unread(user_id)
        return InboxPage(items=items, total=total, page=page, limit=limit, unread_count=unread)

    async def mark_read(self, user_id: str, item_id: str) -> Optional[InboxItem]:
        return await self._require_inbox().mark_read(user_id, item_id)

    async def mark_all_read(self, user_id: str) -> int:
        marked = await self._require_inbox().mark_all_read(user_id)
        logger.debug("Marked %d inbox item(s) read for %s", marked, user_id)
        return marked

    # ═══════════════════════════════════════════════════════════════════════
    # Lifecycle
    # ═══════════════════════════════════════════════════════════════════════

    async def wait_for_background_tasks(self) -> None:
        """Wait for scheduled analytics recomputes (tests, shutdown)."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def aclose(self) -> None:
        await self.wait_for_background_tasks()
        for sender in self.senders.values():
            try:
                await sender.aclose()
            except Exception as exc:
                logger.warning("Closing %s transport failed: %s", sender.channel.value, exc)

    # ═══════════════════════════════════════════════════════════════════════
    # Internals
    # ═══════════════════════════════════════════════════════════════════════

    async def _resolve_recipients(self, request: NotificationRequest) -> List[DirectoryUser]:
        if request.user_ids is not None:
            return await self.directory.get_users(request.user_ids)
        return await self.directory.list_users(request.target_roles)

    def _build_record(
        self,
        request: NotificationRequest,
        users: List[DirectoryUser],
        availability: AvailabilityResult,
    ) -> DeliveryRecord:
        metadata = dict(request.metadata)
        metadata.update({
            "requested_channels": list(request.channels),
            "available_channels": [c.value for c in availability.available],
            "unavailable_channels": list(availability.unavailable),
        })
        return DeliveryRecord(
            title=request.title,
            body=request.body,
            requested_channels=list(request.channels),
            target_roles=list(request.target_roles),
            sender_id=request.sender_id,
            metadata=metadata,
            template_id=request.template_id,
            recipients=[
                RecipientEntry.for_user(user, availability.available) for user in users
            ],
        )

    async def _dispatch(self, record: DeliveryRecord, payload: NotificationPayload) -> None:
        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def bounded(recipient: RecipientEntry, attempt: ChannelAttempt) -> None:
            async with semaphore:
                await self._deliver(record, recipient, attempt, payload)

        outcomes = await asyncio.gather(
            *(bounded(r, a) for r, a in record.iter_attempts()),
            return_exceptions=True,
        )
        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                logger.error(
                    "Unexpected dispatch error in %s: %r", record.id, outcome,
                    extra={"notification_id": record.id},
                )

    async def _deliver(
        self,
        record: DeliveryRecord,
        recipient: RecipientEntry,
        attempt: ChannelAttempt,
        payload: NotificationPayload,
    ) -> None:
        sender = self.senders[attempt.channel]
        extra = {
            "notification_id": record.id,
            "channel": attempt.channel.value,
            "recipient_id": recipient.user_id,
        }

        try:
            reason = await sender.check_eligibility(recipient)
        except Exception as exc:
            logger.error("Eligibility check failed: %s", exc, extra=extra)
            attempt.mark_failed(translate_error(exc), attempts=0)
            return

        if reason:
            logger.info("Skipping %s for %s: %s", attempt.channel.value, recipient.user_id,
                        reason, extra=extra)
            attempt.mark_failed(reason, attempts=0)
            return

        invocations = 0

        async def operation() -> None:
            nonlocal invocations
            invocations += 1
            send = sender.send(recipient, payload)
            if self.transport_timeout:
                await asyncio.wait_for(send, timeout=self.transport_timeout)
            else:
                await send

        try:
            await self.retry.execute(
                operation,
                description=f"{attempt.channel.value} → {recipient.user_id}",
            )
        except RetryError as exc:
            logger.warning(
                "Delivery failed after %d attempt(s): %s", exc.attempts, exc.last_error,
                extra={**extra, "attempt": exc.attempts},
            )
            attempt.mark_failed(translate_error(exc), attempts=exc.attempts)
        except Exception as exc:
            logger.error("Delivery raised unexpectedly: %s", exc, extra=extra)
            attempt.mark_failed(translate_error(exc), attempts=invocations)
        else:
            attempt.mark_sent(attempts=invocations)

    def _fail_unresolved(self, record: DeliveryRecord) -> None:
        for recipient, attempt in record.iter_attempts():
            if attempt.status == AttemptStatus.PENDING:
                logger.error(
                    "Attempt left pending, marking failed",
                    extra={
                        "notification_id": record.id,
                        "channel": attempt.channel.value,
                        "recipient_id": recipient.user_id,
                    },
                )
                attempt.mark_failed(DELIVERY_INCOMPLETE, attempts=attempt.attempts)

    async def _persist(self, record: DeliveryRecord) -> None:
        try:
            await self.delivery_store.save(record)
        except Exception as exc:
            logger.error(
                "Failed to persist delivery record %s: %s", record.id, exc,
                extra={"notification_id": record.id},
            )

    async def _write_inbox(self, record: DeliveryRecord) -> None:
        if self.inbox is None:
            return
        items = [
            InboxItem(
                user_id=recipient.user_id,
                title=record.title,
                body=record.body,
                url=record.metadata.get("url"),
                notification_type=record.metadata.get("type"),
                delivery_id=record.id,
                created_at=record.created_at,
            )
            for recipient in record.recipients
        ]
        try:
            await self.inbox.add_many(items)
        except Exception as exc:
            logger.error(
                "Failed to write inbox entries for %s: %s", record.id, exc,
                extra={"notification_id": record.id},
            )

    async def _increment_template_usage(self, record: DeliveryRecord) -> None:
        if self.template_store is None:
            return
        try:
            await self.template_store.increment_usage(record.template_id)
        except Exception as exc:
            logger.warning(
                "Failed to update usage for template %s: %s", record.template_id, exc,
                extra={"notification_id": record.id},
            )

    def _schedule_analytics(self, record: DeliveryRecord) -> None:
        if self.analytics is None:
            return
        day = record.created_at.astimezone(timezone.utc).date()
        task = asyncio.create_task(self.analytics.recompute_day_safely(day))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    def describe(self) -> Dict[str, Any]:
        """Snapshot of the wiring, for the channels endpoint."""
        return {
            "senders": sorted(c.value for c in self.senders),
            "default_channels": list(self.default_channels),
            "max_concurrency": self.max_concurrency,
            "retry": {
                "max_attempts": self.retry.policy.max_attempts,
                "base_delay": self.retry.policy.base_delay,
                "max_delay": self.retry.policy.max_delay,
                "backoff_multiplier": self.retry.policy.backoff_multiplier,
            },
        }
