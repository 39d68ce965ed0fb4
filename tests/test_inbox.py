"""
test_inbox.py — Tests for the in-app notification inbox.

Covers:
    • InMemoryInboxStore paging, filters and read flags
    • One inbox entry per recipient on every send
    • create_notification / list_inbox / mark_read / mark_all_read
    • Disabled inbox and failing inbox store

Run with:
    pytest tests/test_inbox.py -v
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from backend.app.notifications.channels import EmailSender, SmsSender
from backend.app.notifications.channels.transports import SimulatedTransport
from backend.app.notifications.errors import FeatureDisabledError
from backend.app.notifications.models import (
    Channel,
    DirectoryUser,
    InboxItem,
    NotificationPayload,
    NotificationRequest,
)
from backend.app.notifications.orchestrator import NotificationService
from backend.app.notifications.retry import RetryExecutor, RetryPolicy
from backend.app.notifications.stores import (
    InMemoryDeliveryStore,
    InMemoryInboxStore,
    InMemoryUserDirectory,
)

T0 = datetime(2024, 3, 10, 9, 0, tzinfo=timezone.utc)


async def _no_sleep(seconds):
    return None


def _make_service(inbox="default"):
    directory = InMemoryUserDirectory([
        DirectoryUser(user_id="u1", name="Asha", email="asha@example.com", role="donor"),
        DirectoryUser(user_id="u2", name="Bilal", role="donor"),
        DirectoryUser(user_id="u3", name="Chitra", email="c@example.com", role="volunteer"),
    ])
    return NotificationService(
        senders={
            Channel.EMAIL: EmailSender(SimulatedTransport(Channel.EMAIL)),
            Channel.SMS: SmsSender(SimulatedTransport(Channel.SMS), country_code="91"),
        },
        directory=directory,
        delivery_store=InMemoryDeliveryStore(),
        is_configured=lambda channel: channel in {"email", "sms"},
        inbox=InMemoryInboxStore() if inbox == "default" else inbox,
        retry_executor=RetryExecutor(RetryPolicy(max_attempts=1), sleep=_no_sleep),
    )


def _item(user_id, minutes, **kwargs):
    return InboxItem(
        user_id=user_id, title=f"Item {minutes}", body="...",
        created_at=T0 + timedelta(minutes=minutes), **kwargs,
    )


# ═══════════════════════════════════════════════════════════════════════════
# In-memory store
# ═══════════════════════════════════════════════════════════════════════════

class TestInMemoryInboxStore:

    def test_pages_newest_first(self):
        store = InMemoryInboxStore()

        async def scenario():
            await store.add_many([_item("u1", m) for m in range(5)] + [_item("u2", 9)])
            first = await store.list_for_user("u1", offset=0, limit=2)
            last = await store.list_for_user("u1", offset=4, limit=2)
            return first, last

        (first, total), (last, _) = asyncio.run(scenario())
        assert total == 5
        assert [i.title for i in first] == ["Item 4", "Item 3"]
        assert [i.title for i in last] == ["Item 0"]

    def test_unread_and_type_filters(self):
        store = InMemoryInboxStore()

        async def scenario():
            await store.add_many([
                _item("u1", 1, notification_type="collection_request"),
                _item("u1", 2, notification_type="review_needed", read=True),
                _item("u1", 3, notification_type="review_needed"),
            ])
            unread = await store.list_for_user("u1", unread_only=True)
            reviews = await store.list_for_user("u1", notification_type="review_needed")
            unread_reviews = await store.list_for_user(
                "u1", unread_only=True, notification_type="review_needed",
            )
            return unread, reviews, unread_reviews

        unread, reviews, unread_reviews = asyncio.run(scenario())
        assert unread[1] == 2
        assert reviews[1] == 2
        assert [i.title for i in unread_reviews[0]] == ["Item 3"]

    def test_mark_read_checks_owner(self):
        store = InMemoryInboxStore()
        item = _item("u1", 1)

        async def scenario():
            await store.add_many([item])
            stranger = await store.mark_read("u2", item.id)
            owner = await store.mark_read("u1", item.id)
            missing = await store.mark_read("u1", "INB-000000000000")
            return stranger, owner, missing, await store.count_unread("u1")

        stranger, owner, missing, unread = asyncio.run(scenario())
        assert stranger is None
        assert owner.read is True
        assert missing is None
        assert unread == 0

    def test_mark_all_read_counts_changes(self):
        store = InMemoryInboxStore()

        async def scenario():
            await store.add_many([_item("u1", 1), _item("u1", 2, read=True), _item("u2", 3)])
            first = await store.mark_all_read("u1")
            second = await store.mark_all_read("u1")
            return first, second, await store.count_unread("u2")

        assert asyncio.run(scenario()) == (1, 0, 1)


# ═══════════════════════════════════════════════════════════════════════════
# Service
# ═══════════════════════════════════════════════════════════════════════════

class TestInboxOnSend:

    def test_every_recipient_gets_an_entry(self):
        service = _make_service()

        async def scenario():
            result = await service.send_notification(NotificationRequest(
                title="Collection due", body="Please collect the gullak.",
                channels=["email"], target_roles=["donor"],
                metadata={"url": "/collections/4", "type": "collection_request"},
            ))
            u1 = await service.list_inbox("u1")
            u2 = await service.list_inbox("u2")
            u3 = await service.list_inbox("u3")
            return result, u1, u2, u3

        result, u1, u2, u3 = asyncio.run(scenario())
        # u2 has no email, so the channel failed; the inbox entry is still written
        assert result.results["email"].failed == 1
        assert u2.total == 1
        assert u3.total == 0
        entry = u1.items[0]
        assert entry.delivery_id == result.delivery_id
        assert entry.url == "/collections/4"
        assert entry.notification_type == "collection_request"
        assert entry.read is False
        assert u1.unread_count == 1

    def test_rejected_send_writes_nothing(self):
        service = _make_service()

        async def scenario():
            await service.send_notification(NotificationRequest(
                title="Nobody", body="...", channels=["email"], target_roles=["trustee"],
            ))
            return len(service.inbox)

        assert asyncio.run(scenario()) == 0

    def test_notify_users_carries_type(self):
        service = _make_service()

        async def scenario():
            await service.notify_users(
                ["u3"], NotificationPayload(title="Review", body="Survey to review"),
                ["email"], notification_type="review_needed",
            )
            return await service.list_inbox("u3", notification_type="review_needed")

        page = asyncio.run(scenario())
        assert page.total == 1
        assert page.items[0].title == "Review"

    def test_inbox_failure_does_not_fail_send(self):
        class _BrokenInbox(InMemoryInboxStore):
            async def add_many(self, items):
                raise RuntimeError("inbox table locked")

        service = _make_service(inbox=_BrokenInbox())
        result = asyncio.run(service.send_notification(NotificationRequest(
            title="Still sent", body="...", channels=["email"], target_roles=["volunteer"],
        )))
        assert result.success is True
        assert result.record.total_sent == 1


class TestInboxOperations:

    def test_create_list_and_mark(self):
        service = _make_service()

        async def scenario():
            first = await service.create_notification(
                "u1", NotificationPayload(title="Welcome", body="Thanks for joining"),
            )
            await service.create_notification(
                "u1", NotificationPayload(title="Verify", body="Verify your phone"),
                notification_type="verification_needed",
            )
            marked = await service.mark_read("u1", first.id)
            page = await service.list_inbox("u1", limit=1)
            unread = await service.list_inbox("u1", unread_only=True)
            cleared = await service.mark_all_read("u1")
            after = await service.list_inbox("u1")
            return marked, page, unread, cleared, after

        marked, page, unread, cleared, after = asyncio.run(scenario())
        assert marked.read is True
        assert page.total == 2
        assert page.pages == 2
        assert len(page.items) == 1
        assert [i.title for i in unread.items] == ["Verify"]
        assert cleared == 1
        assert after.unread_count == 0

    def test_page_must_be_positive(self):
        service = _make_service()
        with pytest.raises(ValueError):
            asyncio.run(service.list_inbox("u1", page=0))

    def test_disabled_inbox(self):
        service = _make_service(inbox=None)
        with pytest.raises(FeatureDisabledError) as excinfo:
            asyncio.run(service.list_inbox("u1"))
        assert str(excinfo.value) == "Inbox is not enabled"
        # sends still work without an inbox
        result = asyncio.run(service.send_notification(NotificationRequest(
            title="No inbox", body="...", channels=["email"], target_roles=["volunteer"],
        )))
        assert result.success is True
