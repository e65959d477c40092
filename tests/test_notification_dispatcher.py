"""
tests/test_notification_dispatcher.py
Event → notification fan-out, delivery status tracking, and templates.
"""

import uuid
from decimal import Decimal

import pytest

from services.notification.dispatcher import NotificationDispatcher, transition_delivery
from services.notification.inbox import InMemoryNotificationStore
from services.notification.preferences import NotificationPreference
from shared.events import (
    BookingApproved,
    BookingCompleted,
    BookingDeclined,
    PaymentFailed,
    RefundProcessed,
)
from shared.exceptions import InvalidStateError
from shared.models.models import (
    BookingStatus,
    DeliveryStatus,
    EventType,
    Notification,
    NotificationCategory,
    NotificationChannel,
    NotificationPriority,
)
from shared.schemas.schemas import NotificationFilter
from tests.conftest import RecordingSender, make_booking, make_event

EMAIL, SMS, PUSH = NotificationChannel.EMAIL, NotificationChannel.SMS, NotificationChannel.PUSH


@pytest.fixture
def store() -> InMemoryNotificationStore:
    return InMemoryNotificationStore()


def senders(fail: set = frozenset()) -> dict:
    return {channel: RecordingSender(channel, fail=channel in fail) for channel in NotificationChannel}


@pytest.mark.asyncio
async def test_one_notification_per_enabled_channel(store):
    out = senders()
    dispatcher = NotificationDispatcher(store, senders=out)
    event = make_event(BookingApproved)

    notifications = await dispatcher.dispatch(event, NotificationPreference(user_id=event.user_id))

    assert sorted(n.channel.value for n in notifications) == ["email", "push", "sms"]
    assert all(n.status == DeliveryStatus.DELIVERED for n in notifications)
    assert all(n.delivered_at is not None for n in notifications)
    assert all(n.priority == NotificationPriority.HIGH for n in notifications)
    assert all(n.is_read is False for n in notifications)
    assert len(out[EMAIL].sent) == len(out[SMS].sent) == len(out[PUSH].sent) == 1


@pytest.mark.asyncio
async def test_disabled_channels_get_nothing(store):
    out = senders()
    dispatcher = NotificationDispatcher(store, senders=out)
    event = make_event(BookingCompleted)
    prefs = NotificationPreference(user_id=event.user_id, push_enabled=False)

    notifications = await dispatcher.dispatch(event, prefs)

    # Completion SMS is off by default, push is off globally
    assert [n.channel for n in notifications] == [EMAIL]
    assert out[SMS].sent == [] and out[PUSH].sent == []


@pytest.mark.asyncio
async def test_everything_off_creates_no_records(store):
    dispatcher = NotificationDispatcher(store, senders=senders())
    event = make_event(BookingApproved)
    prefs = NotificationPreference(
        user_id=event.user_id, email_enabled=False, sms_enabled=False, push_enabled=False
    )

    assert await dispatcher.dispatch(event, prefs) == []
    assert store.items == {}


@pytest.mark.asyncio
async def test_failed_channel_does_not_affect_the_others(store):
    dispatcher = NotificationDispatcher(store, senders=senders(fail={SMS}))
    event = make_event(BookingDeclined, reason="No beds")

    notifications = await dispatcher.dispatch(event, NotificationPreference(user_id=event.user_id))

    by_channel = {n.channel: n for n in notifications}
    assert by_channel[SMS].status == DeliveryStatus.FAILED
    assert by_channel[SMS].last_error == "sms: Provider rejected the message"
    assert by_channel[EMAIL].status == DeliveryStatus.DELIVERED
    assert by_channel[PUSH].status == DeliveryStatus.DELIVERED


class CrashingSender:
    async def send(self, recipient, title, body, data=None):
        raise RuntimeError("provider SDK exploded")


@pytest.mark.asyncio
async def test_unexpected_sender_error_marks_only_that_channel_failed(store):
    out = senders()
    out[PUSH] = CrashingSender()
    dispatcher = NotificationDispatcher(store, senders=out)
    event = make_event(BookingApproved)

    notifications = await dispatcher.dispatch(event, NotificationPreference(user_id=event.user_id))

    by_channel = {n.channel: n for n in notifications}
    assert by_channel[PUSH].status == DeliveryStatus.FAILED
    assert by_channel[PUSH].last_error == "push: provider SDK exploded"
    assert by_channel[EMAIL].status == DeliveryStatus.DELIVERED
    assert by_channel[SMS].status == DeliveryStatus.DELIVERED
    stored = await store.list(event.user_id, NotificationFilter(status=DeliveryStatus.FAILED))
    assert [n.channel for n in stored] == [PUSH]


@pytest.mark.asyncio
async def test_failed_deliveries_stay_visible_in_history(store):
    dispatcher = NotificationDispatcher(store, senders=senders(fail={EMAIL}))
    event = make_event(BookingApproved)
    await dispatcher.dispatch(event, NotificationPreference(user_id=event.user_id))

    failed = await store.list(event.user_id, NotificationFilter(status=DeliveryStatus.FAILED))

    assert [n.channel for n in failed] == [EMAIL]


@pytest.mark.asyncio
async def test_missing_sender_marks_failed(store):
    dispatcher = NotificationDispatcher(store, senders={EMAIL: RecordingSender(EMAIL)})
    event = make_event(BookingApproved)

    notifications = await dispatcher.dispatch(event, NotificationPreference(user_id=event.user_id))

    statuses = {n.channel: n.status for n in notifications}
    assert statuses == {
        EMAIL: DeliveryStatus.DELIVERED,
        SMS: DeliveryStatus.FAILED,
        PUSH: DeliveryStatus.FAILED,
    }


@pytest.mark.asyncio
async def test_templates_are_filled_from_event(store):
    out = senders()
    dispatcher = NotificationDispatcher(store, senders=out)
    event = make_event(RefundProcessed, refund_amount=Decimal("800.00"), tier=80, refund_id="rfnd_1")

    notifications = await dispatcher.dispatch(event, NotificationPreference(user_id=event.user_id))

    email = next(n for n in notifications if n.channel == EMAIL)
    assert email.title == "Refund Processed"
    assert "800.00" in email.body and "80%" in email.body and "MB-EVENT01" in email.body
    sms = next(n for n in notifications if n.channel == SMS)
    assert sms.body.startswith("MedBooking: Refund of Rs.800.00")


@pytest.mark.asyncio
async def test_payment_failed_hint_depends_on_retry(store):
    dispatcher = NotificationDispatcher(store, senders=senders())
    error = {"type": "payment", "severity": "high", "message": "Declined", "user_message": "Declined"}

    retryable = make_event(PaymentFailed, amount=Decimal("1000"), error=error, retry_count=1, retry_available=True)
    exhausted = make_event(PaymentFailed, amount=Decimal("1000"), error=error, retry_count=3, retry_available=False)

    first = await dispatcher.dispatch(retryable, NotificationPreference(user_id=retryable.user_id))
    last = await dispatcher.dispatch(exhausted, NotificationPreference(user_id=exhausted.user_id))

    assert "retry in a moment" in first[0].body
    assert "start a new payment" in last[0].body


@pytest.mark.asyncio
async def test_handle_uses_stored_preferences(core):
    user_id = uuid.uuid4()
    await core.preferences.set_event_channel(user_id, NotificationCategory.BOOKING_APPROVAL, PUSH, False)

    notifications = await core.dispatcher.handle(make_event(BookingApproved, user_id=user_id))

    assert sorted(n.channel.value for n in notifications) == ["email", "sms"]


@pytest.mark.asyncio
async def test_lifecycle_events_reach_the_inbox(core):
    booking = core.add(make_booking(status=BookingStatus.PENDING))
    await core.lifecycle.approve(booking)

    assert await core.inbox.get_unread_count(booking.user_id) == 3


def test_delivery_status_only_moves_forward():
    n = Notification(
        id=uuid.uuid4(),
        user_id=uuid.uuid4(),
        type=EventType.BOOKING_APPROVED,
        channel=EMAIL,
        status=DeliveryStatus.QUEUED,
        title="t",
        body="b",
    )
    with pytest.raises(InvalidStateError):
        transition_delivery(n, DeliveryStatus.DELIVERED)
    transition_delivery(n, DeliveryStatus.PROCESSING)
    transition_delivery(n, DeliveryStatus.FAILED)
    with pytest.raises(InvalidStateError):
        transition_delivery(n, DeliveryStatus.PROCESSING)
