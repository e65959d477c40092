"""
services/notification/dispatcher.py
Turns domain events into per-channel notifications.

For each channel that is effective-enabled for the event's category, one
Notification is created QUEUED and then driven
    QUEUED → PROCESSING → DELIVERED | FAILED(last_error)
Failed deliveries are kept as-is for the reader; nothing here re-sends them.
"""

import asyncio
import logging
import uuid
from datetime import datetime, timezone
from typing import Optional

from services.notification.channels import ChannelSender, default_senders
from services.notification.inbox import NotificationStore
from services.notification.preferences import NotificationPreference, PreferenceService
from shared.events import DomainEvent
from shared.exceptions import ChannelDeliveryError, InvalidStateError
from shared.models.models import (
    DeliveryStatus,
    EventType,
    Notification,
    NotificationCategory,
    NotificationChannel,
    NotificationPriority,
)

logger = logging.getLogger(__name__)


EVENT_CATEGORY: dict[EventType, NotificationCategory] = {
    EventType.BOOKING_APPROVED: NotificationCategory.BOOKING_APPROVAL,
    EventType.BOOKING_DECLINED: NotificationCategory.BOOKING_DECLINE,
    EventType.BOOKING_COMPLETED: NotificationCategory.BOOKING_COMPLETION,
    EventType.BOOKING_CANCELLED: NotificationCategory.BOOKING_CANCELLATION,
    EventType.PAYMENT_CONFIRMED: NotificationCategory.PAYMENT_UPDATE,
    EventType.PAYMENT_FAILED: NotificationCategory.PAYMENT_UPDATE,
    EventType.REFUND_PROCESSED: NotificationCategory.REFUND_UPDATE,
    EventType.REFUND_FAILED: NotificationCategory.REFUND_UPDATE,
}

EVENT_PRIORITY: dict[EventType, NotificationPriority] = {
    EventType.BOOKING_APPROVED: NotificationPriority.HIGH,
    EventType.BOOKING_DECLINED: NotificationPriority.HIGH,
    EventType.BOOKING_CANCELLED: NotificationPriority.HIGH,
    EventType.BOOKING_COMPLETED: NotificationPriority.MEDIUM,
    EventType.PAYMENT_CONFIRMED: NotificationPriority.MEDIUM,
    EventType.PAYMENT_FAILED: NotificationPriority.HIGH,
    EventType.REFUND_PROCESSED: NotificationPriority.MEDIUM,
    EventType.REFUND_FAILED: NotificationPriority.HIGH,
}

DELIVERY_TRANSITIONS: dict[DeliveryStatus, set[DeliveryStatus]] = {
    DeliveryStatus.QUEUED: {DeliveryStatus.PROCESSING},
    DeliveryStatus.PROCESSING: {DeliveryStatus.DELIVERED, DeliveryStatus.FAILED},
}


# ── Notification Templates ────────────────────────────────────

TEMPLATES = {
    EventType.BOOKING_APPROVED: {
        "title": "Booking Approved",
        "body": "Your {resource} booking {booking_reference} for {patient_name} on {scheduled_date} has been approved.",
        "sms": "MedBooking: Booking {booking_reference} approved for {scheduled_date}.",
    },
    EventType.BOOKING_DECLINED: {
        "title": "Booking Declined",
        "body": "The hospital declined booking {booking_reference}. Reason: {reason}",
        "sms": "MedBooking: Booking {booking_reference} was declined. Reason: {reason}",
    },
    EventType.BOOKING_COMPLETED: {
        "title": "Booking Completed",
        "body": "Booking {booking_reference} for {patient_name} has been marked as completed.",
        "sms": None,
    },
    EventType.BOOKING_CANCELLED: {
        "title": "Booking Cancelled",
        "body": "Booking {booking_reference} for {scheduled_date} has been cancelled. Reason: {reason}",
        "sms": "MedBooking: Booking {booking_reference} cancelled.",
    },
    EventType.PAYMENT_CONFIRMED: {
        "title": "Payment Successful",
        "body": "Payment of ₹{amount} received for booking {booking_reference}.",
        "sms": "MedBooking: Payment of Rs.{amount} received. Booking {booking_reference}",
    },
    EventType.PAYMENT_FAILED: {
        "title": "Payment Failed",
        "body": "Payment of ₹{amount} for booking {booking_reference} did not go through. {retry_hint}",
        "sms": "MedBooking: Payment for booking {booking_reference} failed. {retry_hint}",
    },
    EventType.REFUND_PROCESSED: {
        "title": "Refund Processed",
        "body": "A refund of ₹{refund_amount} ({tier}% of your payment) for booking {booking_reference} has been issued.",
        "sms": "MedBooking: Refund of Rs.{refund_amount} issued for booking {booking_reference}.",
    },
    EventType.REFUND_FAILED: {
        "title": "Refund Delayed",
        "body": (
            "We could not issue the refund of ₹{refund_amount} for booking {booking_reference} automatically. "
            "Our support team will complete it and keep you posted."
        ),
        "sms": "MedBooking: Refund for booking {booking_reference} is delayed. Support will follow up.",
    },
}


def _now() -> datetime:
    return datetime.now(timezone.utc)


def transition_delivery(notification: Notification, target: DeliveryStatus) -> None:
    current = DeliveryStatus(notification.status)
    if target not in DELIVERY_TRANSITIONS.get(current, set()):
        raise InvalidStateError(
            f"Notification {notification.id} cannot move from {current.value} to {target.value}",
            current=current.value,
        )
    notification.status = target


class NotificationDispatcher:

    def __init__(
        self,
        store: NotificationStore,
        senders: Optional[dict[NotificationChannel, ChannelSender]] = None,
        preferences: Optional[PreferenceService] = None,
    ):
        self.store = store
        self.senders = senders if senders is not None else default_senders()
        self.preferences = preferences

    async def handle(self, event: DomainEvent) -> list[Notification]:
        """EventBus subscriber: look up the recipient's preferences and dispatch."""
        if self.preferences is None:
            raise RuntimeError("NotificationDispatcher.handle needs a PreferenceService")
        prefs = await self.preferences.get_preferences(event.user_id)
        return await self.dispatch(event, prefs)

    async def dispatch(self, event: DomainEvent, preferences: NotificationPreference) -> list[Notification]:
        category = EVENT_CATEGORY[event.type]
        channels = preferences.enabled_channels(category)
        if not channels:
            logger.debug(f"No channels enabled for {event.type.value} to user {event.user_id}")
            return []

        rendered = self._render(event)
        notifications = []
        for channel in channels:
            title, body = rendered[channel]
            n = Notification(
                id=uuid.uuid4(),
                user_id=event.user_id,
                booking_id=event.booking_id,
                type=event.type,
                channel=channel,
                status=DeliveryStatus.QUEUED,
                priority=EVENT_PRIORITY[event.type],
                title=title,
                body=body,
                created_at=_now(),
                is_read=False,
            )
            await self.store.add(n)
            notifications.append(n)

        await asyncio.gather(*(self._deliver(n, event) for n in notifications))
        return notifications

    async def _deliver(self, n: Notification, event: DomainEvent) -> None:
        transition_delivery(n, DeliveryStatus.PROCESSING)
        await self.store.update(n)

        sender = self.senders.get(NotificationChannel(n.channel))
        try:
            if sender is None:
                raise ChannelDeliveryError(NotificationChannel(n.channel).value, "No sender configured")
            await sender.send(
                event.recipient,
                n.title,
                n.body,
                {"booking_id": str(event.booking_id), "type": event.type.value},
            )
        except ChannelDeliveryError as e:
            transition_delivery(n, DeliveryStatus.FAILED)
            n.last_error = e.message
            logger.warning(f"Notification {n.id} ({n.channel.value}) failed for user {n.user_id}: {e.message}")
        except Exception as e:
            # any other sender failure stays on its own notification
            transition_delivery(n, DeliveryStatus.FAILED)
            n.last_error = f"{NotificationChannel(n.channel).value}: {e}"
            logger.exception(f"Notification {n.id} ({n.channel.value}) sender crashed for user {n.user_id}")
        else:
            transition_delivery(n, DeliveryStatus.DELIVERED)
            n.delivered_at = _now()
        await self.store.update(n)

    @staticmethod
    def _render(event: DomainEvent) -> dict[NotificationChannel, tuple[str, str]]:
        template = TEMPLATES[event.type]
        values = event.template_vars()
        if event.type == EventType.PAYMENT_FAILED:
            values["retry_hint"] = (
                "You can retry in a moment." if values.get("retry_available") else "Please start a new payment."
            )
        title = template["title"].format(**values)
        body = template["body"].format(**values)
        sms = (template.get("sms") or template["body"]).format(**values)
        return {
            NotificationChannel.EMAIL: (title, body),
            NotificationChannel.PUSH: (title, body),
            NotificationChannel.SMS: (title, sms),
        }
