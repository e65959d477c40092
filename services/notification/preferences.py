"""
services/notification/preferences.py
Per-user notification preference matrix.

Global toggles per channel plus a (category, channel) -> bool map. A cell is
effective only when its channel's global toggle is also on. Turning a global
channel off switches every cell of that channel off in the same write;
turning it back on restores nothing.
"""

import asyncio
import logging
import uuid
from collections import defaultdict
from typing import Callable, Protocol

from pydantic import BaseModel, Field, model_validator
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from shared.exceptions import ValidationError
from shared.models.models import (
    NotificationCategory,
    NotificationChannel,
    NotificationPreferenceRecord,
)

logger = logging.getLogger(__name__)

Matrix = dict[NotificationCategory, dict[NotificationChannel, bool]]

_E, _S, _P = NotificationChannel.EMAIL, NotificationChannel.SMS, NotificationChannel.PUSH

DEFAULT_EVENT_CHANNELS: Matrix = {
    NotificationCategory.BOOKING_APPROVAL: {_E: True, _S: True, _P: True},
    NotificationCategory.BOOKING_DECLINE: {_E: True, _S: True, _P: True},
    NotificationCategory.BOOKING_COMPLETION: {_E: True, _S: False, _P: True},
    NotificationCategory.BOOKING_CANCELLATION: {_E: True, _S: True, _P: True},
    NotificationCategory.PAYMENT_UPDATE: {_E: True, _S: True, _P: True},
    NotificationCategory.REFUND_UPDATE: {_E: True, _S: True, _P: True},
}

DEFAULT_PREFERENCE_LOOKUP: dict[tuple[NotificationCategory, NotificationChannel], bool] = {
    (category, channel): enabled
    for category, channels in DEFAULT_EVENT_CHANNELS.items()
    for channel, enabled in channels.items()
}

_GLOBAL_FIELDS = {
    NotificationChannel.EMAIL: "email_enabled",
    NotificationChannel.SMS: "sms_enabled",
    NotificationChannel.PUSH: "push_enabled",
}


def default_event_channels() -> Matrix:
    return {category: dict(channels) for category, channels in DEFAULT_EVENT_CHANNELS.items()}


class NotificationPreference(BaseModel):
    user_id: uuid.UUID
    email_enabled: bool = True
    sms_enabled: bool = True
    push_enabled: bool = True
    event_channels: Matrix = Field(default_factory=default_event_channels)

    @model_validator(mode="after")
    def _normalize(self) -> "NotificationPreference":
        # Fill missing cells with defaults, then force cells of disabled channels off
        matrix: Matrix = {}
        for category in NotificationCategory:
            row = self.event_channels.get(category, {})
            matrix[category] = {
                channel: bool(row.get(channel, DEFAULT_PREFERENCE_LOOKUP[(category, channel)]))
                and self.global_enabled(channel)
                for channel in NotificationChannel
            }
        self.event_channels = matrix
        return self

    def global_enabled(self, channel: NotificationChannel) -> bool:
        return getattr(self, _GLOBAL_FIELDS[NotificationChannel(channel)])

    def is_enabled(self, category: NotificationCategory, channel: NotificationChannel) -> bool:
        """Effective-enabled: global toggle AND the specific cell."""
        channel = NotificationChannel(channel)
        return self.global_enabled(channel) and self.event_channels[NotificationCategory(category)][channel]

    def enabled_channels(self, category: NotificationCategory) -> list[NotificationChannel]:
        return [channel for channel in NotificationChannel if self.is_enabled(category, channel)]

    def with_global_channel(self, channel: NotificationChannel, enabled: bool) -> "NotificationPreference":
        channel = NotificationChannel(channel)
        matrix = {category: dict(row) for category, row in self.event_channels.items()}
        if not enabled:
            for row in matrix.values():
                row[channel] = False
        return self.model_copy(update={_GLOBAL_FIELDS[channel]: enabled, "event_channels": matrix})

    def with_event_channel(
        self,
        category: NotificationCategory,
        channel: NotificationChannel,
        enabled: bool,
    ) -> "NotificationPreference":
        category, channel = NotificationCategory(category), NotificationChannel(channel)
        if enabled and not self.global_enabled(channel):
            raise ValidationError(
                f"Enable {channel.value} notifications before turning on {category.value} alerts",
                field=_GLOBAL_FIELDS[channel],
                code="CHANNEL_DISABLED",
            )
        matrix = {cat: dict(row) for cat, row in self.event_channels.items()}
        matrix[category][channel] = enabled
        return self.model_copy(update={"event_channels": matrix})


# ── Stores ────────────────────────────────────────────────────

class PreferenceStore(Protocol):
    async def get_preferences(self, user_id) -> NotificationPreference: ...

    async def save_preferences(self, preference: NotificationPreference) -> None: ...


class InMemoryPreferenceStore:
    def __init__(self):
        self._data: dict[str, NotificationPreference] = {}
        self.writes = 0

    async def get_preferences(self, user_id) -> NotificationPreference:
        return self._data.get(str(user_id)) or NotificationPreference(user_id=user_id)

    async def save_preferences(self, preference: NotificationPreference) -> None:
        self._data[str(preference.user_id)] = preference
        self.writes += 1


class SqlPreferenceStore:
    def __init__(self, session_factory: Callable[[], AsyncSession]):
        self.session_factory = session_factory

    async def get_preferences(self, user_id) -> NotificationPreference:
        async with self.session_factory() as db:
            record = await db.scalar(
                select(NotificationPreferenceRecord).where(
                    NotificationPreferenceRecord.user_id == uuid.UUID(str(user_id))
                )
            )
        if record is None:
            return NotificationPreference(user_id=user_id)
        return NotificationPreference(
            user_id=record.user_id,
            email_enabled=record.email_enabled,
            sms_enabled=record.sms_enabled,
            push_enabled=record.push_enabled,
            event_channels=record.event_channels or {},
        )

    async def save_preferences(self, preference: NotificationPreference) -> None:
        """Globals and every cell go out in one row update."""
        payload = preference.model_dump(mode="json")
        async with self.session_factory() as db:
            record = await db.get(NotificationPreferenceRecord, preference.user_id)
            if record is None:
                record = NotificationPreferenceRecord(user_id=preference.user_id)
                db.add(record)
            record.email_enabled = preference.email_enabled
            record.sms_enabled = preference.sms_enabled
            record.push_enabled = preference.push_enabled
            record.event_channels = payload["event_channels"]
            await db.commit()


# ── Service ───────────────────────────────────────────────────

class PreferenceService:
    """
    Read-modify-write of a user's matrix under a per-user lock, so a toggle
    and its cascade land as a single save.
    """

    def __init__(self, store: PreferenceStore):
        self.store = store
        self._locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def get_preferences(self, user_id) -> NotificationPreference:
        return await self.store.get_preferences(user_id)

    async def toggle_global_channel(
        self, user_id, channel: NotificationChannel, enabled: bool
    ) -> NotificationPreference:
        async with self._locks[str(user_id)]:
            current = await self.store.get_preferences(user_id)
            updated = current.with_global_channel(channel, enabled)
            await self.store.save_preferences(updated)
        logger.info(f"User {user_id} turned {NotificationChannel(channel).value} notifications {'on' if enabled else 'off'}")
        return updated

    async def set_event_channel(
        self,
        user_id,
        category: NotificationCategory,
        channel: NotificationChannel,
        enabled: bool,
    ) -> NotificationPreference:
        async with self._locks[str(user_id)]:
            current = await self.store.get_preferences(user_id)
            updated = current.with_event_channel(category, channel, enabled)
            await self.store.save_preferences(updated)
        return updated

    async def replace(self, preference: NotificationPreference) -> NotificationPreference:
        async with self._locks[str(preference.user_id)]:
            await self.store.save_preferences(preference)
        return preference
