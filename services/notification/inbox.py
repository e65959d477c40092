"""
services/notification/inbox.py
Notification storage and the reader-facing inbox: listing, history,
unread count, and read-state changes.

Read state (`is_read`) is the only thing the reader may change; delivery
status belongs to the dispatcher. Marking read is idempotent.
"""

import uuid
from datetime import datetime, timezone
from typing import Callable, Protocol

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from shared.exceptions import NotificationNotFoundError
from shared.models.models import Notification
from shared.schemas.schemas import NotificationFilter


class NotificationStore(Protocol):
    async def add(self, notification: Notification) -> None: ...

    async def update(self, notification: Notification) -> None: ...

    async def list(self, user_id, filter: NotificationFilter) -> list[Notification]: ...

    async def unread_count(self, user_id) -> int: ...

    async def mark_read(self, user_id, notification_id, read_at: datetime) -> Notification: ...

    async def mark_all_read(self, user_id, read_at: datetime) -> int: ...


def _matches(n: Notification, f: NotificationFilter) -> bool:
    if f.unread_only and n.is_read:
        return False
    if f.channel is not None and n.channel != f.channel:
        return False
    if f.status is not None and n.status != f.status:
        return False
    if f.type is not None and n.type != f.type:
        return False
    if f.booking_id is not None and n.booking_id != f.booking_id:
        return False
    if f.since is not None and n.created_at < f.since:
        return False
    return True


class InMemoryNotificationStore:
    def __init__(self):
        self.items: dict[uuid.UUID, Notification] = {}

    async def add(self, notification: Notification) -> None:
        self.items[notification.id] = notification

    async def update(self, notification: Notification) -> None:
        self.items[notification.id] = notification

    async def list(self, user_id, filter: NotificationFilter) -> list[Notification]:
        user_id = uuid.UUID(str(user_id))
        rows = [n for n in self.items.values() if n.user_id == user_id and _matches(n, filter)]
        rows.sort(key=lambda n: n.created_at, reverse=True)
        start = (filter.page - 1) * filter.page_size
        return rows[start:start + filter.page_size]

    async def unread_count(self, user_id) -> int:
        user_id = uuid.UUID(str(user_id))
        return sum(1 for n in self.items.values() if n.user_id == user_id and not n.is_read)

    async def mark_read(self, user_id, notification_id, read_at: datetime) -> Notification:
        n = self.items.get(uuid.UUID(str(notification_id)))
        if n is None or n.user_id != uuid.UUID(str(user_id)):
            raise NotificationNotFoundError(notification_id)
        if not n.is_read:
            n.is_read = True
            n.read_at = read_at
        return n

    async def mark_all_read(self, user_id, read_at: datetime) -> int:
        user_id = uuid.UUID(str(user_id))
        changed = 0
        for n in self.items.values():
            if n.user_id == user_id and not n.is_read:
                n.is_read = True
                n.read_at = read_at
                changed += 1
        return changed


class SqlNotificationStore:
    """Each call opens its own short-lived session."""

    def __init__(self, session_factory: Callable[[], AsyncSession]):
        self.session_factory = session_factory

    async def add(self, notification: Notification) -> None:
        async with self.session_factory() as db:
            db.add(notification)
            await db.commit()

    async def update(self, notification: Notification) -> None:
        async with self.session_factory() as db:
            await db.merge(notification)
            await db.commit()

    async def list(self, user_id, filter: NotificationFilter) -> list[Notification]:
        query = select(Notification).where(Notification.user_id == uuid.UUID(str(user_id)))
        if filter.unread_only:
            query = query.where(Notification.is_read == False)  # noqa: E712
        if filter.channel is not None:
            query = query.where(Notification.channel == filter.channel)
        if filter.status is not None:
            query = query.where(Notification.status == filter.status)
        if filter.type is not None:
            query = query.where(Notification.type == filter.type)
        if filter.booking_id is not None:
            query = query.where(Notification.booking_id == filter.booking_id)
        if filter.since is not None:
            query = query.where(Notification.created_at >= filter.since)
        query = (
            query.order_by(Notification.created_at.desc())
            .offset((filter.page - 1) * filter.page_size)
            .limit(filter.page_size)
        )
        async with self.session_factory() as db:
            result = await db.execute(query)
            return list(result.scalars())

    async def unread_count(self, user_id) -> int:
        async with self.session_factory() as db:
            count = await db.scalar(
                select(func.count(Notification.id)).where(
                    Notification.user_id == uuid.UUID(str(user_id)),
                    Notification.is_read == False,  # noqa: E712
                )
            )
        return count or 0

    async def mark_read(self, user_id, notification_id, read_at: datetime) -> Notification:
        async with self.session_factory() as db:
            n = await db.scalar(
                select(Notification).where(
                    Notification.id == uuid.UUID(str(notification_id)),
                    Notification.user_id == uuid.UUID(str(user_id)),
                )
            )
            if n is None:
                raise NotificationNotFoundError(notification_id)
            if not n.is_read:
                n.is_read = True
                n.read_at = read_at
                await db.commit()
            return n

    async def mark_all_read(self, user_id, read_at: datetime) -> int:
        async with self.session_factory() as db:
            result = await db.execute(
                update(Notification)
                .where(
                    Notification.user_id == uuid.UUID(str(user_id)),
                    Notification.is_read == False,  # noqa: E712
                )
                .values(is_read=True, read_at=read_at)
            )
            await db.commit()
        return result.rowcount or 0


class NotificationInbox:
    """Reader-facing view over a NotificationStore."""

    def __init__(self, store: NotificationStore):
        self.store = store

    async def get_user_notifications(self, user_id, filter: NotificationFilter | None = None) -> list[Notification]:
        return await self.store.list(user_id, filter or NotificationFilter())

    async def get_history(self, user_id, filter: NotificationFilter | None = None) -> list[Notification]:
        """Every delivery record, read or not, failed ones included."""
        filter = (filter or NotificationFilter()).model_copy(update={"unread_only": False})
        return await self.store.list(user_id, filter)

    async def get_unread_count(self, user_id) -> int:
        return await self.store.unread_count(user_id)

    async def mark_as_read(self, user_id, notification_id) -> Notification:
        return await self.store.mark_read(user_id, notification_id, datetime.now(timezone.utc))

    async def mark_all_as_read(self, user_id) -> int:
        return await self.store.mark_all_read(user_id, datetime.now(timezone.utc))
