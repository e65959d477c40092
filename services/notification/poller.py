"""
services/notification/poller.py
Periodic unread-count refresh, one task per signed-in session.

The fixed interval (NOTIFICATION_POLL_INTERVAL_SECONDS, 30s) is the latency
bound for a new notification to show up on the badge. On read errors the
interval doubles up to NOTIFICATION_POLL_MAX_INTERVAL_SECONDS and snaps back
after the next success. Pollers stop on sign-out and on shutdown.
"""

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Optional, Union

from config.settings import settings

logger = logging.getLogger(__name__)

OnUpdate = Callable[[int], Union[Awaitable[Any], Any]]


class UnreadCountPoller:

    def __init__(
        self,
        inbox,
        user_id,
        on_update: Optional[OnUpdate] = None,
        interval: float = settings.NOTIFICATION_POLL_INTERVAL_SECONDS,
        max_interval: float = settings.NOTIFICATION_POLL_MAX_INTERVAL_SECONDS,
    ):
        self.inbox = inbox
        self.user_id = user_id
        self.on_update = on_update
        self.interval = interval
        self.max_interval = max(max_interval, interval)
        self.last_count: Optional[int] = None
        self.consecutive_errors = 0
        self._stop = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> "UnreadCountPoller":
        if not self.running:
            self._stop.clear()
            self._task = asyncio.create_task(self._run(), name=f"unread-poller:{self.user_id}")
        return self

    async def stop(self) -> None:
        self._stop.set()
        if self._task is not None:
            await self._task
            self._task = None

    def next_delay(self) -> float:
        if self.consecutive_errors == 0:
            return self.interval
        return min(self.interval * 2 ** self.consecutive_errors, self.max_interval)

    async def poll_once(self) -> Optional[int]:
        try:
            count = await self.inbox.get_unread_count(self.user_id)
        except Exception as e:
            self.consecutive_errors += 1
            logger.warning(
                f"Unread count refresh failed for user {self.user_id} "
                f"(attempt {self.consecutive_errors}, next in {self.next_delay():.0f}s): {e}"
            )
            return None

        self.consecutive_errors = 0
        changed = count != self.last_count
        self.last_count = count
        if changed and self.on_update is not None:
            outcome = self.on_update(count)
            if inspect.isawaitable(outcome):
                await outcome
        return count

    async def _run(self) -> None:
        while not self._stop.is_set():
            await self.poll_once()
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.next_delay())
            except asyncio.TimeoutError:
                continue


class PollerRegistry:
    """Tracks live pollers by session id so sign-out and shutdown can stop them."""

    def __init__(self, inbox, **poller_kwargs):
        self.inbox = inbox
        self.poller_kwargs = poller_kwargs
        self._pollers: dict[str, UnreadCountPoller] = {}

    def get(self, session_id: str) -> Optional[UnreadCountPoller]:
        return self._pollers.get(session_id)

    def __len__(self) -> int:
        return len(self._pollers)

    async def start(self, session_id: str, user_id, on_update: Optional[OnUpdate] = None) -> UnreadCountPoller:
        await self.stop(session_id)
        poller = UnreadCountPoller(self.inbox, user_id, on_update, **self.poller_kwargs)
        self._pollers[session_id] = poller.start()
        return poller

    async def stop(self, session_id: str) -> None:
        poller = self._pollers.pop(session_id, None)
        if poller is not None:
            await poller.stop()

    async def stop_user(self, user_id) -> int:
        """Sign-out: stop every session the user has open."""
        sessions = [sid for sid, p in self._pollers.items() if str(p.user_id) == str(user_id)]
        for sid in sessions:
            await self.stop(sid)
        return len(sessions)

    async def stop_all(self) -> None:
        for sid in list(self._pollers):
            await self.stop(sid)
        logger.info("All notification pollers stopped")
