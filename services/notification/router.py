"""
services/notification/router.py
In-app notification inbox, delivery history, preferences, and the live
unread-count stream (server-sent events fed by a per-session poller).
"""

import asyncio
import json
from datetime import datetime
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import StreamingResponse

from services.dependencies import get_inbox, get_poller_registry, get_preference_service
from services.notification.inbox import NotificationInbox
from services.notification.poller import PollerRegistry
from services.notification.preferences import NotificationPreference, PreferenceService
from shared.middleware.auth import Principal, get_current_principal
from shared.models.models import DeliveryStatus, EventType, NotificationCategory, NotificationChannel
from shared.schemas.schemas import (
    ChannelToggleRequest,
    MessageResponse,
    NotificationFilter,
    NotificationResponse,
    PreferencesResponse,
    PreferencesUpdateRequest,
    UnreadCountResponse,
)

router = APIRouter(prefix="/notifications", tags=["Notifications"])

# Seconds between SSE comments that keep idle proxies from closing the stream
_KEEPALIVE_SECONDS = 15.0


def _preferences_response(pref: NotificationPreference) -> PreferencesResponse:
    return PreferencesResponse(
        user_id=pref.user_id,
        email_enabled=pref.email_enabled,
        sms_enabled=pref.sms_enabled,
        push_enabled=pref.push_enabled,
        event_channels=pref.event_channels,
    )


def _build_filter(
    unread_only: bool = Query(False),
    channel: Optional[NotificationChannel] = Query(None),
    status: Optional[DeliveryStatus] = Query(None),
    type: Optional[EventType] = Query(None),
    booking_id: Optional[UUID] = Query(None),
    since: Optional[datetime] = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
) -> NotificationFilter:
    return NotificationFilter(
        unread_only=unread_only,
        channel=channel,
        status=status,
        type=type,
        booking_id=booking_id,
        since=since,
        page=page,
        page_size=page_size,
    )


# ── Inbox ─────────────────────────────────────────────────────

@router.get("", response_model=list[NotificationResponse])
async def get_my_notifications(
    filter: NotificationFilter = Depends(_build_filter),
    principal: Principal = Depends(get_current_principal),
    inbox: NotificationInbox = Depends(get_inbox),
):
    """Get authenticated user's notifications, newest first."""
    items = await inbox.get_user_notifications(principal.user_id, filter)
    return [NotificationResponse.model_validate(n) for n in items]


@router.get("/history", response_model=list[NotificationResponse])
async def get_history(
    filter: NotificationFilter = Depends(_build_filter),
    principal: Principal = Depends(get_current_principal),
    inbox: NotificationInbox = Depends(get_inbox),
):
    """Every delivery record, read or not, including failed deliveries."""
    items = await inbox.get_history(principal.user_id, filter)
    return [NotificationResponse.model_validate(n) for n in items]


@router.get("/unread-count", response_model=UnreadCountResponse)
async def unread_count(
    principal: Principal = Depends(get_current_principal),
    inbox: NotificationInbox = Depends(get_inbox),
):
    return UnreadCountResponse(unread_count=await inbox.get_unread_count(principal.user_id))


@router.get("/unread-count/stream")
async def unread_count_stream(
    request: Request,
    principal: Principal = Depends(get_current_principal),
    registry: PollerRegistry = Depends(get_poller_registry),
):
    """
    Server-sent events: one `unread_count` event on connect and another each
    time the poller sees the count change. The poller runs for as long as
    the client stays connected, or until sign-out.
    """
    updates: asyncio.Queue = asyncio.Queue()
    poller = await registry.start(principal.session_id, principal.user_id, updates.put)

    async def event_stream():
        try:
            while poller.running and not await request.is_disconnected():
                try:
                    count = await asyncio.wait_for(updates.get(), timeout=_KEEPALIVE_SECONDS)
                except asyncio.TimeoutError:
                    yield ": keepalive\n\n"
                    continue
                yield f"event: unread_count\ndata: {json.dumps({'unread_count': count})}\n\n"
        finally:
            if registry.get(principal.session_id) is poller:
                await registry.stop(principal.session_id)

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@router.post("/{notification_id}/read", response_model=NotificationResponse)
async def mark_read(
    notification_id: UUID,
    principal: Principal = Depends(get_current_principal),
    inbox: NotificationInbox = Depends(get_inbox),
):
    """Idempotent: marking an already-read notification changes nothing."""
    notification = await inbox.mark_as_read(principal.user_id, notification_id)
    return NotificationResponse.model_validate(notification)


@router.post("/read-all", response_model=MessageResponse)
async def mark_all_read(
    principal: Principal = Depends(get_current_principal),
    inbox: NotificationInbox = Depends(get_inbox),
):
    changed = await inbox.mark_all_as_read(principal.user_id)
    return MessageResponse(message=f"{changed} notifications marked as read")


# ── Preferences ───────────────────────────────────────────────

@router.get("/preferences", response_model=PreferencesResponse)
async def get_preferences(
    principal: Principal = Depends(get_current_principal),
    preferences: PreferenceService = Depends(get_preference_service),
):
    return _preferences_response(await preferences.get_preferences(principal.user_id))


@router.put("/preferences", response_model=PreferencesResponse)
async def replace_preferences(
    data: PreferencesUpdateRequest,
    principal: Principal = Depends(get_current_principal),
    preferences: PreferenceService = Depends(get_preference_service),
):
    """Replace the whole matrix. Cells under a disabled channel are forced off."""
    pref = NotificationPreference(
        user_id=principal.user_id,
        email_enabled=data.email_enabled,
        sms_enabled=data.sms_enabled,
        push_enabled=data.push_enabled,
        event_channels=data.event_channels,
    )
    return _preferences_response(await preferences.replace(pref))


@router.put("/preferences/channels/{channel}", response_model=PreferencesResponse)
async def toggle_channel(
    channel: NotificationChannel,
    data: ChannelToggleRequest,
    principal: Principal = Depends(get_current_principal),
    preferences: PreferenceService = Depends(get_preference_service),
):
    """Turning a channel off also turns it off for every event type."""
    pref = await preferences.toggle_global_channel(principal.user_id, channel, data.enabled)
    return _preferences_response(pref)


@router.put("/preferences/events/{category}/{channel}", response_model=PreferencesResponse)
async def toggle_event_channel(
    category: NotificationCategory,
    channel: NotificationChannel,
    data: ChannelToggleRequest,
    principal: Principal = Depends(get_current_principal),
    preferences: PreferenceService = Depends(get_preference_service),
):
    """Turning a cell on while its channel is off globally is rejected (422)."""
    pref = await preferences.set_event_channel(principal.user_id, category, channel, data.enabled)
    return _preferences_response(pref)


# ── Session ───────────────────────────────────────────────────

@router.post("/sign-out", response_model=MessageResponse)
async def sign_out(
    principal: Principal = Depends(get_current_principal),
    registry: PollerRegistry = Depends(get_poller_registry),
):
    """Stop every unread-count poller the user has running."""
    stopped = await registry.stop_user(principal.user_id)
    return MessageResponse(message=f"Signed out; {stopped} notification sessions closed")
