"""
services/notification/router.py
In-app notifications: list, unread count and read flags.
Live delivery happens over the WebSocket channel as `newNotification` frames.
"""

from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.settings import settings
from services.notification.sink import NotificationSink
from shared.middleware.auth import RequestContext, get_request_context
from shared.schemas.schemas import (
    MarkAllReadResponse,
    NotificationResponse,
    UnreadCountResponse,
)

router = APIRouter(prefix="/notifications", tags=["Notifications"])


@router.get("", response_model=List[NotificationResponse])
async def get_my_notifications(
    limit: Optional[int] = Query(None, ge=1, le=200),
    unread_only: bool = Query(False, alias="unreadOnly"),
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_db),
):
    """Newest first."""
    notifications = await NotificationSink(db).list_for_user(
        ctx.user_id,
        limit=limit or settings.NOTIFICATION_LIST_LIMIT,
        unread_only=unread_only,
    )
    return [NotificationResponse.model_validate(n) for n in notifications]


@router.get("/unread-count", response_model=UnreadCountResponse)
async def unread_count(
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_db),
):
    count = await NotificationSink(db).unread_count(ctx.user_id)
    return UnreadCountResponse(count=count)


@router.patch("/read-all", response_model=MarkAllReadResponse)
async def mark_all_read(
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_db),
):
    updated = await NotificationSink(db).mark_all_read(ctx.user_id)
    await db.commit()
    return MarkAllReadResponse(message="All notifications marked as read", updated=updated)


@router.patch("/{notification_id}/read", response_model=NotificationResponse)
async def mark_read(
    notification_id: UUID,
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_db),
):
    notif = await NotificationSink(db).mark_read(notification_id, ctx.user_id)
    await db.commit()
    return NotificationResponse.model_validate(notif)
