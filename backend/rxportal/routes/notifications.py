"""
In-app notification endpoints for the current user.
"""

import logging
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from rxportal.database import get_db
from rxportal.middleware.auth import get_current_user
from rxportal.models.user import User
from rxportal.schemas.notification import (
    NotificationListResponse,
    NotificationOut,
    UnreadCountResponse,
)
from rxportal.services import notification_service
from rxportal.services.notification_service import NotificationNotFound

logger = logging.getLogger(__name__)
router = APIRouter()


def _to_out(notification, recipient) -> NotificationOut:
    return NotificationOut(
        id=notification.id,
        title=notification.title,
        message=notification.message,
        type=notification.type,
        priority=notification.priority,
        reference_id=notification.reference_id,
        reference_type=notification.reference_type,
        metadata=notification.reference_metadata,
        action_button=notification.action_button,
        tags=notification.tags,
        delivery_status=recipient.delivery_status,
        delivered_at=recipient.delivered_at,
        read_at=recipient.read_at,
        created_at=notification.created_at,
    )


@router.get("/", response_model=NotificationListResponse)
async def list_notifications(
    unread_only: bool = Query(False),
    type_filter: Optional[str] = Query(None, alias="type"),
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    rows = await notification_service.list_user_notifications(
        db,
        user_id=current_user.id,
        unread_only=unread_only,
        type=type_filter,
        limit=limit,
        offset=offset,
    )
    unread = await notification_service.count_unread(db, user_id=current_user.id)
    return NotificationListResponse(
        notifications=[_to_out(n, r) for n, r in rows],
        unread=unread,
    )


@router.get("/unread-count", response_model=UnreadCountResponse)
async def unread_count(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    count = await notification_service.count_unread(db, user_id=current_user.id)
    return UnreadCountResponse(count=count)


@router.patch("/{notification_id}/read", response_model=UnreadCountResponse)
async def mark_notification_read(
    notification_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Mark one notification read; returns the remaining unread count."""
    try:
        await notification_service.mark_as_read(
            db, notification_id=notification_id, user_id=current_user.id,
        )
    except NotificationNotFound:
        raise HTTPException(status_code=404, detail="Notification not found")
    count = await notification_service.count_unread(db, user_id=current_user.id)
    return UnreadCountResponse(count=count)
