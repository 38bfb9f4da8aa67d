"""
Notification service.

Persists notifications with one recipient row per user and "delivers" them
over the enabled channels:

- email: a generic notification email per recipient; each recipient row is
  marked delivered or failed individually.
- in_app: every still-pending recipient is marked delivered.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional
from uuid import UUID

from sqlalchemy import select, and_, func
from sqlalchemy.ext.asyncio import AsyncSession

from rxportal.models.notification import (
    NOTIFICATION_PRIORITIES,
    Notification,
    NotificationRecipient,
)
from rxportal.models.user import User
from rxportal.services.email_service import render_notification_email, send_email

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Recipient:
    user_id: UUID
    role: str


class NotificationNotFound(LookupError):
    pass


def build_channels(*, in_app: bool = True, email: bool = False) -> dict:
    return {
        "in_app": {"enabled": in_app, "delivered": False},
        "email": {"enabled": email, "delivered": False, "email_id": None},
    }


# ---------------------------------------------------------------------------
# 1. Create
# ---------------------------------------------------------------------------

async def create_notification(
    db: AsyncSession,
    *,
    title: str,
    message: str,
    type: str,
    recipients: list[Recipient],
    priority: str = "medium",
    reference_id: Optional[UUID] = None,
    reference_type: Optional[str] = None,
    metadata: Optional[dict] = None,
    channels: Optional[dict] = None,
    action_button: Optional[dict] = None,
    tags: Optional[list[str]] = None,
    created_by_user_id: Optional[UUID] = None,
    created_by_role: Optional[str] = None,
) -> Notification:
    """Persist a notification and its recipient rows (all ``pending``)."""
    if priority not in NOTIFICATION_PRIORITIES:
        raise ValueError(f"Invalid priority '{priority}'")
    if not recipients:
        raise ValueError("A notification needs at least one recipient")

    notification = Notification(
        title=title[:200],
        message=message[:1000],
        type=type,
        priority=priority,
        reference_id=reference_id,
        reference_type=reference_type,
        reference_metadata=metadata,
        channels=channels or build_channels(),
        action_button=action_button,
        tags=tags,
        created_by_user_id=created_by_user_id,
        created_by_role=created_by_role,
        status="active",
    )
    notification.recipients = [
        NotificationRecipient(user_id=r.user_id, user_role=r.role, delivery_status="pending")
        for r in recipients
    ]
    db.add(notification)
    await db.flush()
    await db.commit()

    logger.info(
        "notification: created %s '%s' for %d recipient(s)",
        notification.id, type, len(recipients),
    )
    return notification


# ---------------------------------------------------------------------------
# 2. Deliver
# ---------------------------------------------------------------------------

async def _deliver_email(db: AsyncSession, notification: Notification) -> None:
    last_message_id = None
    for recipient in notification.recipients:
        user = await db.get(User, recipient.user_id)
        if user is None or not user.email:
            continue
        subject, html = render_notification_email(
            title=notification.title,
            message=notification.message,
            recipient_name=user.full_name,
            metadata=notification.reference_metadata,
            action_button=notification.action_button,
        )
        try:
            last_message_id = await send_email(user.email, subject, html)
        except Exception as e:
            logger.warning(
                "notification: email to recipient %s of %s failed: %s",
                recipient.user_id, notification.id, e,
            )
            recipient.delivery_status = "failed"
            continue
        recipient.delivery_status = "delivered"
        recipient.delivered_at = datetime.now(timezone.utc)

    channels = dict(notification.channels or {})
    email_channel = dict(channels.get("email") or {})
    email_channel["delivered"] = last_message_id is not None
    email_channel["email_id"] = last_message_id
    channels["email"] = email_channel
    notification.channels = channels


def _deliver_in_app(notification: Notification) -> None:
    now = datetime.now(timezone.utc)
    for recipient in notification.recipients:
        if recipient.delivery_status == "pending":
            recipient.delivery_status = "delivered"
            recipient.delivered_at = now
    channels = dict(notification.channels or {})
    channels["in_app"] = {**(channels.get("in_app") or {}), "delivered": True}
    notification.channels = channels


async def process_delivery(db: AsyncSession, notification: Notification) -> Notification:
    """Deliver over every enabled channel and persist delivery state."""
    if notification.channel_enabled("email"):
        await _deliver_email(db, notification)
    if notification.channel_enabled("in_app"):
        _deliver_in_app(notification)
    await db.commit()
    return notification


# ---------------------------------------------------------------------------
# 3. Read side
# ---------------------------------------------------------------------------

async def list_user_notifications(
    db: AsyncSession,
    *,
    user_id: UUID,
    unread_only: bool = False,
    type: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
) -> list[tuple[Notification, NotificationRecipient]]:
    filters = [
        NotificationRecipient.user_id == user_id,
        Notification.status == "active",
    ]
    if unread_only:
        filters.append(NotificationRecipient.delivery_status != "read")
    if type:
        filters.append(Notification.type == type)

    result = await db.execute(
        select(Notification, NotificationRecipient)
        .join(NotificationRecipient, NotificationRecipient.notification_id == Notification.id)
        .where(and_(*filters))
        .order_by(Notification.created_at.desc())
        .limit(limit)
        .offset(offset)
    )
    return [(row[0], row[1]) for row in result.all()]


async def count_unread(db: AsyncSession, *, user_id: UUID) -> int:
    result = await db.execute(
        select(func.count(NotificationRecipient.id))
        .join(Notification, NotificationRecipient.notification_id == Notification.id)
        .where(
            and_(
                NotificationRecipient.user_id == user_id,
                NotificationRecipient.delivery_status != "read",
                Notification.status == "active",
            )
        )
    )
    return result.scalar_one()


async def mark_as_read(db: AsyncSession, *, notification_id: UUID, user_id: UUID) -> NotificationRecipient:
    result = await db.execute(
        select(NotificationRecipient).where(
            and_(
                NotificationRecipient.notification_id == notification_id,
                NotificationRecipient.user_id == user_id,
            )
        )
    )
    recipient = result.scalar_one_or_none()
    if recipient is None:
        raise NotificationNotFound("Notification not found")

    if recipient.delivery_status != "read":
        recipient.delivery_status = "read"
        recipient.read_at = datetime.now(timezone.utc)
        await db.commit()
    return recipient
