from datetime import datetime
from uuid import UUID

from pydantic import BaseModel


class NotificationOut(BaseModel):
    id: UUID
    title: str
    message: str
    type: str
    priority: str
    reference_id: UUID | None = None
    reference_type: str | None = None
    metadata: dict | None = None
    action_button: dict | None = None
    tags: list[str] | None = None
    delivery_status: str
    delivered_at: datetime | None = None
    read_at: datetime | None = None
    created_at: datetime


class NotificationListResponse(BaseModel):
    notifications: list[NotificationOut]
    unread: int


class UnreadCountResponse(BaseModel):
    count: int
