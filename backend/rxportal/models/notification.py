"""In-app notifications and their per-recipient delivery state."""
from sqlalchemy import Column, String, Text, DateTime, ForeignKey, text
from sqlalchemy.dialects.postgresql import UUID, JSON
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from rxportal.database import Base

NOTIFICATION_PRIORITIES = ("low", "medium", "high", "urgent", "critical")
DELIVERY_STATUSES = ("pending", "delivered", "read", "failed")


class Notification(Base):
    __tablename__ = "notifications"

    id = Column(UUID(as_uuid=True), primary_key=True, server_default=text("gen_random_uuid()"))
    title = Column(String(200), nullable=False)
    message = Column(String(1000), nullable=False)
    type = Column(String(40), nullable=False, index=True)  # refill_request, refill_response, ...
    priority = Column(String(20), nullable=False, default="medium")

    reference_id = Column(UUID(as_uuid=True), nullable=True)
    reference_type = Column(String(40), nullable=True)
    reference_metadata = Column(JSON, nullable=True)

    # {"in_app": {"enabled": bool, "delivered": bool}, "email": {...}}
    channels = Column(JSON, nullable=False, default=dict)
    action_button = Column(JSON, nullable=True)
    tags = Column(JSON, nullable=True)

    created_by_user_id = Column(UUID(as_uuid=True), nullable=True)
    created_by_role = Column(String(20), nullable=True)
    status = Column(String(20), nullable=False, default="active")  # active, archived
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    recipients = relationship(
        "NotificationRecipient",
        back_populates="notification",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    def channel_enabled(self, name: str) -> bool:
        return bool((self.channels or {}).get(name, {}).get("enabled"))

    def __repr__(self):
        return f"<Notification(id={self.id}, type='{self.type}')>"


class NotificationRecipient(Base):
    __tablename__ = "notification_recipients"

    id = Column(UUID(as_uuid=True), primary_key=True, server_default=text("gen_random_uuid()"))
    notification_id = Column(
        UUID(as_uuid=True), ForeignKey("notifications.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    user_role = Column(String(20), nullable=False)
    delivery_status = Column(String(20), nullable=False, default="pending")
    delivered_at = Column(DateTime(timezone=True), nullable=True)
    read_at = Column(DateTime(timezone=True), nullable=True)

    notification = relationship("Notification", back_populates="recipients")
