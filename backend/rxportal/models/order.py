"""Pharmacy order model.

Only the fields the refill workflow reads are modelled here: ownership,
fulfilment status and the human-facing order number.
"""
from sqlalchemy import Column, String, DateTime, ForeignKey, text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.sql import func

from rxportal.database import Base

ORDER_STATUSES = (
    "placed",
    "confirmed",
    "preparing",
    "ready",
    "out_for_delivery",
    "delivered",
    "completed",
    "cancelled",
    "on_hold",
)

# An order in one of these states may be refilled
REFILLABLE_ORDER_STATUSES = frozenset({"delivered", "completed"})


class Order(Base):
    __tablename__ = "orders"

    id = Column(UUID(as_uuid=True), primary_key=True, server_default=text("gen_random_uuid()"))
    order_number = Column(String(40), unique=True, nullable=False)
    patient_id = Column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=False, index=True)
    pharmacy_id = Column(UUID(as_uuid=True), ForeignKey("pharmacies.id"), nullable=False, index=True)
    prescription_id = Column(UUID(as_uuid=True), ForeignKey("prescriptions.id"), nullable=True)
    status = Column(String(30), nullable=False, default="placed", index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    @property
    def is_refillable(self) -> bool:
        return self.status in REFILLABLE_ORDER_STATUSES
