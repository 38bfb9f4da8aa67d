"""Prescription refill request model.

A patient asks the pharmacy that fulfilled an order to dispense the same
medications again.  The pharmacy approves or rejects it exactly once.
"""
from sqlalchemy import Column, String, Text, DateTime, ForeignKey, Index, text
from sqlalchemy.dialects.postgresql import UUID, JSON
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from rxportal.database import Base

REFILL_STATUSES = ("pending", "approved", "rejected")
RESPONSE_STATUSES = frozenset({"approved", "rejected"})

MEDICATION_FIELDS = ("name", "dosage", "frequency", "duration", "instructions")


class RefillRequest(Base):
    __tablename__ = "refill_requests"
    __table_args__ = (
        # At most one open request per order (race condition guard)
        Index(
            "uq_refill_requests_pending_order",
            "original_order_id",
            unique=True,
            postgresql_where=text("status = 'pending'"),
        ),
        Index("ix_refill_requests_pharmacy_status", "pharmacy_id", "status"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, server_default=text("gen_random_uuid()"))
    original_order_id = Column(UUID(as_uuid=True), ForeignKey("orders.id"), nullable=False)
    prescription_id = Column(UUID(as_uuid=True), ForeignKey("prescriptions.id"), nullable=False)
    patient_id = Column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=False, index=True)
    pharmacy_id = Column(UUID(as_uuid=True), ForeignKey("pharmacies.id"), nullable=False)

    status = Column(String(20), nullable=False, default="pending", server_default="pending")

    # Snapshot of the medications at request time, independent of the prescription
    medications = Column(JSON, nullable=False, default=list)
    notes = Column(Text, nullable=True)

    # Pharmacy response, set together with the status transition
    response_message = Column(Text, nullable=True)
    responded_at = Column(DateTime(timezone=True), nullable=True)
    responded_by = Column(UUID(as_uuid=True), nullable=True)

    requested_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    # Relationships
    patient = relationship("User", lazy="selectin")
    pharmacy = relationship("Pharmacy", lazy="selectin")
    original_order = relationship("Order", lazy="selectin")
    prescription = relationship("Prescription", lazy="selectin")

    @property
    def is_pending(self) -> bool:
        return self.status == "pending"

    @property
    def pharmacy_response(self) -> dict | None:
        if self.responded_at is None:
            return None
        return {
            "message": self.response_message,
            "responded_at": self.responded_at,
            "responded_by": self.responded_by,
        }

    def __repr__(self):
        return f"<RefillRequest(id={self.id}, order={self.original_order_id}, status='{self.status}')>"
