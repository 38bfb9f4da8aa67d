"""Prescription model (read-only from the refill workflow's point of view)."""
from sqlalchemy import Column, String, DateTime, ForeignKey, text
from sqlalchemy.dialects.postgresql import UUID, JSON
from sqlalchemy.sql import func

from rxportal.database import Base


class Prescription(Base):
    __tablename__ = "prescriptions"

    id = Column(UUID(as_uuid=True), primary_key=True, server_default=text("gen_random_uuid()"))
    patient_id = Column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=False, index=True)
    pharmacy_id = Column(UUID(as_uuid=True), ForeignKey("pharmacies.id"), nullable=True, index=True)
    medications = Column(JSON, nullable=True)
    status = Column(String(30), default="pending")  # pending, approved, rejected, fulfilled
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
