from sqlalchemy import Column, String, DateTime, ForeignKey, text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from rxportal.database import Base


class Pharmacy(Base):
    __tablename__ = "pharmacies"

    id = Column(UUID(as_uuid=True), primary_key=True, server_default=text("gen_random_uuid()"))
    # The operator account that manages this pharmacy
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), unique=True, nullable=False)
    pharmacy_name = Column(String(200), nullable=False)
    email = Column(String(255), nullable=True)
    phone = Column(String(20), nullable=True)
    address = Column(String(500), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    owner = relationship("User", back_populates="pharmacy", lazy="select")

    def is_operated_by(self, user_id) -> bool:
        """A pharmacy may be referenced by its own id or by its owning user's id."""
        return user_id is not None and user_id in (self.id, self.user_id)

    def __repr__(self):
        return f"<Pharmacy(id={self.id}, name='{self.pharmacy_name}')>"
