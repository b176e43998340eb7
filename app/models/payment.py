import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Integer, Text, Uuid
from sqlalchemy.orm import relationship

from app.database import Base, utcnow


class Payment(Base):
    __tablename__ = "payments"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    org_id = Column(Uuid, ForeignKey("organizations.id"), nullable=False)
    provider = Column(Text, nullable=False)  # stripe, omise
    amount = Column(Integer, nullable=False, default=0)  # minor units (satang)
    currency = Column(Text, nullable=False, default="thb")
    plan = Column(Text, nullable=False)
    period = Column(Text, nullable=False, default="monthly")  # monthly, yearly
    status = Column(Text, nullable=False, default="pending")  # pending, completed, failed
    # Provider charge/session id; the idempotency key for plan upgrades.
    payment_ref = Column(Text, nullable=False, unique=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)
    completed_at = Column(DateTime(timezone=True))

    organization = relationship("Organization", back_populates="payments")
