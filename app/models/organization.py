import uuid

from sqlalchemy import BigInteger, Column, DateTime, Integer, Text, Uuid
from sqlalchemy.orm import relationship

from app.database import Base, utcnow


class Organization(Base):
    __tablename__ = "organizations"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    # Exactly one of the two LINE identities is set.
    line_user_id = Column(Text, unique=True, nullable=True)
    line_group_id = Column(Text, unique=True, nullable=True)
    plan = Column(Text, nullable=False, default="free")  # free, basic, pro, business
    plan_expires_at = Column(DateTime(timezone=True))

    ai_chats_today = Column(Integer, nullable=False, default=0)
    ai_chats_reset_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    tasks_this_month = Column(Integer, nullable=False, default=0)
    tasks_reset_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    storage_used_bytes = Column(BigInteger, nullable=False, default=0)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    payments = relationship("Payment", back_populates="organization")

    @property
    def line_id(self):
        """External chat identity used for push notifications."""
        return self.line_group_id or self.line_user_id

    @property
    def is_group(self) -> bool:
        return self.line_group_id is not None
