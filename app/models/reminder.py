import uuid

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Text, Uuid

from app.database import Base, utcnow


class Reminder(Base):
    __tablename__ = "reminders"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    org_id = Column(Uuid, ForeignKey("organizations.id"), nullable=False)
    topic = Column(Text, nullable=False)
    remind_at = Column(DateTime(timezone=True), nullable=False)
    repeat_daily = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
