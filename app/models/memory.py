import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Text, Uuid

from app.database import Base, utcnow


class Memory(Base):
    __tablename__ = "memories"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    org_id = Column(Uuid, ForeignKey("organizations.id"), nullable=False)
    text = Column(Text, nullable=False)
    type = Column(Text, nullable=False, default="general")  # agreement, responsibility, general
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
