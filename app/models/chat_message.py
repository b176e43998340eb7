import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text, Uuid

from app.database import Base, utcnow


class ChatMessage(Base):
    __tablename__ = "chat_messages"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    org_id = Column(Uuid, ForeignKey("organizations.id"), nullable=False)
    sender = Column(Text, nullable=False, default="unknown")
    text = Column(Text, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (Index("ix_chat_messages_org_created", "org_id", "created_at"),)
