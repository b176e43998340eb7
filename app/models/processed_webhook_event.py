from sqlalchemy import Column, DateTime, Text

from app.database import Base, utcnow


class ProcessedWebhookEvent(Base):
    __tablename__ = "processed_webhook_events"

    event_id = Column(Text, primary_key=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
