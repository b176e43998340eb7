import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Text, Uuid

from app.database import Base, utcnow


class Task(Base):
    __tablename__ = "tasks"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    org_id = Column(Uuid, ForeignKey("organizations.id"), nullable=False)
    title = Column(Text, nullable=False)
    description = Column(Text)
    due_date = Column(DateTime(timezone=True))
    assignee = Column(Text)
    status = Column(Text, nullable=False, default="pending")  # pending, done
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
