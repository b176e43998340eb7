import uuid

from sqlalchemy import BigInteger, Column, DateTime, ForeignKey, Text, Uuid

from app.database import Base, utcnow


class StoredFile(Base):
    __tablename__ = "stored_files"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    org_id = Column(Uuid, ForeignKey("organizations.id"), nullable=False)
    storage_key = Column(Text, nullable=False, unique=True)
    file_name = Column(Text, nullable=False)
    content_type = Column(Text, nullable=False, default="application/octet-stream")
    size_bytes = Column(BigInteger, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
