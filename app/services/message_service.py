from datetime import datetime, time, timedelta, timezone
from typing import Optional
from uuid import UUID

from sqlalchemy.orm import Session

from app.models import ChatMessage
from app.services.search import phrase_then_words

TOPIC_SEARCH_LIMIT = 50


def record_message(db: Session, org_id: UUID, sender: Optional[str], text: str) -> ChatMessage:
    message = ChatMessage(org_id=org_id, sender=sender or "unknown", text=text)
    db.add(message)
    db.flush()
    return message


def day_bounds(day_offset: int, now: datetime, tz=timezone.utc) -> tuple[datetime, datetime]:
    """UTC start and end of the local calendar day ``day_offset`` days from now."""
    local_day = now.astimezone(tz).date() + timedelta(days=day_offset)
    start = datetime.combine(local_day, time.min, tzinfo=tz)
    return start.astimezone(timezone.utc), (start + timedelta(days=1)).astimezone(timezone.utc)


def messages_between(db: Session, org_id: UUID, start: datetime, end: datetime) -> list[ChatMessage]:
    return (
        db.query(ChatMessage)
        .filter(
            ChatMessage.org_id == org_id,
            ChatMessage.created_at >= start,
            ChatMessage.created_at < end,
        )
        .order_by(ChatMessage.created_at.asc())
        .all()
    )


def search_messages(db: Session, org_id: UUID, topic: str, limit: int = TOPIC_SEARCH_LIMIT) -> list[ChatMessage]:
    """Most recent messages about a topic, oldest first."""
    rows = phrase_then_words(
        db.query(ChatMessage).filter(ChatMessage.org_id == org_id),
        ChatMessage.text,
        topic,
        ChatMessage.created_at.desc(),
        limit,
    )
    return list(reversed(rows))
