from datetime import datetime, time, timedelta, timezone
from typing import Optional
from uuid import UUID

from sqlalchemy import or_
from sqlalchemy.orm import Session

from app.database import utcnow
from app.logging_config import get_logger
from app.models import Reminder

logger = get_logger("reminder_service")

REMIND_HOUR = 9


def next_morning(now: datetime, tz=timezone.utc) -> datetime:
    """09:00 local time on the day after ``now``, returned in UTC."""
    local_day = now.astimezone(tz).date() + timedelta(days=1)
    return datetime.combine(local_day, time(REMIND_HOUR), tzinfo=tz).astimezone(timezone.utc)


def count_active(db: Session, org_id: UUID, now: Optional[datetime] = None) -> int:
    """Reminders still counting against the plan cap: daily ones and those not yet due."""
    now = now or utcnow()
    return (
        db.query(Reminder)
        .filter(
            Reminder.org_id == org_id,
            or_(Reminder.repeat_daily.is_(True), Reminder.remind_at >= now),
        )
        .count()
    )


def set_reminder(
    db: Session,
    org_id: UUID,
    topic: str,
    daily: bool = False,
    now: Optional[datetime] = None,
    tz=timezone.utc,
) -> Reminder:
    now = now or utcnow()
    reminder = Reminder(
        org_id=org_id,
        topic=topic,
        remind_at=next_morning(now, tz),
        repeat_daily=daily,
    )
    db.add(reminder)
    db.flush()
    logger.info(
        "Reminder set",
        extra={"context": {"org_id": str(org_id), "daily": daily, "remind_at": reminder.remind_at.isoformat()}},
    )
    return reminder
