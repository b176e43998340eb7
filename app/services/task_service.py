from datetime import datetime, timezone
from typing import Optional
from uuid import UUID

from sqlalchemy.orm import Session

from app.logging_config import get_logger
from app.models import Task
from app.services.ai_service import AIService
from app.services.search import phrase_then_words

logger = get_logger("task_service")

PENDING = "pending"


def create_task(
    db: Session,
    org_id: UUID,
    text: str,
    ai: AIService,
    assignee: Optional[str] = None,
    now: Optional[datetime] = None,
    tz=timezone.utc,
) -> Task:
    """Extract title and due date from free text and store the task."""
    extracted = ai.extract_task(text, now=now, tz=tz)
    task = Task(
        org_id=org_id,
        title=extracted.title,
        description=extracted.description,
        due_date=extracted.due_date,
        assignee=assignee,
        status=PENDING,
    )
    db.add(task)
    db.flush()
    logger.info(
        "Task created",
        extra={"context": {"org_id": str(org_id), "task_id": str(task.id), "assignee": assignee}},
    )
    return task


def list_pending(db: Session, org_id: UUID, assignee: Optional[str] = None) -> list[Task]:
    query = db.query(Task).filter(Task.org_id == org_id, Task.status == PENDING)
    if assignee is not None:
        query = query.filter(Task.assignee == assignee)
    return query.order_by(Task.created_at.desc()).all()


def tasks_for_assignee(db: Session, org_id: UUID, name: str, limit: int = 20) -> list[Task]:
    """Tasks whose assignee matches the name (or, failing that, any of its words)."""
    return phrase_then_words(
        db.query(Task).filter(Task.org_id == org_id),
        Task.assignee,
        name.lstrip("@"),
        Task.created_at.desc(),
        limit,
    )
