from uuid import UUID

from sqlalchemy.orm import Session

from app.logging_config import get_logger
from app.models import Memory
from app.services.search import phrase_then_words

logger = get_logger("memory_service")

AGREEMENT = "agreement"
RESPONSIBILITY = "responsibility"
GENERAL = "general"

RECENT_AGREEMENTS_LIMIT = 5


def detect_type(text: str) -> str:
    if "ตกลง" in text or "agree" in text.casefold():
        return AGREEMENT
    if "รับผิดชอบ" in text or "responsible" in text.casefold():
        return RESPONSIBILITY
    return GENERAL


def count_memories(db: Session, org_id: UUID) -> int:
    return db.query(Memory).filter(Memory.org_id == org_id).count()


def save_memory(db: Session, org_id: UUID, text: str) -> Memory:
    memory = Memory(org_id=org_id, text=text, type=detect_type(text))
    db.add(memory)
    db.flush()
    logger.info("Memory saved", extra={"context": {"org_id": str(org_id), "type": memory.type}})
    return memory


def recent_agreements(db: Session, org_id: UUID, limit: int = RECENT_AGREEMENTS_LIMIT) -> list[Memory]:
    return (
        db.query(Memory)
        .filter(Memory.org_id == org_id, Memory.type == AGREEMENT)
        .order_by(Memory.created_at.desc())
        .limit(limit)
        .all()
    )


def find_responsibilities(db: Session, org_id: UUID, project: str, limit: int = 10) -> list[Memory]:
    return phrase_then_words(
        db.query(Memory).filter(Memory.org_id == org_id, Memory.type == RESPONSIBILITY),
        Memory.text,
        project,
        Memory.created_at.desc(),
        limit,
    )
