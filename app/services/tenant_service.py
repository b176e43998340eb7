from datetime import datetime
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.database import as_utc, dialect_insert, utcnow
from app.logging_config import get_logger
from app.models import Organization
from app.services.failure_policy import FailurePolicy, with_failure_policy
from app.services.plans import Plan

logger = get_logger("tenant_service")

SENTINEL_ORG_ID = UUID(int=0)


def _identity_field(is_group: bool) -> str:
    return "line_group_id" if is_group else "line_user_id"


def sentinel_org() -> Organization:
    """Free-plan placeholder returned when the database cannot resolve a tenant."""
    now = utcnow()
    return Organization(
        id=SENTINEL_ORG_ID,
        plan=Plan.FREE.value,
        plan_expires_at=None,
        ai_chats_today=0,
        ai_chats_reset_at=now,
        tasks_this_month=0,
        tasks_reset_at=now,
        storage_used_bytes=0,
    )


def is_sentinel(org: Organization) -> bool:
    return org.id == SENTINEL_ORG_ID


def _resolve_fallback(db: Session, external_id: str, is_group: bool, now: Optional[datetime] = None) -> Organization:
    column = getattr(Organization, _identity_field(is_group))
    try:
        existing = db.query(Organization).filter(column == external_id).first()
        if existing:
            return existing
    except SQLAlchemyError as exc:
        logger.warning(f"Fallback organization read failed: {exc}")

    logger.warning(
        "Using sentinel organization",
        extra={"context": {"external_id": external_id, "is_group": is_group}},
    )
    return sentinel_org()


@with_failure_policy(FailurePolicy.FAIL_OPEN, "resolve_org", fallback=_resolve_fallback)
def resolve_org(db: Session, external_id: str, is_group: bool, now: Optional[datetime] = None) -> Organization:
    """Find the organization for a LINE user or group, creating it on first contact.

    An expired paid plan is downgraded to free before the organization is returned.
    """
    now = now or utcnow()
    field = _identity_field(is_group)
    column = getattr(Organization, field)

    stmt = (
        dialect_insert(db, Organization)
        .values(
            id=uuid4(),
            plan=Plan.FREE.value,
            plan_expires_at=None,
            ai_chats_today=0,
            ai_chats_reset_at=now,
            tasks_this_month=0,
            tasks_reset_at=now,
            storage_used_bytes=0,
            created_at=now,
            updated_at=now,
            **{field: external_id},
        )
        .on_conflict_do_nothing(index_elements=[field])
    )
    result = db.execute(stmt)
    if result.rowcount:
        logger.info(f"Created organization for {field}={external_id}")

    org = db.query(Organization).filter(column == external_id).one()

    expires_at = as_utc(org.plan_expires_at)
    if expires_at is not None and expires_at < now:
        downgraded = (
            db.query(Organization)
            .filter(Organization.id == org.id, Organization.plan_expires_at < now)
            .update(
                {
                    Organization.plan: Plan.FREE.value,
                    Organization.plan_expires_at: None,
                    Organization.updated_at: now,
                },
                synchronize_session=False,
            )
        )
        db.refresh(org)
        if downgraded:
            logger.info(
                "Plan expired, downgraded to free",
                extra={"context": {"org_id": str(org.id), "expired_at": expires_at.isoformat()}},
            )

    return org
