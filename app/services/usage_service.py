"""Usage ledger: per-organization quotas for AI chats, tasks and storage."""

from dataclasses import dataclass
from datetime import datetime, timezone, tzinfo
from enum import Enum
from typing import Callable, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy import case
from sqlalchemy.orm import Session

from app.config import settings
from app.database import as_utc, utcnow
from app.logging_config import get_logger
from app.models import Organization
from app.services.failure_policy import FailurePolicy, with_failure_policy
from app.services.plans import (
    PLAN_EMOJI,
    PLAN_LIMITS,
    PLAN_PRICES,
    MB,
    Plan,
    format_limit,
    get_limits,
)
from app.services.tenant_service import is_sentinel

logger = get_logger("usage_service")

PLAN_ORDER = [Plan.FREE.value, Plan.BASIC.value, Plan.PRO.value, Plan.BUSINESS.value]


class Resource(str, Enum):
    AI_CHAT = "ai_chat"
    TASK = "task"
    STORAGE = "storage"


class Feature(str, Enum):
    ASSIGN_TASK = "assign_task"
    SUMMARY_TODAY = "summary_today"
    SUMMARY_YESTERDAY = "summary_yesterday"


class Cap(str, Enum):
    NOTES = "notes"
    REMINDERS = "reminders"
    GROUPS = "groups"


@dataclass(frozen=True)
class QuotaDecision:
    allowed: bool
    message: Optional[str] = None

    @staticmethod
    def allow() -> "QuotaDecision":
        return QuotaDecision(allowed=True)

    @staticmethod
    def deny(message: str) -> "QuotaDecision":
        return QuotaDecision(allowed=False, message=message)


def quota_timezone() -> tzinfo:
    try:
        return ZoneInfo(settings.quota_timezone)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning(f"Unknown QUOTA_TIMEZONE {settings.quota_timezone!r}, using UTC")
        return timezone.utc


def same_day(a: datetime, b: datetime, tz: tzinfo) -> bool:
    return as_utc(a).astimezone(tz).date() == as_utc(b).astimezone(tz).date()


def same_month(a: datetime, b: datetime, tz: tzinfo) -> bool:
    a_local = as_utc(a).astimezone(tz)
    b_local = as_utc(b).astimezone(tz)
    return (a_local.year, a_local.month) == (b_local.year, b_local.month)


@dataclass(frozen=True)
class _Window:
    counter: str
    reset_at: str
    limit: str
    same_window: Callable[[datetime, datetime, tzinfo], bool]


WINDOWS = {
    Resource.AI_CHAT: _Window("ai_chats_today", "ai_chats_reset_at", "ai_chats_per_day", same_day),
    Resource.TASK: _Window("tasks_this_month", "tasks_reset_at", "tasks_per_month", same_month),
}

COUNTERS = {
    Resource.AI_CHAT: "ai_chats_today",
    Resource.TASK: "tasks_this_month",
    Resource.STORAGE: "storage_used_bytes",
}


def _plan_name(plan: str) -> str:
    return "Free" if plan == Plan.FREE.value else plan.capitalize()


def _higher_tiers(plan: str) -> list[str]:
    index = PLAN_ORDER.index(plan) if plan in PLAN_ORDER else 0
    return PLAN_ORDER[index + 1 :]


def _upgrade_lines(plan: str, describe: Callable[[str], str]) -> str:
    lines = []
    for tier in _higher_tiers(plan):
        price = PLAN_PRICES[tier]
        lines.append(f"{price.label} ฿{price.monthly}/เดือน → {describe(tier)}")
    return "\n".join(lines)


def _ai_tier(tier: str) -> str:
    limit = PLAN_LIMITS[tier].ai_chats_per_day
    return "ไม่จำกัด" if format_limit(limit) == "∞" else f"{limit} ครั้ง/วัน"


def _task_tier(tier: str) -> str:
    limit = PLAN_LIMITS[tier].tasks_per_month
    return "ไม่จำกัด" if format_limit(limit) == "∞" else f"{limit} งาน/เดือน"


def _storage_tier(tier: str) -> str:
    return f"{PLAN_LIMITS[tier].storage_bytes // (1024 * MB)}GB"


def denial_message(resource: Resource, plan: str, limit: int, used: int = 0) -> str:
    if resource == Resource.AI_CHAT:
        message = (
            f"⚡ AI ครบโควต้าวันนี้แล้ว ({limit} ครั้ง)\n"
            f"📌 แผนปัจจุบัน: {_plan_name(plan)}"
        )
        upgrades = _upgrade_lines(plan, _ai_tier)
        if upgrades:
            message += f"\n\n💡 อัพเกรดเพื่อใช้ AI เพิ่ม:\n{upgrades}"
        return message
    if resource == Resource.TASK:
        message = f"📋 สร้างงานครบโควต้าเดือนนี้ ({limit} งาน)"
        upgrades = _upgrade_lines(plan, _task_tier)
        if upgrades:
            message += f"\n💡 อัพเกรดเพื่อสร้างงานเพิ่ม:\n{upgrades}"
        return message
    message = f"📁 พื้นที่เก็บไฟล์เต็ม ({used // MB}MB / {limit // MB}MB)"
    upgrades = _upgrade_lines(plan, _storage_tier)
    if upgrades:
        message += f"\n💡 อัพเกรดเพื่อเพิ่มพื้นที่:\n{upgrades}"
    return message


def _allow_on_error(db: Session, *args, **kwargs) -> QuotaDecision:
    return QuotaDecision.allow()


def _fresh(db: Session, org: Organization) -> Optional[Organization]:
    return db.query(Organization).populate_existing().filter(Organization.id == org.id).first()


@with_failure_policy(FailurePolicy.FAIL_OPEN, "check_and_consume", fallback=_allow_on_error)
def check_and_consume(
    db: Session,
    resource: Resource,
    org: Organization,
    amount: int = 1,
    now: Optional[datetime] = None,
) -> QuotaDecision:
    """Gate one use of a resource.

    Time-windowed counters are reset first when their calendar window (day for
    AI chats, month for tasks) has elapsed; the first use of a new window is
    always allowed. A denial never modifies the counter. Consumption itself is
    recorded separately with ``record`` once the gated action succeeds.
    """
    if is_sentinel(org):
        return QuotaDecision.allow()

    now = now or utcnow()
    current = _fresh(db, org)
    if current is None:
        return QuotaDecision.allow()

    limits = get_limits(current.plan)

    if resource == Resource.STORAGE:
        used = current.storage_used_bytes or 0
        if used + amount > limits.storage_bytes:
            return QuotaDecision.deny(denial_message(resource, current.plan, limits.storage_bytes, used))
        return QuotaDecision.allow()

    window = WINDOWS[resource]
    stored_reset_at = getattr(current, window.reset_at)
    if stored_reset_at is None or not window.same_window(stored_reset_at, now, quota_timezone()):
        counter_col = getattr(Organization, window.counter)
        reset_col = getattr(Organization, window.reset_at)
        filters = [Organization.id == current.id]
        if stored_reset_at is not None:
            # Only the first request of the new window performs the reset.
            filters.append(reset_col == stored_reset_at)
        db.query(Organization).filter(*filters).update(
            {counter_col: 0, reset_col: now},
            synchronize_session=False,
        )
        logger.info(
            "Quota window reset",
            extra={"context": {"org_id": str(current.id), "resource": resource.value}},
        )
        return QuotaDecision.allow()

    used = getattr(current, window.counter) or 0
    limit = getattr(limits, window.limit)
    if used + amount > limit:
        return QuotaDecision.deny(denial_message(resource, current.plan, limit))
    return QuotaDecision.allow()


@with_failure_policy(FailurePolicy.SWALLOW, "record_usage")
def record(db: Session, resource: Resource, org: Organization, amount: int = 1) -> None:
    """Atomically add ``amount`` to the resource counter."""
    if amount <= 0 or is_sentinel(org):
        return
    column = getattr(Organization, COUNTERS[resource])
    db.query(Organization).filter(Organization.id == org.id).update(
        {column: column + amount},
        synchronize_session=False,
    )


@with_failure_policy(FailurePolicy.SWALLOW, "release_storage")
def release_storage(db: Session, org: Organization, amount: int) -> None:
    """Decrement storage usage after a file delete, never below zero."""
    if amount <= 0 or is_sentinel(org):
        return
    column = Organization.storage_used_bytes
    db.query(Organization).filter(Organization.id == org.id).update(
        {column: case((column > amount, column - amount), else_=0)},
        synchronize_session=False,
    )


FEATURE_DENIALS = {
    Feature.SUMMARY_TODAY: (
        "can_summary_today",
        "📋 สรุปแชท เป็นฟีเจอร์สำหรับแผน Basic ขึ้นไป\n⭐ Basic ฿200/เดือน → สรุปวันนี้\n🔥 Pro ฿300/เดือน → สรุปวันนี้+เมื่อวาน",
    ),
    Feature.SUMMARY_YESTERDAY: (
        "can_summary_yesterday",
        "📋 สรุปเมื่อวาน เป็นฟีเจอร์สำหรับแผน Pro ขึ้นไป\n🔥 Pro ฿300/เดือน → สรุปวันนี้+เมื่อวาน",
    ),
    Feature.ASSIGN_TASK: (
        "can_assign_tasks",
        "👤 มอบหมายงาน เป็นฟีเจอร์สำหรับแผน Basic ขึ้นไป\n⭐ Basic ฿200/เดือน",
    ),
}


def can_access_feature(org: Organization, feature: Feature) -> QuotaDecision:
    flag, message = FEATURE_DENIALS[feature]
    if getattr(get_limits(org.plan), flag):
        return QuotaDecision.allow()
    return QuotaDecision.deny(message)


CAP_LIMITS = {
    Cap.NOTES: ("max_notes", "🧠 บันทึกครบจำนวนสูงสุดของแผนแล้ว ({limit} รายการ)\n💡 พิมพ์ /upgrade เพื่ออัพเกรดแผน"),
    Cap.REMINDERS: ("max_reminders", "⏰ ตั้งเตือนครบจำนวนสูงสุดของแผนแล้ว ({limit} รายการ)\n💡 พิมพ์ /upgrade เพื่ออัพเกรดแผน"),
    Cap.GROUPS: ("max_groups", "👥 ใช้งานครบจำนวนกลุ่มสูงสุดของแผนแล้ว ({limit} กลุ่ม)"),
}


def check_cap(org: Organization, cap: Cap, current_count: int) -> QuotaDecision:
    """Compare an existing item count against the plan's cap for that item."""
    attr, template = CAP_LIMITS[cap]
    limit = getattr(get_limits(org.plan), attr)
    if current_count >= limit:
        return QuotaDecision.deny(template.format(limit=limit))
    return QuotaDecision.allow()


def _plan_status_failed(db: Session, *args, **kwargs) -> str:
    return "❌ ดูแผนไม่สำเร็จ กรุณาลองใหม่"


@with_failure_policy(FailurePolicy.FAIL_OPEN, "get_plan_status", fallback=_plan_status_failed)
def get_plan_status(db: Session, org: Organization) -> str:
    """Render the /plan reply: current tier, usage against limits and upgrade prices."""
    current = org if is_sentinel(org) else (_fresh(db, org) or org)
    plan = current.plan or Plan.FREE.value
    limits = get_limits(plan)
    label = f"{PLAN_EMOJI.get(plan, '🆓')} {plan.upper()}"

    expires = ""
    expires_at = as_utc(current.plan_expires_at)
    if expires_at:
        expires = f"\n📅 หมดอายุ: {expires_at.astimezone(quota_timezone()).strftime('%d/%m/%Y')}"

    storage_used = (current.storage_used_bytes or 0) / MB
    storage_limit = limits.storage_bytes // MB

    return (
        f"📊 แผนของคุณ: {label}{expires}\n\n"
        f"🤖 AI แชท: {current.ai_chats_today or 0}/{format_limit(limits.ai_chats_per_day)} วันนี้\n"
        f"✅ งาน: {current.tasks_this_month or 0}/{format_limit(limits.tasks_per_month)} เดือนนี้\n"
        f"📁 พื้นที่: {storage_used:.1f}MB / {storage_limit}MB\n\n"
        "────────────────\n"
        "💡 อัพเกรดแผน:\n"
        "⭐ Basic ฿200/เดือน — AI 50/วัน, 5GB\n"
        "🔥 Pro ฿300/เดือน — AI 200/วัน, 15GB\n"
        "💎 Business ฿500/เดือน — ไม่จำกัด, 50GB\n\n"
        "💳 พิมพ์ /upgrade [basic|pro|business] [monthly|yearly] เพื่อชำระเงิน"
    )
