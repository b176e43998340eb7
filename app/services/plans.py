"""Subscription plans: resource limits, feature flags and prices."""

from dataclasses import dataclass
from enum import Enum

UNLIMITED = 999999
MB = 1024 * 1024
GB = 1024 * MB


class Plan(str, Enum):
    FREE = "free"
    BASIC = "basic"
    PRO = "pro"
    BUSINESS = "business"


class Period(str, Enum):
    MONTHLY = "monthly"
    YEARLY = "yearly"


@dataclass(frozen=True)
class PlanLimits:
    ai_chats_per_day: int
    tasks_per_month: int
    storage_bytes: int
    max_notes: int
    max_reminders: int
    max_groups: int
    can_assign_tasks: bool
    can_summary_today: bool
    can_summary_yesterday: bool


PLAN_LIMITS: dict[str, PlanLimits] = {
    Plan.FREE.value: PlanLimits(
        ai_chats_per_day=10,
        tasks_per_month=5,
        storage_bytes=500 * MB,
        max_notes=10,
        max_reminders=3,
        max_groups=1,
        can_assign_tasks=False,
        can_summary_today=False,
        can_summary_yesterday=False,
    ),
    Plan.BASIC.value: PlanLimits(
        ai_chats_per_day=50,
        tasks_per_month=30,
        storage_bytes=5 * GB,
        max_notes=50,
        max_reminders=20,
        max_groups=3,
        can_assign_tasks=True,
        can_summary_today=True,
        can_summary_yesterday=False,
    ),
    Plan.PRO.value: PlanLimits(
        ai_chats_per_day=200,
        tasks_per_month=100,
        storage_bytes=15 * GB,
        max_notes=200,
        max_reminders=100,
        max_groups=10,
        can_assign_tasks=True,
        can_summary_today=True,
        can_summary_yesterday=True,
    ),
    Plan.BUSINESS.value: PlanLimits(
        ai_chats_per_day=UNLIMITED,
        tasks_per_month=UNLIMITED,
        storage_bytes=50 * GB,
        max_notes=UNLIMITED,
        max_reminders=UNLIMITED,
        max_groups=UNLIMITED,
        can_assign_tasks=True,
        can_summary_today=True,
        can_summary_yesterday=True,
    ),
}


@dataclass(frozen=True)
class PlanPrice:
    monthly: int  # THB
    yearly: int  # THB
    label: str

    def amount_for(self, period: str) -> int:
        return self.yearly if period == Period.YEARLY.value else self.monthly


PLAN_PRICES: dict[str, PlanPrice] = {
    Plan.BASIC.value: PlanPrice(monthly=200, yearly=2000, label="⭐ Basic"),
    Plan.PRO.value: PlanPrice(monthly=300, yearly=3000, label="🔥 Pro"),
    Plan.BUSINESS.value: PlanPrice(monthly=500, yearly=2500, label="💎 Business"),
}

PLAN_EMOJI = {"free": "🆓", "basic": "⭐", "pro": "🔥", "business": "💎"}


def get_limits(plan: str | None) -> PlanLimits:
    """Limits for a plan key; unknown or missing keys get the free tier."""
    return PLAN_LIMITS.get(plan or "", PLAN_LIMITS[Plan.FREE.value])


def is_paid_plan(plan: str | None) -> bool:
    return plan in PLAN_PRICES


def normalize_period(period: str | None) -> str:
    if period and period.strip().lower() in {"yearly", "year", "annual", "รายปี", "ปี"}:
        return Period.YEARLY.value
    return Period.MONTHLY.value


def format_limit(value: int) -> str:
    return "∞" if value >= UNLIMITED else str(value)
