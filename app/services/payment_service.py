"""Payment reconciliation: provider events to plan upgrades, at most once per charge.

The payment row's ``payment_ref`` is the idempotency key. The row is created
with an insert that is ignored on conflict, and the upgrade is applied only by
the one delivery whose conditional ``status <> 'completed'`` update matches.
"""

import calendar
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, Optional
from uuid import UUID, uuid4

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.config import settings
from app.database import dialect_insert, utcnow
from app.errors import ConfigurationError, DownstreamCallFailure, PersistenceError
from app.logging_config import get_logger
from app.models import Organization, Payment
from app.services.alert_service import alert_error
from app.services.failure_policy import FailurePolicy, safe_rollback, with_failure_policy
from app.services.payments import (
    OmiseCharge,
    OmiseProvider,
    PaymentEvent,
    PaymentOutcome,
    StripeProvider,
)
from app.services.payments.base import payment_metadata
from app.services.plans import PLAN_EMOJI, PLAN_PRICES, Period, is_paid_plan, normalize_period
from app.services.result import FailureCode, Result
from app.services.tenant_service import is_sentinel

logger = get_logger("payment_service")

COMPLETED = "completed"
PENDING = "pending"
FAILED = "failed"

INVALID_PLAN_MESSAGE = "❌ แผนไม่ถูกต้อง กรุณาเลือก: basic, pro, business"
UNAVAILABLE_MESSAGE = "❌ ระบบชำระเงินยังไม่พร้อม กรุณาติดต่อแอดมิน"
CHECKOUT_FAILED_MESSAGE = "❌ สร้างลิงก์ชำระเงินไม่สำเร็จ ลองใหม่อีกครั้ง"

Notifier = Callable[[str, str], object]


class ReconciliationStatus(str, Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    FAILED_RECORDED = "failed_recorded"
    IGNORED = "ignored"


@dataclass(frozen=True)
class ReconciliationResult:
    status: ReconciliationStatus
    plan: Optional[str] = None
    expires_at: Optional[datetime] = None


@dataclass(frozen=True)
class CheckoutLink:
    url: str
    payment_ref: str
    amount: int
    plan: str
    period: str


def add_period(start: datetime, period: str) -> datetime:
    """Advance by one calendar month or year, clamping the day (Jan 31 + 1 month = Feb 28/29)."""
    months = 12 if period == Period.YEARLY.value else 1
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return start.replace(year=year, month=month, day=day)


def period_label(period: str) -> str:
    return "รายปี" if period == Period.YEARLY.value else "รายเดือน"


def upgrade_message(plan: str, period: str, expires_at: datetime) -> str:
    emoji = PLAN_EMOJI.get(plan, "✅")
    duration = "1 ปี" if period == Period.YEARLY.value else "1 เดือน"
    return (
        f"{emoji} อัพเกรดสำเร็จ!\n\n"
        f"📊 แผนใหม่: {emoji} {plan.upper()}\n"
        f"📅 ใช้ได้ถึง: {expires_at.strftime('%d/%m/%Y')} ({duration})\n\n"
        "🎉 ขอบคุณที่สนับสนุน Arkai!\n"
        "ตอนนี้คุณสามารถใช้ฟีเจอร์ใหม่ได้ทันทีครับ\n"
        "พิมพ์ /plan เพื่อดูรายละเอียดแผนของคุณ"
    )


def _insert_payment_if_absent(
    db: Session,
    provider: str,
    payment_ref: str,
    org_id: UUID,
    plan: str,
    period: str,
    amount: int,
    currency: str = "thb",
    now: Optional[datetime] = None,
) -> bool:
    now = now or utcnow()
    stmt = (
        dialect_insert(db, Payment)
        .values(
            id=uuid4(),
            org_id=org_id,
            provider=provider,
            amount=amount,
            currency=currency,
            plan=plan,
            period=period,
            status=PENDING,
            payment_ref=payment_ref,
            created_at=now,
            updated_at=now,
        )
        .on_conflict_do_nothing(index_elements=["payment_ref"])
    )
    return bool(db.execute(stmt).rowcount)


def _load_payment(db: Session, event: PaymentEvent, now: datetime) -> Optional[Payment]:
    """Return the payment row for the event, creating it from event metadata when missing."""
    if event.org_id is not None and event.plan:
        created = _insert_payment_if_absent(
            db,
            event.provider,
            event.charge_ref,
            event.org_id,
            event.plan,
            normalize_period(event.period),
            event.amount or 0,
            event.currency,
            now,
        )
        if created:
            logger.info(
                "Payment row created from webhook",
                extra={"context": {"payment_ref": event.charge_ref, "provider": event.provider}},
            )
    return (
        db.query(Payment)
        .populate_existing()
        .filter(Payment.payment_ref == event.charge_ref)
        .first()
    )


def _notify(notifier: Optional[Notifier], to: Optional[str], text: str) -> None:
    if notifier is None or not to:
        return
    try:
        notifier(to, text)
    except Exception as e:
        logger.warning(f"Upgrade notification failed: {e}", extra={"context": {"to": to}})


@with_failure_policy(FailurePolicy.FAIL_CLOSED, "reconcile_payment")
def reconcile(
    db: Session,
    event: PaymentEvent,
    notifier: Optional[Notifier] = None,
    now: Optional[datetime] = None,
) -> ReconciliationResult:
    """Apply one normalized payment event.

    SUCCESS upgrades the plan exactly once per ``charge_ref``; later deliveries
    of the same reference return DUPLICATE. FAILURE marks a pending payment
    failed. PENDING changes nothing. The plan-confirmation push is sent after
    commit and its failure never undoes the upgrade.
    """
    now = now or utcnow()
    log_context = {"payment_ref": event.charge_ref, "provider": event.provider, "outcome": event.outcome.value}

    if event.outcome == PaymentOutcome.PENDING:
        logger.info("Payment still pending", extra={"context": log_context})
        return ReconciliationResult(ReconciliationStatus.IGNORED)

    payment = _load_payment(db, event, now)
    if payment is None:
        logger.warning("Payment event has no matching payment and no metadata", extra={"context": log_context})
        db.rollback()
        return ReconciliationResult(ReconciliationStatus.IGNORED)

    if event.outcome == PaymentOutcome.FAILURE:
        marked = (
            db.query(Payment)
            .filter(Payment.payment_ref == event.charge_ref, Payment.status == PENDING)
            .update({Payment.status: FAILED, Payment.updated_at: now}, synchronize_session=False)
        )
        db.commit()
        if not marked:
            logger.info("Failure event for settled payment ignored", extra={"context": log_context})
            return ReconciliationResult(ReconciliationStatus.DUPLICATE, plan=payment.plan)
        logger.info("Payment marked failed", extra={"context": log_context})
        return ReconciliationResult(ReconciliationStatus.FAILED_RECORDED, plan=payment.plan)

    plan = payment.plan
    period = normalize_period(payment.period)
    if not is_paid_plan(plan):
        logger.error(f"Payment for unknown plan {plan!r}", extra={"context": log_context})
        db.rollback()
        return ReconciliationResult(ReconciliationStatus.IGNORED)

    transitioned = (
        db.query(Payment)
        .filter(Payment.payment_ref == event.charge_ref, Payment.status != COMPLETED)
        .update(
            {Payment.status: COMPLETED, Payment.completed_at: now, Payment.updated_at: now},
            synchronize_session=False,
        )
    )
    if not transitioned:
        db.commit()
        logger.info("Duplicate payment delivery", extra={"context": log_context})
        return ReconciliationResult(ReconciliationStatus.DUPLICATE, plan=plan)

    expires_at = add_period(now, period)
    db.query(Organization).filter(Organization.id == payment.org_id).update(
        {
            Organization.plan: plan,
            Organization.plan_expires_at: expires_at,
            Organization.ai_chats_today: 0,
            Organization.ai_chats_reset_at: now,
            Organization.tasks_this_month: 0,
            Organization.tasks_reset_at: now,
            Organization.updated_at: now,
        },
        synchronize_session=False,
    )
    db.commit()

    logger.info(
        "Plan upgraded",
        extra={"context": {**log_context, "org_id": str(payment.org_id), "plan": plan, "period": period}},
    )

    line_org_id = event.line_org_id
    if not line_org_id:
        org = db.query(Organization).filter(Organization.id == payment.org_id).first()
        line_org_id = org.line_id if org else None
    _notify(notifier, line_org_id, upgrade_message(plan, period, expires_at))

    return ReconciliationResult(ReconciliationStatus.APPLIED, plan=plan, expires_at=expires_at)


def _validate_purchase(org: Organization, plan: str) -> Optional[Result]:
    if not is_paid_plan(plan):
        return Result.failure(INVALID_PLAN_MESSAGE, FailureCode.INVALID_PLAN)
    if is_sentinel(org):
        return Result.failure(UNAVAILABLE_MESSAGE, FailureCode.ORG_UNAVAILABLE)
    return None


def create_checkout(
    db: Session,
    provider: StripeProvider,
    org: Organization,
    plan: str,
    period: Optional[str] = None,
) -> Result[CheckoutLink]:
    """Create a Stripe Checkout Session and its pending payment row."""
    plan = (plan or "").strip().lower()
    period = normalize_period(period)
    invalid = _validate_purchase(org, plan)
    if invalid:
        return invalid

    price = PLAN_PRICES[plan]
    amount = price.amount_for(period) * 100
    try:
        session = provider.create_checkout(
            amount=amount,
            product_name=f"Arkai {price.label} ({period_label(period)})",
            description=f"อัพเกรด Arkai Work Assistant เป็นแผน {price.label}",
            metadata=payment_metadata(org.id, org.line_id, org.is_group, plan, period),
            base_url=settings.app_url.rstrip("/"),
        )
    except ConfigurationError as e:
        logger.error(f"Checkout unavailable: {e}")
        return Result.failure(UNAVAILABLE_MESSAGE, FailureCode.NOT_CONFIGURED)
    except DownstreamCallFailure as e:
        logger.error(f"Checkout creation failed: {e}", extra={"context": {"org_id": str(org.id)}})
        return Result.failure(CHECKOUT_FAILED_MESSAGE, FailureCode.PROVIDER_ERROR)

    _insert_payment_if_absent(db, provider.name, session.ref, org.id, plan, period, amount)
    db.commit()
    logger.info(
        "Checkout created",
        extra={"context": {"org_id": str(org.id), "payment_ref": session.ref, "plan": plan, "period": period}},
    )
    return Result.success(CheckoutLink(session.url, session.ref, amount, plan, period))


def upgrade_reply(link: CheckoutLink) -> str:
    price = PLAN_PRICES[link.plan]
    return (
        f"💳 ชำระเงินอัพเกรด {price.label}\n\n"
        f"💰 ราคา: ฿{price.amount_for(link.period)} ({period_label(link.period)})\n"
        "🔗 กดลิงก์ด้านล่างเพื่อชำระเงิน:\n"
        f"{link.url}\n\n"
        "⏰ ลิงก์ชำระเงินใช้ได้ 30 นาที\n"
        "✅ รองรับ: บัตรเครดิต/เดบิต, พร้อมเพย์"
    )


def create_omise_charge(
    db: Session,
    provider: OmiseProvider,
    org: Organization,
    plan: str,
    period: Optional[str] = None,
    card_token: Optional[str] = None,
    source_type: Optional[str] = None,
    notifier: Optional[Notifier] = None,
    now: Optional[datetime] = None,
) -> Result[OmiseCharge]:
    """Create an Omise charge and reconcile it at once when it settles synchronously."""
    plan = (plan or "").strip().lower()
    period = normalize_period(period)
    invalid = _validate_purchase(org, plan)
    if invalid:
        return invalid

    amount = PLAN_PRICES[plan].amount_for(period) * 100
    try:
        charge = provider.create_charge(
            amount=amount,
            metadata=payment_metadata(org.id, org.line_id, org.is_group, plan, period),
            return_uri=f"{settings.app_url.rstrip('/')}/payment/success",
            card_token=card_token,
            source_type=source_type,
        )
    except ConfigurationError as e:
        logger.error(f"Omise unavailable: {e}")
        return Result.failure(UNAVAILABLE_MESSAGE, FailureCode.NOT_CONFIGURED)
    except DownstreamCallFailure as e:
        logger.error(f"Omise charge failed: {e}", extra={"context": {"org_id": str(org.id)}})
        return Result.failure(CHECKOUT_FAILED_MESSAGE, FailureCode.PROVIDER_ERROR)

    # The charge exists at Omise from here on; a storage failure is left to the webhook or a poll.
    try:
        _insert_payment_if_absent(db, provider.name, charge.charge_id, org.id, plan, period, amount, now=now)
        db.commit()

        event = provider.normalize_charge(charge.raw)
        if event is not None and event.outcome != PaymentOutcome.PENDING:
            reconcile(db, event, notifier=notifier, now=now)
    except (SQLAlchemyError, PersistenceError) as e:
        safe_rollback(db)
        logger.error(
            f"Omise charge not reconciled: {e}",
            extra={"context": {"org_id": str(org.id), "charge_id": charge.charge_id}},
        )
        alert_error("Omise charge not reconciled", {"org_id": str(org.id), "charge_id": charge.charge_id})
    return Result.success(charge)


def poll_omise_charge(
    db: Session,
    provider: OmiseProvider,
    charge_id: str,
    notifier: Optional[Notifier] = None,
    now: Optional[datetime] = None,
) -> Result[OmiseCharge]:
    """Fetch a charge's current state and reconcile it; safe to race with the webhook."""
    try:
        charge = provider.retrieve_charge(charge_id)
    except ConfigurationError as e:
        logger.error(f"Omise unavailable: {e}")
        return Result.failure(UNAVAILABLE_MESSAGE, FailureCode.NOT_CONFIGURED)
    except DownstreamCallFailure as e:
        logger.warning(f"Omise charge lookup failed: {e}")
        return Result.failure(str(e), FailureCode.PROVIDER_ERROR)

    event = provider.normalize_charge(charge.raw)
    if event is not None:
        try:
            reconcile(db, event, notifier=notifier, now=now)
        except PersistenceError as e:
            logger.error(f"Omise charge not reconciled: {e}", extra={"context": {"charge_id": charge_id}})
    return Result.success(charge)
