import asyncio
import json
from typing import Callable, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request, status
from sqlalchemy.orm import Session

from app.config import settings
from app.database import get_db
from app.errors import ConfigurationError, PersistenceError
from app.logging_config import get_logger
from app.schemas.payment import (
    CheckoutRequest,
    CheckoutResponse,
    OmiseChargeRequest,
    OmiseChargeResponse,
    WebhookReceived,
)
from app.services.alert_service import alert_critical
from app.services.line_service import LineService
from app.services.payment_service import create_checkout, create_omise_charge, poll_omise_charge, reconcile
from app.services.payments import OmiseProvider, PaymentProvider, StripeProvider
from app.services.payments.omise_provider import build_omise_provider
from app.services.payments.stripe_provider import build_stripe_provider
from app.services.tenant_service import resolve_org

logger = get_logger("payment_router")

router = APIRouter(prefix="/payment", tags=["payment"])


def get_stripe_provider() -> StripeProvider:
    return build_stripe_provider()


def get_omise_provider() -> OmiseProvider:
    return build_omise_provider()


def get_notifier() -> Optional[Callable[[str, str], bool]]:
    """LINE push used for plan-confirmation messages; None when LINE is not configured."""
    try:
        return LineService(settings.line_channel_access_token).push_message
    except ConfigurationError:
        logger.warning("LINE access token missing; payment notifications disabled")
        return None


def _deferred(
    notifier: Optional[Callable[[str, str], bool]],
    background_tasks: BackgroundTasks,
) -> Optional[Callable[[str, str], bool]]:
    """Queue plan-confirmation pushes to run after the response is sent."""
    if notifier is None:
        return None

    def schedule(to: str, text: str) -> bool:
        background_tasks.add_task(notifier, to, text)
        return True

    return schedule


def _handle_payment_webhook(
    provider: PaymentProvider,
    raw_body: bytes,
    headers,
    db: Session,
    notifier: Optional[Callable[[str, str], bool]],
) -> WebhookReceived:
    try:
        verified = provider.verify(raw_body, headers)
    except ConfigurationError as e:
        logger.error(f"{provider.name} webhook rejected: {e}")
        alert_critical(f"{provider.name} webhook rejected: not configured")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Payment provider not configured")

    if not verified:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid signature")

    try:
        payload = json.loads(raw_body)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON")

    event = provider.normalize(payload)
    if event is None:
        return WebhookReceived(received=True, status="ignored")

    try:
        result = reconcile(db, event, notifier=notifier)
    except PersistenceError as e:
        logger.error(f"{provider.name} webhook processing failed: {e}", extra={"context": {"ref": event.charge_ref}})
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Webhook processing failed")

    return WebhookReceived(received=True, status=result.status.value)


@router.post("/stripe-webhook", response_model=WebhookReceived)
async def stripe_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    provider: StripeProvider = Depends(get_stripe_provider),
    notifier=Depends(get_notifier),
):
    raw_body = await request.body()
    return await asyncio.to_thread(
        _handle_payment_webhook,
        provider,
        raw_body,
        request.headers,
        db,
        _deferred(notifier, background_tasks),
    )


@router.post("/omise-webhook", response_model=WebhookReceived)
async def omise_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    provider: OmiseProvider = Depends(get_omise_provider),
    notifier=Depends(get_notifier),
):
    raw_body = await request.body()
    return await asyncio.to_thread(
        _handle_payment_webhook,
        provider,
        raw_body,
        request.headers,
        db,
        _deferred(notifier, background_tasks),
    )


@router.post("/checkout", response_model=CheckoutResponse)
def checkout(
    body: CheckoutRequest,
    db: Session = Depends(get_db),
    provider: StripeProvider = Depends(get_stripe_provider),
):
    org = resolve_org(db, body.line_id, body.is_group)
    result = create_checkout(db, provider, org, body.plan, body.period)
    if not result.ok:
        raise HTTPException(status_code=result.error_code.http_status, detail=result.error)
    link = result.value
    return CheckoutResponse(url=link.url, payment_ref=link.payment_ref, amount=link.amount)


@router.post("/omise/charges", response_model=OmiseChargeResponse)
def create_charge(
    body: OmiseChargeRequest,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    provider: OmiseProvider = Depends(get_omise_provider),
    notifier=Depends(get_notifier),
):
    if not body.card_token and not body.source_type:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="card_token or source_type is required")

    org = resolve_org(db, body.line_id, body.is_group)
    result = create_omise_charge(
        db,
        provider,
        org,
        body.plan,
        body.period,
        card_token=body.card_token,
        source_type=body.source_type,
        notifier=_deferred(notifier, background_tasks),
    )
    if not result.ok:
        raise HTTPException(status_code=result.error_code.http_status, detail=result.error)
    charge = result.value
    return OmiseChargeResponse(
        charge_id=charge.charge_id,
        status=charge.status,
        authorize_uri=charge.authorize_uri,
        qr_code_uri=charge.qr_code_uri,
        plan=body.plan.strip().lower(),
    )


@router.get("/omise/charges/{charge_id}", response_model=OmiseChargeResponse)
def get_charge(
    charge_id: str,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    provider: OmiseProvider = Depends(get_omise_provider),
    notifier=Depends(get_notifier),
):
    result = poll_omise_charge(db, provider, charge_id, notifier=_deferred(notifier, background_tasks))
    if not result.ok:
        raise HTTPException(status_code=result.error_code.http_status, detail=result.error)
    charge = result.value
    return OmiseChargeResponse(
        charge_id=charge.charge_id,
        status=charge.status,
        authorize_uri=charge.authorize_uri,
        qr_code_uri=charge.qr_code_uri,
        plan=(charge.raw.get("metadata") or {}).get("plan"),
    )


@router.get("/success")
async def payment_success():
    return {"status": "success", "message": "ชำระเงินสำเร็จ กลับไปที่แชท LINE แล้วพิมพ์ /plan เพื่อเช็คสถานะ"}


@router.get("/cancel")
async def payment_cancel():
    return {"status": "cancelled", "message": "ยกเลิกการชำระเงินแล้ว พิมพ์ /upgrade ในแชท LINE อีกครั้งเมื่อพร้อม"}
