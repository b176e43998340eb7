from dataclasses import dataclass
from typing import Mapping, Optional

import stripe

from app.config import settings
from app.errors import ConfigurationError, DownstreamCallFailure
from app.logging_config import get_logger
from app.services.payments.base import PaymentEvent, PaymentOutcome, PaymentProvider, parse_org_id

logger = get_logger("payments.stripe")

SUCCESS_EVENTS = {"checkout.session.async_payment_succeeded"}
FAILURE_EVENTS = {"checkout.session.async_payment_failed", "checkout.session.expired"}
COMPLETED_EVENT = "checkout.session.completed"


@dataclass(frozen=True)
class CheckoutSession:
    ref: str
    url: str


class StripeProvider(PaymentProvider):
    name = "stripe"

    def __init__(self, secret_key: Optional[str], webhook_secret: Optional[str]):
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret

    def verify(self, raw_body: bytes, headers: Mapping[str, str]) -> bool:
        if not self.webhook_secret:
            raise ConfigurationError("STRIPE_WEBHOOK_SECRET is not configured")
        signature = headers.get("stripe-signature")
        if not signature:
            return False
        try:
            stripe.Webhook.construct_event(raw_body.decode("utf-8"), signature, self.webhook_secret)
        except stripe.SignatureVerificationError:
            logger.warning("Stripe signature verification failed")
            return False
        except ValueError as e:
            logger.warning(f"Stripe webhook payload invalid: {e}")
            return False
        return True

    def normalize(self, payload: dict) -> Optional[PaymentEvent]:
        event_type = payload.get("type", "")
        session = (payload.get("data") or {}).get("object") or {}

        if event_type == COMPLETED_EVENT:
            # PromptPay completes the session before the money arrives.
            paid = session.get("payment_status") in ("paid", "no_payment_required")
            outcome = PaymentOutcome.SUCCESS if paid else PaymentOutcome.PENDING
        elif event_type in SUCCESS_EVENTS:
            outcome = PaymentOutcome.SUCCESS
        elif event_type in FAILURE_EVENTS:
            outcome = PaymentOutcome.FAILURE
        else:
            logger.debug(f"Ignoring Stripe event {event_type}")
            return None

        session_id = session.get("id")
        if not session_id:
            logger.warning(f"Stripe {event_type} without session id")
            return None

        metadata = session.get("metadata") or {}
        return PaymentEvent(
            provider=self.name,
            charge_ref=session_id,
            outcome=outcome,
            org_id=parse_org_id(metadata.get("org_id")),
            line_org_id=metadata.get("line_org_id") or None,
            plan=metadata.get("plan"),
            period=metadata.get("period"),
            amount=session.get("amount_total"),
            currency=(session.get("currency") or "thb").lower(),
        )

    def create_checkout(
        self,
        amount: int,
        product_name: str,
        description: str,
        metadata: dict,
        base_url: str,
    ) -> CheckoutSession:
        """Create a one-off THB Checkout Session (card and PromptPay). ``amount`` is in satang."""
        if not self.secret_key:
            raise ConfigurationError("STRIPE_SECRET_KEY is not configured")
        try:
            session = stripe.checkout.Session.create(
                api_key=self.secret_key,
                payment_method_types=["card", "promptpay"],
                line_items=[
                    {
                        "price_data": {
                            "currency": "thb",
                            "product_data": {"name": product_name, "description": description},
                            "unit_amount": amount,
                        },
                        "quantity": 1,
                    }
                ],
                mode="payment",
                success_url=f"{base_url}/payment/success?session_id={{CHECKOUT_SESSION_ID}}",
                cancel_url=f"{base_url}/payment/cancel",
                metadata=metadata,
            )
        except stripe.StripeError as e:
            raise DownstreamCallFailure("stripe", str(e)) from e

        return CheckoutSession(ref=session["id"], url=session["url"] or "")


def build_stripe_provider() -> StripeProvider:
    return StripeProvider(settings.stripe_secret_key, settings.stripe_webhook_secret)
