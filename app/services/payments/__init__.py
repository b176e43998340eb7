from app.services.payments.base import PaymentEvent, PaymentOutcome, PaymentProvider
from app.services.payments.omise_provider import OmiseCharge, OmiseProvider
from app.services.payments.stripe_provider import CheckoutSession, StripeProvider

__all__ = [
    "PaymentEvent",
    "PaymentOutcome",
    "PaymentProvider",
    "OmiseCharge",
    "OmiseProvider",
    "CheckoutSession",
    "StripeProvider",
]
