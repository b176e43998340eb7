from app.schemas.line import LineEvent, LineWebhookBody, LineWebhookResponse
from app.schemas.payment import (
    CheckoutRequest,
    CheckoutResponse,
    OmiseChargeRequest,
    OmiseChargeResponse,
    WebhookReceived,
)

__all__ = [
    "LineEvent",
    "LineWebhookBody",
    "LineWebhookResponse",
    "CheckoutRequest",
    "CheckoutResponse",
    "OmiseChargeRequest",
    "OmiseChargeResponse",
    "WebhookReceived",
]
