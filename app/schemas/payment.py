from typing import Optional

from pydantic import BaseModel, Field


class CheckoutRequest(BaseModel):
    line_id: str
    is_group: bool = False
    plan: str
    period: Optional[str] = "monthly"


class CheckoutResponse(BaseModel):
    url: str
    payment_ref: str
    amount: int


class OmiseChargeRequest(BaseModel):
    line_id: str
    is_group: bool = False
    plan: str
    period: Optional[str] = "monthly"
    card_token: Optional[str] = None
    source_type: Optional[str] = Field(default=None, description="e.g. promptpay")


class OmiseChargeResponse(BaseModel):
    charge_id: str
    status: str
    authorize_uri: Optional[str] = None
    qr_code_uri: Optional[str] = None
    plan: Optional[str] = None


class WebhookReceived(BaseModel):
    received: bool = True
    status: Optional[str] = None
