import base64
import binascii
import hashlib
import hmac
import time
from dataclasses import dataclass, field
from typing import Mapping, Optional

import httpx

from app.config import settings
from app.errors import ConfigurationError, DownstreamCallFailure
from app.logging_config import get_logger
from app.services.payments.base import PaymentEvent, PaymentOutcome, PaymentProvider, parse_org_id

logger = get_logger("payments.omise")

CHARGE_EVENTS = {"charge.complete", "charge.create"}
SIGNATURE_TOLERANCE_SECONDS = 300

STATUS_OUTCOMES = {
    "successful": PaymentOutcome.SUCCESS,
    "failed": PaymentOutcome.FAILURE,
    "expired": PaymentOutcome.FAILURE,
    "reversed": PaymentOutcome.FAILURE,
    "pending": PaymentOutcome.PENDING,
}


@dataclass
class OmiseCharge:
    charge_id: str
    status: str
    amount: int
    authorize_uri: Optional[str] = None
    qr_code_uri: Optional[str] = None
    failure_message: Optional[str] = None
    raw: dict = field(default_factory=dict, repr=False)

    @classmethod
    def from_api(cls, data: dict) -> "OmiseCharge":
        source = data.get("source") or {}
        scannable = source.get("scannable_code") or {}
        image = scannable.get("image") or {}
        return cls(
            charge_id=data.get("id", ""),
            status=data.get("status", "pending"),
            amount=data.get("amount") or 0,
            authorize_uri=data.get("authorize_uri"),
            qr_code_uri=image.get("download_uri"),
            failure_message=data.get("failure_message"),
            raw=data,
        )


class OmiseProvider(PaymentProvider):
    name = "omise"

    API_URL = "https://api.omise.co"

    def __init__(
        self,
        secret_key: Optional[str],
        webhook_secret: Optional[str],
        timeout_seconds: float = 20.0,
    ):
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret
        self.timeout_seconds = timeout_seconds

    def verify(self, raw_body: bytes, headers: Mapping[str, str], now: Optional[float] = None) -> bool:
        """Check ``Omise-Signature`` (hex HMAC-SHA256 of ``"{timestamp}.{body}"``).

        The header may carry several comma-separated signatures while the
        webhook secret is being rotated; any match is accepted.
        """
        if not self.webhook_secret:
            raise ConfigurationError("OMISE_WEBHOOK_SECRET is not configured")

        signature_header = headers.get("omise-signature")
        timestamp = headers.get("omise-signature-timestamp")
        if not signature_header or not timestamp:
            return False

        try:
            if abs((now if now is not None else time.time()) - int(timestamp)) > SIGNATURE_TOLERANCE_SECONDS:
                logger.warning("Omise webhook timestamp outside tolerance")
                return False
        except ValueError:
            return False

        try:
            key = base64.b64decode(self.webhook_secret, validate=True)
        except (binascii.Error, ValueError):
            raise ConfigurationError("OMISE_WEBHOOK_SECRET is not valid base64")

        signed_payload = timestamp.encode("utf-8") + b"." + raw_body
        expected = hmac.new(key, signed_payload, hashlib.sha256).hexdigest()
        return any(
            hmac.compare_digest(expected.encode("ascii"), candidate.strip().encode("utf-8"))
            for candidate in signature_header.split(",")
        )

    def normalize(self, payload: dict) -> Optional[PaymentEvent]:
        event_key = payload.get("key", "")
        if event_key not in CHARGE_EVENTS:
            logger.debug(f"Ignoring Omise event {event_key}")
            return None
        charge = payload.get("data") or {}
        if charge.get("object") not in (None, "charge"):
            return None
        return self.normalize_charge(charge)

    def normalize_charge(self, charge: dict) -> Optional[PaymentEvent]:
        charge_id = charge.get("id")
        if not charge_id:
            logger.warning("Omise charge without id")
            return None

        outcome = STATUS_OUTCOMES.get(charge.get("status", ""), PaymentOutcome.PENDING)
        metadata = charge.get("metadata") or {}
        return PaymentEvent(
            provider=self.name,
            charge_ref=charge_id,
            outcome=outcome,
            org_id=parse_org_id(metadata.get("org_id")),
            line_org_id=metadata.get("line_org_id") or None,
            plan=metadata.get("plan"),
            period=metadata.get("period"),
            amount=charge.get("amount"),
            currency=(charge.get("currency") or "thb").lower(),
        )

    def _request(self, method: str, path: str, json: Optional[dict] = None) -> dict:
        if not self.secret_key:
            raise ConfigurationError("OMISE_SECRET_KEY is not configured")
        try:
            with httpx.Client(timeout=self.timeout_seconds) as client:
                response = client.request(
                    method,
                    f"{self.API_URL}{path}",
                    json=json,
                    auth=(self.secret_key, ""),
                )
        except httpx.HTTPError as e:
            raise DownstreamCallFailure("omise", f"{method} {path} failed: {e}") from e

        if response.status_code >= 400:
            try:
                message = response.json().get("message", response.text)
            except ValueError:
                message = response.text
            raise DownstreamCallFailure("omise", f"{method} {path} status {response.status_code}: {message}")
        return response.json()

    def create_charge(
        self,
        amount: int,
        metadata: dict,
        return_uri: str,
        card_token: Optional[str] = None,
        source_type: Optional[str] = None,
        currency: str = "thb",
    ) -> OmiseCharge:
        """Create a charge from a card token or a payment source such as ``promptpay``."""
        if not card_token and not source_type:
            raise ValueError("card_token or source_type is required")

        payload = {
            "amount": amount,
            "currency": currency,
            "metadata": metadata,
            "return_uri": return_uri,
        }
        if card_token:
            payload["card"] = card_token
        else:
            payload["source"] = {"type": source_type}

        charge = OmiseCharge.from_api(self._request("POST", "/charges", json=payload))
        logger.info(
            "Omise charge created",
            extra={"context": {"charge_id": charge.charge_id, "status": charge.status}},
        )
        return charge

    def retrieve_charge(self, charge_id: str) -> OmiseCharge:
        return OmiseCharge.from_api(self._request("GET", f"/charges/{charge_id}"))


def build_omise_provider() -> OmiseProvider:
    return OmiseProvider(settings.omise_secret_key, settings.omise_webhook_secret, settings.omise_timeout_seconds)
