import base64
import hashlib
import hmac
import json
import time
from unittest.mock import MagicMock, Mock, patch
from uuid import uuid4

import httpx
import pytest

from app.errors import ConfigurationError, DownstreamCallFailure
from app.services.payments import OmiseProvider, PaymentOutcome, StripeProvider

STRIPE_SECRET = "whsec_test_secret"
OMISE_KEY = b"omise-webhook-key"
OMISE_SECRET = base64.b64encode(OMISE_KEY).decode()


def _stripe_header(body: bytes, secret: str = STRIPE_SECRET, timestamp: int = None) -> str:
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.{body.decode()}".encode()
    signature = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def _omise_headers(body: bytes, timestamp: int, key: bytes = OMISE_KEY) -> dict:
    signature = hmac.new(key, str(timestamp).encode() + b"." + body, hashlib.sha256).hexdigest()
    return {"omise-signature": signature, "omise-signature-timestamp": str(timestamp)}


class TestStripeVerify:
    body = json.dumps({"id": "evt_1", "object": "event", "type": "checkout.session.completed"}).encode()

    def test_valid_signature(self):
        provider = StripeProvider("sk_test", STRIPE_SECRET)
        assert provider.verify(self.body, {"stripe-signature": _stripe_header(self.body)}) is True

    def test_wrong_secret(self):
        provider = StripeProvider("sk_test", STRIPE_SECRET)
        header = _stripe_header(self.body, secret="whsec_other")
        assert provider.verify(self.body, {"stripe-signature": header}) is False

    def test_tampered_body(self):
        provider = StripeProvider("sk_test", STRIPE_SECRET)
        header = _stripe_header(self.body)
        assert provider.verify(self.body + b" ", {"stripe-signature": header}) is False

    def test_missing_header(self):
        assert StripeProvider("sk_test", STRIPE_SECRET).verify(self.body, {}) is False

    def test_missing_secret_is_configuration_error(self):
        with pytest.raises(ConfigurationError):
            StripeProvider("sk_test", None).verify(self.body, {"stripe-signature": "t=1,v1=x"})


class TestStripeNormalize:
    provider = StripeProvider("sk_test", STRIPE_SECRET)

    def _payload(self, event_type, **session):
        org_id = str(uuid4())
        session.setdefault("id", "cs_test_1")
        session.setdefault("metadata", {"org_id": org_id, "line_org_id": "C123", "plan": "pro", "period": "yearly"})
        return {"type": event_type, "data": {"object": session}}

    def test_paid_checkout_is_success(self):
        event = self.provider.normalize(self._payload("checkout.session.completed", payment_status="paid"))
        assert event.outcome == PaymentOutcome.SUCCESS
        assert event.charge_ref == "cs_test_1"
        assert event.plan == "pro"
        assert event.period == "yearly"
        assert event.line_org_id == "C123"

    def test_unpaid_promptpay_checkout_is_pending(self):
        event = self.provider.normalize(self._payload("checkout.session.completed", payment_status="unpaid"))
        assert event.outcome == PaymentOutcome.PENDING

    def test_async_outcomes(self):
        succeeded = self.provider.normalize(self._payload("checkout.session.async_payment_succeeded"))
        failed = self.provider.normalize(self._payload("checkout.session.async_payment_failed"))
        expired = self.provider.normalize(self._payload("checkout.session.expired"))
        assert succeeded.outcome == PaymentOutcome.SUCCESS
        assert failed.outcome == PaymentOutcome.FAILURE
        assert expired.outcome == PaymentOutcome.FAILURE

    def test_irrelevant_event(self):
        assert self.provider.normalize({"type": "customer.created", "data": {"object": {}}}) is None

    def test_bad_org_id_is_dropped(self):
        payload = self._payload("checkout.session.completed", payment_status="paid", metadata={"org_id": "nope"})
        assert self.provider.normalize(payload).org_id is None


class TestOmiseVerify:
    body = b'{"key": "charge.complete"}'

    def test_valid_signature(self):
        now = 1_760_000_000
        provider = OmiseProvider("skey", OMISE_SECRET)
        assert provider.verify(self.body, _omise_headers(self.body, now), now=now) is True

    def test_any_of_several_signatures(self):
        now = 1_760_000_000
        headers = _omise_headers(self.body, now)
        headers["omise-signature"] = "deadbeef," + headers["omise-signature"]
        assert OmiseProvider("skey", OMISE_SECRET).verify(self.body, headers, now=now) is True

    def test_wrong_key(self):
        now = 1_760_000_000
        headers = _omise_headers(self.body, now, key=b"other")
        assert OmiseProvider("skey", OMISE_SECRET).verify(self.body, headers, now=now) is False

    def test_stale_timestamp(self):
        now = 1_760_000_000
        headers = _omise_headers(self.body, now - 301)
        assert OmiseProvider("skey", OMISE_SECRET).verify(self.body, headers, now=now) is False

    def test_missing_headers(self):
        assert OmiseProvider("skey", OMISE_SECRET).verify(self.body, {}) is False

    def test_missing_secret(self):
        with pytest.raises(ConfigurationError):
            OmiseProvider("skey", None).verify(self.body, {})

    def test_invalid_base64_secret(self):
        now = 1_760_000_000
        with pytest.raises(ConfigurationError):
            OmiseProvider("skey", "not base64!").verify(self.body, _omise_headers(self.body, now), now=now)


class TestOmiseNormalize:
    provider = OmiseProvider("skey", OMISE_SECRET)

    def _payload(self, status, key="charge.complete"):
        return {
            "key": key,
            "data": {
                "object": "charge",
                "id": "chrg_test_1",
                "status": status,
                "amount": 20000,
                "metadata": {"org_id": str(uuid4()), "plan": "basic", "period": "monthly"},
            },
        }

    @pytest.mark.parametrize(
        "status,outcome",
        [
            ("successful", PaymentOutcome.SUCCESS),
            ("failed", PaymentOutcome.FAILURE),
            ("expired", PaymentOutcome.FAILURE),
            ("pending", PaymentOutcome.PENDING),
        ],
    )
    def test_status_mapping(self, status, outcome):
        assert self.provider.normalize(self._payload(status)).outcome == outcome

    def test_non_charge_event_ignored(self):
        assert self.provider.normalize(self._payload("successful", key="customer.create")) is None

    def test_charge_fields(self):
        event = self.provider.normalize(self._payload("successful"))
        assert event.provider == "omise"
        assert event.charge_ref == "chrg_test_1"
        assert event.amount == 20000
        assert event.plan == "basic"


def _client_returning(response):
    client_cls = MagicMock()
    client = client_cls.return_value.__enter__.return_value
    client.request.return_value = response
    return client_cls, client


class TestOmiseApi:
    def test_create_promptpay_charge(self):
        response = Mock(status_code=200)
        response.json.return_value = {
            "id": "chrg_test_1",
            "status": "pending",
            "amount": 20000,
            "source": {"scannable_code": {"image": {"download_uri": "https://api.omise.co/qr.png"}}},
        }
        client_cls, client = _client_returning(response)

        with patch("app.services.payments.omise_provider.httpx.Client", client_cls):
            charge = OmiseProvider("skey_test", None).create_charge(
                20000, {"plan": "basic"}, "https://arkai.test/payment/success", source_type="promptpay"
            )

        assert charge.charge_id == "chrg_test_1"
        assert charge.qr_code_uri == "https://api.omise.co/qr.png"
        method, url = client.request.call_args.args
        assert (method, url) == ("POST", "https://api.omise.co/charges")
        payload = client.request.call_args.kwargs["json"]
        assert payload["source"] == {"type": "promptpay"}
        assert "card" not in payload
        assert client.request.call_args.kwargs["auth"] == ("skey_test", "")

    def test_card_charge_payload(self):
        response = Mock(status_code=200)
        response.json.return_value = {"id": "chrg_2", "status": "successful", "amount": 20000}
        client_cls, client = _client_returning(response)

        with patch("app.services.payments.omise_provider.httpx.Client", client_cls):
            charge = OmiseProvider("skey_test", None).create_charge(20000, {}, "https://x", card_token="tokn_1")

        assert charge.status == "successful"
        assert client.request.call_args.kwargs["json"]["card"] == "tokn_1"

    def test_charge_needs_token_or_source(self):
        with pytest.raises(ValueError):
            OmiseProvider("skey_test", None).create_charge(20000, {}, "https://x")

    def test_error_status_raises(self):
        response = Mock(status_code=400, text="bad")
        response.json.return_value = {"message": "invalid card"}
        client_cls, _ = _client_returning(response)

        with patch("app.services.payments.omise_provider.httpx.Client", client_cls):
            with pytest.raises(DownstreamCallFailure, match="invalid card"):
                OmiseProvider("skey_test", None).retrieve_charge("chrg_x")

    def test_transport_error_raises(self):
        client_cls = MagicMock()
        client_cls.return_value.__enter__.return_value.request.side_effect = httpx.ConnectError("refused")

        with patch("app.services.payments.omise_provider.httpx.Client", client_cls):
            with pytest.raises(DownstreamCallFailure):
                OmiseProvider("skey_test", None).retrieve_charge("chrg_x")

    def test_missing_secret_key(self):
        with pytest.raises(ConfigurationError):
            OmiseProvider(None, None).retrieve_charge("chrg_x")
