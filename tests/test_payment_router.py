import base64
import hashlib
import hmac
import json
import time
from unittest.mock import Mock, patch

import pytest
from fastapi import BackgroundTasks
from fastapi.testclient import TestClient

from app.database import get_db
from app.main import app
from app.models import Organization, Payment
from app.routers.payment import _deferred, get_notifier, get_omise_provider, get_stripe_provider
from app.services.payments import CheckoutSession, OmiseCharge, OmiseProvider, StripeProvider

STRIPE_SECRET = "whsec_router"
OMISE_KEY = b"omise-router-key"


@pytest.fixture
def notifier():
    return Mock(return_value=True)


@pytest.fixture
def stripe_provider():
    return StripeProvider("sk_test", STRIPE_SECRET)


@pytest.fixture
def omise_provider():
    return OmiseProvider("skey_test", base64.b64encode(OMISE_KEY).decode())


@pytest.fixture
def client(session_factory, stripe_provider, omise_provider, notifier):
    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_stripe_provider] = lambda: stripe_provider
    app.dependency_overrides[get_omise_provider] = lambda: omise_provider
    app.dependency_overrides[get_notifier] = lambda: notifier
    yield TestClient(app)
    app.dependency_overrides.clear()


def _stripe_post(client, payload, secret=STRIPE_SECRET):
    body = json.dumps(payload).encode()
    timestamp = int(time.time())
    signature = hmac.new(secret.encode(), f"{timestamp}.{body.decode()}".encode(), hashlib.sha256).hexdigest()
    return client.post(
        "/payment/stripe-webhook",
        content=body,
        headers={"Stripe-Signature": f"t={timestamp},v1={signature}"},
    )


def _omise_post(client, payload, key=OMISE_KEY):
    body = json.dumps(payload).encode()
    timestamp = str(int(time.time()))
    signature = hmac.new(key, timestamp.encode() + b"." + body, hashlib.sha256).hexdigest()
    return client.post(
        "/payment/omise-webhook",
        content=body,
        headers={"Omise-Signature": signature, "Omise-Signature-Timestamp": timestamp},
    )


def _stripe_completed(org, session_id="cs_test_1"):
    return {
        "id": "evt_1",
        "object": "event",
        "type": "checkout.session.completed",
        "data": {
            "object": {
                "id": session_id,
                "payment_status": "paid",
                "amount_total": 20000,
                "metadata": {"org_id": str(org.id), "line_org_id": org.line_id, "plan": "basic", "period": "monthly"},
            }
        },
    }


class TestStripeWebhook:
    def test_paid_session_upgrades_once(self, client, make_org, sqlite_db, notifier):
        org = make_org()

        first = _stripe_post(client, _stripe_completed(org))
        second = _stripe_post(client, _stripe_completed(org))
        sqlite_db.refresh(org)

        assert first.json() == {"received": True, "status": "applied"}
        assert second.json() == {"received": True, "status": "duplicate"}
        assert org.plan == "basic"
        notifier.assert_called_once()

    def test_invalid_signature(self, client, make_org):
        response = _stripe_post(client, _stripe_completed(make_org()), secret="whsec_other")
        assert response.status_code == 400

    def test_irrelevant_event_is_acknowledged(self, client):
        response = _stripe_post(client, {"id": "evt_2", "object": "event", "type": "customer.created", "data": {"object": {}}})
        assert response.json() == {"received": True, "status": "ignored"}

    def test_unconfigured_secret_returns_500(self, client):
        app.dependency_overrides[get_stripe_provider] = lambda: StripeProvider(None, None)
        with patch("app.routers.payment.alert_critical") as alert:
            response = client.post("/payment/stripe-webhook", content=b"{}", headers={"Stripe-Signature": "t=1,v1=x"})
        assert response.status_code == 500
        alert.assert_called_once()


class TestOmiseWebhook:
    def _payload(self, org, status="successful"):
        return {
            "object": "event",
            "key": "charge.complete",
            "data": {
                "object": "charge",
                "id": "chrg_test_9",
                "status": status,
                "amount": 30000,
                "metadata": {"org_id": str(org.id), "plan": "pro", "period": "monthly"},
            },
        }

    def test_successful_charge_upgrades(self, client, make_org, sqlite_db, notifier):
        org = make_org()

        response = _omise_post(client, self._payload(org))
        sqlite_db.refresh(org)

        assert response.json()["status"] == "applied"
        assert org.plan == "pro"
        assert notifier.call_args.args[0] == "U-test"

    def test_failed_charge_is_recorded(self, client, make_org, sqlite_db):
        org = make_org()

        response = _omise_post(client, self._payload(org, status="failed"))

        assert response.json()["status"] == "failed_recorded"
        assert sqlite_db.query(Payment).one().status == "failed"

    def test_bad_signature(self, client, make_org):
        response = _omise_post(client, self._payload(make_org()), key=b"wrong")
        assert response.status_code == 400


class TestCheckoutEndpoints:
    def test_checkout_creates_link(self, client, stripe_provider, sqlite_db):
        stripe_provider.create_checkout = Mock(return_value=CheckoutSession("cs_new", "https://checkout.stripe.com/cs_new"))

        response = client.post("/payment/checkout", json={"line_id": "C-group", "is_group": True, "plan": "business"})

        assert response.status_code == 200
        assert response.json() == {"url": "https://checkout.stripe.com/cs_new", "payment_ref": "cs_new", "amount": 50000}
        assert sqlite_db.query(Organization).filter(Organization.line_group_id == "C-group").count() == 1

    def test_checkout_invalid_plan(self, client):
        response = client.post("/payment/checkout", json={"line_id": "U1", "plan": "gold"})
        assert response.status_code == 400

    def test_omise_charge_requires_token_or_source(self, client):
        response = client.post("/payment/omise/charges", json={"line_id": "U1", "plan": "basic"})
        assert response.status_code == 400

    def test_omise_promptpay_charge(self, client, omise_provider):
        omise_provider.create_charge = Mock(
            return_value=OmiseCharge(
                charge_id="chrg_qr", status="pending", amount=20000, qr_code_uri="https://api.omise.co/qr.png"
            )
        )

        response = client.post(
            "/payment/omise/charges",
            json={"line_id": "U1", "plan": "basic", "source_type": "promptpay"},
        )

        assert response.status_code == 200
        assert response.json()["qr_code_uri"] == "https://api.omise.co/qr.png"
        assert response.json()["status"] == "pending"

    def test_poll_unconfigured_returns_503(self, client):
        app.dependency_overrides[get_omise_provider] = lambda: OmiseProvider(None, None)
        assert client.get("/payment/omise/charges/chrg_x").status_code == 503

    def test_success_page(self, client):
        assert client.get("/payment/success").json()["status"] == "success"


class TestDeferredNotifier:
    def test_push_is_queued_until_after_response(self):
        notifier = Mock()
        background_tasks = BackgroundTasks()

        schedule = _deferred(notifier, background_tasks)

        assert schedule("U-test", "อัพเกรดสำเร็จ") is True
        notifier.assert_not_called()
        assert len(background_tasks.tasks) == 1

    def test_missing_notifier_stays_missing(self):
        assert _deferred(None, BackgroundTasks()) is None
