"""
Payment webhook endpoints, end to end through the FastAPI app.
"""
import hashlib
import hmac
import json

import pytest
import stripe

from core.config import settings
from models import WebhookEvent
from services.subscription_ledger import get_subscription

CRYPTO_TOKEN = "12345:AAtoken"
TRIBUTE_KEY = "tribute-api-key"


def _crypto_headers(body: bytes) -> dict:
    secret = hashlib.sha256(CRYPTO_TOKEN.encode()).digest()
    return {"crypto-pay-api-signature": hmac.new(secret, body, hashlib.sha256).hexdigest()}


def _tribute_headers(body: bytes) -> dict:
    return {"trbt-signature": hmac.new(TRIBUTE_KEY.encode(), body, hashlib.sha256).hexdigest()}


def _invoice_paid(invoice_id, user_id, plan_id="month"):
    inner = json.dumps({"type": "subscription", "user_id": user_id, "plan_id": plan_id})
    return json.dumps({
        "update_id": invoice_id,
        "update_type": "invoice_paid",
        "payload": {"invoice_id": invoice_id, "status": "paid", "payload": inner},
    }).encode()


@pytest.fixture
def crypto_configured(monkeypatch):
    monkeypatch.setattr(settings, "CRYPTO_PAY_API_TOKEN", CRYPTO_TOKEN)


@pytest.fixture
def tribute_configured(monkeypatch):
    monkeypatch.setattr(settings, "TRIBUTE_API_KEY", TRIBUTE_KEY)


class TestCryptoPayWebhook:
    URL = "/v1/payments/webhooks/crypto-pay"

    def test_invalid_signature_is_401(self, client, crypto_configured, make_user, db_session):
        user = make_user()
        body = _invoice_paid(1, user.id)
        resp = client.post(self.URL, content=body, headers={"crypto-pay-api-signature": "00" * 32})
        assert resp.status_code == 401
        assert get_subscription(db_session, user.id) is None
        assert db_session.query(WebhookEvent).count() == 0

    def test_paid_invoice_grants_once(self, client, crypto_configured, make_user, messenger, db_session):
        user = make_user()
        body = _invoice_paid(11, user.id)

        first = client.post(self.URL, content=body, headers=_crypto_headers(body))
        replay = client.post(self.URL, content=body, headers=_crypto_headers(body))

        assert first.status_code == 200
        assert first.json() == {"ok": True, "outcome": "granted", "detail": None}
        assert replay.status_code == 200
        assert replay.json()["outcome"] == "replay"

        sub = get_subscription(db_session, user.id, refresh=True)
        assert sub.paid_until is not None
        assert len(messenger.texts_for(user.telegram_id)) == 1
        assert db_session.query(WebhookEvent).count() == 1

    def test_malformed_body_is_400(self, client, crypto_configured):
        body = b"not json at all"
        resp = client.post(self.URL, content=body, headers=_crypto_headers(body))
        assert resp.status_code == 400

    def test_unknown_user_is_acked_as_rejected(self, client, crypto_configured, db_session):
        body = _invoice_paid(12, 999999)
        resp = client.post(self.URL, content=body, headers=_crypto_headers(body))
        assert resp.status_code == 200
        assert resp.json()["outcome"] == "rejected"
        event = db_session.query(WebhookEvent).populate_existing().one()
        assert event.outcome == "rejected"

    def test_unknown_plan_is_acked_as_rejected(self, client, crypto_configured, make_user):
        user = make_user()
        body = _invoice_paid(13, user.id, plan_id="lifetime")
        resp = client.post(self.URL, content=body, headers=_crypto_headers(body))
        assert resp.status_code == 200
        assert resp.json()["outcome"] == "rejected"

    def test_unconfigured_gateway_is_503(self, client):
        body = _invoice_paid(14, 1)
        resp = client.post(self.URL, content=body, headers=_crypto_headers(body))
        assert resp.status_code == 503

    def test_probe(self, client):
        assert client.get(self.URL).json()["ok"] is True


class TestTributeWebhook:
    URL = "/v1/payments/webhooks/tribute"

    def _body(self, telegram_user_id, name="new_subscription", period="month"):
        return json.dumps({
            "name": name,
            "created_at": "2026-03-02T12:00:00Z",
            "payload": {"subscription_id": 77, "telegram_user_id": telegram_user_id, "period": period},
        }).encode()

    def test_missing_signature_is_401(self, client, tribute_configured):
        resp = client.post(self.URL, content=self._body(1))
        assert resp.status_code == 401

    def test_new_subscription_grants(self, client, tribute_configured, make_user, db_session):
        user = make_user()
        body = self._body(user.telegram_id)
        resp = client.post(self.URL, content=body, headers=_tribute_headers(body))
        assert resp.json()["outcome"] == "granted"
        assert get_subscription(db_session, user.id, refresh=True).active

    def test_cancellation_is_ignored(self, client, tribute_configured, make_user):
        user = make_user()
        body = self._body(user.telegram_id, name="subscription_canceled")
        resp = client.post(self.URL, content=body, headers=_tribute_headers(body))
        assert resp.status_code == 200
        assert resp.json()["outcome"] == "ignored"


class TestStripeWebhook:
    URL = "/v1/payments/webhooks/stripe"

    @pytest.fixture
    def stripe_configured(self, monkeypatch):
        monkeypatch.setattr(settings, "STRIPE_SECRET_KEY", "sk_test_dummy")
        monkeypatch.setattr(settings, "STRIPE_WEBHOOK_SECRET", "whsec_dummy")

    def test_not_configured_is_503(self, client):
        resp = client.post(self.URL, content=b"{}", headers={"stripe-signature": "t=1,v1=x"})
        assert resp.status_code == 503

    def test_bad_signature_is_401(self, client, stripe_configured, monkeypatch):
        def _raise(**kwargs):
            raise stripe.SignatureVerificationError("bad signature", kwargs.get("sig_header"))

        monkeypatch.setattr(stripe.Webhook, "construct_event", _raise)
        resp = client.post(self.URL, content=b"{}", headers={"stripe-signature": "t=1,v1=x"})
        assert resp.status_code == 401

    def test_completed_checkout_grants(self, client, stripe_configured, monkeypatch, make_user, db_session):
        user = make_user()
        event = {
            "id": "evt_100",
            "type": "checkout.session.completed",
            "data": {"object": {
                "id": "cs_100",
                "payment_status": "paid",
                "metadata": {"user_id": str(user.id), "plan_id": "week", "kind": "subscription"},
            }},
        }
        monkeypatch.setattr(stripe.Webhook, "construct_event", lambda **kwargs: event)

        resp = client.post(self.URL, content=json.dumps(event).encode(), headers={"stripe-signature": "t=1,v1=ok"})

        assert resp.status_code == 200
        assert resp.json()["outcome"] == "granted"
        assert get_subscription(db_session, user.id, refresh=True).paid_until is not None
