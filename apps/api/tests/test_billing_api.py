"""
Billing endpoints: plans, checkout per channel and the payments test mode.

Test mode must take the same reconciler path as a live payment; only the
gateway round trip is skipped.
"""
from datetime import timedelta

import pytest

from core.config import settings
from models import GiftSubscription, ProcessedPayment, utc_now
from routers import billing
from services.gateways import CheckoutSession
from services.subscription_ledger import get_subscription
from tests.helpers import INTERNAL_HEADERS


@pytest.fixture
def test_mode(monkeypatch):
    monkeypatch.setattr(settings, "PAYMENTS_TEST_MODE", True)


class TestAuth:
    def test_missing_token_is_401(self, client):
        assert client.get("/v1/billing/plans").status_code == 401

    def test_wrong_token_is_401(self, client):
        assert client.get("/v1/billing/plans", headers={"X-Internal-Token": "nope"}).status_code == 401

    def test_unconfigured_token_is_503(self, client, monkeypatch):
        monkeypatch.setattr(settings, "INTERNAL_API_TOKEN", None)
        assert client.get("/v1/billing/plans", headers=INTERNAL_HEADERS).status_code == 503


def test_plans_sorted_by_length(client):
    resp = client.get("/v1/billing/plans", headers=INTERNAL_HEADERS)
    assert resp.status_code == 200
    assert [p["id"] for p in resp.json()["plans"]] == ["week", "month", "80days"]


class TestTestMode:
    def test_grant_goes_through_ledger(self, client, test_mode, make_user, db_session):
        user = make_user()
        before = utc_now()

        resp = client.post("/v1/billing/checkout", json={"user_id": user.id, "plan_id": "month"}, headers=INTERNAL_HEADERS)

        assert resp.status_code == 200
        body = resp.json()
        assert body["mode"] == "test"
        assert "Payment via test mode received" in body["confirmation"]
        sub = get_subscription(db_session, user.id, refresh=True)
        assert before + timedelta(days=30) <= sub.paid_until <= utc_now() + timedelta(days=30)
        key = db_session.query(ProcessedPayment).one().idempotency_key
        assert key.startswith("test:")

    def test_repeated_test_payments_accumulate(self, client, test_mode, make_user, db_session):
        user = make_user()
        client.post("/v1/billing/checkout", json={"user_id": user.id, "plan_id": "week"}, headers=INTERNAL_HEADERS)
        first = get_subscription(db_session, user.id, refresh=True).paid_until
        client.post("/v1/billing/checkout", json={"user_id": user.id, "plan_id": "week"}, headers=INTERNAL_HEADERS)
        second = get_subscription(db_session, user.id, refresh=True).paid_until
        assert second == first + timedelta(days=7)

    def test_gift_checkout_then_redeem_by_friend(self, client, test_mode, make_user, db_session):
        purchaser = make_user()
        friend = make_user()

        resp = client.post(
            "/v1/billing/checkout",
            json={"user_id": purchaser.id, "plan_id": "month", "gift": True},
            headers=INTERNAL_HEADERS,
        )
        body = resp.json()
        assert body["mode"] == "test"
        token = body["gift_token"]
        assert body["gift_link"] == f"/start gift_{token}"
        assert get_subscription(db_session, purchaser.id) is None
        gift = db_session.query(GiftSubscription).filter(GiftSubscription.token == token).populate_existing().one()
        assert gift.gateway == "test"

        start = client.post(f"/v1/users/{friend.id}/start", json={"payload": f"gift_{token}"}, headers=INTERNAL_HEADERS)
        assert start.json()["action"] == "gift_redeemed"

        purchaser_access = client.get(f"/v1/users/{purchaser.id}/access", headers=INTERNAL_HEADERS).json()
        friend_access = client.get(f"/v1/users/{friend.id}/access", headers=INTERNAL_HEADERS).json()
        assert purchaser_access["paid_until"] is None
        assert friend_access["paid_active"] is True

        again = client.post(f"/v1/users/{friend.id}/start", json={"payload": f"gift_{token}"}, headers=INTERNAL_HEADERS)
        assert again.json()["action"] == "gift_rejected"


class TestLiveCheckout:
    def test_unknown_plan_is_404(self, client, make_user):
        user = make_user()
        resp = client.post("/v1/billing/checkout", json={"user_id": user.id, "plan_id": "forever"}, headers=INTERNAL_HEADERS)
        assert resp.status_code == 404

    def test_unknown_user_is_404(self, client):
        resp = client.post("/v1/billing/checkout", json={"user_id": 424242, "plan_id": "week"}, headers=INTERNAL_HEADERS)
        assert resp.status_code == 404

    def test_card_checkout_redirects(self, client, make_user, monkeypatch):
        user = make_user()

        class _FakeStripe:
            def create_checkout_session(self, *, user, plan, gift_token=None):
                return CheckoutSession(url=f"https://checkout.stripe.test/{plan.id}", external_id="cs_1")

        monkeypatch.setattr(billing, "get_card_gateway", lambda: _FakeStripe())
        resp = client.post("/v1/billing/checkout", json={"user_id": user.id, "plan_id": "week"}, headers=INTERNAL_HEADERS)
        assert resp.json() == {
            "mode": "redirect",
            "checkout_url": "https://checkout.stripe.test/week",
            "gift_token": None,
            "paid_until": None,
            "confirmation": None,
            "gift_link": None,
        }

    def test_card_checkout_without_stripe_is_503(self, client, make_user):
        user = make_user()
        resp = client.post("/v1/billing/checkout", json={"user_id": user.id, "plan_id": "week"}, headers=INTERNAL_HEADERS)
        assert resp.status_code == 503

    def test_crypto_invoice(self, client, make_user, monkeypatch, db_session):
        user = make_user()

        class _FakeCryptoPay:
            def create_invoice(self, *, user, plan, gift_token=None):
                return CheckoutSession(url="https://t.me/CryptoBot?start=IV1", external_id="1")

        monkeypatch.setattr(billing, "get_crypto_gateway", lambda: _FakeCryptoPay())
        resp = client.post(
            "/v1/billing/checkout",
            json={"user_id": user.id, "plan_id": "month", "method": "crypto", "gift": True},
            headers=INTERNAL_HEADERS,
        )
        body = resp.json()
        assert body["mode"] == "redirect"
        assert body["gift_token"]
        gift = db_session.query(GiftSubscription).filter(GiftSubscription.token == body["gift_token"]).one()
        assert gift.gateway == "cryptopay"

    def test_tribute_checkout_is_external(self, client, make_user, monkeypatch):
        user = make_user()
        monkeypatch.setattr(settings, "TRIBUTE_SUBSCRIPTION_URL", "https://t.me/tribute/app?startapp=sub")
        resp = client.post(
            "/v1/billing/checkout",
            json={"user_id": user.id, "plan_id": "month", "method": "tribute"},
            headers=INTERNAL_HEADERS,
        )
        assert resp.json()["mode"] == "external"
        assert resp.json()["checkout_url"] == "https://t.me/tribute/app?startapp=sub"
