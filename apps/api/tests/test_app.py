"""
Application wiring: health probe, request ids and Sentry header scrubbing.
"""
from unittest.mock import patch

from tests.helpers import INTERNAL_HEADERS


def test_health_ok(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "healthy"
    assert resp.json()["payments_test_mode"] is False


def test_health_reports_database_outage(client):
    with patch("main.check_db_connection", return_value=False):
        resp = client.get("/health")
    assert resp.status_code == 503
    assert resp.json() == {"status": "unhealthy", "database": "unavailable"}


def test_request_id_is_echoed(client):
    resp = client.get("/v1/billing/plans", headers={**INTERNAL_HEADERS, "X-Request-ID": "req-42"})
    assert resp.headers["X-Request-ID"] == "req-42"


def test_request_id_is_generated(client):
    resp = client.get("/health")
    assert len(resp.headers["X-Request-ID"]) == 32


def test_webhook_requests_are_tagged_with_gateway():
    from starlette.requests import Request

    from main import _request_fields

    request = Request({"type": "http", "method": "POST", "path": "/v1/payments/webhooks/tribute", "headers": [], "query_string": b""})
    fields = _request_fields(request, "abc")
    assert fields["gateway"] == "tribute"
    assert fields["request_id"] == "abc"


def test_sentry_filter_drops_signatures():
    from main import _filter_sensitive_data

    event = {"request": {"headers": {"Stripe-Signature": "t=1", "X-Internal-Token": "secret", "Accept": "*/*"}}}
    assert _filter_sensitive_data(event)["request"]["headers"] == {"Accept": "*/*"}
