"""
Crypto Pay (Crypto Bot) invoices.

Webhook authenticity: `crypto-pay-api-signature` is the hex HMAC-SHA256 of
the raw body keyed by SHA256(api_token). Our own JSON payload rides inside the
invoice and comes back on `invoice_paid`.
"""

from __future__ import annotations

import hashlib
import json
import logging
from typing import Any, Dict, Mapping, Optional

import requests
from sqlalchemy.orm import Session

from core.config import settings
from core.exceptions import GatewayUnavailableError, MalformedPayloadError, PaymentVerificationError
from models import User
from schemas import GiftPurchase, SubscriptionGrant
from services.gateways.base import (
    CheckoutSession,
    Instruction,
    PaymentGateway,
    VerifiedEvent,
    hmac_sha256_hex,
    signature_matches,
)
from services.plans import Plan, describe_duration, get_plan

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "crypto-pay-api-signature"
INVOICE_PAID = "invoice_paid"


def verify_signature(raw_body: bytes, signature: Optional[str], token: str) -> bool:
    secret = hashlib.sha256(token.encode("utf-8")).digest()
    return signature_matches(hmac_sha256_hex(secret, raw_body), signature)


class CryptoPayGateway(PaymentGateway):
    name = "cryptopay"

    def __init__(self, token: Optional[str] = None, api_url: Optional[str] = None, timeout: Optional[float] = None):
        self.token = token or settings.CRYPTO_PAY_API_TOKEN
        self.api_url = (api_url or settings.CRYPTO_PAY_API_URL).rstrip("/")
        self.timeout = timeout or settings.EXTERNAL_API_TIMEOUT

    def _request(self, method: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        if not self.token:
            raise GatewayUnavailableError("Crypto Pay not configured (missing: CRYPTO_PAY_API_TOKEN)")
        url = f"{self.api_url}/{method}"
        try:
            r = requests.post(
                url,
                json=params or {},
                headers={"Crypto-Pay-API-Token": self.token},
                timeout=self.timeout,
            )
            r.raise_for_status()
            data = r.json()
        except requests.exceptions.RequestException as e:
            logger.error(f"Crypto Pay {method} failed: {e}")
            raise GatewayUnavailableError("Crypto payments are unavailable") from e
        except ValueError as e:
            raise GatewayUnavailableError(f"Crypto Pay {method} returned non-JSON body") from e
        if not data.get("ok"):
            logger.error(f"Crypto Pay {method} error: {data.get('error')}")
            raise GatewayUnavailableError(f"Crypto Pay error: {data.get('error')}")
        return data.get("result") or {}

    def create_invoice(self, *, user: User, plan: Plan, gift_token: Optional[str] = None) -> CheckoutSession:
        kind = "gift" if gift_token else "subscription"
        payload: Dict[str, Any] = {"type": kind, "user_id": user.id, "plan_id": plan.id}
        if gift_token:
            payload["gift_token"] = gift_token
        bot = (settings.BOT_USERNAME or "").lstrip("@")
        description = f"Subscription for {describe_duration(plan.days)}"
        if gift_token:
            description = f"Gift: {description}"
        invoice = self._request("createInvoice", {
            "currency_type": "fiat",
            "fiat": "RUB",
            "amount": f"{plan.price_rub:.2f}",
            "description": description,
            "payload": json.dumps(payload),
            "paid_btn_name": "callback",
            "paid_btn_url": f"https://t.me/{bot}" if bot else "https://t.me",
        })
        logger.info(f"Crypto invoice {invoice.get('invoice_id')} created for user {user.id} ({kind}, plan={plan.id})")
        return CheckoutSession(url=str(invoice.get("bot_invoice_url")), external_id=str(invoice.get("invoice_id")))

    def verify(self, raw_body: bytes, headers: Mapping[str, str]) -> VerifiedEvent:
        if not self.token:
            raise GatewayUnavailableError("Crypto Pay not configured (missing: CRYPTO_PAY_API_TOKEN)")
        if not verify_signature(raw_body, headers.get(SIGNATURE_HEADER), self.token):
            raise PaymentVerificationError("Invalid Crypto Pay signature")
        try:
            update = json.loads(raw_body)
        except ValueError as e:
            raise MalformedPayloadError("Malformed Crypto Pay payload") from e
        if not isinstance(update, dict):
            raise MalformedPayloadError("Malformed Crypto Pay payload")

        update_type = str(update.get("update_type") or "unknown")
        invoice = update.get("payload") or {}
        event_id = update.get("update_id") or invoice.get("invoice_id")
        if event_id is None:
            raise MalformedPayloadError("Crypto Pay update without id")
        return VerifiedEvent(provider=self.name, event_id=str(event_id), event_type=update_type, payload=update)

    def to_instruction(self, db: Session, event: VerifiedEvent) -> Optional[Instruction]:
        if event.event_type != INVOICE_PAID:
            return None

        invoice = event.payload.get("payload") or {}
        invoice_id = invoice.get("invoice_id")
        raw = invoice.get("payload")
        if invoice_id is None or not raw:
            raise MalformedPayloadError("Paid invoice without id or payload")
        try:
            data = json.loads(raw)
        except ValueError as e:
            raise MalformedPayloadError(f"Invoice {invoice_id} carries an unreadable payload") from e

        key = f"cryptopay:{invoice_id}"
        if data.get("type") == "gift":
            token = data.get("gift_token")
            if not token:
                raise MalformedPayloadError(f"Gift invoice {invoice_id} without gift_token")
            return GiftPurchase(gift_token=str(token), idempotency_key=key, source=self.name)

        plan = get_plan(data.get("plan_id"))
        try:
            user_id = int(data.get("user_id"))
        except (TypeError, ValueError) as e:
            raise MalformedPayloadError(f"Invoice {invoice_id} has no valid user_id") from e
        return SubscriptionGrant(user_id=user_id, days=plan.days, idempotency_key=key, source=self.name, plan_id=plan.id)
