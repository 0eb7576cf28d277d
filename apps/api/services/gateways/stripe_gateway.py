from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any, Mapping, Optional

import stripe
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
    get_field,
)
from services.plans import Plan, get_plan

logger = logging.getLogger(__name__)

CHECKOUT_COMPLETED = "checkout.session.completed"


@dataclass(frozen=True)
class StripeConfig:
    secret_key: str
    webhook_secret: Optional[str]
    currency: str
    checkout_success_url: str
    checkout_cancel_url: str


def _get_stripe_config() -> StripeConfig:
    """
    Load Stripe config from Settings.

    Fail closed: without a secret key, card checkout must not proceed.
    """
    if not settings.STRIPE_SECRET_KEY:
        raise GatewayUnavailableError("Stripe not configured (missing: STRIPE_SECRET_KEY)")

    bot = (settings.BOT_USERNAME or "").lstrip("@")
    fallback = f"https://t.me/{bot}" if bot else "https://t.me"
    return StripeConfig(
        secret_key=str(settings.STRIPE_SECRET_KEY),
        webhook_secret=settings.STRIPE_WEBHOOK_SECRET or None,
        currency=settings.STRIPE_CURRENCY,
        checkout_success_url=settings.STRIPE_CHECKOUT_SUCCESS_URL or fallback,
        checkout_cancel_url=settings.STRIPE_CHECKOUT_CANCEL_URL or fallback,
    )


class StripeGateway(PaymentGateway):
    """Card payments through hosted Stripe Checkout (one-off, mode=payment)."""

    name = "stripe"

    def __init__(self) -> None:
        cfg = _get_stripe_config()
        stripe.api_key = cfg.secret_key
        self.cfg = cfg

    def create_checkout_session(self, *, user: User, plan: Plan, gift_token: Optional[str] = None) -> CheckoutSession:
        kind = "gift" if gift_token else "subscription"
        metadata = {"user_id": str(user.id), "plan_id": plan.id, "kind": kind}
        if gift_token:
            metadata["gift_token"] = gift_token
        params: dict[str, Any] = {
            "mode": "payment",
            "success_url": self.cfg.checkout_success_url,
            "cancel_url": self.cfg.checkout_cancel_url,
            "line_items": [{
                "quantity": 1,
                "price_data": {
                    "currency": self.cfg.currency,
                    "unit_amount": plan.price_minor,
                    "product_data": {"name": plan.title if kind == "subscription" else f"Gift: {plan.title}"},
                },
            }],
            "client_reference_id": str(user.id),
            "metadata": metadata,
        }
        try:
            session = stripe.checkout.Session.create(**params)
        except stripe.StripeError as e:
            logger.error(f"Stripe checkout creation failed for user {user.id}: {e}")
            raise GatewayUnavailableError("Card checkout is unavailable") from e
        return CheckoutSession(url=str(session.url), external_id=str(session.id))

    def construct_event(self, *, payload: bytes, sig_header: str):
        if not self.cfg.webhook_secret:
            raise GatewayUnavailableError("Stripe webhook secret not configured")
        return stripe.Webhook.construct_event(
            payload=payload,
            sig_header=sig_header,
            secret=self.cfg.webhook_secret,
        )

    def verify(self, raw_body: bytes, headers: Mapping[str, str]) -> VerifiedEvent:
        sig = headers.get("stripe-signature")
        if not sig:
            raise PaymentVerificationError("Missing Stripe-Signature header")
        try:
            event = self.construct_event(payload=raw_body, sig_header=sig)
        except stripe.SignatureVerificationError as e:
            raise PaymentVerificationError("Invalid Stripe signature") from e
        except ValueError as e:
            raise MalformedPayloadError("Malformed Stripe payload") from e

        event_id = str(get_field(event, "id", "") or "")
        if not event_id:
            raise MalformedPayloadError("Stripe event without id")
        return VerifiedEvent(
            provider=self.name,
            event_id=event_id,
            event_type=str(get_field(event, "type", "") or "unknown"),
            payload=event,
        )

    def to_instruction(self, db: Session, event: VerifiedEvent) -> Optional[Instruction]:
        if event.event_type != CHECKOUT_COMPLETED:
            return None

        session = get_field(get_field(event.payload, "data"), "object")
        if get_field(session, "payment_status") not in (None, "paid"):
            logger.info(f"Checkout session not paid yet: {get_field(session, 'id')}")
            return None

        session_id = str(get_field(session, "id", "") or "")
        metadata = get_field(session, "metadata") or {}
        if not session_id:
            raise MalformedPayloadError("Checkout session without id")
        key = f"stripe:{session_id}"

        if get_field(metadata, "kind") == "gift":
            token = get_field(metadata, "gift_token")
            if not token:
                raise MalformedPayloadError("Gift checkout without gift_token")
            return GiftPurchase(gift_token=str(token), idempotency_key=key, source=self.name)

        user_id = get_field(metadata, "user_id") or get_field(session, "client_reference_id")
        plan = get_plan(get_field(metadata, "plan_id"))
        try:
            uid = int(user_id)
        except (TypeError, ValueError) as e:
            raise MalformedPayloadError(f"Checkout session {session_id} has no valid user_id") from e
        return SubscriptionGrant(user_id=uid, days=plan.days, idempotency_key=key, source=self.name, plan_id=plan.id)
