"""
Tribute external subscriptions.

Tribute owns the checkout; we only receive webhooks. `trbt-signature` is the
hex HMAC-SHA256 of the raw body keyed by the API key and is mandatory. The
payer is identified by Telegram id, not by anything we issued.
"""

from __future__ import annotations

import json
import logging
import math
from datetime import datetime
from typing import Mapping, Optional

from sqlalchemy.orm import Session

from core.config import settings
from core.exceptions import (
    GatewayUnavailableError,
    MalformedPayloadError,
    PaymentVerificationError,
    UnknownUserError,
)
from models import User, utc_now
from schemas import GiftPurchase, SubscriptionGrant
from services.gateways.base import (
    Instruction,
    PaymentGateway,
    VerifiedEvent,
    hmac_sha256_hex,
    signature_matches,
)
from services.gift_service import GiftTokenStore

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "trbt-signature"
GRANTING_EVENTS = ("new_subscription", "subscription_renewed")
CANCELED = "subscription_canceled"

PERIOD_DAYS = {
    "week": 7,
    "month": 30,
    "3months": 90,
    "year": 365,
    "onetime": 365,
}
DEFAULT_PERIOD_DAYS = 30
MAX_DAYS = 365


def period_to_days(period: Optional[str], expires_at: Optional[str] = None, now: Optional[datetime] = None) -> int:
    """
    Days to grant for a Tribute period.

    `expires_at` wins when present (ceil of days until it, clamped to 1..365;
    "onetime" purchases report a far-future date). Otherwise the period name
    maps to a fixed length, defaulting to a month.
    """
    if expires_at:
        try:
            expires = datetime.fromisoformat(expires_at.replace("Z", "+00:00"))
        except ValueError:
            logger.warning(f"Unparseable Tribute expires_at {expires_at!r}; using period")
        else:
            now = now or utc_now()
            if expires.tzinfo is None:
                expires = expires.replace(tzinfo=now.tzinfo)
            days = math.ceil((expires - now).total_seconds() / 86400)
            return min(max(days, 1), MAX_DAYS)
    return PERIOD_DAYS.get((period or "").lower(), DEFAULT_PERIOD_DAYS)


class TributeGateway(PaymentGateway):
    name = "tribute"

    def __init__(self, api_key: Optional[str] = None):
        self.api_key = api_key or settings.TRIBUTE_API_KEY

    def verify(self, raw_body: bytes, headers: Mapping[str, str]) -> VerifiedEvent:
        if not self.api_key:
            raise GatewayUnavailableError("Tribute not configured (missing: TRIBUTE_API_KEY)")
        expected = hmac_sha256_hex(self.api_key.encode("utf-8"), raw_body)
        if not signature_matches(expected, headers.get(SIGNATURE_HEADER)):
            raise PaymentVerificationError("Invalid or missing Tribute signature")
        try:
            webhook = json.loads(raw_body)
        except ValueError as e:
            raise MalformedPayloadError("Malformed Tribute payload") from e
        if not isinstance(webhook, dict):
            raise MalformedPayloadError("Malformed Tribute payload")

        payload = webhook.get("payload") or {}
        event_type = str(webhook.get("name") or "unknown")
        event_id = f"{event_type}:{payload.get('subscription_id')}:{webhook.get('created_at')}"
        return VerifiedEvent(provider=self.name, event_id=event_id, event_type=event_type, payload=webhook)

    def to_instruction(self, db: Session, event: VerifiedEvent, now: Optional[datetime] = None) -> Optional[Instruction]:
        if event.event_type == CANCELED:
            # Access simply runs to the already-paid expiry.
            logger.info(f"Tribute subscription canceled: {event.event_id}")
            return None
        if event.event_type not in GRANTING_EVENTS:
            logger.info(f"Ignoring Tribute event {event.event_type}")
            return None

        webhook = event.payload
        payload = webhook.get("payload") or {}
        telegram_user_id = payload.get("telegram_user_id")
        if not telegram_user_id:
            raise MalformedPayloadError("Tribute event without telegram_user_id")

        user = db.query(User).filter(User.telegram_id == int(telegram_user_id)).first()
        if user is None:
            raise UnknownUserError(telegram_user_id)

        key = f"tribute:{payload.get('subscription_id')}:{webhook.get('created_at')}"

        gift = GiftTokenStore(db).find_pending_external(user.id)
        if gift is not None:
            return GiftPurchase(gift_token=gift.token, idempotency_key=key, source=self.name)

        days = period_to_days(payload.get("period"), payload.get("expires_at"), now=now)
        return SubscriptionGrant(user_id=user.id, days=days, idempotency_key=key, source=self.name)
