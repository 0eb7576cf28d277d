"""
Gift subscriptions: one-time redeemable tokens.

Status only moves forward (created|pending_external -> paid -> redeemed) and
each move is a compare-and-set UPDATE, so concurrent webhooks or competing
redemptions produce exactly one winner.
"""

from __future__ import annotations

import logging
import secrets
from datetime import datetime
from typing import Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from core.exceptions import GiftAlreadyRedeemedError, GiftNotFoundError, GiftNotPaidError
from models import (
    GIFT_STATUS_CREATED,
    GIFT_STATUS_PAID,
    GIFT_STATUS_PENDING_EXTERNAL,
    GIFT_STATUS_REDEEMED,
    GiftSubscription,
)
from services.plans import get_plan

logger = logging.getLogger(__name__)

START_PAYLOAD_PREFIX = "gift_"

# Telegram start payloads allow [A-Za-z0-9_-], max 64 chars; "gift_" + 22 fits.
_TOKEN_BYTES = 16


def generate_token() -> str:
    return secrets.token_urlsafe(_TOKEN_BYTES)


def parse_start_payload(payload: Optional[str]) -> Optional[str]:
    """Extract the token from a "gift_<token>" start payload; None for anything else."""
    if not payload:
        return None
    payload = payload.strip()
    if not payload.startswith(START_PAYLOAD_PREFIX):
        return None
    token = payload[len(START_PAYLOAD_PREFIX):]
    return token or None


class GiftTokenStore:
    def __init__(self, db: Session):
        self.db = db

    def create(
        self,
        *,
        purchaser_id: int,
        plan_id: str,
        gateway: Optional[str] = None,
        pending_external: bool = False,
    ) -> GiftSubscription:
        """
        Record purchase intent.

        `pending_external` marks gifts paid through a channel that cannot carry
        our token (external subscriptions); the webhook matches them by
        purchaser instead.
        """
        plan = get_plan(plan_id)
        gift = GiftSubscription(
            token=generate_token(),
            status=GIFT_STATUS_PENDING_EXTERNAL if pending_external else GIFT_STATUS_CREATED,
            plan_id=plan.id,
            days=plan.days,
            gateway=gateway,
            purchaser_id=purchaser_id,
        )
        self.db.add(gift)
        self.db.flush()
        logger.info(f"Gift created for purchaser {purchaser_id} (plan={plan.id}, status={gift.status})")
        return gift

    def get(self, token: str, *, refresh: bool = False) -> Optional[GiftSubscription]:
        if not token:
            return None
        q = self.db.query(GiftSubscription).filter(GiftSubscription.token == token)
        if refresh:
            q = q.populate_existing()
        return q.first()

    def require(self, token: str) -> GiftSubscription:
        gift = self.get(token, refresh=True)
        if gift is None:
            raise GiftNotFoundError(token)
        return gift

    def find_pending_external(self, purchaser_id: int) -> Optional[GiftSubscription]:
        return (
            self.db.query(GiftSubscription)
            .filter(
                GiftSubscription.purchaser_id == purchaser_id,
                GiftSubscription.status == GIFT_STATUS_PENDING_EXTERNAL,
            )
            .order_by(GiftSubscription.created_at.desc(), GiftSubscription.id.desc())
            .first()
        )

    def mark_paid(self, token: str, now: datetime, gateway: Optional[str] = None) -> bool:
        """Move an unpaid gift to paid. False when it was already paid (replay) or unknown."""
        values = {"status": GIFT_STATUS_PAID, "paid_at": now}
        if gateway:
            values["gateway"] = gateway
        result = self.db.execute(
            update(GiftSubscription)
            .where(
                GiftSubscription.token == token,
                GiftSubscription.status.in_([GIFT_STATUS_CREATED, GIFT_STATUS_PENDING_EXTERNAL]),
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def claim_for_redemption(self, token: str, recipient_id: int, now: datetime) -> bool:
        """Flip paid -> redeemed for exactly one caller."""
        result = self.db.execute(
            update(GiftSubscription)
            .where(
                GiftSubscription.token == token,
                GiftSubscription.status == GIFT_STATUS_PAID,
                GiftSubscription.redeemed_at.is_(None),
            )
            .values(status=GIFT_STATUS_REDEEMED, redeemed_at=now, redeemed_by_user_id=recipient_id)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def validate_redeemable(self, token: str) -> GiftSubscription:
        gift = self.require(token)
        if gift.status == GIFT_STATUS_REDEEMED or gift.redeemed_at is not None:
            raise GiftAlreadyRedeemedError(token)
        if gift.status != GIFT_STATUS_PAID:
            raise GiftNotPaidError(token)
        return gift
