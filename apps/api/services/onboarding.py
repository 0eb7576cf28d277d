"""
Onboarding completion and /start handling.

Completing onboarding opens the trial, starts the paced stream and delivers
day 1 right away. A payment that arrived mid-onboarding has already extended
`paid_until`; starting the trial keeps it.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from core.exceptions import DeliveryError, DomainError
from models import User
from services.gift_service import parse_start_payload
from services.messaging import Messenger
from services.payment_reconciler import PaymentReconciler
from services.progression_engine import SKIPPED, ProgressionEngine
from services.subscription_ledger import start_trial

logger = logging.getLogger(__name__)


def complete_onboarding(db: Session, user: User, now: datetime, messenger: Messenger) -> Dict[str, Any]:
    """Idempotent: a second call neither restarts the trial nor resends day 1."""
    engine = ProgressionEngine(db, messenger)

    if not user.onboarding_completed:
        user.onboarding_completed = True
        user.onboarding_completed_at = now
        db.flush()
        start_trial(db, user.id, now)

    started = engine.start_stream(user, now)
    db.commit()
    db.expire(user)

    first_content = SKIPPED
    if started:
        try:
            first_content = engine.deliver_first_content(user)
        except DeliveryError as e:
            logger.warning(f"Day 1 delivery failed for user {user.id}: {e}")
            first_content = "failed"

    return {
        "user_id": user.id,
        "stream_started": started,
        "first_content": first_content,
        "current_day": user.current_day,
    }


def handle_start(
    db: Session,
    user: User,
    payload: Optional[str],
    messenger: Optional[Messenger],
    now: datetime,
) -> Dict[str, Any]:
    """Route a /start payload. `gift_<token>` redeems a gift for this user."""
    token = parse_start_payload(payload)
    if token is None:
        return {"user_id": user.id, "action": "welcome"}

    try:
        result = PaymentReconciler(db, messenger).redeem_gift(token, user.id, now=now)
    except DomainError as e:
        logger.info(f"Gift start payload rejected for user {user.id}: {e}")
        return {"user_id": user.id, "action": "gift_rejected", "detail": str(e)}
    return {"user_id": user.id, "action": "gift_redeemed", "paid_until": result.paid_until}
