"""
Payment reconciliation.

Gateways verify their own signatures, then hand a SubscriptionGrant or
GiftPurchase to PaymentReconciler.apply(). All paths that extend access
converge on grant(), which is idempotent per confirmed payment: the
idempotency key row is inserted first in the transaction and a duplicate key
rolls the whole attempt back as a replay.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from core.database import insert_for
from core.exceptions import GiftAlreadyRedeemedError, UnknownUserError
from models import ProcessedPayment, User, WebhookEvent, utc_now
from schemas import GiftPurchase, GrantResult, PaymentInstruction, SubscriptionGrant
from services import message_templates as templates
from services.gift_service import GiftTokenStore
from services.messaging import Messenger, notify
from services.progression_engine import ProgressionEngine
from services.subscription_ledger import extend_paid_access

logger = logging.getLogger(__name__)

CHANNEL_NAMES = {
    "stripe": "card",
    "cryptopay": "CryptoBot",
    "tribute": "Tribute",
    "test": "test mode",
    "gift": "gift",
}


def enqueue_first_content(user_id: int) -> None:
    """Hand day-1 delivery to the worker so the payment request never waits on the messenger."""
    from tasks.delivery_tasks import deliver_first_content

    deliver_first_content.delay(user_id)


def record_webhook_event(
    db: Session,
    *,
    provider: str,
    event_id: str,
    event_type: str,
    payload: Optional[Dict[str, Any]] = None,
) -> bool:
    """
    Durably record an authenticated inbound event before processing it.

    Returns False when the (provider, event_id) pair was already recorded.
    """
    stmt = insert_for(db, WebhookEvent).values(
        provider=provider, event_id=event_id, event_type=event_type or "unknown", payload=payload,
    )
    stmt = stmt.on_conflict_do_nothing(index_elements=[WebhookEvent.provider, WebhookEvent.event_id])
    inserted = db.execute(stmt).rowcount == 1
    db.commit()
    return inserted


def set_webhook_outcome(db: Session, *, provider: str, event_id: str, outcome: str) -> None:
    db.execute(
        update(WebhookEvent)
        .where(WebhookEvent.provider == provider, WebhookEvent.event_id == event_id)
        .values(outcome=outcome)
        .execution_options(synchronize_session=False)
    )
    db.commit()


class PaymentReconciler:
    def __init__(self, db: Session, messenger: Optional[Messenger] = None):
        self.db = db
        self.messenger = messenger

    def _require_user(self, user_id: int) -> User:
        user = self.db.get(User, user_id)
        if user is None:
            raise UnknownUserError(user_id)
        return user

    def _apply_grant(self, user: User, days: int, idempotency_key: str, source: str, now: datetime) -> GrantResult:
        """Grant within the current transaction. Caller commits."""
        self.db.add(ProcessedPayment(idempotency_key=idempotency_key, source=source, user_id=user.id, days=days))
        try:
            self.db.flush()
        except IntegrityError:
            self.db.rollback()
            logger.info(f"Payment {idempotency_key} already applied; skipping")
            return GrantResult(applied=False, replay=True, user_id=user.id, days=days)

        sub = extend_paid_access(self.db, user.id, days, now)

        stream_started = False
        if user.onboarding_completed and user.stream_started_at is None:
            stream_started = ProgressionEngine(self.db, self.messenger).start_stream(user, now)
            self.db.expire(user)

        return GrantResult(
            applied=True,
            user_id=user.id,
            days=days,
            paid_until=sub.paid_until,
            stream_started=stream_started,
        )

    def grant(
        self,
        user_id: int,
        days: int,
        idempotency_key: str,
        *,
        source: str,
        now: Optional[datetime] = None,
    ) -> GrantResult:
        """
        Extend `user_id` by `days` exactly once per `idempotency_key`.

        A user who paid during onboarding gets the paced stream started here and
        day 1 delivered by the worker.
        """
        now = now or utc_now()
        user = self._require_user(user_id)
        result = self._apply_grant(user, days, idempotency_key, source, now)
        if not result.applied:
            return result
        self.db.commit()
        logger.info(
            f"Grant applied: user={user_id} days={days} key={idempotency_key}",
            extra={"extra_fields": {"user_id": user_id, "days": days, "source": source}},
        )
        if result.stream_started:
            enqueue_first_content(user_id)
        return result

    def apply(self, instruction: PaymentInstruction, *, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Apply a verified SubscriptionGrant or GiftPurchase and notify the payer."""
        now = now or utc_now()
        if isinstance(instruction, SubscriptionGrant):
            result = self.grant(
                instruction.user_id,
                instruction.days,
                instruction.idempotency_key,
                source=instruction.source,
                now=now,
            )
            if result.applied and self.messenger is not None:
                user = self._require_user(instruction.user_id)
                notify(
                    self.messenger,
                    user.telegram_id,
                    templates.payment_confirmation(result.paid_until, CHANNEL_NAMES.get(instruction.source, instruction.source)),
                    parse_mode="HTML",
                )
            return {"outcome": "granted" if result.applied else "replay", "grant": result}

        if isinstance(instruction, GiftPurchase):
            return self._mark_gift_paid(instruction, now)

        raise TypeError(f"Unsupported payment instruction: {type(instruction).__name__}")

    def _mark_gift_paid(self, instruction: GiftPurchase, now: datetime) -> Dict[str, Any]:
        """Confirmed gift payment: flip the gift to paid; the purchaser's own ledger is untouched."""
        store = GiftTokenStore(self.db)
        gift = store.require(instruction.gift_token)

        self.db.add(ProcessedPayment(
            idempotency_key=instruction.idempotency_key,
            source=instruction.source,
            user_id=gift.purchaser_id,
            days=None,
        ))
        try:
            self.db.flush()
        except IntegrityError:
            self.db.rollback()
            return {"outcome": "replay", "gift_token": gift.token}

        flipped = store.mark_paid(gift.token, now, gateway=instruction.source)
        self.db.commit()
        if not flipped:
            logger.info(f"Gift {gift.id} already paid; payment {instruction.idempotency_key} recorded only")
            return {"outcome": "replay", "gift_token": gift.token}

        logger.info(f"Gift {gift.id} paid via {instruction.source}")
        if self.messenger is not None:
            purchaser = self.db.get(User, gift.purchaser_id)
            message = templates.gift_paid_message(gift.token, gift.days)
            notify(
                self.messenger,
                purchaser.telegram_id,
                message["text"],
                reply_markup=message["reply_markup"],
                parse_mode="HTML",
            )
        return {"outcome": "gift_paid", "gift_token": gift.token}

    def redeem_gift(self, token: str, recipient_id: int, *, now: Optional[datetime] = None) -> GrantResult:
        """
        Redeem a paid gift for `recipient_id`.

        The paid -> redeemed flip and the recipient's grant commit together;
        competing redemptions of one token produce exactly one success.
        """
        now = now or utc_now()
        store = GiftTokenStore(self.db)
        gift = store.validate_redeemable(token)
        recipient = self._require_user(recipient_id)

        if not store.claim_for_redemption(token, recipient.id, now):
            self.db.rollback()
            raise GiftAlreadyRedeemedError(token)

        result = self._apply_grant(recipient, gift.days, f"gift:{token}", "gift", now)
        if not result.applied:
            raise GiftAlreadyRedeemedError(token)
        self.db.commit()
        logger.info(f"Gift {gift.id} redeemed by user {recipient.id}")

        if result.stream_started:
            enqueue_first_content(recipient.id)
        if self.messenger is not None:
            notify(
                self.messenger,
                recipient.telegram_id,
                templates.gift_redeemed_message(gift.days, result.paid_until),
                parse_mode="HTML",
            )
        return result
