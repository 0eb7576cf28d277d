"""
Subscription ledger: the canonical per-user access record.

Every mutation here is a single upsert, a row-locked read-extend-write, or a
compare-and-set UPDATE. Payment webhooks and the delivery tick touch the same
rows concurrently and no process-local lock is involved.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from sqlalchemy import case, update
from sqlalchemy.orm import Session

from core.database import insert_for
from models import Subscription, User

logger = logging.getLogger(__name__)

TRIAL_LIMIT = 7


@dataclass(frozen=True)
class AccessDecision:
    paid_active: bool
    trial_active: bool

    @property
    def granted(self) -> bool:
        return self.paid_active or self.trial_active


def evaluate_access(sub: Optional[Subscription], target_day: int, now: datetime) -> AccessDecision:
    """
    Access tier for delivering `target_day` at `now`.

    Paid access needs a future `paid_until`; trial access covers content days
    1..TRIAL_LIMIT while the row is still active. A latched (inactive) row
    grants nothing.
    """
    if sub is None or not sub.active:
        return AccessDecision(paid_active=False, trial_active=False)
    paid_active = sub.paid_until is not None and sub.paid_until > now
    trial_active = not paid_active and target_day <= TRIAL_LIMIT
    return AccessDecision(paid_active=paid_active, trial_active=trial_active)


def get_subscription(db: Session, user_id: int, *, refresh: bool = False) -> Optional[Subscription]:
    q = db.query(Subscription).filter(Subscription.user_id == user_id)
    if refresh:
        q = q.populate_existing()
    return q.first()


def ensure_subscription_row(db: Session, user_id: int) -> Subscription:
    """Create the inactive row if missing; concurrent callers converge on the same row."""
    stmt = insert_for(db, Subscription).values(user_id=user_id, active=False, trial_days_used=0)
    db.execute(stmt.on_conflict_do_nothing(index_elements=[Subscription.user_id]))
    return get_subscription(db, user_id, refresh=True)


def start_trial(db: Session, user_id: int, now: datetime) -> Subscription:
    """
    Open the trial at onboarding completion.

    Re-activates an existing row but keeps `trial_days_used` and `paid_until`
    so a payment made during onboarding is not lost.
    """
    stmt = insert_for(db, Subscription).values(
        user_id=user_id, active=True, activated_at=now, trial_days_used=0,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[Subscription.user_id],
        set_={"active": True, "activated_at": now},
    )
    db.execute(stmt)
    return get_subscription(db, user_id, refresh=True)


def extend_paid_access(db: Session, user_id: int, days: int, now: datetime) -> Subscription:
    """
    Extend paid access by `days` from max(now, paid_until).

    The row is locked for the read-extend-write so two concurrent grants for
    the same user stack instead of overwriting each other.
    """
    if days <= 0:
        raise ValueError(f"days must be positive, got {days}")
    ensure_subscription_row(db, user_id)
    sub = (
        db.query(Subscription)
        .filter(Subscription.user_id == user_id)
        .with_for_update()
        .populate_existing()
        .one()
    )
    base = sub.paid_until if sub.paid_until is not None and sub.paid_until > now else now
    sub.paid_until = base + timedelta(days=days)
    sub.active = True
    if sub.activated_at is None:
        sub.activated_at = now
    db.flush()
    logger.info(
        f"Paid access extended for user {user_id} by {days}d",
        extra={"extra_fields": {"user_id": user_id, "days": days, "paid_until": sub.paid_until.isoformat()}},
    )
    return sub


def latch_expiry(db: Session, user_id: int) -> bool:
    """
    One-way active -> inactive transition.

    Returns True only for the caller that actually flipped the flag; that
    caller owns the access-expired message. `trial_days_used` is raised to at
    least TRIAL_LIMIT.
    """
    result = db.execute(
        update(Subscription)
        .where(Subscription.user_id == user_id, Subscription.active.is_(True))
        .values(
            active=False,
            trial_days_used=case(
                (Subscription.trial_days_used < TRIAL_LIMIT, TRIAL_LIMIT),
                else_=Subscription.trial_days_used,
            ),
        )
        .execution_options(synchronize_session=False)
    )
    flipped = result.rowcount == 1
    if flipped:
        logger.info(f"Access latched off for user {user_id}")
    return flipped


def record_trial_progress(db: Session, user_id: int, target_day: int) -> None:
    """Raise `trial_days_used` to `target_day` for trial days; never lowers it."""
    if target_day > TRIAL_LIMIT:
        return
    db.execute(
        update(Subscription)
        .where(Subscription.user_id == user_id, Subscription.trial_days_used < target_day)
        .values(trial_days_used=target_day)
        .execution_options(synchronize_session=False)
    )


def access_status(db: Session, user: User, now: datetime) -> Dict[str, Any]:
    sub = get_subscription(db, user.id, refresh=True)
    decision = evaluate_access(sub, user.current_day, now)
    return {
        "user_id": user.id,
        "has_access": decision.granted,
        "paid_active": decision.paid_active,
        "trial_active": decision.trial_active,
        "active": bool(sub.active) if sub else False,
        "paid_until": sub.paid_until if sub else None,
        "trial_days_used": sub.trial_days_used if sub else 0,
        "trial_limit": TRIAL_LIMIT,
        "current_day": user.current_day,
    }
