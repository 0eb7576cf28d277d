"""Deferred "remind me later" requests. The delivery tick picks them up."""

from __future__ import annotations

from datetime import datetime, timedelta

from sqlalchemy import update
from sqlalchemy.orm import Session

from models import User

CONTENT_REMINDER_DELAY = timedelta(hours=2)
SUBSCRIPTION_REMINDER_DELAY = timedelta(days=2)

_FIELDS = {
    "morning": ("pending_morning_at", CONTENT_REMINDER_DELAY),
    "evening": ("pending_evening_at", CONTENT_REMINDER_DELAY),
    "subscription": ("pending_reminder_at", SUBSCRIPTION_REMINDER_DELAY),
}


def schedule_reminder(db: Session, user: User, kind: str, now: datetime) -> datetime:
    """Set (or push back) the user's deferred reminder of `kind`. Returns when it is due."""
    try:
        field, delay = _FIELDS[kind]
    except KeyError:
        raise ValueError(f"Unknown reminder kind: {kind}") from None
    remind_at = now + delay
    db.execute(
        update(User)
        .where(User.id == user.id)
        .values(**{field: remind_at})
        .execution_options(synchronize_session=False)
    )
    db.commit()
    db.expire(user)
    return remind_at
