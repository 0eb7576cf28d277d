"""
Delivery scheduler: one pass over stream-active users per minute tick.

Driven by the `tasks.run_delivery_tick` beat task, but callable directly with
an explicit `utc_now` so tests can pin the clock.

Per tick, for each user with a started stream:
    - regular morning/evening trigger when their local HH:MM equals the slot
    - deferred reminders whose timestamp fell inside the catch-up window
      (older ones are dropped)
Housekeeping rides on the same tick: the subscription-nudge sweep on every
10th minute and the expiry consistency check at the top of each hour.

A failing trigger is logged and the scan moves on to the next one.
"""

from __future__ import annotations

import logging
from collections import Counter
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy import or_, update
from sqlalchemy.orm import Session

from models import Subscription, User
from services.messaging import Messenger
from services.progression_engine import ProgressionEngine
from services.settings_service import SettingsService
from services.subscription_ledger import TRIAL_LIMIT
from services.timezone_resolver import is_slot_now

logger = logging.getLogger(__name__)

CATCH_UP_WINDOW = timedelta(minutes=2)
NUDGE_EVERY_MINUTES = 10
CONSISTENCY_EVERY_MINUTES = 60


def _in_window(pending: Optional[datetime], utc_now: datetime) -> bool:
    return pending is not None and utc_now - CATCH_UP_WINDOW <= pending <= utc_now


def _expired(pending: Optional[datetime], utc_now: datetime) -> bool:
    return pending is not None and pending < utc_now - CATCH_UP_WINDOW


class DeliveryScheduler:
    def __init__(self, db: Session, messenger: Messenger, settings_service: Optional[SettingsService] = None):
        self.db = db
        self.messenger = messenger
        self.settings = settings_service or SettingsService(db)
        self.engine = ProgressionEngine(db, messenger, self.settings)

    def run_tick(self, utc_now: datetime) -> Dict[str, Any]:
        morning_slot = self.settings.morning_slot()
        evening_slot = self.settings.evening_slot()

        users = (
            self.db.query(User)
            .filter(User.stream_started_at.isnot(None))
            .order_by(User.id)
            .all()
        )

        outcomes: Counter = Counter()
        errors: List[Dict[str, Any]] = []

        for user in users:
            user_id = user.id
            try:
                results, failures = self._process_user(user, utc_now, morning_slot, evening_slot)
            except Exception as e:
                self.db.rollback()
                logger.error(f"Delivery failed for user {user_id}: {type(e).__name__}: {e}", exc_info=True)
                errors.append({"user_id": user_id, "error": str(e)})
                continue
            for outcome in results:
                outcomes[outcome] += 1
            if failures:
                errors.append({"user_id": user_id, "error": "; ".join(failures)})

        summary: Dict[str, Any] = {
            "status": "ok",
            "utc_time": utc_now.isoformat(),
            "morning_slot": morning_slot,
            "evening_slot": evening_slot,
            "users_scanned": len(users),
            "outcomes": dict(outcomes),
            "users_errored": len(errors),
            "errors": errors or None,
        }

        if utc_now.minute % NUDGE_EVERY_MINUTES == 0:
            summary["nudges"] = self.run_nudge_sweep(utc_now)
        if utc_now.minute % CONSISTENCY_EVERY_MINUTES == 0:
            summary["consistency"] = self.run_consistency_check(utc_now)

        if outcomes or errors:
            logger.info(
                f"Delivery tick {utc_now.strftime('%H:%M UTC')}: {dict(outcomes)}, {len(errors)} errors",
                extra={"extra_fields": {"users_scanned": len(users), "users_errored": len(errors)}},
            )
        return summary

    def _process_user(
        self,
        user: User,
        utc_now: datetime,
        morning_slot: Optional[str],
        evening_slot: Optional[str],
    ) -> Tuple[List[str], List[str]]:
        """
        Run every trigger due for `user` this minute.

        A failing trigger is rolled back on its own; the remaining triggers and
        the stale-reminder cleanup still run in the same tick.
        Returns (outcomes, failure messages).
        """
        user_id = user.id
        results: List[str] = []
        failures: List[str] = []

        def attempt(label: str, due: Callable[[], bool], run: Callable[[], Any]) -> None:
            try:
                if not due():
                    return
                outcome = run()
            except Exception as e:
                self.db.rollback()
                logger.error(
                    f"{label} failed for user {user_id}: {type(e).__name__}: {e}",
                    exc_info=True,
                    extra={"extra_fields": {"user_id": user_id, "trigger": label}},
                )
                failures.append(f"{label}: {e}")
                return
            if isinstance(outcome, list):
                results.extend(outcome)
            else:
                results.append(f"{label}_{outcome}")

        attempt(
            "morning",
            lambda: is_slot_now(utc_now, user.timezone, morning_slot),
            lambda: self.engine.deliver_morning(user, utc_now),
        )
        attempt(
            "morning_reminder",
            lambda: _in_window(user.pending_morning_at, utc_now),
            lambda: self.engine.deliver_morning_reminder(user, utc_now),
        )
        attempt(
            "evening",
            lambda: is_slot_now(utc_now, user.timezone, evening_slot),
            lambda: self.engine.deliver_evening(user, utc_now),
        )
        attempt(
            "evening_reminder",
            lambda: _in_window(user.pending_evening_at, utc_now),
            lambda: self.engine.deliver_evening_reminder(user, utc_now),
        )
        attempt("reminder_cleanup", lambda: True, lambda: self._drop_missed_reminders(user, utc_now))
        return results, failures

    def _drop_missed_reminders(self, user: User, utc_now: datetime) -> List[str]:
        stale = {
            field: None
            for field in ("pending_morning_at", "pending_evening_at")
            if _expired(getattr(user, field), utc_now)
        }
        if not stale:
            return []
        self.db.execute(
            update(User).where(User.id == user.id).values(**stale).execution_options(synchronize_session=False)
        )
        self.db.commit()
        self.db.expire(user)
        logger.info(f"Dropped missed reminders for user {user.id}: {sorted(stale)}")
        return ["reminder_dropped"] * len(stale)

    def run_nudge_sweep(self, utc_now: datetime) -> Dict[str, int]:
        """Send the subscription offer to users whose "remind me in 2 days" came due."""
        due = (
            self.db.query(User)
            .filter(User.pending_reminder_at.isnot(None), User.pending_reminder_at <= utc_now)
            .order_by(User.id)
            .all()
        )
        outcomes: Counter = Counter()
        for user in due:
            user_id = user.id
            try:
                outcomes[self.engine.send_subscription_nudge(user, utc_now)] += 1
            except Exception as e:
                self.db.rollback()
                logger.error(f"Subscription nudge failed for user {user_id}: {e}", exc_info=True)
                outcomes["error"] += 1
        return dict(outcomes)

    def run_consistency_check(self, utc_now: datetime) -> Dict[str, int]:
        """
        Latch users whose paid access lapsed after the trial was used up.

        Uses the same one-time latch as the morning trigger, so a user already
        told about expiry is never told twice.
        """
        candidates = (
            self.db.query(User)
            .join(Subscription, Subscription.user_id == User.id)
            .filter(
                User.stream_started_at.isnot(None),
                User.current_day > TRIAL_LIMIT,
                Subscription.active.is_(True),
                or_(Subscription.paid_until.is_(None), Subscription.paid_until <= utc_now),
            )
            .order_by(User.id)
            .all()
        )
        outcomes: Counter = Counter()
        for user in candidates:
            user_id = user.id
            try:
                outcomes[self.engine.enforce_expiry(user, utc_now)] += 1
            except Exception as e:
                self.db.rollback()
                logger.error(f"Consistency check failed for user {user_id}: {e}", exc_info=True)
                outcomes["error"] += 1
        if candidates:
            logger.info(f"Consistency check latched {outcomes.get('expired', 0)} of {len(candidates)} users")
        return dict(outcomes)
