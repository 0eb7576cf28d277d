"""
Progression engine: per-user content-day pointer and access tier.

`User.current_day` is the next day to deliver. A regular morning trigger
delivers it and advances the pointer with a compare-and-set, so two ticks racing
on the same user advance it at most once. Reminders redeliver the last day and
never touch the pointer or the trial counter.

Regular deliveries are guarded by a DeliveryClaim row per (user, slot, local
date): the claim is committed before the send, removed again if the send
fails, and the pointer only moves after a successful send.
"""

from __future__ import annotations

import logging
from datetime import date, datetime
from typing import Optional

from sqlalchemy import delete, update
from sqlalchemy.orm import Session

from core.database import insert_for
from core.exceptions import DeliveryError
from models import SLOT_EVENING, SLOT_MORNING, DeliveryClaim, User
from services import message_templates as templates
from services.content_source import get_content, next_day
from services.messaging import Messenger
from services.settings_service import SettingsService
from services.subscription_ledger import (
    AccessDecision,
    evaluate_access,
    get_subscription,
    latch_expiry,
    record_trial_progress,
)
from services.timezone_resolver import local_date

logger = logging.getLogger(__name__)

# Outcomes reported back to the scheduler.
DELIVERED = "delivered"
EXPIRED = "expired"
DENIED = "denied"
ALREADY_CLAIMED = "already_claimed"
RACED = "raced"
NO_CONTENT = "no_content"
OFFERED = "offered"
SKIPPED = "skipped"


class ProgressionEngine:
    def __init__(self, db: Session, messenger: Messenger, settings_service: Optional[SettingsService] = None):
        self.db = db
        self.messenger = messenger
        self.settings = settings_service or SettingsService(db)

    # --- access -----------------------------------------------------------

    def _access(self, user: User, target: int, now: datetime) -> AccessDecision:
        return evaluate_access(get_subscription(self.db, user.id, refresh=True), target, now)

    def _expire(self, user: User) -> str:
        """Latch access off; only the caller that flips the flag sends the message."""
        if not latch_expiry(self.db, user.id):
            self.db.commit()
            return DENIED
        self.db.commit()
        text = self.settings.get_message(templates.ACCESS_EXPIRED_KEY, templates.DEFAULT_ACCESS_EXPIRED)
        self.messenger.send_message(user.telegram_id, text, reply_markup=templates.access_expired_keyboard())
        return EXPIRED

    # --- claims and pointer -----------------------------------------------

    def _claim(self, user_id: int, slot: str, on_date: date, content_day: Optional[int] = None) -> bool:
        stmt = insert_for(self.db, DeliveryClaim).values(
            user_id=user_id, slot=slot, local_date=on_date, content_day=content_day,
        )
        stmt = stmt.on_conflict_do_nothing(
            index_elements=[DeliveryClaim.user_id, DeliveryClaim.slot, DeliveryClaim.local_date]
        )
        return self.db.execute(stmt).rowcount == 1

    def _release_claim(self, user_id: int, slot: str, on_date: date) -> None:
        self.db.execute(
            delete(DeliveryClaim).where(
                DeliveryClaim.user_id == user_id,
                DeliveryClaim.slot == slot,
                DeliveryClaim.local_date == on_date,
            )
        )
        self.db.commit()

    def _advance(self, user: User, expected: int, new_value: int) -> bool:
        result = self.db.execute(
            update(User)
            .where(User.id == user.id, User.current_day == expected)
            .values(current_day=new_value)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def _send_content(self, user: User, day: int) -> Optional[int]:
        """Send content for `day`, wrapping to day 1 when absent. Returns the day sent."""
        item = get_content(self.db, day)
        if item is None:
            day = 1
            item = get_content(self.db, day)
        if item is None:
            logger.warning(f"No content loaded; nothing to send to user {user.id}")
            return None
        self.messenger.send_message(
            user.telegram_id,
            templates.content_message(item, day, user.display_name),
            reply_markup=templates.morning_keyboard(),
        )
        return day

    # --- triggers -----------------------------------------------------------

    def deliver_morning(self, user: User, now: datetime) -> str:
        """Regular morning trigger: deliver `current_day` and advance the pointer."""
        target = user.current_day
        if not self._access(user, target, now).granted:
            return self._expire(user)

        today = local_date(now, user.timezone)
        if not self._claim(user.id, SLOT_MORNING, today, content_day=target):
            self.db.rollback()
            return ALREADY_CLAIMED
        self.db.commit()

        try:
            sent_day = self._send_content(user, target)
        except DeliveryError:
            self._release_claim(user.id, SLOT_MORNING, today)
            raise
        if sent_day is None:
            self._release_claim(user.id, SLOT_MORNING, today)
            return NO_CONTENT

        if not self._advance(user, target, next_day(self.db, sent_day)):
            self.db.rollback()
            logger.warning(f"Pointer for user {user.id} moved concurrently (expected {target})")
            return RACED
        record_trial_progress(self.db, user.id, target)
        self.db.commit()
        self.db.expire(user)
        return DELIVERED

    def deliver_morning_reminder(self, user: User, now: datetime) -> str:
        """Redeliver the last delivered day. Never mutates the pointer or trial counter."""
        target = max(user.current_day - 1, 1)
        try:
            if self._access(user, target, now).granted:
                sent = self._send_content(user, target)
                return DELIVERED if sent is not None else NO_CONTENT
            self._send_offer(user)
            return OFFERED
        finally:
            self._clear_pending(user, "pending_morning_at")

    def deliver_evening(self, user: User, now: datetime) -> str:
        if not self._access(user, user.current_day, now).granted:
            return SKIPPED
        today = local_date(now, user.timezone)
        if not self._claim(user.id, SLOT_EVENING, today):
            self.db.rollback()
            return ALREADY_CLAIMED
        self.db.commit()
        try:
            self._send_evening(user)
        except DeliveryError:
            self._release_claim(user.id, SLOT_EVENING, today)
            raise
        return DELIVERED

    def deliver_evening_reminder(self, user: User, now: datetime) -> str:
        try:
            if not self._access(user, user.current_day, now).granted:
                return SKIPPED
            self._send_evening(user)
            return DELIVERED
        finally:
            self._clear_pending(user, "pending_evening_at")

    def send_subscription_nudge(self, user: User, now: datetime) -> str:
        """Subscription offer for a deferred "remind me later"; users with an active subscription or trial are skipped."""
        try:
            sub = get_subscription(self.db, user.id, refresh=True)
            if sub is not None and sub.active:
                return SKIPPED
            self._send_offer(user)
            return OFFERED
        finally:
            self._clear_pending(user, "pending_reminder_at")

    def enforce_expiry(self, user: User, now: datetime) -> str:
        """Consistency check hook: latch users whose paid and trial access are both gone."""
        if self._access(user, user.current_day, now).granted:
            return SKIPPED
        return self._expire(user)

    def _send_evening(self, user: User) -> None:
        template = self.settings.get_message(templates.EVENING_REFLECTION_KEY, templates.DEFAULT_EVENING_REFLECTION)
        self.messenger.send_message(
            user.telegram_id,
            templates.evening_message(template, user.display_name),
            reply_markup=templates.evening_keyboard(),
        )

    def _send_offer(self, user: User) -> None:
        text = self.settings.get_message(templates.SUBSCRIPTION_REMINDER_KEY, templates.DEFAULT_SUBSCRIPTION_REMINDER)
        self.messenger.send_message(user.telegram_id, text, reply_markup=templates.subscription_keyboard())

    def _clear_pending(self, user: User, field: str) -> None:
        self.db.rollback()
        self.db.execute(
            update(User)
            .where(User.id == user.id)
            .values(**{field: None})
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        self.db.expire(user)

    # --- stream start -------------------------------------------------------

    def start_stream(self, user: User, now: datetime) -> bool:
        """
        Begin the paced stream exactly once.

        The pointer jumps to its post-day-1 value and the morning slot for the
        current local date is claimed, so a slot later the same day does not
        resend. Returns False when the stream was already running. Caller
        commits, then delivers day 1 with deliver_first_content().
        """
        result = self.db.execute(
            update(User)
            .where(User.id == user.id, User.stream_started_at.is_(None))
            .values(stream_started_at=now, current_day=next_day(self.db, 1))
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return False
        self._claim(user.id, SLOT_MORNING, local_date(now, user.timezone), content_day=1)
        record_trial_progress(self.db, user.id, 1)
        logger.info(f"Stream started for user {user.id}")
        return True

    def deliver_first_content(self, user: User) -> str:
        sent = self._send_content(user, 1)
        return DELIVERED if sent is not None else NO_CONTENT
