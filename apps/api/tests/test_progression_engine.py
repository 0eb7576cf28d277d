"""
Progression Engine Tests

Organization:
    1. Regular morning delivery: pointer advance, trial counter, one per local day
    2. Trial boundary and the one-time expiry latch
    3. Reminders: redeliver without touching state
    4. Wraparound and delivery failures
    5. Evening slot, subscription nudge, stream start
"""
from datetime import timedelta

import pytest

from core.exceptions import DeliveryError
from models import DeliveryClaim
from services import message_templates as templates
from services import progression_engine as pe
from services.progression_engine import ProgressionEngine
from services.subscription_ledger import (
    extend_paid_access,
    get_subscription,
    latch_expiry,
    record_trial_progress,
    start_trial,
)
from tests.helpers import utc

NOW = utc(2026, 3, 2, 9, 0)


@pytest.fixture
def started_user(db_session, make_user, seed_content):
    """User on day `current_day` of the stream, with a running trial (or paid access)."""
    seed_content(10)

    def _make(current_day=2, paid_days=None, **overrides):
        user = make_user(
            onboarding_completed=True,
            stream_started_at=NOW - timedelta(days=current_day),
            current_day=current_day,
            **overrides,
        )
        start_trial(db_session, user.id, NOW - timedelta(days=current_day))
        record_trial_progress(db_session, user.id, current_day - 1)
        if paid_days:
            extend_paid_access(db_session, user.id, paid_days, NOW)
        db_session.commit()
        return user

    return _make


def _engine(db_session, messenger):
    return ProgressionEngine(db_session, messenger)


# ===================================================================
# 1. REGULAR MORNING DELIVERY
# ===================================================================

class TestMorningDelivery:
    def test_delivers_current_day_and_advances(self, db_session, messenger, started_user):
        user = started_user(current_day=3)
        outcome = _engine(db_session, messenger).deliver_morning(user, NOW)

        assert outcome == pe.DELIVERED
        assert user.current_day == 4
        assert "Day 3. Principle: Principle 3" in messenger.texts_for(user.telegram_id)[0]
        assert get_subscription(db_session, user.id, refresh=True).trial_days_used == 3

    def test_second_trigger_same_local_day_is_skipped(self, db_session, messenger, started_user):
        user = started_user(current_day=3)
        engine = _engine(db_session, messenger)
        engine.deliver_morning(user, NOW)
        outcome = engine.deliver_morning(user, NOW + timedelta(minutes=1))

        assert outcome == pe.ALREADY_CLAIMED
        assert user.current_day == 4
        assert len(messenger.sent) == 1

    def test_next_local_day_delivers_next_content(self, db_session, messenger, started_user):
        user = started_user(current_day=3)
        engine = _engine(db_session, messenger)
        engine.deliver_morning(user, NOW)
        assert engine.deliver_morning(user, NOW + timedelta(days=1)) == pe.DELIVERED
        assert user.current_day == 5


# ===================================================================
# 2. TRIAL BOUNDARY AND EXPIRY LATCH
# ===================================================================

class TestTrialBoundary:
    def test_day_seven_is_last_trial_day(self, db_session, messenger, started_user):
        user = started_user(current_day=7)
        assert _engine(db_session, messenger).deliver_morning(user, NOW) == pe.DELIVERED
        assert user.current_day == 8
        assert get_subscription(db_session, user.id, refresh=True).trial_days_used == 7

    def test_day_eight_without_payment_latches_once(self, db_session, messenger, started_user):
        user = started_user(current_day=8)
        engine = _engine(db_session, messenger)

        assert engine.deliver_morning(user, NOW) == pe.EXPIRED
        assert engine.deliver_morning(user, NOW + timedelta(days=1)) == pe.DENIED

        texts = messenger.texts_for(user.telegram_id)
        assert texts == [templates.DEFAULT_ACCESS_EXPIRED]
        sub = get_subscription(db_session, user.id, refresh=True)
        assert not sub.active
        db_session.refresh(user)
        assert user.current_day == 8

    def test_paid_user_continues_past_trial(self, db_session, messenger, started_user):
        user = started_user(current_day=8, paid_days=30)
        assert _engine(db_session, messenger).deliver_morning(user, NOW) == pe.DELIVERED
        assert user.current_day == 9
        assert get_subscription(db_session, user.id, refresh=True).trial_days_used == 7

    def test_payment_after_latch_restores_delivery(self, db_session, messenger, started_user):
        user = started_user(current_day=8)
        engine = _engine(db_session, messenger)
        engine.deliver_morning(user, NOW)

        extend_paid_access(db_session, user.id, 7, NOW)
        db_session.commit()
        assert engine.deliver_morning(user, NOW + timedelta(days=1)) == pe.DELIVERED
        assert user.current_day == 9


# ===================================================================
# 3. REMINDERS
# ===================================================================

class TestReminders:
    def test_morning_reminder_redelivers_last_day_without_state_change(self, db_session, messenger, started_user):
        user = started_user(current_day=4, pending_morning_at=NOW - timedelta(minutes=1))
        trial_before = get_subscription(db_session, user.id, refresh=True).trial_days_used

        outcome = _engine(db_session, messenger).deliver_morning_reminder(user, NOW)

        assert outcome == pe.DELIVERED
        assert "Day 3." in messenger.texts_for(user.telegram_id)[0]
        assert user.current_day == 4
        assert user.pending_morning_at is None
        assert get_subscription(db_session, user.id, refresh=True).trial_days_used == trial_before
        assert db_session.query(DeliveryClaim).count() == 0

    def test_reminder_without_access_offers_subscription(self, db_session, messenger, started_user):
        user = started_user(current_day=9, pending_morning_at=NOW)
        outcome = _engine(db_session, messenger).deliver_morning_reminder(user, NOW)
        assert outcome == pe.OFFERED
        assert messenger.texts_for(user.telegram_id) == [templates.DEFAULT_SUBSCRIPTION_REMINDER]
        assert user.pending_morning_at is None

    def test_failed_reminder_still_clears_pending(self, db_session, messenger, started_user):
        user = started_user(current_day=4, pending_morning_at=NOW)
        messenger.failing.add(user.telegram_id)
        with pytest.raises(DeliveryError):
            _engine(db_session, messenger).deliver_morning_reminder(user, NOW)
        assert user.pending_morning_at is None
        assert user.current_day == 4

    def test_evening_reminder_resends_without_state_change(self, db_session, messenger, started_user):
        user = started_user(current_day=4, name="Maria", pending_evening_at=NOW - timedelta(minutes=1))
        trial_before = get_subscription(db_session, user.id, refresh=True).trial_days_used

        outcome = _engine(db_session, messenger).deliver_evening_reminder(user, NOW)

        assert outcome == pe.DELIVERED
        assert messenger.texts_for(user.telegram_id) == ["How did your day go, Maria?"]
        assert user.pending_evening_at is None
        assert user.current_day == 4
        assert get_subscription(db_session, user.id, refresh=True).trial_days_used == trial_before
        assert db_session.query(DeliveryClaim).count() == 0

    def test_evening_reminder_without_access_is_skipped_and_cleared(self, db_session, messenger, started_user):
        user = started_user(current_day=8, pending_evening_at=NOW)

        outcome = _engine(db_session, messenger).deliver_evening_reminder(user, NOW)

        assert outcome == pe.SKIPPED
        assert messenger.sent == []
        assert user.pending_evening_at is None
        assert user.current_day == 8


# ===================================================================
# 4. WRAPAROUND AND FAILURES
# ===================================================================

class TestWraparoundAndFailures:
    def test_last_day_wraps_pointer_to_one(self, db_session, messenger, started_user):
        user = started_user(current_day=10, paid_days=30)
        assert _engine(db_session, messenger).deliver_morning(user, NOW) == pe.DELIVERED
        assert "Day 10." in messenger.texts_for(user.telegram_id)[0]
        assert user.current_day == 1

    def test_pointer_past_end_sends_day_one(self, db_session, messenger, started_user):
        user = started_user(current_day=11, paid_days=30)
        assert _engine(db_session, messenger).deliver_morning(user, NOW) == pe.DELIVERED
        assert "Day 1." in messenger.texts_for(user.telegram_id)[0]
        assert user.current_day == 2

    def test_send_failure_releases_claim_and_keeps_pointer(self, db_session, messenger, started_user):
        user = started_user(current_day=3)
        engine = _engine(db_session, messenger)
        messenger.failing.add(user.telegram_id)

        with pytest.raises(DeliveryError):
            engine.deliver_morning(user, NOW)
        db_session.refresh(user)
        assert user.current_day == 3
        assert db_session.query(DeliveryClaim).count() == 0

        messenger.failing.clear()
        assert engine.deliver_morning(user, NOW + timedelta(minutes=1)) == pe.DELIVERED
        assert user.current_day == 4

    def test_no_content_loaded(self, db_session, messenger, make_user):
        user = make_user(onboarding_completed=True, stream_started_at=NOW, current_day=1)
        start_trial(db_session, user.id, NOW)
        db_session.commit()
        assert _engine(db_session, messenger).deliver_morning(user, NOW) == pe.NO_CONTENT
        assert db_session.query(DeliveryClaim).count() == 0
        assert user.current_day == 1


# ===================================================================
# 5. EVENING, NUDGE, STREAM START
# ===================================================================

class TestEveningAndNudge:
    def test_evening_once_per_local_day(self, db_session, messenger, started_user):
        user = started_user(current_day=3, name="Maria")
        engine = _engine(db_session, messenger)
        assert engine.deliver_evening(user, NOW) == pe.DELIVERED
        assert engine.deliver_evening(user, NOW) == pe.ALREADY_CLAIMED
        assert messenger.texts_for(user.telegram_id) == ["How did your day go, Maria?"]

    def test_evening_skipped_without_access(self, db_session, messenger, started_user):
        user = started_user(current_day=9)
        assert _engine(db_session, messenger).deliver_evening(user, NOW) == pe.SKIPPED
        assert messenger.sent == []

    def test_nudge_skips_paid_users(self, db_session, messenger, started_user):
        user = started_user(current_day=9, paid_days=30, pending_reminder_at=NOW)
        assert _engine(db_session, messenger).send_subscription_nudge(user, NOW) == pe.SKIPPED
        assert messenger.sent == []
        assert user.pending_reminder_at is None

    def test_nudge_skips_users_in_trial(self, db_session, messenger, started_user):
        user = started_user(current_day=3, pending_reminder_at=NOW)
        assert get_subscription(db_session, user.id).active

        assert _engine(db_session, messenger).send_subscription_nudge(user, NOW) == pe.SKIPPED
        assert messenger.sent == []
        assert user.pending_reminder_at is None

    def test_nudge_offers_after_access_is_latched(self, db_session, messenger, started_user):
        user = started_user(current_day=9, pending_reminder_at=NOW)
        latch_expiry(db_session, user.id)
        db_session.commit()

        assert _engine(db_session, messenger).send_subscription_nudge(user, NOW) == pe.OFFERED
        assert messenger.sent[0]["reply_markup"] == templates.subscription_keyboard()
        assert user.pending_reminder_at is None


class TestStartStream:
    def test_starts_once_and_claims_todays_morning(self, db_session, messenger, make_user, seed_content):
        seed_content(10)
        user = make_user(onboarding_completed=True)
        start_trial(db_session, user.id, NOW)
        engine = _engine(db_session, messenger)

        assert engine.start_stream(user, NOW) is True
        db_session.commit()
        assert engine.start_stream(user, NOW) is False

        db_session.refresh(user)
        assert user.current_day == 2
        assert user.stream_started_at == NOW
        claim = db_session.query(DeliveryClaim).one()
        assert claim.content_day == 1
        assert get_subscription(db_session, user.id, refresh=True).trial_days_used == 1

    def test_first_content_is_day_one(self, db_session, messenger, make_user, seed_content):
        seed_content(3)
        user = make_user()
        assert _engine(db_session, messenger).deliver_first_content(user) == pe.DELIVERED
        assert "Day 1." in messenger.texts_for(user.telegram_id)[0]
