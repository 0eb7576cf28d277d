"""
Subscription ledger: access tiers, paid extension, expiry latch and the trial counter.
"""
from datetime import timedelta

import pytest

from services.subscription_ledger import (
    TRIAL_LIMIT,
    access_status,
    ensure_subscription_row,
    evaluate_access,
    extend_paid_access,
    get_subscription,
    latch_expiry,
    record_trial_progress,
    start_trial,
)
from tests.helpers import utc

NOW = utc(2026, 3, 2, 9, 0)


class TestEvaluateAccess:
    def test_no_row_grants_nothing(self):
        assert not evaluate_access(None, 1, NOW).granted

    def test_trial_covers_days_one_to_seven(self, db_session, make_user):
        user = make_user()
        sub = start_trial(db_session, user.id, NOW)
        assert evaluate_access(sub, TRIAL_LIMIT, NOW).trial_active
        assert not evaluate_access(sub, TRIAL_LIMIT + 1, NOW).granted

    def test_paid_access_covers_any_day(self, db_session, make_user):
        user = make_user()
        sub = extend_paid_access(db_session, user.id, 30, NOW)
        decision = evaluate_access(sub, 42, NOW)
        assert decision.paid_active
        assert not decision.trial_active

    def test_expired_paid_falls_back_to_trial_window(self, db_session, make_user):
        user = make_user()
        sub = extend_paid_access(db_session, user.id, 7, NOW - timedelta(days=10))
        assert evaluate_access(sub, 3, NOW).trial_active
        assert not evaluate_access(sub, 8, NOW).granted

    def test_latched_row_grants_nothing(self, db_session, make_user):
        user = make_user()
        start_trial(db_session, user.id, NOW)
        latch_expiry(db_session, user.id)
        sub = get_subscription(db_session, user.id, refresh=True)
        assert not evaluate_access(sub, 1, NOW).granted


class TestExtendPaidAccess:
    def test_extends_from_now_when_not_paid(self, db_session, make_user):
        user = make_user()
        sub = extend_paid_access(db_session, user.id, 30, NOW)
        assert sub.paid_until == NOW + timedelta(days=30)
        assert sub.active

    def test_extensions_stack_from_current_paid_until(self, db_session, make_user):
        user = make_user()
        extend_paid_access(db_session, user.id, 30, NOW)
        sub = extend_paid_access(db_session, user.id, 7, NOW + timedelta(days=1))
        assert sub.paid_until == NOW + timedelta(days=37)

    def test_lapsed_paid_until_restarts_from_now(self, db_session, make_user):
        user = make_user()
        extend_paid_access(db_session, user.id, 7, NOW - timedelta(days=30))
        sub = extend_paid_access(db_session, user.id, 7, NOW)
        assert sub.paid_until == NOW + timedelta(days=7)

    def test_reactivates_latched_row(self, db_session, make_user):
        user = make_user()
        start_trial(db_session, user.id, NOW)
        latch_expiry(db_session, user.id)
        sub = extend_paid_access(db_session, user.id, 7, NOW)
        assert sub.active

    def test_rejects_non_positive_days(self, db_session, make_user):
        user = make_user()
        with pytest.raises(ValueError):
            extend_paid_access(db_session, user.id, 0, NOW)


class TestLatchAndTrialCounter:
    def test_latch_flips_exactly_once(self, db_session, make_user):
        user = make_user()
        start_trial(db_session, user.id, NOW)
        assert latch_expiry(db_session, user.id) is True
        assert latch_expiry(db_session, user.id) is False
        sub = get_subscription(db_session, user.id, refresh=True)
        assert not sub.active
        assert sub.trial_days_used == TRIAL_LIMIT

    def test_latch_on_missing_row_is_noop(self, db_session, make_user):
        user = make_user()
        assert latch_expiry(db_session, user.id) is False

    def test_trial_counter_never_decreases(self, db_session, make_user):
        user = make_user()
        start_trial(db_session, user.id, NOW)
        record_trial_progress(db_session, user.id, 4)
        record_trial_progress(db_session, user.id, 2)
        assert get_subscription(db_session, user.id, refresh=True).trial_days_used == 4

    def test_trial_counter_ignores_paid_days(self, db_session, make_user):
        user = make_user()
        start_trial(db_session, user.id, NOW)
        record_trial_progress(db_session, user.id, TRIAL_LIMIT + 3)
        assert get_subscription(db_session, user.id, refresh=True).trial_days_used == 0

    def test_start_trial_keeps_payment_made_during_onboarding(self, db_session, make_user):
        user = make_user()
        extend_paid_access(db_session, user.id, 30, NOW)
        sub = start_trial(db_session, user.id, NOW)
        assert sub.paid_until == NOW + timedelta(days=30)
        assert sub.active

    def test_ensure_row_is_idempotent(self, db_session, make_user):
        user = make_user()
        first = ensure_subscription_row(db_session, user.id)
        second = ensure_subscription_row(db_session, user.id)
        assert first.id == second.id
        assert not second.active


def test_access_status_reports_trial_state(db_session, make_user):
    user = make_user()
    start_trial(db_session, user.id, NOW)
    db_session.commit()
    status = access_status(db_session, user, NOW)
    assert status["has_access"] is True
    assert status["trial_active"] is True
    assert status["trial_limit"] == TRIAL_LIMIT
    assert status["current_day"] == 1
