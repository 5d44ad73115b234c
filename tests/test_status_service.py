"""
Unit tests for derived subscription status
"""
from datetime import datetime, timedelta
from types import SimpleNamespace

import pytest

from crud.subscription import SubscriptionRepository
from database_models import Subscription
from models.subscription import LifecycleState
from services.status_service import (
    StatusService,
    project_status,
    select_relevant_record,
    trial_days_remaining,
)

NOW = datetime(2026, 3, 10, 12, 0, 0)


def _record(**overrides):
    fields = dict(
        plan_type="PLUS",
        status="ACTIVE",
        start_date=NOW - timedelta(days=1),
        end_date=None,
        trial_start=None,
        trial_end=None,
        cancel_at_period_end=False,
        created_at=NOW - timedelta(days=1),
    )
    fields.update(overrides)
    return SimpleNamespace(**fields)


def test_no_record_means_free_tier():
    status = project_status(None, NOW)

    assert status.is_plus is False
    assert status.is_trial is False
    assert status.is_active is False
    assert status.is_cancelled is False
    assert status.is_expired is False
    assert status.is_past_due is False
    assert status.trial_days_remaining == 0
    assert status.is_trial_expiring_soon is False
    assert status.state == LifecycleState.NONE


def test_active_plus_record():
    status = project_status(_record(), NOW)

    assert status.is_plus is True
    assert status.is_active is True
    assert status.is_trial is False
    assert status.state == LifecycleState.ACTIVE


def test_active_free_plan_is_not_plus():
    status = project_status(_record(plan_type="FREE"), NOW)

    assert status.is_active is True
    assert status.is_plus is False


def test_trialing_record():
    """A fresh 7-day trial reports 7 days left and is not expiring soon."""
    record = _record(trial_start=NOW, trial_end=NOW + timedelta(days=7))
    status = project_status(record, NOW)

    assert status.is_plus is True
    assert status.is_trial is True
    assert status.trial_days_remaining == 7
    assert status.is_trial_expiring_soon is False
    assert status.state == LifecycleState.TRIALING


def test_trial_days_round_up():
    assert trial_days_remaining(NOW + timedelta(hours=1), NOW) == 1
    assert trial_days_remaining(NOW + timedelta(days=2, seconds=1), NOW) == 3
    assert trial_days_remaining(NOW, NOW) == 0
    assert trial_days_remaining(NOW - timedelta(days=3), NOW) == 0
    assert trial_days_remaining(None, NOW) == 0


def test_trial_days_remaining_never_increases():
    record = _record(trial_start=NOW, trial_end=NOW + timedelta(days=7))

    previous = None
    for hours in range(0, 24 * 9, 5):
        remaining = project_status(record, NOW + timedelta(hours=hours)).trial_days_remaining
        assert remaining >= 0
        if previous is not None:
            assert remaining <= previous
        previous = remaining
    assert previous == 0


def test_trial_expiring_soon_window():
    record = _record(trial_start=NOW - timedelta(days=5), trial_end=NOW + timedelta(days=2))
    status = project_status(record, NOW)

    assert status.trial_days_remaining == 2
    assert status.is_trial_expiring_soon is True

    record = _record(trial_start=NOW - timedelta(days=4), trial_end=NOW + timedelta(days=3))
    assert project_status(record, NOW).is_trial_expiring_soon is False


def test_trial_end_without_trial_start_is_never_trial():
    record = _record(trial_start=None, trial_end=NOW + timedelta(days=3))
    status = project_status(record, NOW)

    assert status.is_trial is False
    assert status.trial_days_remaining == 0


def test_pending_checkout_expires_with_its_trial_window():
    """
    An unconfirmed checkout placeholder is not PLUS, and once its trial
    window has passed it reads as expired rather than trialing.
    """
    record = _record(
        status="INACTIVE",
        trial_start=NOW,
        trial_end=NOW + timedelta(days=7),
        end_date=NOW + timedelta(days=7),
    )

    during = project_status(record, NOW + timedelta(days=1))
    assert during.is_plus is False
    assert during.is_expired is False

    after = project_status(record, NOW + timedelta(days=8))
    assert after.is_trial is False
    assert after.is_expired is True
    assert after.trial_days_remaining == 0
    assert after.state == LifecycleState.EXPIRED


def test_cancelled_and_past_due_flags():
    cancelled = project_status(_record(status="CANCELLED"), NOW)
    assert cancelled.is_cancelled is True
    assert cancelled.is_plus is False
    assert cancelled.state == LifecycleState.CANCELLED

    past_due = project_status(_record(status="PAST_DUE"), NOW)
    assert past_due.is_past_due is True
    assert past_due.is_plus is False
    assert past_due.state == LifecycleState.PAST_DUE

    unpaid = project_status(_record(status="UNPAID"), NOW)
    assert unpaid.is_past_due is False
    assert unpaid.state == LifecycleState.PAST_DUE


def test_scheduled_cancellation_keeps_access_until_period_end():
    status = project_status(_record(cancel_at_period_end=True, end_date=NOW + timedelta(days=10)), NOW)

    assert status.is_plus is True
    assert status.is_cancelled is False
    assert status.state == LifecycleState.CANCELLED


def test_active_record_past_end_date_is_not_expired():
    """Only the provider ends an ACTIVE subscription; a late renewal event must not lock the user out."""
    status = project_status(_record(end_date=NOW - timedelta(hours=1)), NOW)

    assert status.is_active is True
    assert status.is_expired is False


def test_expired_status():
    status = project_status(_record(status="EXPIRED"), NOW)

    assert status.is_expired is True
    assert status.is_plus is False


def test_select_relevant_record_prefers_active():
    old_active = _record(status="ACTIVE", created_at=NOW - timedelta(days=30))
    newer_cancelled = _record(status="CANCELLED", created_at=NOW)

    assert select_relevant_record([newer_cancelled, old_active]) is old_active
    assert select_relevant_record([newer_cancelled]) is newer_cancelled
    assert select_relevant_record([]) is None


def test_select_relevant_record_falls_back_to_newest():
    older = _record(status="CANCELLED", created_at=NOW - timedelta(days=30))
    newer = _record(status="EXPIRED", created_at=NOW - timedelta(days=1))

    assert select_relevant_record([older, newer]) is newer


@pytest.mark.asyncio
async def test_status_service_returns_flags_and_record(test_db):
    """
    Test StatusService end to end: no record yields all-false flags,
    a stored trialing record yields the trial flags plus the raw record.
    """
    repo = SubscriptionRepository(test_db)
    service = StatusService(repo)

    empty = await service.get_status("user-1", NOW)
    assert empty.subscription is None
    assert empty.status.is_plus is False

    stored = await repo.upsert_record(Subscription(
        user_id="user-1",
        plan_type="PLUS",
        status="ACTIVE",
        start_date=NOW,
        trial_start=NOW,
        trial_end=NOW + timedelta(days=7),
        external_subscription_id="sub_1",
    ))

    view = await service.get_status("user-1", NOW + timedelta(days=6))
    assert view.subscription is not None
    assert view.subscription.id == stored.id
    assert view.status.is_plus is True
    assert view.status.is_trial is True
    assert view.status.trial_days_remaining == 1
    assert view.status.is_trial_expiring_soon is True

    derived = await service.get_derived_status("user-1", NOW + timedelta(days=8))
    assert derived.is_trial is False
    assert derived.is_plus is True
