"""
Status Service - projects a subscription record into authorization flags
"""

import math
from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional

from config.settings import settings
from crud.subscription import SubscriptionRepository
from database_models import utc_now
from models.subscription import (
    DerivedStatus,
    LifecycleState,
    PlanType,
    SubscriptionRecord,
    SubscriptionStatus,
    SubscriptionStatusView,
)

ONE_DAY = timedelta(days=1)


def _naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    # Stored datetimes are naive UTC; aware inputs are normalized to match
    if value is not None and value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def select_relevant_record(history: Iterable):
    """
    Pick the record that describes the user's current standing: the ACTIVE one
    if it exists (there is at most one), otherwise the newest record.
    """
    records = list(history)
    for record in records:
        if record.status == SubscriptionStatus.ACTIVE.value:
            return record
    if not records:
        return None
    return max(records, key=lambda record: record.created_at or datetime.min)


def trial_days_remaining(trial_end: Optional[datetime], now: datetime) -> int:
    """Whole days left until trial_end, rounded up; 0 once it is reached."""
    if trial_end is None:
        return 0
    return max(0, math.ceil((trial_end - now) / ONE_DAY))


def project_status(record, now: Optional[datetime] = None) -> DerivedStatus:
    """
    Compute the derived flags for one record at wall-clock time ``now``.

    Pure: no storage, no network. With no record every flag is false and the
    caller is FREE tier.
    """
    if record is None:
        return DerivedStatus()

    now = _naive_utc(now) or utc_now()
    trial_start = _naive_utc(record.trial_start)
    trial_end = _naive_utc(record.trial_end)
    end_date = _naive_utc(record.end_date)
    status = record.status

    # A record without trial_start is never trialing
    is_trial = trial_start is not None and trial_end is not None and trial_end > now
    days_remaining = trial_days_remaining(trial_end, now) if trial_start is not None else 0

    is_active = status == SubscriptionStatus.ACTIVE.value
    is_expired = status == SubscriptionStatus.EXPIRED.value or (
        end_date is not None and end_date < now and not is_active
    )

    derived = DerivedStatus(
        is_plus=is_active and record.plan_type == PlanType.PLUS.value,
        is_trial=is_trial,
        is_active=is_active,
        is_cancelled=status == SubscriptionStatus.CANCELLED.value,
        is_expired=is_expired,
        is_past_due=status == SubscriptionStatus.PAST_DUE.value,
        trial_days_remaining=days_remaining,
        is_trial_expiring_soon=is_trial and days_remaining <= settings.trial_expiring_soon_days,
    )
    derived.state = _lifecycle_state(record, derived)
    return derived


def _lifecycle_state(record, derived: DerivedStatus) -> LifecycleState:
    if derived.is_expired:
        return LifecycleState.EXPIRED
    if derived.is_cancelled or (derived.is_active and record.cancel_at_period_end):
        return LifecycleState.CANCELLED
    if record.status in (SubscriptionStatus.PAST_DUE.value, SubscriptionStatus.UNPAID.value):
        return LifecycleState.PAST_DUE
    if derived.is_trial:
        return LifecycleState.TRIALING
    if derived.is_active:
        return LifecycleState.ACTIVE
    return LifecycleState.NONE


class StatusService:
    """
    Service for reading a user's subscription standing.
    Reads take no locks and may lag the provider by its event-delivery latency.
    """

    def __init__(self, subscription_repo: SubscriptionRepository):
        self.subscription_repo = subscription_repo

    async def get_derived_status(self, user_id: str, now: Optional[datetime] = None) -> DerivedStatus:
        return (await self.get_status(user_id, now)).status

    async def get_status(self, user_id: str, now: Optional[datetime] = None) -> SubscriptionStatusView:
        """
        Derived flags plus the raw record they were computed from.

        Raises:
            InternalError: the store failed
        """
        history = await self.subscription_repo.get_history(user_id)
        record = select_relevant_record(history)
        return SubscriptionStatusView(
            status=project_status(record, now),
            subscription=SubscriptionRecord.model_validate(record) if record is not None else None,
        )
