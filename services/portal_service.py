"""
Portal Service - billing management for users who already have a provider customer
"""

import calendar
import logging
from datetime import datetime
from typing import Optional

from backend.utils.errors import ConflictError, InvalidArgumentError, NotFoundError
from crud.subscription import SubscriptionRepository
from database_models import Subscription, utc_now
from models.subscription import PauseDuration, SubscriptionStatus
from services.subscription_event_service import SubscriptionEventService

logger = logging.getLogger(__name__)

# Records whose provider subscription can still be cancelled or reactivated
_MANAGEABLE_STATES = (
    SubscriptionStatus.ACTIVE.value,
    SubscriptionStatus.PAST_DUE.value,
    SubscriptionStatus.UNPAID.value,
)

PAUSE_DURATION_MONTHS = {
    PauseDuration.ONE_MONTH: 1,
    PauseDuration.TWO_MONTHS: 2,
    PauseDuration.THREE_MONTHS: 3,
}


def add_months(value: datetime, months: int) -> datetime:
    """Same day and time ``months`` later, clamped to the last day of a shorter month."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


class PortalService:
    """
    Service class for provider-hosted billing management and the provider
    actions a user can trigger on their current subscription.
    """

    def __init__(self, subscription_repo: SubscriptionRepository, billing_client):
        self.subscription_repo = subscription_repo
        self.billing_client = billing_client

    async def create_portal_session(self, user_id: str, return_url: str) -> str:
        """
        Create a provider billing-portal session.

        Returns:
            The provider's portal URL, unmodified

        Raises:
            InvalidArgumentError: return_url missing
            NotFoundError: no record of the user carries a provider customer id
            UpstreamError: the billing provider failed
        """
        if not return_url:
            raise InvalidArgumentError("return_url is required")

        customer_id = await self.subscription_repo.find_customer_id(user_id)
        if not customer_id:
            raise NotFoundError("No billing account for this user")

        url = await self.billing_client.create_portal_session(customer_id, return_url)
        logger.info(f"Created billing portal session for user {user_id}")
        return url

    async def _current_subscription(self, user_id: str) -> Subscription:
        history = await self.subscription_repo.get_history(user_id)
        for record in history:
            if record.status in _MANAGEABLE_STATES and record.external_subscription_id:
                return record
        raise NotFoundError("No subscription to manage for this user")

    async def cancel_subscription(self, user_id: str, immediately: bool = False) -> Optional[Subscription]:
        """
        Cancel the user's current subscription at the provider, at period end by
        default, and store the provider's resulting state.
        """
        record = await self._current_subscription(user_id)
        subscription = await self.billing_client.cancel_subscription(
            record.external_subscription_id, immediately=immediately
        )
        logger.info(
            f"Cancelled subscription {record.external_subscription_id} for user {user_id} "
            f"({'immediately' if immediately else 'at period end'})"
        )
        return await SubscriptionEventService(self.subscription_repo, self.billing_client).apply_subscription(
            subscription, user_id=user_id
        )

    async def reactivate_subscription(self, user_id: str) -> Optional[Subscription]:
        """Undo a pending cancel-at-period-end."""
        record = await self._current_subscription(user_id)
        subscription = await self.billing_client.reactivate_subscription(record.external_subscription_id)
        logger.info(f"Reactivated subscription {record.external_subscription_id} for user {user_id}")
        return await SubscriptionEventService(self.subscription_repo, self.billing_client).apply_subscription(
            subscription, user_id=user_id
        )

    async def pause_subscription(self, user_id: str, duration) -> Optional[Subscription]:
        """
        Pause collection on the user's ACTIVE subscription for a whole number of months.

        The provider voids invoices while paused and resumes on its own at the
        end of the window. The stored record drops to INACTIVE for the duration.

        Raises:
            InvalidArgumentError: unknown duration, or the subscription is not ACTIVE
            ConflictError: the subscription is already paused
            NotFoundError: the user has no subscription to manage
            UpstreamError: the billing provider failed
        """
        try:
            months = PAUSE_DURATION_MONTHS[PauseDuration(duration)]
        except ValueError as e:
            raise InvalidArgumentError(f"Unsupported pause duration: {duration}") from e

        if await self.subscription_repo.get_paused_record(user_id) is not None:
            raise ConflictError("Subscription is already paused")
        record = await self._current_subscription(user_id)
        if record.status != SubscriptionStatus.ACTIVE.value:
            raise InvalidArgumentError("Only an active subscription can be paused")

        resumes_at = add_months(utc_now(), months)
        subscription = await self.billing_client.pause_subscription(record.external_subscription_id, resumes_at)
        logger.info(
            f"Paused subscription {record.external_subscription_id} for user {user_id} until {resumes_at}"
        )
        return await SubscriptionEventService(self.subscription_repo, self.billing_client).apply_subscription(
            subscription, user_id=user_id
        )

    async def resume_subscription(self, user_id: str) -> Optional[Subscription]:
        """Lift a collection pause before its scheduled end."""
        record = await self.subscription_repo.get_paused_record(user_id)
        if record is None:
            raise InvalidArgumentError("Subscription is not paused")

        subscription = await self.billing_client.resume_subscription(record.external_subscription_id)
        logger.info(f"Resumed subscription {record.external_subscription_id} for user {user_id}")
        return await SubscriptionEventService(self.subscription_repo, self.billing_client).apply_subscription(
            subscription, user_id=user_id
        )
