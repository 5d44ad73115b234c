"""
Checkout Service - validates and starts a PLUS checkout with the billing provider
"""

import logging
from datetime import timedelta

from backend.utils.errors import ConflictError, InvalidArgumentError, NotFoundError
from config.settings import settings
from crud.subscription import SubscriptionRepository, user_lock
from crud.user import UserRepository
from database_models import Subscription, utc_now
from models.subscription import CheckoutSession, PlanType, SubscriptionStatus
from services.trial_service import evaluate_trial_eligibility

logger = logging.getLogger(__name__)


class CheckoutService:
    """
    Service class for starting provider-hosted checkout sessions.

    Never activates a subscription: activation arrives later as a provider
    event. When a trial is requested, a pending INACTIVE record holding the
    trial window is written so the grant is recorded immediately.
    """

    def __init__(self, subscription_repo: SubscriptionRepository, user_repo: UserRepository, billing_client):
        """
        Initialize the checkout service.

        Args:
            subscription_repo: SubscriptionRepository for the user's records
            user_repo: UserRepository to resolve email/name for the provider customer
            billing_client: Billing provider client (StripeBillingClient in production)
        """
        self.subscription_repo = subscription_repo
        self.user_repo = user_repo
        self.billing_client = billing_client

    def _validate(self, price_id: str, success_url: str, cancel_url: str) -> None:
        if not price_id or not success_url or not cancel_url:
            raise InvalidArgumentError("price_id, success_url and cancel_url are required")
        if price_id not in settings.plus_price_ids:
            raise InvalidArgumentError(f"Invalid price ID: {price_id}")

    async def create_checkout_session(
        self,
        user_id: str,
        price_id: str,
        success_url: str,
        cancel_url: str,
    ) -> CheckoutSession:
        """
        Create a provider checkout session for a PLUS price.

        Preconditions are checked before any provider call or store write.

        Raises:
            InvalidArgumentError: missing URL or price not whitelisted
            NotFoundError: no internal user record
            ConflictError: the user already has an ACTIVE subscription
            UpstreamError: the billing provider failed
            InternalError: the store failed
        """
        self._validate(price_id, success_url, cancel_url)

        user = await self.user_repo.get_user_by_id(user_id)
        if user is None:
            raise NotFoundError("User not found")

        async with user_lock(user_id):
            if await self.subscription_repo.get_active_record(user_id) is not None:
                logger.info(f"Checkout refused for user {user_id}: already subscribed")
                raise ConflictError("User already has an active subscription")
            if await self.subscription_repo.get_paused_record(user_id) is not None:
                logger.info(f"Checkout refused for user {user_id}: subscription is paused")
                raise ConflictError("User has a paused subscription; resume it instead")

            history = await self.subscription_repo.get_history(user_id)
            eligibility = evaluate_trial_eligibility(history)
            trial_days = eligibility.trial_days if eligibility.is_eligible else 0
            now = utc_now()

            customer_id = await self.subscription_repo.find_customer_id(user_id)
            if not customer_id:
                customer_id = await self.billing_client.create_or_get_customer(user.email, user.name, user_id)

            session = await self.billing_client.create_checkout_session(
                customer_id=customer_id,
                price_id=price_id,
                success_url=success_url,
                cancel_url=cancel_url,
                trial_period_days=trial_days or None,
                user_id=user_id,
            )
            logger.info(
                f"Created checkout session {session['id']} for user {user_id} "
                f"(price {price_id}, trial days {trial_days})"
            )

            if trial_days > 0:
                await self._record_pending(user_id, customer_id, price_id, session["id"], now, trial_days)

        return CheckoutSession(session_id=session["id"], url=session["url"], trial_period_days=trial_days)

    async def _record_pending(
        self,
        user_id: str,
        customer_id: str,
        price_id: str,
        checkout_session_id: str,
        now,
        trial_days: int,
    ) -> Subscription:
        # The trial is granted here, once; the provider event later adopts this record
        trial_end = now + timedelta(days=trial_days)
        record = Subscription(
            user_id=user_id,
            plan_type=PlanType.PLUS.value,
            status=SubscriptionStatus.INACTIVE.value,
            start_date=now,
            end_date=trial_end,
            trial_start=now,
            trial_end=trial_end,
            auto_renew=True,
            cancel_at_period_end=False,
            external_customer_id=customer_id,
            external_price_id=price_id,
            external_checkout_session_id=checkout_session_id,
        )
        return await self.subscription_repo.upsert_record(record)
