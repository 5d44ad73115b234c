"""
Subscription Event Service - applies billing provider lifecycle events

Events arrive asynchronously and possibly out of order or more than once.
Each one becomes an idempotent upsert keyed by the provider subscription id.
Subscription created/updated events are applied from a fresh read of the
provider subscription rather than the event payload, so delivery order does
not decide the stored state; an event older than the last one applied to a
record is ignored.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from config.settings import settings
from crud.subscription import SubscriptionRepository, user_lock
from database_models import Subscription, utc_now
from models.subscription import PlanType, SubscriptionStatus

logger = logging.getLogger(__name__)

CHECKOUT_COMPLETED = "checkout.session.completed"
SUBSCRIPTION_CREATED = "customer.subscription.created"
SUBSCRIPTION_UPDATED = "customer.subscription.updated"
SUBSCRIPTION_DELETED = "customer.subscription.deleted"
INVOICE_PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
INVOICE_PAYMENT_FAILED = "invoice.payment_failed"

PROVIDER_STATUS_MAP = {
    "active": SubscriptionStatus.ACTIVE,
    # Trialing subscriptions are ACTIVE; the trial fields mark them as trialing
    "trialing": SubscriptionStatus.ACTIVE,
    "past_due": SubscriptionStatus.PAST_DUE,
    "unpaid": SubscriptionStatus.UNPAID,
    "canceled": SubscriptionStatus.CANCELLED,
    # incomplete and incomplete_expired never started; they fall through to INACTIVE
}

# Invoice outcomes only move a subscription between these states
_PAYMENT_RECOVERABLE = (
    SubscriptionStatus.INACTIVE.value,
    SubscriptionStatus.PAST_DUE.value,
    SubscriptionStatus.UNPAID.value,
)
_PAYMENT_FAILABLE = (
    SubscriptionStatus.INACTIVE.value,
    SubscriptionStatus.ACTIVE.value,
)


def map_provider_status(provider_status: Optional[str]) -> str:
    return PROVIDER_STATUS_MAP.get(provider_status, SubscriptionStatus.INACTIVE).value


def plan_type_for_price(price_id: Optional[str]) -> str:
    if price_id and price_id in settings.plus_price_ids:
        return PlanType.PLUS.value
    return PlanType.FREE.value


def _ts(value) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc).replace(tzinfo=None)


def _id_of(value) -> Optional[str]:
    # Stripe fields hold either an id or an expanded object
    if value is None or isinstance(value, str):
        return value
    return value.get("id")


def _first_item(subscription: Dict[str, Any]) -> Dict[str, Any]:
    data = (subscription.get("items") or {}).get("data") or []
    return data[0] if data else {}


def _price_id(subscription: Dict[str, Any]) -> Optional[str]:
    return _id_of(_first_item(subscription).get("price"))


def _period(subscription: Dict[str, Any], key: str) -> Optional[datetime]:
    # Newer API versions report billing periods on the subscription item
    return _ts(subscription.get(key) or _first_item(subscription).get(key))


def _invoice_subscription_id(invoice: Dict[str, Any]) -> Optional[str]:
    subscription = invoice.get("subscription")
    if subscription:
        return _id_of(subscription)
    details = (invoice.get("parent") or {}).get("subscription_details") or {}
    return _id_of(details.get("subscription"))


class SubscriptionEventService:
    """
    Service that reconciles provider subscription state into the store.
    """

    def __init__(self, subscription_repo: SubscriptionRepository, billing_client):
        """
        Args:
            subscription_repo: SubscriptionRepository to upsert into
            billing_client: Billing provider client (fetches subscriptions on checkout completion)
        """
        self.subscription_repo = subscription_repo
        self.billing_client = billing_client

    async def apply_event(self, event: Dict[str, Any]) -> Optional[Subscription]:
        """
        Apply one verified provider event.

        Returns:
            The stored record, or None when the event was ignored

        Raises:
            ConflictError: the event would break one-active-per-user; the
                provider should redeliver once the older subscription ends
            UpstreamError, InternalError: provider or store failure
        """
        event_type = event.get("type")
        obj = (event.get("data") or {}).get("object") or {}
        occurred_at = _ts(event.get("created"))
        logger.info(f"Processing Stripe webhook event: {event_type} ({event.get('id')})")

        if event_type == CHECKOUT_COMPLETED:
            return await self._apply_checkout_completed(obj, occurred_at)
        if event_type in (SUBSCRIPTION_CREATED, SUBSCRIPTION_UPDATED):
            return await self._apply_subscription_changed(obj, occurred_at)
        if event_type == SUBSCRIPTION_DELETED:
            subscription = dict(obj)
            subscription["status"] = "canceled"
            if not subscription.get("canceled_at"):
                subscription["canceled_at"] = event.get("created")
            return await self.apply_subscription(subscription, occurred_at=occurred_at)
        if event_type == INVOICE_PAYMENT_SUCCEEDED:
            return await self._apply_invoice(obj, SubscriptionStatus.ACTIVE.value, _PAYMENT_RECOVERABLE, occurred_at)
        if event_type == INVOICE_PAYMENT_FAILED:
            return await self._apply_invoice(obj, SubscriptionStatus.PAST_DUE.value, _PAYMENT_FAILABLE, occurred_at)

        logger.info(f"Unhandled event type: {event_type}")
        return None

    async def _apply_checkout_completed(self, session: Dict[str, Any], occurred_at) -> Optional[Subscription]:
        subscription_id = _id_of(session.get("subscription"))
        if not subscription_id:
            logger.error("Missing subscription ID in checkout session")
            return None

        subscription = await self.billing_client.retrieve_subscription(subscription_id)
        if not subscription.get("customer"):
            subscription["customer"] = session.get("customer")
        user_id = session.get("client_reference_id") or (session.get("metadata") or {}).get("user_id")
        return await self.apply_subscription(
            subscription,
            user_id=user_id,
            checkout_session_id=session.get("id"),
            occurred_at=occurred_at,
        )

    async def _apply_subscription_changed(self, obj: Dict[str, Any], occurred_at) -> Optional[Subscription]:
        subscription_id = obj.get("id")
        if not subscription_id:
            logger.error("Subscription payload without an id")
            return None

        # Payloads of events created in the same second carry no usable order
        subscription = await self.billing_client.retrieve_subscription(subscription_id)
        return await self.apply_subscription(subscription, occurred_at=occurred_at)

    async def _resolve_owner(self, subscription: Dict[str, Any], user_id: Optional[str]) -> Optional[str]:
        existing = await self.subscription_repo.get_by_external_subscription_id(subscription.get("id"))
        if existing is not None:
            return existing.user_id
        owner = user_id or (subscription.get("metadata") or {}).get("user_id")
        if owner:
            return owner
        customer_id = _id_of(subscription.get("customer"))
        if customer_id:
            return await self.subscription_repo.find_user_id_for_customer(customer_id)
        return None

    async def apply_subscription(
        self,
        subscription: Dict[str, Any],
        user_id: Optional[str] = None,
        checkout_session_id: Optional[str] = None,
        occurred_at: Optional[datetime] = None,
    ) -> Optional[Subscription]:
        """
        Upsert the record mirroring one provider subscription object.

        The record is found by provider subscription id, else the pending
        record written at checkout is adopted, else a new record is created.
        """
        subscription_id = subscription.get("id")
        if not subscription_id:
            logger.error("Subscription payload without an id")
            return None

        owner = await self._resolve_owner(subscription, user_id)
        if owner is None:
            logger.warning(f"No user found for Stripe subscription {subscription_id}; ignoring")
            return None

        customer_id = _id_of(subscription.get("customer"))
        repo = self.subscription_repo
        async with user_lock(owner):
            record = await repo.get_by_external_subscription_id(subscription_id)
            if record is None and checkout_session_id:
                record = await repo.get_by_checkout_session_id(checkout_session_id)
            if record is None:
                pending = await repo.get_pending_checkout(owner)
                if self._adopts_pending(pending, subscription, customer_id):
                    record = pending
            if record is None:
                record = Subscription(user_id=owner)

            if self._is_stale(record, occurred_at):
                logger.info(f"Ignoring stale event for subscription {subscription_id}")
                return record

            self._fill_from_subscription(record, subscription, customer_id)
            await self._apply_trial(record, subscription)
            if occurred_at is not None:
                record.provider_updated_at = occurred_at
            return await repo.upsert_record(record)

    async def _apply_invoice(self, invoice: Dict[str, Any], status: str, from_states, occurred_at) -> Optional[Subscription]:
        subscription_id = _invoice_subscription_id(invoice)
        if not subscription_id:
            logger.info("Invoice not associated with subscription")
            return None

        repo = self.subscription_repo
        record = await repo.get_by_external_subscription_id(subscription_id)
        if record is None:
            logger.warning(f"Invoice for unknown subscription {subscription_id}; ignoring")
            return None

        async with user_lock(record.user_id):
            record = await repo.get_by_external_subscription_id(subscription_id)
            if record.collection_paused:
                logger.info(f"Invoice event ignored for paused subscription {subscription_id}")
                return record
            if self._is_stale(record, occurred_at) or record.status not in from_states:
                logger.info(f"Invoice event leaves subscription {subscription_id} at {record.status}")
                return record
            record.status = status
            if occurred_at is not None:
                record.provider_updated_at = occurred_at
            return await repo.upsert_record(record)

    @staticmethod
    def _adopts_pending(pending: Optional[Subscription], subscription: Dict[str, Any], customer_id) -> bool:
        # The checkout placeholder only exists for a trial checkout; a subscription
        # without a trial is a different checkout and gets its own record
        return (
            pending is not None
            and subscription.get("trial_start") is not None
            and pending.external_customer_id in (None, customer_id)
        )

    @staticmethod
    def _is_stale(record: Subscription, occurred_at: Optional[datetime]) -> bool:
        return (
            occurred_at is not None
            and record.provider_updated_at is not None
            and occurred_at < record.provider_updated_at
        )

    @staticmethod
    def _fill_from_subscription(record: Subscription, subscription: Dict[str, Any], customer_id: Optional[str]) -> None:
        price_id = _price_id(subscription) or record.external_price_id
        period_start = _period(subscription, "current_period_start")
        period_end = _period(subscription, "current_period_end")
        cancel_at_period_end = bool(subscription.get("cancel_at_period_end"))

        record.status = map_provider_status(subscription.get("status"))
        record.plan_type = plan_type_for_price(price_id)
        record.external_subscription_id = subscription.get("id")
        record.external_customer_id = customer_id or record.external_customer_id
        record.external_price_id = price_id
        record.start_date = _ts(subscription.get("start_date")) or record.start_date or period_start or utc_now()
        record.current_period_start = period_start
        record.current_period_end = period_end
        record.end_date = _ts(subscription.get("ended_at")) or period_end or record.end_date
        record.cancel_at_period_end = cancel_at_period_end
        record.auto_renew = not cancel_at_period_end
        record.canceled_at = _ts(subscription.get("canceled_at"))

        pause = subscription.get("pause_collection") or None
        record.collection_paused = pause is not None
        record.pause_resumes_at = _ts(pause.get("resumes_at")) if pause else None
        if pause is not None and record.status == SubscriptionStatus.ACTIVE.value:
            # Collection is paused: no PLUS until the provider resumes it
            record.status = SubscriptionStatus.INACTIVE.value

    async def _apply_trial(self, record: Subscription, subscription: Dict[str, Any]) -> None:
        trial_start = _ts(subscription.get("trial_start"))
        trial_end = _ts(subscription.get("trial_end"))

        if record.trial_start is not None:
            # The grant itself never moves; the provider may only end it early or late
            if trial_end is not None and trial_end >= record.trial_start:
                record.trial_end = trial_end
            return

        if trial_start is None:
            return

        holder = await self.subscription_repo.get_trial_record(record.user_id)
        if holder is not None:
            logger.warning(
                f"Provider reports a trial on {subscription.get('id')} but user {record.user_id} "
                f"already used the trial on {holder.id}; not recording a second trial"
            )
            return

        record.trial_start = trial_start
        record.trial_end = trial_end if trial_end is not None and trial_end >= trial_start else None
