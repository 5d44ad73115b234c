"""
Billing Service - Stripe adapter for the external billing provider

Every call runs off the event loop under a bounded timeout and is never
retried here; failures surface as UpstreamError and the caller decides
whether to retry.
"""

import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import stripe

from backend.utils.errors import InternalError, InvalidArgumentError, UpstreamError
from config.settings import settings

logger = logging.getLogger(__name__)

stripe.max_network_retries = 0


def _as_dict(obj) -> Dict[str, Any]:
    if isinstance(obj, dict) and not hasattr(obj, "to_dict"):
        return obj
    return obj.to_dict()


class StripeBillingClient:
    """
    Thin wrapper over the Stripe SDK with the provider calls this service needs.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
    ):
        """
        Initialize the billing client.

        Args:
            api_key: Stripe secret key (defaults to STRIPE_SECRET_KEY)
            webhook_secret: Webhook signing secret (defaults to STRIPE_WEBHOOK_SECRET)
            timeout_seconds: Bound on each provider call (defaults to BILLING_TIMEOUT_SECONDS)
        """
        self.api_key = api_key or settings.stripe_secret_key
        self.webhook_secret = webhook_secret or settings.stripe_webhook_secret
        self.timeout_seconds = timeout_seconds or settings.billing_timeout_seconds
        if not self.api_key:
            logger.warning("STRIPE_SECRET_KEY is not set. Stripe functionality will be unavailable.")

    async def _call(self, operation: str, func, *args, **kwargs):
        if not self.api_key:
            logger.error(f"STRIPE_SECRET_KEY is not set. Cannot {operation}.")
            raise UpstreamError("Billing provider is not configured")

        try:
            return await asyncio.wait_for(
                asyncio.to_thread(func, *args, api_key=self.api_key, **kwargs),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            logger.error(f"Stripe call timed out after {self.timeout_seconds}s: {operation}")
            raise UpstreamError(f"Billing provider timed out ({operation})") from e
        except stripe.StripeError as e:
            logger.error(f"Stripe call failed ({operation}): {e}", exc_info=True)
            detail = getattr(e, "user_message", None) or str(e)
            raise UpstreamError(f"Billing provider rejected the request ({operation}): {detail}") from e

    async def create_or_get_customer(self, email: str, name: Optional[str], user_id: str) -> str:
        """
        Find the provider customer for this email, or create one.

        Returns:
            Stripe customer ID
        """
        customers = await self._call("look up customer", stripe.Customer.list, email=email, limit=1)
        if customers.data:
            return customers.data[0].id

        customer = await self._call(
            "create customer",
            stripe.Customer.create,
            email=email,
            name=name,
            metadata={"user_id": user_id},
        )
        logger.info(f"Created Stripe customer {customer.id} for user {user_id}")
        return customer.id

    async def create_checkout_session(
        self,
        customer_id: str,
        price_id: str,
        success_url: str,
        cancel_url: str,
        trial_period_days: Optional[int] = None,
        user_id: Optional[str] = None,
    ) -> Dict[str, str]:
        """
        Create a subscription-mode Stripe Checkout session.

        Returns:
            {"id": session id, "url": hosted checkout URL}
        """
        metadata = {"user_id": user_id} if user_id else {}
        subscription_data: Dict[str, Any] = {"metadata": metadata}
        if trial_period_days and trial_period_days > 0:
            subscription_data["trial_period_days"] = trial_period_days

        session = await self._call(
            "create checkout session",
            stripe.checkout.Session.create,
            customer=customer_id,
            payment_method_types=["card"],
            line_items=[{
                "price": price_id,
                "quantity": 1,
            }],
            mode="subscription",
            success_url=success_url,
            cancel_url=cancel_url,
            allow_promotion_codes=True,
            billing_address_collection="required",
            client_reference_id=user_id,
            metadata=metadata,
            subscription_data=subscription_data,
        )
        return {"id": session.id, "url": session.url}

    async def create_portal_session(self, customer_id: str, return_url: str) -> str:
        """
        Create a Stripe Billing Portal session.

        Returns:
            Hosted portal URL
        """
        portal_session = await self._call(
            "create portal session",
            stripe.billing_portal.Session.create,
            customer=customer_id,
            return_url=return_url,
        )
        return portal_session.url

    async def retrieve_subscription(self, subscription_id: str) -> Dict[str, Any]:
        subscription = await self._call(
            "retrieve subscription", stripe.Subscription.retrieve, subscription_id
        )
        return _as_dict(subscription)

    async def cancel_subscription(self, subscription_id: str, immediately: bool = False) -> Dict[str, Any]:
        if immediately:
            subscription = await self._call(
                "cancel subscription", stripe.Subscription.cancel, subscription_id
            )
        else:
            subscription = await self._call(
                "schedule cancellation",
                stripe.Subscription.modify,
                subscription_id,
                cancel_at_period_end=True,
            )
        return _as_dict(subscription)

    async def reactivate_subscription(self, subscription_id: str) -> Dict[str, Any]:
        subscription = await self._call(
            "reactivate subscription",
            stripe.Subscription.modify,
            subscription_id,
            cancel_at_period_end=False,
        )
        return _as_dict(subscription)

    async def pause_subscription(self, subscription_id: str, resumes_at: datetime) -> Dict[str, Any]:
        """Pause collection (invoices are voided) until ``resumes_at`` (naive UTC)."""
        subscription = await self._call(
            "pause subscription",
            stripe.Subscription.modify,
            subscription_id,
            pause_collection={
                "behavior": "void",
                "resumes_at": int(resumes_at.replace(tzinfo=timezone.utc).timestamp()),
            },
        )
        return _as_dict(subscription)

    async def resume_subscription(self, subscription_id: str) -> Dict[str, Any]:
        # An empty value clears pause_collection
        subscription = await self._call(
            "resume subscription",
            stripe.Subscription.modify,
            subscription_id,
            pause_collection="",
        )
        return _as_dict(subscription)

    def construct_event(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """
        Verify a webhook delivery and return the event as a plain dict.

        Raises:
            InternalError: STRIPE_WEBHOOK_SECRET is not set
            InvalidArgumentError: missing or invalid signature, or malformed payload
        """
        if not self.webhook_secret:
            logger.error("STRIPE_WEBHOOK_SECRET environment variable is not set")
            raise InternalError("Webhook secret not configured")
        if not signature:
            raise InvalidArgumentError("Missing Stripe-Signature header")

        try:
            stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
        except stripe.SignatureVerificationError as e:
            logger.error(f"Stripe webhook signature verification failed: {e}")
            raise InvalidArgumentError("Invalid webhook signature") from e
        except ValueError as e:
            logger.error(f"Invalid webhook payload: {e}")
            raise InvalidArgumentError("Invalid payload format") from e

        return json.loads(payload)


def get_billing_client() -> StripeBillingClient:
    """
    Dependency function that provides the billing provider client.
    Overridden in tests through app.dependency_overrides.
    """
    return StripeBillingClient()
