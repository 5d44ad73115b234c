"""
Billing Router - API endpoints for Stripe billing integration
Webhook is defined FIRST to avoid middleware conflicts
"""

import logging

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from auth import get_current_user
from backend.utils.responses import success_response
from crud.subscription import SubscriptionRepository
from crud.user import UserRepository
from database import get_db
from models.subscription import CancelRequest, CheckoutRequest, PauseRequest, PortalRequest, SubscriptionRecord
from services.billing_service import StripeBillingClient, get_billing_client
from services.checkout_service import CheckoutService
from services.portal_service import PortalService
from services.subscription_event_service import SubscriptionEventService

logger = logging.getLogger(__name__)

# Create billing router
billing_router = APIRouter(prefix="/api/billing", tags=["billing"])


# WEBHOOK ENDPOINT - MUST BE DEFINED FIRST TO AVOID MIDDLEWARE CONFLICTS
@billing_router.post("/webhook")
async def stripe_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    billing_client: StripeBillingClient = Depends(get_billing_client),
):
    """
    Handle Stripe webhook events with signature verification.

    Only verified events are applied. A delivery that cannot be applied
    (store conflict or failure) gets a non-2xx response so Stripe redelivers it.

    Args:
        request: FastAPI Request object (for raw body)
        db: Database session dependency
        billing_client: Billing provider client dependency

    Returns:
        JSON response with the event type and whether it changed a record
    """
    # Get raw request body (required for signature verification)
    payload = await request.body()
    event = billing_client.construct_event(payload, request.headers.get("stripe-signature"))

    service = SubscriptionEventService(SubscriptionRepository(db), billing_client)
    record = await service.apply_event(event)
    return success_response({
        "received": True,
        "event_type": event.get("type"),
        "applied": record is not None,
    })


@billing_router.post("/checkout")
async def create_checkout_session(
    body: CheckoutRequest,
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    billing_client: StripeBillingClient = Depends(get_billing_client),
):
    """
    Create a Stripe Checkout session for a PLUS price.

    Returns:
        JSON response with the session id and hosted checkout URL
    """
    service = CheckoutService(SubscriptionRepository(db), UserRepository(db), billing_client)
    session = await service.create_checkout_session(
        current_user["user_id"], body.price_id, body.success_url, body.cancel_url
    )
    return success_response(session)


@billing_router.post("/portal")
async def create_billing_portal_session(
    body: PortalRequest,
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    billing_client: StripeBillingClient = Depends(get_billing_client),
):
    """
    Create a Stripe Billing Portal session for the caller's billing account.

    Returns:
        JSON response with the portal URL
    """
    url = await PortalService(SubscriptionRepository(db), billing_client).create_portal_session(
        current_user["user_id"], body.return_url
    )
    return success_response({"url": url})


@billing_router.post("/cancel")
async def cancel_subscription(
    body: CancelRequest,
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    billing_client: StripeBillingClient = Depends(get_billing_client),
):
    """Cancel the caller's subscription (at period end unless immediately is set)."""
    record = await PortalService(SubscriptionRepository(db), billing_client).cancel_subscription(
        current_user["user_id"], immediately=body.immediately
    )
    return success_response(
        {"subscription": SubscriptionRecord.model_validate(record) if record else None},
        message="Subscription cancelled",
    )


@billing_router.post("/reactivate")
async def reactivate_subscription(
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    billing_client: StripeBillingClient = Depends(get_billing_client),
):
    """Withdraw a scheduled cancellation."""
    record = await PortalService(SubscriptionRepository(db), billing_client).reactivate_subscription(
        current_user["user_id"]
    )
    return success_response(
        {"subscription": SubscriptionRecord.model_validate(record) if record else None},
        message="Subscription reactivated",
    )


@billing_router.post("/pause")
async def pause_subscription(
    body: PauseRequest,
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    billing_client: StripeBillingClient = Depends(get_billing_client),
):
    """Pause collection on the caller's subscription for 1, 2 or 3 months."""
    record = await PortalService(SubscriptionRepository(db), billing_client).pause_subscription(
        current_user["user_id"], body.duration
    )
    return success_response(
        {"subscription": SubscriptionRecord.model_validate(record) if record else None},
        message="Subscription paused",
    )


@billing_router.post("/resume")
async def resume_subscription(
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    billing_client: StripeBillingClient = Depends(get_billing_client),
):
    """Lift a collection pause early."""
    record = await PortalService(SubscriptionRepository(db), billing_client).resume_subscription(
        current_user["user_id"]
    )
    return success_response(
        {"subscription": SubscriptionRecord.model_validate(record) if record else None},
        message="Subscription resumed",
    )
