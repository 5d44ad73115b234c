"""
Subscription Router - read-side endpoints: status, trial eligibility, plans, feature checks
"""

import logging

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from auth import get_current_user
from backend.utils.errors import InvalidArgumentError
from backend.utils.responses import success_response
from config.settings import settings
from crud.subscription import SubscriptionRepository
from database import get_db
from models.subscription import GateDecision, Plan, PlanFeature, PlanType
from services.feature_gate import CAPABILITY_TITLES, FeatureGate, parse_capability
from services.status_service import StatusService
from services.trial_service import TrialService

logger = logging.getLogger(__name__)

subscription_router = APIRouter(prefix="/api/subscription", tags=["subscription"])


@subscription_router.get("/status")
async def get_subscription_status(
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """
    Get the caller's derived subscription status and the record it was computed from.
    """
    view = await StatusService(SubscriptionRepository(db)).get_status(current_user["user_id"])
    return success_response(view)


@subscription_router.get("/trial-eligibility")
async def get_trial_eligibility(
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """
    Tell the caller whether the free trial is still available to them.
    """
    eligibility = await TrialService(SubscriptionRepository(db)).check_eligibility(current_user["user_id"])
    return success_response(eligibility)


@subscription_router.get("/plans")
async def get_plans():
    """
    List the plans on sale. PLUS bundles every capability.
    """
    plans = [
        Plan(id=PlanType.FREE, name="Free"),
        Plan(
            id=PlanType.PLUS,
            name="Plus",
            price_id_monthly=settings.stripe_price_id_plus_monthly,
            price_id_yearly=settings.stripe_price_id_plus_yearly,
            trial_days=settings.trial_period_days,
            features=[PlanFeature(key=key, title=title) for key, title in CAPABILITY_TITLES.items()],
        ),
    ]
    return success_response({"plans": plans})


@subscription_router.get("/features/{capability}")
async def check_feature_access(
    capability: str,
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """
    Evaluate the feature gate for one capability key.
    """
    parsed = parse_capability(capability)
    if parsed is None:
        raise InvalidArgumentError(f"Unknown capability: {capability}")

    gate = FeatureGate.for_user(StatusService(SubscriptionRepository(db)), current_user["user_id"])
    await gate.refresh()
    decision = gate.can_access(parsed)
    return success_response({
        "capability": parsed.value,
        "decision": decision.value,
        "granted": decision == GateDecision.GRANTED,
    })
