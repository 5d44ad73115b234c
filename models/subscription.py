"""
Subscription request/response models and enums
"""
from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict


class PlanType(str, Enum):
    FREE = "FREE"
    PLUS = "PLUS"


class SubscriptionStatus(str, Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"
    PAST_DUE = "PAST_DUE"
    UNPAID = "UNPAID"


class LifecycleState(str, Enum):
    NONE = "NONE"
    TRIALING = "TRIALING"
    ACTIVE = "ACTIVE"
    PAST_DUE = "PAST_DUE"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"


class TrialEligibilityReason(str, Enum):
    NEVER_SUBSCRIBED = "NEVER_SUBSCRIBED"
    NO_PRIOR_TRIAL = "NO_PRIOR_TRIAL"
    TRIAL_ALREADY_USED = "TRIAL_ALREADY_USED"


class Capability(str, Enum):
    ADVANCED_SEARCH = "advanced_search"
    PRICE_ALERTS = "price_alerts"
    ANALYTICS = "analytics"
    EXPORT_DATA = "export_data"
    COUPONS = "coupons"
    PRIORITY_SUPPORT = "priority_support"
    AD_FREE = "ad_free"


class GateDecision(str, Enum):
    GRANTED = "granted"
    DENIED = "denied"
    PENDING = "pending"


# Request models
class CheckoutRequest(BaseModel):
    price_id: str
    success_url: str
    cancel_url: str


class PortalRequest(BaseModel):
    return_url: str


class CancelRequest(BaseModel):
    immediately: bool = False


class PauseDuration(str, Enum):
    ONE_MONTH = "1_month"
    TWO_MONTHS = "2_months"
    THREE_MONTHS = "3_months"


class PauseRequest(BaseModel):
    duration: PauseDuration


# Response models
class SubscriptionRecord(BaseModel):
    """Raw stored record, as returned next to the derived status."""
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    plan_type: PlanType
    status: SubscriptionStatus
    start_date: datetime
    end_date: Optional[datetime] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    trial_start: Optional[datetime] = None
    trial_end: Optional[datetime] = None
    auto_renew: bool = True
    cancel_at_period_end: bool = False
    canceled_at: Optional[datetime] = None
    collection_paused: bool = False
    pause_resumes_at: Optional[datetime] = None
    external_customer_id: Optional[str] = None
    external_subscription_id: Optional[str] = None
    external_price_id: Optional[str] = None
    created_at: Optional[datetime] = None


class DerivedStatus(BaseModel):
    """Authorization flags computed from (record, now). Never persisted."""
    is_plus: bool = False
    is_trial: bool = False
    is_active: bool = False
    is_cancelled: bool = False
    is_expired: bool = False
    is_past_due: bool = False
    trial_days_remaining: int = 0
    is_trial_expiring_soon: bool = False
    state: LifecycleState = LifecycleState.NONE


class SubscriptionStatusView(BaseModel):
    status: DerivedStatus
    subscription: Optional[SubscriptionRecord] = None


class TrialEligibility(BaseModel):
    is_eligible: bool
    reason: TrialEligibilityReason
    message: str
    trial_days: int


class CheckoutSession(BaseModel):
    session_id: str
    url: str
    trial_period_days: int = 0


class PlanFeature(BaseModel):
    key: Capability
    title: str


class Plan(BaseModel):
    id: PlanType
    name: str
    price_id_monthly: Optional[str] = None
    price_id_yearly: Optional[str] = None
    trial_days: int = 0
    features: List[PlanFeature] = []
