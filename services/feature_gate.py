"""
Feature gate for PLUS capabilities.

PLUS is one bundled entitlement: every capability key gates on the same
``is_plus`` flag. The gate fails closed, so a read that is still loading or
that failed never yields GRANTED.
"""

import logging
from typing import Awaitable, Callable, Optional

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from auth import get_current_user
from backend.utils.errors import ForbiddenError
from crud.subscription import SubscriptionRepository
from database import get_db
from models.subscription import Capability, DerivedStatus, GateDecision
from services.status_service import StatusService

logger = logging.getLogger(__name__)

CAPABILITY_TITLES = {
    Capability.ADVANCED_SEARCH: "Advanced search",
    Capability.PRICE_ALERTS: "Price alerts",
    Capability.ANALYTICS: "Analytics",
    Capability.EXPORT_DATA: "Data export",
    Capability.COUPONS: "Coupons",
    Capability.PRIORITY_SUPPORT: "Priority support",
    Capability.AD_FREE: "Ad-free browsing",
}

_UNRESOLVED = "unresolved"
_LOADING = "loading"
_RESOLVED = "resolved"
_FAILED = "failed"


def parse_capability(capability) -> Optional[Capability]:
    try:
        return Capability(capability)
    except ValueError:
        return None


class FeatureGate:
    """
    Answers capability checks for one user from a derived-status loader.
    """

    def __init__(self, load_status: Callable[[], Awaitable[DerivedStatus]]):
        self._load_status = load_status
        self._state = _UNRESOLVED
        self._status: Optional[DerivedStatus] = None

    @classmethod
    def for_user(cls, status_service: StatusService, user_id: str) -> "FeatureGate":
        return cls(lambda: status_service.get_derived_status(user_id))

    @property
    def is_pending(self) -> bool:
        return self._state in (_UNRESOLVED, _LOADING)

    async def refresh(self) -> None:
        """Load the derived status. A failed load leaves the gate denying."""
        self._state = _LOADING
        self._status = None
        try:
            status = await self._load_status()
        except Exception as e:
            logger.error(f"Feature gate status read failed, denying access: {e}", exc_info=True)
            self._state = _FAILED
            return
        self._status = status
        self._state = _RESOLVED

    def can_access(self, capability) -> GateDecision:
        if self.is_pending:
            return GateDecision.PENDING
        if parse_capability(capability) is None:
            return GateDecision.DENIED
        if self._state == _RESOLVED and self._status is not None and self._status.is_plus:
            return GateDecision.GRANTED
        return GateDecision.DENIED

    def allows(self, capability) -> bool:
        return self.can_access(capability) == GateDecision.GRANTED


def require_capability(capability: Capability):
    """
    FastAPI dependency factory for PLUS-only routes.

    Example:
        @router.get("/export", dependencies=[Depends(require_capability(Capability.EXPORT_DATA))])
    """

    async def dependency(
        current_user: dict = Depends(get_current_user),
        db: AsyncSession = Depends(get_db),
    ) -> dict:
        gate = FeatureGate.for_user(StatusService(SubscriptionRepository(db)), current_user["user_id"])
        await gate.refresh()
        if not gate.allows(capability):
            raise ForbiddenError(f"PLUS subscription required for {capability.value}")
        return current_user

    return dependency
