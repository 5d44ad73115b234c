"""
Trial Service for the one-time PLUS free trial
"""
from typing import Iterable, Optional

from config.settings import settings
from crud.subscription import SubscriptionRepository
from models.subscription import TrialEligibility, TrialEligibilityReason

REASON_MESSAGES = {
    TrialEligibilityReason.NEVER_SUBSCRIBED: "User is eligible for the free trial",
    TrialEligibilityReason.NO_PRIOR_TRIAL: "User had a subscription but never used the free trial",
    TrialEligibilityReason.TRIAL_ALREADY_USED: "User has already used the free trial",
}


def evaluate_trial_eligibility(history: Iterable, trial_days: Optional[int] = None) -> TrialEligibility:
    """
    Decide whether a user may still receive the free trial.

    A user is eligible if they never subscribed, or if none of their
    subscriptions ever carried a trial. The order of ``history`` does not matter.

    Args:
        history: Every subscription record the user ever had
        trial_days: Trial length to report (defaults to TRIAL_PERIOD_DAYS)

    Returns:
        TrialEligibility with a reason code for user-facing messaging
    """
    records = list(history)
    if not records:
        reason = TrialEligibilityReason.NEVER_SUBSCRIBED
    elif any(record.trial_start is not None for record in records):
        reason = TrialEligibilityReason.TRIAL_ALREADY_USED
    else:
        reason = TrialEligibilityReason.NO_PRIOR_TRIAL

    return TrialEligibility(
        is_eligible=reason != TrialEligibilityReason.TRIAL_ALREADY_USED,
        reason=reason,
        message=REASON_MESSAGES[reason],
        trial_days=trial_days if trial_days is not None else settings.trial_period_days,
    )


class TrialService:
    """
    Service for answering trial-eligibility questions.
    Read-only: it never writes, so concurrent calls need no locking.
    """

    def __init__(self, subscription_repo: SubscriptionRepository):
        """
        Initialize the trial service with the subscription repository.

        Args:
            subscription_repo: SubscriptionRepository used to load history
        """
        self.subscription_repo = subscription_repo

    async def check_eligibility(self, user_id: str) -> TrialEligibility:
        history = await self.subscription_repo.get_history(user_id)
        return evaluate_trial_eligibility(history)
