import uuid
from datetime import datetime, timezone

from sqlalchemy import Boolean, CheckConstraint, Column, DateTime, Index, String, text

from database import Base


def _new_id() -> str:
    return str(uuid.uuid4())


def utc_now() -> datetime:
    """Naive UTC wall-clock time, the representation stored in every DateTime column."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class User(Base):
    """
    Internal user record, written by the authentication collaborator.
    Only read here, to resolve email/name for the billing customer.
    """
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=_new_id)
    email = Column(String(320), unique=True, nullable=False, index=True)
    name = Column(String(255), nullable=True)
    created_at = Column(DateTime, default=utc_now, nullable=False)


class Subscription(Base):
    """
    One row per subscription lifecycle instance. Rows are never deleted:
    cancelled and expired rows stay for trial history and auditing.
    """
    __tablename__ = "subscriptions"
    __table_args__ = (
        # At most one ACTIVE subscription per user
        Index(
            "uq_subscriptions_active_user",
            "user_id",
            unique=True,
            sqlite_where=text("status = 'ACTIVE'"),
            postgresql_where=text("status = 'ACTIVE'"),
        ),
        # The free trial is granted once per user, ever
        Index(
            "uq_subscriptions_trial_user",
            "user_id",
            unique=True,
            sqlite_where=text("trial_start IS NOT NULL"),
            postgresql_where=text("trial_start IS NOT NULL"),
        ),
        CheckConstraint(
            "trial_end IS NULL OR (trial_start IS NOT NULL AND trial_end >= trial_start)",
            name="ck_subscriptions_trial_window",
        ),
    )

    id = Column(String(36), primary_key=True, default=_new_id)
    user_id = Column(String(36), nullable=False, index=True)
    plan_type = Column(String(16), nullable=False, default="FREE")
    status = Column(String(16), nullable=False, default="INACTIVE")

    start_date = Column(DateTime, nullable=False, default=utc_now)
    end_date = Column(DateTime, nullable=True)
    current_period_start = Column(DateTime, nullable=True)
    current_period_end = Column(DateTime, nullable=True)

    trial_start = Column(DateTime, nullable=True)
    trial_end = Column(DateTime, nullable=True)

    auto_renew = Column(Boolean, nullable=False, default=True)
    cancel_at_period_end = Column(Boolean, nullable=False, default=False)
    canceled_at = Column(DateTime, nullable=True)

    # Provider collection pause; the row stays INACTIVE while it holds
    collection_paused = Column(Boolean, nullable=False, default=False)
    pause_resumes_at = Column(DateTime, nullable=True)

    external_customer_id = Column(String(255), nullable=True, index=True)
    external_subscription_id = Column(String(255), nullable=True, unique=True)
    external_price_id = Column(String(255), nullable=True)
    external_checkout_session_id = Column(String(255), nullable=True, index=True)

    # Creation time of the last provider event applied to this row
    provider_updated_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, nullable=False, default=utc_now)
    updated_at = Column(DateTime, nullable=False, default=utc_now, onupdate=utc_now)

    def __repr__(self) -> str:
        return f"<Subscription id={self.id} user={self.user_id} status={self.status}>"
