"""
SubscriptionRepository - transactional access to subscription records
"""

import asyncio
import logging
import weakref
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from backend.utils.errors import ConflictError, InternalError, InvalidArgumentError
from config.settings import settings
from database_models import Subscription
from models.subscription import SubscriptionStatus

logger = logging.getLogger(__name__)

# Per-user write locks (in-process). The partial unique indexes on the
# subscriptions table are what hold across processes.
_user_locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()


def user_lock(user_id: str) -> asyncio.Lock:
    """Return the lock that serializes subscription writes for one user."""
    lock = _user_locks.get(user_id)
    if lock is None:
        lock = asyncio.Lock()
        _user_locks[user_id] = lock
    return lock


class SubscriptionRepository:
    """
    Repository class for Subscription database operations.
    Encapsulates all database logic for the Subscription model.
    """

    def __init__(self, db: AsyncSession, timeout_seconds: Optional[float] = None):
        """
        Initialize the repository with a database session.

        Args:
            db: AsyncSession instance for database operations
            timeout_seconds: Bound on each store call (defaults to STORE_TIMEOUT_SECONDS)
        """
        self.db = db
        self.timeout_seconds = timeout_seconds or settings.store_timeout_seconds

    async def _execute(self, stmt):
        try:
            return await asyncio.wait_for(self.db.execute(stmt), timeout=self.timeout_seconds)
        except asyncio.TimeoutError as e:
            logger.error(f"Subscription store read timed out after {self.timeout_seconds}s")
            raise InternalError("Subscription store timed out") from e
        except SQLAlchemyError as e:
            logger.error(f"Subscription store read failed: {e}", exc_info=True)
            raise InternalError("Subscription store read failed") from e

    async def _first(self, stmt, refresh: bool = False) -> Optional[Subscription]:
        stmt = stmt.limit(1)
        if refresh:
            # Reload a row already in the identity map; another session may have written it.
            # Only safe before the caller starts modifying the row.
            stmt = stmt.execution_options(populate_existing=True)
        result = await self._execute(stmt)
        return result.scalars().first()

    async def get_active_record(self, user_id: str) -> Optional[Subscription]:
        """
        Retrieve the user's ACTIVE subscription, if any.

        Returns:
            Subscription object if found, None otherwise
        """
        result = await self._execute(
            select(Subscription).where(
                Subscription.user_id == user_id,
                Subscription.status == SubscriptionStatus.ACTIVE.value,
            )
        )
        try:
            return result.scalar_one_or_none()
        except SQLAlchemyError as e:
            logger.error(f"More than one ACTIVE subscription stored for user {user_id}")
            raise InternalError("Subscription store is inconsistent") from e

    async def get_history(self, user_id: str) -> List[Subscription]:
        """
        Retrieve every subscription the user ever had, newest first.
        """
        result = await self._execute(
            select(Subscription)
            .where(Subscription.user_id == user_id)
            .order_by(Subscription.created_at.desc())
        )
        return list(result.scalars().all())

    async def get_trial_record(self, user_id: str) -> Optional[Subscription]:
        """Retrieve the record holding the user's trial grant, if any."""
        return await self._first(
            select(Subscription).where(
                Subscription.user_id == user_id,
                Subscription.trial_start.is_not(None),
            )
        )

    async def get_pending_checkout(self, user_id: str) -> Optional[Subscription]:
        """
        Retrieve the user's newest unconfirmed record: written at checkout,
        not yet linked to a provider subscription.
        """
        return await self._first(
            select(Subscription)
            .where(
                Subscription.user_id == user_id,
                Subscription.status == SubscriptionStatus.INACTIVE.value,
                Subscription.external_subscription_id.is_(None),
            )
            .order_by(Subscription.created_at.desc()),
            refresh=True,
        )

    async def get_paused_record(self, user_id: str) -> Optional[Subscription]:
        """Retrieve the user's provider subscription whose collection is paused, if any."""
        return await self._first(
            select(Subscription).where(
                Subscription.user_id == user_id,
                Subscription.collection_paused.is_(True),
                Subscription.external_subscription_id.is_not(None),
            )
        )

    async def get_by_external_subscription_id(self, external_subscription_id: str) -> Optional[Subscription]:
        return await self._first(
            select(Subscription).where(
                Subscription.external_subscription_id == external_subscription_id
            ),
            refresh=True,
        )

    async def get_by_checkout_session_id(self, checkout_session_id: str) -> Optional[Subscription]:
        return await self._first(
            select(Subscription).where(
                Subscription.external_checkout_session_id == checkout_session_id
            ),
            refresh=True,
        )

    async def find_customer_id(self, user_id: str) -> Optional[str]:
        """Return the newest billing customer id stored on any of the user's records."""
        record = await self._first(
            select(Subscription)
            .where(
                Subscription.user_id == user_id,
                Subscription.external_customer_id.is_not(None),
            )
            .order_by(Subscription.created_at.desc())
        )
        return record.external_customer_id if record else None

    async def find_user_id_for_customer(self, external_customer_id: str) -> Optional[str]:
        record = await self._first(
            select(Subscription).where(
                Subscription.external_customer_id == external_customer_id
            )
        )
        return record.user_id if record else None

    async def upsert_record(self, record: Subscription) -> Subscription:
        """
        Insert a new record or persist changes to an existing one, atomically.

        The write commits on its own. Any failure rolls it back entirely, so a
        failed call never leaves two ACTIVE rows or a half-written trial window.

        Raises:
            InvalidArgumentError: trial_end precedes trial_start, or is set without it
            ConflictError: the write would break one-active or one-trial-per-user
            InternalError: the store failed or timed out
        """
        if record.trial_end is not None and (
            record.trial_start is None or record.trial_end < record.trial_start
        ):
            raise InvalidArgumentError("trial_end must not precede trial_start")

        if record.status == SubscriptionStatus.ACTIVE.value:
            active = await self.get_active_record(record.user_id)
            if active is not None and active is not record:
                raise ConflictError("User already has an active subscription")
        if record.trial_start is not None:
            holder = await self.get_trial_record(record.user_id)
            if holder is not None and holder is not record:
                raise ConflictError("Free trial was already granted to this user")

        user_id = record.user_id
        self.db.add(record)
        try:
            await asyncio.wait_for(self.db.commit(), timeout=self.timeout_seconds)
        except IntegrityError as e:
            # Lost a race against a concurrent writer; the indexes rejected it
            await self.db.rollback()
            logger.warning(f"Rejected subscription write for user {user_id}: {e.orig}")
            raise ConflictError("Subscription write conflicts with an existing record") from e
        except asyncio.TimeoutError as e:
            await self.db.rollback()
            logger.error(f"Subscription store write timed out for user {user_id}")
            raise InternalError("Subscription store timed out") from e
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"Subscription store write failed: {e}", exc_info=True)
            raise InternalError("Subscription store write failed") from e

        logger.info(f"Stored subscription {record.id} for user {record.user_id} ({record.status})")
        return record
