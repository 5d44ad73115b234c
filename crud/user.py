"""
UserRepository for database operations on User model
"""

import asyncio
import logging
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from backend.utils.errors import InternalError
from config.settings import settings
from database_models import User

logger = logging.getLogger(__name__)


class UserRepository:
    """
    Repository class for User database operations.
    Users are owned by the authentication collaborator; this service reads them
    to resolve the email and name sent to the billing provider.
    """

    def __init__(self, db: AsyncSession):
        """
        Initialize the repository with a database session.

        Args:
            db: AsyncSession instance for database operations
        """
        self.db = db

    async def _first(self, stmt) -> Optional[User]:
        try:
            result = await asyncio.wait_for(
                self.db.execute(stmt), timeout=settings.store_timeout_seconds
            )
        except asyncio.TimeoutError as e:
            raise InternalError("User store timed out") from e
        except SQLAlchemyError as e:
            logger.error(f"User lookup failed: {e}", exc_info=True)
            raise InternalError("User store read failed") from e
        return result.scalar_one_or_none()

    async def get_user_by_id(self, user_id: str) -> Optional[User]:
        """
        Retrieve a user by ID.

        Args:
            user_id: User's ID

        Returns:
            User object if found, None otherwise
        """
        return await self._first(select(User).where(User.id == user_id))

    async def create_user(self, user_data: dict) -> User:
        """
        Create a new user in the database.

        Args:
            user_data: Dictionary containing user data. Must include:
                - email: str
                Optional:
                - id: str (generated when absent)
                - name: str

        Returns:
            Created User object
        """
        user = User(
            email=user_data["email"].lower(),
            name=user_data.get("name"),
        )
        if user_data.get("id"):
            user.id = user_data["id"]
        self.db.add(user)
        await self.db.flush()  # Flush to get the ID without committing
        await self.db.refresh(user)
        return user
