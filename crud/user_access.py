"""
UserAccessRepository for database operations on the UserAccess model
"""

from typing import Any, Dict, List, Optional
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, update
from database_models import UserAccess


class UserAccessRepository:
    """
    Repository class for UserAccess database operations.
    Encapsulates all database logic for plan and Stripe linkage rows.
    """

    def __init__(self, db: AsyncSession):
        """
        Initialize the repository with a database session.

        Args:
            db: AsyncSession instance for database operations
        """
        self.db = db

    async def get_by_user_id(self, user_id: str) -> Optional[UserAccess]:
        """
        Retrieve the access row for an identity-provider user.

        Args:
            user_id: External user ID (token ``sub`` claim)

        Returns:
            UserAccess object if found, None otherwise
        """
        result = await self.db.execute(
            select(UserAccess).where(UserAccess.user_id == user_id)
        )
        return result.scalar_one_or_none()

    async def get_by_customer_id(self, customer_id: str) -> Optional[UserAccess]:
        """
        Retrieve the first access row linked to a Stripe customer.

        Args:
            customer_id: Stripe customer ID

        Returns:
            UserAccess object if found, None otherwise
        """
        result = await self.db.execute(
            select(UserAccess)
            .where(UserAccess.stripe_customer_id == customer_id)
            .order_by(UserAccess.id)
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def create(self, user_id: str, **fields: Any) -> UserAccess:
        """
        Create a new free-plan access row.

        Args:
            user_id: External user ID
            **fields: Optional column overrides (email, plan, ...)

        Returns:
            Created UserAccess object
        """
        access = UserAccess(user_id=user_id, plan=fields.pop("plan", "free"), **fields)
        self.db.add(access)
        await self.db.flush()
        await self.db.refresh(access)
        return access

    async def get_or_create(self, user_id: str) -> UserAccess:
        existing = await self.get_by_user_id(user_id)
        if existing:
            return existing
        return await self.create(user_id, trial_started_at=None, trial_ends_at=None)

    async def upsert(
        self,
        user_id: str,
        update_fields: Dict[str, Any],
        create_fields: Optional[Dict[str, Any]] = None,
    ) -> UserAccess:
        """
        Update the row for ``user_id`` or create it when missing.

        Args:
            user_id: External user ID
            update_fields: Columns applied when the row exists
            create_fields: Columns used when the row is created
                (defaults to ``update_fields``)

        Returns:
            The stored UserAccess object
        """
        access = await self.get_by_user_id(user_id)
        if access is None:
            return await self.create(user_id, **dict(create_fields if create_fields is not None else update_fields))
        return await self.update(access, update_fields)

    async def update(self, access: UserAccess, fields: Dict[str, Any]) -> UserAccess:
        """
        Apply column changes to an access row.

        Args:
            access: UserAccess object to modify
            fields: Column name to value mapping

        Returns:
            Updated UserAccess object
        """
        for key, value in fields.items():
            setattr(access, key, value)
        await self.db.flush()
        await self.db.refresh(access)
        return access

    async def update_many_by_customer(self, customer_id: str, fields: Dict[str, Any]) -> int:
        """
        Apply column changes to every row linked to a Stripe customer.

        Returns:
            Number of rows updated
        """
        result = await self.db.execute(
            update(UserAccess)
            .where(UserAccess.stripe_customer_id == customer_id)
            .values(**fields)
        )
        await self.db.flush()
        return result.rowcount or 0

    async def list_by_customer(self, customer_id: str) -> List[UserAccess]:
        result = await self.db.execute(
            select(UserAccess).where(UserAccess.stripe_customer_id == customer_id)
        )
        return list(result.scalars().all())
