"""
DealRepository for database operations on saved deals
"""

from typing import Any, List, Optional
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, delete
from database_models import Deal


class DealRepository:
    """
    Repository class for Deal database operations.
    Every query is scoped to the owning user.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def create(self, user_id: str, year: int, title: Optional[str], payload: Any) -> Deal:
        """
        Store a new deal snapshot.

        Args:
            user_id: Owner's external user ID
            year: Benchmark year the deal was evaluated against
            title: Display title (may be None)
            payload: Full client payload, stored as JSON

        Returns:
            Created Deal object
        """
        deal = Deal(user_id=user_id, year=year, title=title, payload=payload)
        self.db.add(deal)
        await self.db.flush()
        await self.db.refresh(deal)
        return deal

    async def list_for_user(self, user_id: str) -> List[Deal]:
        """
        List a user's deals, newest first.

        Args:
            user_id: Owner's external user ID

        Returns:
            List of Deal objects
        """
        result = await self.db.execute(
            select(Deal)
            .where(Deal.user_id == user_id)
            .order_by(Deal.created_at.desc())
        )
        return list(result.scalars().all())

    async def delete_for_user(self, user_id: str, deal_id: str) -> int:
        """
        Delete one deal if it belongs to the user.

        Returns:
            Number of rows deleted (0 when the deal is missing or foreign)
        """
        result = await self.db.execute(
            delete(Deal).where(Deal.id == deal_id, Deal.user_id == user_id)
        )
        await self.db.flush()
        return result.rowcount or 0
