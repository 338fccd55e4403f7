"""
FeatureUsageRepository for per-day feature counters
"""

from datetime import date
from typing import Optional
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
from database_models import FeatureUsage


class FeatureUsageRepository:
    """
    Repository class for FeatureUsage database operations.
    Rows are unique on (user_id, feature, day).
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, user_id: str, feature: str, day: date) -> Optional[FeatureUsage]:
        result = await self.db.execute(
            select(FeatureUsage).where(
                FeatureUsage.user_id == user_id,
                FeatureUsage.feature == feature,
                FeatureUsage.day == day,
            )
        )
        return result.scalar_one_or_none()

    async def get_count(self, user_id: str, feature: str, day: date) -> int:
        """
        Read today's counter.

        Args:
            user_id: External user ID
            feature: Feature key (e.g. "cimAnalyzer")
            day: UTC day

        Returns:
            Count for the day, 0 when no row exists
        """
        row = await self.get(user_id, feature, day)
        return row.count if row else 0

    async def ensure_row(self, user_id: str, feature: str, day: date) -> FeatureUsage:
        """Insert a zero counter if the day has no row yet."""
        row = await self.get(user_id, feature, day)
        if row:
            return row
        row = FeatureUsage(user_id=user_id, feature=feature, day=day, count=0)
        self.db.add(row)
        await self.db.flush()
        return row

    async def increment(self, user_id: str, feature: str, day: date) -> int:
        """
        Add one use to the day's counter, creating the row when missing.

        Returns:
            The new count
        """
        row = await self.ensure_row(user_id, feature, day)
        row.count = (row.count or 0) + 1
        await self.db.flush()
        return row.count
