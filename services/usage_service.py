"""
Usage Service - per-user daily feature counters
"""
import logging
from datetime import date, datetime, time, timedelta, timezone
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from crud.usage import FeatureUsageRepository

logger = logging.getLogger(__name__)


def start_of_day_utc(now: Optional[datetime] = None) -> date:
    now = now or datetime.now(timezone.utc)
    return now.astimezone(timezone.utc).date()


def resets_at_utc(now: Optional[datetime] = None) -> str:
    """ISO timestamp of the next UTC midnight, when daily counters roll over."""
    day = start_of_day_utc(now)
    midnight = datetime.combine(day + timedelta(days=1), time.min, tzinfo=timezone.utc)
    return midnight.isoformat().replace("+00:00", "Z")


class UsageService:
    """Reads and bumps the FeatureUsage counters for the current UTC day."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.repo = FeatureUsageRepository(db)

    async def used_today(self, user_id: str, feature: str, now: Optional[datetime] = None) -> int:
        return await self.repo.get_count(user_id, feature, start_of_day_utc(now))

    async def ensure_today(self, user_id: str, feature: str, now: Optional[datetime] = None) -> int:
        """Create today's row if missing and return its count."""
        row = await self.repo.ensure_row(user_id, feature, start_of_day_utc(now))
        return row.count

    async def increment(self, user_id: str, feature: str, now: Optional[datetime] = None) -> int:
        """
        Record one use of ``feature`` for today.

        Args:
            user_id: External user ID
            feature: Feature key
            now: Clock override for tests

        Returns:
            Updated count for the day
        """
        count = await self.repo.increment(user_id, feature, start_of_day_utc(now))
        logger.info(f"Usage recorded: user={user_id} feature={feature} count={count}")
        return count
