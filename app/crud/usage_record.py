from typing import List, Tuple
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func, desc

from app.crud.base import CRUDBase
from app.models.usage_record import UsageRecord


class CRUDUsageRecord(CRUDBase[UsageRecord, BaseModel, BaseModel]):
    async def get_by_user_id(
        self,
        db: AsyncSession,
        user_id: str,
        skip: int = 0,
        limit: int = 100
    ) -> Tuple[List[UsageRecord], int]:
        """Usage records for a user, newest first"""
        query = select(self.model).where(self.model.user_id == user_id).order_by(desc(self.model.created_at))

        # Get total count
        count_query = select(func.count()).select_from(query.subquery())
        total_result = await db.execute(count_query)
        total = total_result.scalar()

        # Apply pagination
        result = await db.execute(query.offset(skip).limit(limit))
        items = result.scalars().all()

        return items, total

    async def get_total_credits(self, db: AsyncSession, user_id: str) -> int:
        """Credits deducted across all of a user's records"""
        result = await db.execute(
            select(func.sum(self.model.amount)).where(self.model.user_id == user_id)
        )
        return result.scalar() or 0


usage_record_crud = CRUDUsageRecord(UsageRecord)
