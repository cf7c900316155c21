from datetime import datetime
from typing import Any, Optional
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, and_, update, case
from sqlalchemy.engine import Row

from app.crud.base import CRUDBase
from app.models.subscription import Subscription, SubscriptionStatus
from app.utils.utils import utcnow


class CRUDSubscription(CRUDBase[Subscription, BaseModel, BaseModel]):
    async def get_by_stripe_subscription_id(
        self,
        db: AsyncSession,
        stripe_subscription_id: str,
        *,
        for_update: bool = False
    ) -> Optional[Subscription]:
        """Get the row tracking a Stripe subscription, optionally row-locked"""
        if not stripe_subscription_id:
            return None
        query = select(self.model).where(self.model.stripe_subscription_id == stripe_subscription_id)
        if for_update:
            query = query.with_for_update()
        result = await db.execute(query)
        return result.scalar_one_or_none()

    async def get_by_customer_id(self, db: AsyncSession, stripe_customer_id: str) -> Optional[Subscription]:
        """Newest row for a Stripe customer"""
        result = await db.execute(
            select(self.model)
            .where(self.model.stripe_customer_id == stripe_customer_id)
            .order_by(self.model.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def get_current_for_user(self, db: AsyncSession, user_id: str) -> Optional[Subscription]:
        """The user's current subscription: newest non-canceled row, else newest row"""
        result = await db.execute(
            select(self.model)
            .where(self.model.user_id == user_id)
            .order_by(
                case((self.model.status == SubscriptionStatus.CANCELED, 1), else_=0),
                self.model.created_at.desc(),
            )
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def get_active_for_user(self, db: AsyncSession, user_id: str) -> Optional[Subscription]:
        """Newest active row for a user"""
        result = await db.execute(
            select(self.model)
            .where(
                and_(
                    self.model.user_id == user_id,
                    self.model.status == SubscriptionStatus.ACTIVE,
                )
            )
            .order_by(self.model.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def get_placeholder_for_user(
        self,
        db: AsyncSession,
        user_id: str,
        *,
        for_update: bool = False
    ) -> Optional[Subscription]:
        """Newest non-canceled row not yet bound to a Stripe subscription"""
        query = (
            select(self.model)
            .where(
                and_(
                    self.model.user_id == user_id,
                    self.model.stripe_subscription_id.is_(None),
                    self.model.status != SubscriptionStatus.CANCELED,
                )
            )
            .order_by(self.model.created_at.desc())
            .limit(1)
        )
        if for_update:
            query = query.with_for_update()
        result = await db.execute(query)
        return result.scalar_one_or_none()

    async def get_checkout_placeholder_for_user(
        self,
        db: AsyncSession,
        user_id: str,
        placeholder_plan: str,
        *,
        for_update: bool = False
    ) -> Optional[Subscription]:
        """Newest row left by checkout that no purchase has completed yet"""
        query = (
            select(self.model)
            .where(
                and_(
                    self.model.user_id == user_id,
                    self.model.stripe_subscription_id.is_(None),
                    self.model.status == SubscriptionStatus.INCOMPLETE,
                    self.model.plan_type == placeholder_plan,
                )
            )
            .order_by(self.model.created_at.desc())
            .limit(1)
        )
        if for_update:
            query = query.with_for_update()
        result = await db.execute(query)
        return result.scalar_one_or_none()

    def _active_id_for_user(self, user_id: str) -> Any:
        return (
            select(self.model.id)
            .where(
                and_(
                    self.model.user_id == user_id,
                    self.model.status == SubscriptionStatus.ACTIVE,
                )
            )
            .order_by(self.model.created_at.desc())
            .limit(1)
            .scalar_subquery()
        )

    async def consume_credits(self, db: AsyncSession, user_id: str, cost: int) -> Optional[Row]:
        """Check-and-decrement in a single UPDATE.

        The balance condition lives in the WHERE clause, so concurrent callers
        serialize on the row and a caller that would overdraw matches nothing.
        Returns (id, monthly_token_limit, tokens_used, plan_type) or None.
        """
        result = await db.execute(
            update(self.model)
            .where(
                and_(
                    self.model.id == self._active_id_for_user(user_id),
                    self.model.status == SubscriptionStatus.ACTIVE,
                    self.model.monthly_token_limit - self.model.tokens_used >= cost,
                )
            )
            .values(tokens_used=self.model.tokens_used + cost, updated_at=utcnow())
            .returning(
                self.model.id,
                self.model.monthly_token_limit,
                self.model.tokens_used,
                self.model.plan_type,
            )
            .execution_options(synchronize_session=False)
        )
        return result.one_or_none()

    async def add_credits(self, db: AsyncSession, subscription_id: Any, credits: int) -> Optional[int]:
        """Atomically raise the credit limit; returns the new limit"""
        result = await db.execute(
            update(self.model)
            .where(self.model.id == subscription_id)
            .values(monthly_token_limit=self.model.monthly_token_limit + credits, updated_at=utcnow())
            .returning(self.model.monthly_token_limit)
            .execution_options(synchronize_session=False)
        )
        return result.scalar_one_or_none()

    async def reset_usage_period(self, db: AsyncSession, subscription_id: Any, period_start: datetime) -> bool:
        """Zero the consumed counter when a strictly later usage period begins"""
        result = await db.execute(
            update(self.model)
            .where(
                and_(
                    self.model.id == subscription_id,
                    self.model.usage_period_start.is_not(None),
                    self.model.usage_period_start < period_start,
                )
            )
            .values(tokens_used=0, usage_period_start=period_start, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount > 0

    async def set_usage_period_if_unknown(self, db: AsyncSession, subscription_id: Any, period_start: datetime) -> bool:
        result = await db.execute(
            update(self.model)
            .where(
                and_(
                    self.model.id == subscription_id,
                    self.model.usage_period_start.is_(None),
                )
            )
            .values(usage_period_start=period_start)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount > 0


subscription_crud = CRUDSubscription(Subscription)
