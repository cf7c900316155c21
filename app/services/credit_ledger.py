import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Tuple, Union
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import InsufficientCreditsError, ValidationError
from app.crud.subscription import subscription_crud
from app.crud.usage_record import usage_record_crud
from app.models.subscription import Subscription, SubscriptionStatus
from app.models.usage_record import OperationKind, UsageRecord

logger = logging.getLogger(__name__)

# Credits charged per operation. Fixed server-side, never taken from the client.
CREDIT_COSTS = {
    OperationKind.GENERATION: 1,
    OperationKind.IMPROVEMENT: 3,
}


@dataclass
class DeductionResult:
    remaining: int
    credits_deducted: int
    usage_id: UUID
    subscription_id: UUID


@dataclass
class CreditBalance:
    remaining: int = 0
    monthly_token_limit: int = 0
    tokens_used: int = 0
    plan_type: Optional[str] = None
    status: Optional[SubscriptionStatus] = None
    current_period_end: Optional[datetime] = None

    @property
    def usage_percentage(self) -> float:
        if self.monthly_token_limit <= 0:
            return 0.0
        return round(self.tokens_used / self.monthly_token_limit * 100, 2)


class CreditLedger:
    """Owns every write to a subscription's credit balance.

    The balance is ``monthly_token_limit - tokens_used`` on the user's active
    subscription row. Deductions are a single conditional UPDATE plus the
    audit insert in the same transaction; nothing reads the balance first.
    """

    @staticmethod
    def cost_of(operation_kind: Union[OperationKind, str]) -> int:
        try:
            return CREDIT_COSTS[OperationKind(operation_kind)]
        except ValueError:
            raise ValidationError(f"Unknown operation kind: {operation_kind}")

    async def deduct(
        self,
        db: AsyncSession,
        user_id: str,
        operation_kind: Union[OperationKind, str]
    ) -> DeductionResult:
        """Charge the fixed cost of an operation or raise InsufficientCreditsError"""
        kind = OperationKind(operation_kind) if isinstance(operation_kind, str) else operation_kind
        cost = self.cost_of(kind)

        row = await subscription_crud.consume_credits(db, user_id, cost)
        if row is None:
            await db.rollback()
            balance = await self.get_balance(db, user_id)
            logger.info(
                f"Insufficient credits for user {user_id}: needed {cost}, remaining {balance.remaining}"
            )
            raise InsufficientCreditsError(balance.remaining, cost, balance.plan_type)

        remaining = max(0, row.monthly_token_limit - row.tokens_used)
        try:
            record = await usage_record_crud.create(
                db,
                obj_in={
                    "user_id": user_id,
                    "subscription_id": row.id,
                    "amount": cost,
                    "operation_kind": kind,
                    "balance_after": remaining,
                },
            )
            await db.commit()
        except Exception:
            await db.rollback()
            raise

        logger.info(f"Deducted {cost} credit(s) from user {user_id} ({kind.value}), {remaining} remaining")
        return DeductionResult(
            remaining=remaining,
            credits_deducted=cost,
            usage_id=record.id,
            subscription_id=row.id,
        )

    async def grant(self, db: AsyncSession, subscription: Subscription, credits: int) -> int:
        """Add refill credits to a subscription; joins the caller's transaction"""
        new_limit = await subscription_crud.add_credits(db, subscription.id, credits)
        await db.refresh(subscription)
        logger.info(f"Granted {credits} credits to subscription {subscription.id}, limit now {new_limit}")
        return new_limit

    async def start_usage_period(self, db: AsyncSession, subscription: Subscription, period_start: datetime) -> bool:
        """Roll the consumed counter over to a new billing period.

        Only a strictly later period resets usage, so redelivered or
        out-of-order invoices are no-ops. Returns True when a reset happened.
        """
        reset = await subscription_crud.reset_usage_period(db, subscription.id, period_start)
        if not reset:
            await subscription_crud.set_usage_period_if_unknown(db, subscription.id, period_start)
        await db.refresh(subscription)
        if reset:
            logger.info(f"Usage period rolled over for subscription {subscription.id} at {period_start.isoformat()}")
        return reset

    async def get_balance(self, db: AsyncSession, user_id: str) -> CreditBalance:
        subscription = await subscription_crud.get_active_for_user(db, user_id)
        if subscription is None:
            current = await subscription_crud.get_current_for_user(db, user_id)
            return CreditBalance(
                plan_type=current.plan_type if current else None,
                status=current.status if current else None,
            )
        return CreditBalance(
            remaining=subscription.tokens_remaining,
            monthly_token_limit=subscription.monthly_token_limit,
            tokens_used=subscription.tokens_used,
            plan_type=subscription.plan_type,
            status=subscription.status,
            current_period_end=subscription.current_period_end,
        )

    async def get_usage_history(
        self,
        db: AsyncSession,
        user_id: str,
        skip: int = 0,
        limit: int = 100
    ) -> Tuple[List[UsageRecord], int, int]:
        records, total = await usage_record_crud.get_by_user_id(db, user_id, skip=skip, limit=limit)
        total_credits = await usage_record_crud.get_total_credits(db, user_id)
        return records, total, total_credits


# Create singleton instance
credit_ledger = CreditLedger()
