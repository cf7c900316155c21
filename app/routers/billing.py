from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.schemas.auth import TokenData
from app.schemas.billing import (
    CreditBalanceResponse,
    DeductCreditRequest,
    DeductCreditResponse,
    GetUsageHistoryResponse,
    PlansResponse,
    UsageRecordResponse,
)
from app.core.auth import get_current_user
from app.core.database import get_db
from app.core.exceptions import handle_database_errors
from app.services.credit_ledger import credit_ledger
from app.services.plan_catalog import plan_catalog

router = APIRouter()


@router.post("/deduct", response_model=DeductCreditResponse)
@handle_database_errors
async def deduct_credit(
    request: DeductCreditRequest,
    current_user: TokenData = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    """
    Charge the fixed credit cost of an operation before it runs.
    Responds 402 with the true remaining balance when it does not cover the cost.
    """
    result = await credit_ledger.deduct(db, current_user.user_id, request.operation_kind.value)
    return DeductCreditResponse(
        success=True,
        remaining_tokens=result.remaining,
        credits_deducted=result.credits_deducted,
        usage_id=result.usage_id,
        message=f"Deducted {result.credits_deducted} credit(s)",
    )


@router.get("/credits", response_model=CreditBalanceResponse)
@handle_database_errors
async def get_credits(
    current_user: TokenData = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    """Credit summary for the user's active subscription"""
    balance = await credit_ledger.get_balance(db, current_user.user_id)
    return CreditBalanceResponse(
        success=True,
        plan_type=balance.plan_type,
        subscription_status=balance.status.value if balance.status else None,
        monthly_token_limit=balance.monthly_token_limit,
        tokens_used=balance.tokens_used,
        tokens_remaining=balance.remaining,
        usage_percentage=balance.usage_percentage,
        current_period_end=balance.current_period_end,
    )


@router.get("/usage-history", response_model=GetUsageHistoryResponse)
@handle_database_errors
async def get_usage_history(
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=500),
    current_user: TokenData = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    """Paginated credit deductions, newest first"""
    records, total, total_credits = await credit_ledger.get_usage_history(
        db, current_user.user_id, skip=skip, limit=limit
    )
    return GetUsageHistoryResponse(
        success=True,
        usage_records=[UsageRecordResponse.model_validate(record) for record in records],
        total_count=total,
        total_credits=total_credits,
    )


@router.get("/plans", response_model=PlansResponse)
async def get_plans(include_legacy: bool = False):
    """Plan catalog, including legacy plans on request"""
    return PlansResponse(success=True, plans=plan_catalog.plan_responses(include_legacy=include_legacy))
