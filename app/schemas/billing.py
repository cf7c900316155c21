from pydantic import BaseModel, Field, ConfigDict
from typing import Optional, List
from datetime import datetime
from uuid import UUID
from enum import Enum

# Enums
class SubscriptionStatusEnum(str, Enum):
    INCOMPLETE = "incomplete"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"

class OperationKindEnum(str, Enum):
    GENERATION = "generation"
    IMPROVEMENT = "improvement"

class BillingIntervalEnum(str, Enum):
    MONTH = "month"
    YEAR = "year"
    NONE = "none"

# Plan catalog
class PlanDefinition(BaseModel):
    """Static plan metadata loaded from the plan catalog file"""
    model_config = ConfigDict(frozen=True)

    key: str
    name: str
    price: float = Field(..., description="Price in USD per interval (or once for one-time packs)")
    credits: int = Field(..., description="Credits granted per billing period / per purchase")
    interval: BillingIntervalEnum = BillingIntervalEnum.MONTH
    priority: int = Field(0, description="Tier rank, higher = more capable")
    one_time: bool = False
    price_env: Optional[str] = Field(None, description="Environment variable holding the Stripe price id")
    legacy: bool = False
    features: List[str] = Field(default_factory=list)

class PlanCatalogFile(BaseModel):
    default_plan: str
    plans: List[PlanDefinition]

class PlanResponse(BaseModel):
    key: str
    name: str
    price: float
    credits: int
    interval: BillingIntervalEnum
    one_time: bool
    features: List[str] = []
    configured: bool = Field(..., description="Whether a Stripe price id is configured")

class PlansResponse(BaseModel):
    success: bool
    plans: List[PlanResponse]

# Subscription Schemas
class SubscriptionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    user_id: str
    stripe_customer_id: Optional[str] = None
    stripe_subscription_id: Optional[str] = None
    plan_type: str
    status: SubscriptionStatusEnum
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    canceled_at: Optional[datetime] = None
    monthly_token_limit: int
    tokens_used: int
    tokens_remaining: int
    created_at: datetime
    updated_at: datetime

# Usage Record Schemas
class UsageRecordResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    user_id: str
    subscription_id: UUID
    amount: int
    operation_kind: OperationKindEnum
    balance_after: int
    created_at: datetime

# Request/Response Schemas for API endpoints
class DeductCreditRequest(BaseModel):
    operation_kind: OperationKindEnum = Field(..., description="generation or improvement; cost is fixed server-side")

class DeductCreditResponse(BaseModel):
    success: bool
    remaining_tokens: int
    credits_deducted: int
    usage_id: UUID
    message: str

class CreditBalanceResponse(BaseModel):
    success: bool
    plan_type: Optional[str] = None
    subscription_status: Optional[SubscriptionStatusEnum] = None
    monthly_token_limit: int = 0
    tokens_used: int = 0
    tokens_remaining: int = 0
    usage_percentage: float = 0.0
    current_period_end: Optional[datetime] = None

class GetUsageHistoryResponse(BaseModel):
    success: bool
    usage_records: List[UsageRecordResponse]
    total_count: int
    total_credits: int
