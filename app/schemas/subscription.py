from pydantic import BaseModel
from typing import Optional
from datetime import datetime

from app.schemas.billing import SubscriptionResponse


class CreateCheckoutRequest(BaseModel):
    plan_type: str
    success_url: Optional[str] = None
    cancel_url: Optional[str] = None

class CheckoutResponse(BaseModel):
    success: bool
    url: Optional[str] = None
    session_id: Optional[str] = None
    error: Optional[str] = None

class BillingPortalRequest(BaseModel):
    return_url: Optional[str] = None

class BillingPortalResponse(BaseModel):
    success: bool
    portal_url: Optional[str] = None
    error: Optional[str] = None

class CancelSubscriptionRequest(BaseModel):
    immediate: bool = False

class CancelSubscriptionResponse(BaseModel):
    success: bool
    message: str
    canceled_at: Optional[datetime] = None
    cancel_at_period_end: bool
    current_period_end: Optional[str] = None

class ReactivateSubscriptionResponse(BaseModel):
    success: bool
    message: str
    subscription_id: str
    status: str
    cancel_at_period_end: bool
    current_period_end: Optional[str] = None

class SubscriptionStatusResponse(BaseModel):
    success: bool
    has_active_subscription: bool
    subscription: Optional[SubscriptionResponse] = None

class WebhookResult(BaseModel):
    """Typed outcome of handling one Stripe event"""
    success: bool = True
    action: str
    event_id: Optional[str] = None
    event_type: Optional[str] = None
    message: Optional[str] = None
    user_id: Optional[str] = None
    customer_id: Optional[str] = None
    subscription_id: Optional[str] = None
    plan_type: Optional[str] = None
    status: Optional[str] = None
