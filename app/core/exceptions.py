from fastapi import HTTPException, status
from functools import wraps
from typing import Callable, Optional
from sqlalchemy.exc import InterfaceError, OperationalError


class DatabaseError(HTTPException):
    """Custom exception for database errors"""
    def __init__(self, detail: str = "Database operation failed"):
        super().__init__(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=detail)

class NotFoundError(HTTPException):
    """Custom exception for not found errors"""
    def __init__(self, resource: str = "Resource"):
        super().__init__(status_code=status.HTTP_404_NOT_FOUND, detail=f"{resource} not found")

class ValidationError(HTTPException):
    """Custom exception for validation errors"""
    def __init__(self, detail: str = "Validation failed"):
        super().__init__(status_code=status.HTTP_400_BAD_REQUEST, detail=detail)


class SignatureInvalidError(HTTPException):
    """Webhook payload failed Stripe signature verification"""
    def __init__(self, detail: str = "Invalid webhook signature"):
        super().__init__(status_code=status.HTTP_400_BAD_REQUEST, detail=detail)


class PlanNotConfiguredError(HTTPException):
    """A purchasable plan has no Stripe price id configured"""
    def __init__(self, plan_type: str):
        self.plan_type = plan_type
        super().__init__(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={
                "error": "plan_not_configured",
                "message": f"Price ID not configured for plan: {plan_type}",
                "plan_type": plan_type,
            },
        )


class InvalidPlanChangeError(HTTPException):
    """Checkout requested for a lower tier than the current plan"""
    def __init__(self, current_plan: str, requested_plan: str):
        super().__init__(
            status_code=status.HTTP_409_CONFLICT,
            detail={
                "error": "invalid_plan_change",
                "message": f"Plan '{requested_plan}' is already included in your '{current_plan}' plan",
                "current_plan": current_plan,
                "requested_plan": requested_plan,
            },
        )


class InsufficientCreditsError(HTTPException):
    """Credit balance does not cover the requested operation"""
    def __init__(self, remaining: int, needed: int, plan_type: Optional[str] = None):
        self.remaining = remaining
        self.needed = needed
        super().__init__(
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            detail={
                "error": "Insufficient credits",
                "remaining_tokens": remaining,
                "credits_needed": needed,
                "plan_type": plan_type,
            },
        )


class NoActiveSubscriptionError(HTTPException):
    """User action requires a subscription the user does not have"""
    def __init__(self, current_status: Optional[str] = None):
        self.current_status = current_status
        super().__init__(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={
                "error": "No active subscription found",
                "subscription_status": current_status,
            },
        )


class InvalidCancelStateError(HTTPException):
    """Cancel/reactivate requested from a state that does not allow it"""
    def __init__(self, message: str, current_status: str, cancel_at_period_end: bool):
        super().__init__(
            status_code=status.HTTP_409_CONFLICT,
            detail={
                "error": message,
                "subscription_status": current_status,
                "cancel_at_period_end": cancel_at_period_end,
            },
        )


class ProviderError(HTTPException):
    """A Stripe API call failed; nothing was applied locally"""
    def __init__(self, detail: str = "Payment provider request failed", status_code: int = status.HTTP_502_BAD_GATEWAY):
        super().__init__(status_code=status_code, detail=detail)


class TransientPersistenceError(HTTPException):
    """Database unavailable; the caller (or Stripe) should retry"""
    def __init__(self, detail: str = "Temporary persistence failure, retry later"):
        super().__init__(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=detail)


def handle_database_errors(func: Callable) -> Callable:
    """Decorator mapping connection-level database failures to a retryable 503"""
    @wraps(func)
    async def wrapper(*args, **kwargs):
        try:
            return await func(*args, **kwargs)
        except HTTPException:
            raise
        except (OperationalError, InterfaceError) as e:
            raise TransientPersistenceError(f"Database unavailable: {str(e.orig or e)}")
    return wrapper
