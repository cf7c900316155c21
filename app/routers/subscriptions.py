from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
import asyncio
import logging

from app.schemas.subscription import (
    CreateCheckoutRequest,
    CheckoutResponse,
    BillingPortalRequest,
    BillingPortalResponse,
    CancelSubscriptionRequest,
    CancelSubscriptionResponse,
    ReactivateSubscriptionResponse,
    SubscriptionStatusResponse,
)
from app.schemas.auth import TokenData
from app.schemas.billing import PlansResponse, SubscriptionResponse
from app.core.auth import get_current_user
from app.core.config import settings
from app.core.database import get_db
from app.core.exceptions import (
    InvalidPlanChangeError,
    NotFoundError,
    PlanNotConfiguredError,
    ProviderError,
    TransientPersistenceError,
    ValidationError,
    handle_database_errors,
)
from app.crud import subscription_crud
from app.models.subscription import SubscriptionStatus
from app.services.plan_catalog import plan_catalog
from app.services.reconciler import state_reconciler
from app.services.stripe_service import stripe_service
from app.services.webhook_service import webhook_service

logger = logging.getLogger(__name__)

router = APIRouter()


async def get_or_create_stripe_customer(db: AsyncSession, current_user: TokenData) -> str:
    """Stripe customer id for the user, creating and storing one when needed"""
    current = await state_reconciler.get_current_subscription(db, current_user.user_id)
    if current and current.stripe_customer_id:
        customer = await stripe_service.retrieve_customer(current.stripe_customer_id)
        if customer:
            return customer["id"]
        logger.warning(
            f"Stored Stripe customer {current.stripe_customer_id} for user {current_user.user_id} "
            f"no longer exists, creating a new one"
        )

    customer = await stripe_service.create_customer(current_user.user_id, current_user.email)
    try:
        await state_reconciler.get_or_create_placeholder(db, current_user.user_id, customer["id"])
        await db.commit()
    except Exception:
        await db.rollback()
        raise
    return customer["id"]


@router.post("/create-checkout", response_model=CheckoutResponse)
@handle_database_errors
async def create_checkout_session(
    checkout_request: CreateCheckoutRequest,
    current_user: TokenData = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    """Create a Stripe checkout session for a plan or a one-time credit pack"""
    plan_type = checkout_request.plan_type
    if not plan_catalog.is_known(plan_type):
        raise ValidationError(f"Unknown plan: {plan_type}")
    plan = plan_catalog.definition_of(plan_type)
    if not plan.price_env:
        raise ValidationError(f"Plan '{plan_type}' cannot be purchased")

    price_id = plan_catalog.external_price_id(plan_type)
    if not price_id:
        logger.error(f"Checkout requested for {plan_type} but {plan.price_env} is not set")
        raise PlanNotConfiguredError(plan_type)

    active = await subscription_crud.get_active_for_user(db, current_user.user_id)
    if active and plan_catalog.is_downgrade(active.plan_type, plan_type):
        raise InvalidPlanChangeError(active.plan_type, plan_type)

    customer_id = await get_or_create_stripe_customer(db, current_user)

    success_url = checkout_request.success_url or (
        f"{settings.frontend_url}/generate?success=true&session_id={{CHECKOUT_SESSION_ID}}"
    )
    cancel_url = checkout_request.cancel_url or f"{settings.frontend_url}/account?canceled=true"

    session = await stripe_service.create_checkout_session(
        customer_id=customer_id,
        price_id=price_id,
        mode="payment" if plan.one_time else "subscription",
        success_url=success_url,
        cancel_url=cancel_url,
        metadata={"user_id": current_user.user_id, "plan_type": plan_type},
    )
    logger.info(f"Checkout session {session.get('id')} created for user {current_user.user_id} ({plan_type})")

    return CheckoutResponse(success=True, url=session.get("url"), session_id=session.get("id"))


@router.post("/billing-portal", response_model=BillingPortalResponse)
@handle_database_errors
async def create_billing_portal_session(
    portal_request: BillingPortalRequest,
    current_user: TokenData = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    """Create a Stripe billing portal session for subscription management"""
    current = await state_reconciler.get_current_subscription(db, current_user.user_id)
    if not current or not current.stripe_customer_id:
        raise NotFoundError("Billing account")

    return_url = portal_request.return_url or f"{settings.frontend_url}/account"
    session = await stripe_service.create_billing_portal_session(
        customer_id=current.stripe_customer_id,
        return_url=return_url
    )

    return BillingPortalResponse(success=True, portal_url=session.get("url"))


@router.post("/cancel", response_model=CancelSubscriptionResponse)
@handle_database_errors
async def cancel_subscription(
    cancel_request: CancelSubscriptionRequest,
    current_user: TokenData = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    """Cancel immediately, or at the end of the current billing period"""
    subscription = await state_reconciler.request_cancel(
        db, current_user.user_id, immediate=cancel_request.immediate
    )

    if cancel_request.immediate:
        message = "Subscription canceled"
    else:
        message = "Subscription will be canceled at the end of the current billing period"

    return CancelSubscriptionResponse(
        success=True,
        message=message,
        canceled_at=subscription.canceled_at,
        cancel_at_period_end=subscription.cancel_at_period_end,
        current_period_end=subscription.current_period_end.isoformat() if subscription.current_period_end else None,
    )


@router.post("/reactivate", response_model=ReactivateSubscriptionResponse)
@handle_database_errors
async def reactivate_subscription(
    current_user: TokenData = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    """Undo a cancellation scheduled for the end of the period"""
    subscription = await state_reconciler.request_reactivate(db, current_user.user_id)

    return ReactivateSubscriptionResponse(
        success=True,
        message="Subscription reactivated",
        subscription_id=subscription.stripe_subscription_id,
        status=subscription.status.value,
        cancel_at_period_end=subscription.cancel_at_period_end,
        current_period_end=subscription.current_period_end.isoformat() if subscription.current_period_end else None,
    )


@router.get("/status", response_model=SubscriptionStatusResponse)
@handle_database_errors
async def get_subscription_status(
    current_user: TokenData = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    """Current user's subscription from the local ledger (kept in sync by webhooks)"""
    current = await state_reconciler.get_current_subscription(db, current_user.user_id)
    return SubscriptionStatusResponse(
        success=True,
        has_active_subscription=bool(current and current.status == SubscriptionStatus.ACTIVE),
        subscription=SubscriptionResponse.model_validate(current) if current else None,
    )


@router.get("/plans", response_model=PlansResponse)
async def get_subscription_plans():
    """Get available subscription plans"""
    return PlansResponse(success=True, plans=plan_catalog.plan_responses())


@router.post("/webhook")
async def stripe_webhook(request: Request, db: AsyncSession = Depends(get_db)):
    """Handle Stripe webhooks.

    The signature is checked against the raw body before anything is parsed.
    Failures map to fixed statuses so Stripe's retry behaviour is predictable:
    400 signature, 503 retryable (timeout, database, Stripe), 500 otherwise.
    """
    payload = await request.body()
    event = stripe_service.construct_event(payload, request.headers.get("stripe-signature"))
    event_id = event.get("id")
    logger.info(f"Received Stripe webhook {event_id} ({event.get('type')}), {len(payload)} bytes")

    try:
        result = await asyncio.wait_for(
            webhook_service.process_event(db, event),
            timeout=settings.webhook_timeout_seconds,
        )
    except asyncio.TimeoutError:
        logger.error(f"Stripe webhook {event_id} exceeded {settings.webhook_timeout_seconds}s, awaiting redelivery")
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"success": False, "event_id": event_id, "error": "Webhook processing timed out"},
        )
    except (TransientPersistenceError, ProviderError) as e:
        logger.error(f"Stripe webhook {event_id} failed, awaiting redelivery: {e.detail}")
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"success": False, "event_id": event_id, "error": str(e.detail)},
        )
    except SQLAlchemyError as e:
        logger.error(f"Database error handling Stripe webhook {event_id}: {e}")
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"success": False, "event_id": event_id, "error": "Database unavailable"},
        )
    except Exception:
        logger.exception(f"Unexpected error handling Stripe webhook {event_id}")
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"success": False, "event_id": event_id, "error": "Internal server error"},
        )

    return JSONResponse(content={"received": True, **result.model_dump(exclude_none=True)})
