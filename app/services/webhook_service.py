import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import TransientPersistenceError
from app.crud.stripe_webhook import StripeWebhookCreate, stripe_webhook_crud
from app.crud.subscription import subscription_crud
from app.models.subscription import SubscriptionStatus
from app.schemas.subscription import WebhookResult
from app.services.credit_ledger import credit_ledger
from app.services.period_normalizer import extract_period, normalize_timestamp, parse_iso
from app.services.plan_catalog import plan_catalog
from app.services.reconciler import state_reconciler
from app.services.stripe_service import stripe_service
from app.utils.utils import get_path, utcnow

logger = logging.getLogger(__name__)

Handler = Callable[[AsyncSession, Dict[str, Any], Optional[datetime]], Awaitable[WebhookResult]]


def _id_of(value: Any) -> Optional[str]:
    """Stripe references arrive either as an id or as an expanded object"""
    if isinstance(value, dict):
        return value.get("id")
    return value or None


def _as_datetime(value: Any) -> Optional[datetime]:
    return parse_iso(normalize_timestamp(value))


class WebhookService:
    """Applies verified Stripe events to local state.

    Each event is handled in one transaction together with its
    ``stripe_webhooks`` row, so an event id is applied at most once. A
    concurrent duplicate loses on the unique event id and is rolled back
    whole; Stripe's redelivery then sees it as already processed.
    """

    def __init__(self):
        self._handlers: Dict[str, Handler] = {
            "checkout.session.completed": self._handle_checkout_completed,
            "customer.subscription.created": self._handle_subscription_changed,
            "customer.subscription.updated": self._handle_subscription_changed,
            "customer.subscription.deleted": self._handle_subscription_deleted,
            "invoice.payment_succeeded": self._handle_invoice_paid,
            "invoice.payment_failed": self._handle_invoice_failed,
        }

    async def process_event(self, db: AsyncSession, event: Dict[str, Any]) -> WebhookResult:
        event_id = event.get("id")
        event_type = event.get("type")

        if event_id and await stripe_webhook_crud.get_by_event_id(db, event_id):
            logger.info(f"Stripe event {event_id} ({event_type}) already processed")
            return WebhookResult(action="duplicate", event_id=event_id, event_type=event_type, message="Event already processed")

        handler = self._handlers.get(event_type)
        if handler is None:
            logger.info(f"Ignoring unhandled Stripe event type {event_type} ({event_id})")
            return WebhookResult(action="ignored", event_id=event_id, event_type=event_type, message="Unhandled event type")

        resource = get_path(event, "data.object", {})
        try:
            result = await handler(db, resource, _as_datetime(event.get("created")))
            result.event_id = event_id
            result.event_type = event_type
            if event_id:
                await stripe_webhook_crud.create(
                    db,
                    obj_in={
                        **StripeWebhookCreate(
                            event_id=event_id,
                            event_type=event_type,
                            stripe_customer_id=result.customer_id,
                            stripe_subscription_id=result.subscription_id,
                            subscription_plan=result.plan_type,
                            subscription_status=result.status,
                            last_webhook_update=result.action,
                        ).model_dump(),
                        "webhook_timestamp": utcnow(),
                    },
                )
            await db.commit()
        except IntegrityError as e:
            await db.rollback()
            logger.warning(f"Conflict while applying Stripe event {event_id}, asking for redelivery: {e.orig}")
            raise TransientPersistenceError("Concurrent update, retry later")
        except Exception:
            await db.rollback()
            raise

        logger.info(f"Processed Stripe event {event_id} ({event_type}): {result.action}")
        return result

    async def _resolve_owner(self, db: AsyncSession, resource: Dict[str, Any]) -> Optional[str]:
        """Owner of a subscription resource, most authoritative source first"""
        metadata = resource.get("metadata") or {}
        user_id = metadata.get("user_id") or metadata.get("supabase_user_id")
        if user_id:
            return user_id

        subscription_id = _id_of(resource.get("id"))
        if subscription_id:
            subscription = await subscription_crud.get_by_stripe_subscription_id(db, subscription_id)
            if subscription:
                return subscription.user_id

        customer_id = _id_of(resource.get("customer"))
        if customer_id:
            subscription = await subscription_crud.get_by_customer_id(db, customer_id)
            if subscription:
                return subscription.user_id
            return await stripe_service.get_user_id_from_customer(customer_id)
        return None

    def _owner_unresolved(self, resource: Dict[str, Any], subscription_id: Optional[str] = None) -> WebhookResult:
        customer_id = _id_of(resource.get("customer"))
        logger.warning(
            f"Dropping Stripe event with no resolvable owner (customer={customer_id}, subscription={subscription_id})"
        )
        return WebhookResult(
            action="owner_unresolved",
            customer_id=customer_id,
            subscription_id=subscription_id,
            message="No local user for this customer",
        )

    def _missing_subscription_id(self, resource: Dict[str, Any]) -> WebhookResult:
        customer_id = _id_of(resource.get("customer"))
        logger.warning(f"Ignoring subscription payload without an id (customer={customer_id})")
        return WebhookResult(action="ignored", customer_id=customer_id, message="Subscription payload has no id")

    async def _reconcile_resource(
        self,
        db: AsyncSession,
        user_id: str,
        resource: Dict[str, Any],
        event_created: Optional[datetime],
        *,
        plan_hint: Optional[str] = None,
        status_override: Optional[str] = None,
    ) -> WebhookResult:
        subscription_id = _id_of(resource.get("id"))
        if not subscription_id:
            return self._missing_subscription_id(resource)
        customer_id = _id_of(resource.get("customer"))
        period = extract_period(resource)
        result = await state_reconciler.reconcile(
            db,
            user_id=user_id,
            customer_id=customer_id,
            subscription_id=subscription_id,
            price_id=get_path(resource, "items.data[0].price.id") or get_path(resource, "plan.id"),
            provider_status=status_override or resource.get("status"),
            period_start=period.start,
            period_end=period.end,
            cancel_at_period_end=resource.get("cancel_at_period_end"),
            plan_hint=plan_hint or get_path(resource, "metadata.plan_type"),
            event_created=event_created,
            canceled_at=_as_datetime(resource.get("canceled_at") or resource.get("ended_at")),
        )
        return WebhookResult(
            action=f"subscription_{result.action}",
            user_id=user_id,
            customer_id=customer_id,
            subscription_id=subscription_id,
            plan_type=result.subscription.plan_type,
            status=result.subscription.status.value,
        )

    async def _handle_checkout_completed(
        self, db: AsyncSession, session: Dict[str, Any], event_created: Optional[datetime]
    ) -> WebhookResult:
        user_id = get_path(session, "metadata.user_id") or session.get("client_reference_id")
        customer_id = _id_of(session.get("customer"))
        subscription_id = _id_of(session.get("subscription"))
        plan_hint = get_path(session, "metadata.plan_type")

        if not user_id:
            return self._owner_unresolved(session, subscription_id)

        one_time = (
            not subscription_id
            or session.get("mode") == "payment"
            or (plan_catalog.is_known(plan_hint) and plan_catalog.definition_of(plan_hint).one_time)
        )
        if one_time:
            return await self._apply_refill(db, user_id, customer_id, plan_hint)

        # The session only references the subscription; fetch the current snapshot
        provider_subscription = await stripe_service.retrieve_subscription(subscription_id)
        # A fresh snapshot is never stale, so no fencing timestamp
        return await self._reconcile_resource(db, user_id, provider_subscription, None, plan_hint=plan_hint)

    async def _apply_refill(
        self, db: AsyncSession, user_id: str, customer_id: Optional[str], plan_hint: Optional[str]
    ) -> WebhookResult:
        """One-time credit pack: adds credits to the current plan instead of replacing it"""
        plan_key = plan_hint if plan_catalog.is_known(plan_hint) else plan_catalog.default_plan
        credits = plan_catalog.credits_for(plan_key)

        current = await subscription_crud.get_current_for_user(db, user_id)
        if current is None or current.status == SubscriptionStatus.CANCELED:
            subscription = await subscription_crud.create(
                db,
                obj_in={
                    "user_id": user_id,
                    "stripe_customer_id": customer_id,
                    "plan_type": plan_key,
                    "status": SubscriptionStatus.ACTIVE,
                    "monthly_token_limit": credits,
                    "tokens_used": 0,
                    "usage_period_start": utcnow(),
                },
            )
            action = "refill_created"
        else:
            subscription = await subscription_crud.get(db, current.id, for_update=True)
            changes: Dict[str, Any] = {}
            if customer_id and subscription.stripe_customer_id != customer_id:
                changes["stripe_customer_id"] = customer_id
            if subscription.stripe_subscription_id is None and subscription.status == SubscriptionStatus.INCOMPLETE:
                # Placeholder left by checkout: the pack becomes the plan
                changes.update(plan_type=plan_key, status=SubscriptionStatus.ACTIVE, usage_period_start=utcnow())
            if changes:
                subscription = await subscription_crud.update(db, db_obj=subscription, obj_in=changes)
            await credit_ledger.grant(db, subscription, credits)
            action = "refill_applied"

        logger.info(f"Credit refill ({plan_key}, {credits} credits) for user {user_id}: {action}")
        return WebhookResult(
            action=action,
            user_id=user_id,
            customer_id=customer_id,
            subscription_id=subscription.stripe_subscription_id,
            plan_type=subscription.plan_type,
            status=subscription.status.value,
        )

    async def _handle_subscription_changed(
        self, db: AsyncSession, resource: Dict[str, Any], event_created: Optional[datetime]
    ) -> WebhookResult:
        if not _id_of(resource.get("id")):
            return self._missing_subscription_id(resource)
        user_id = await self._resolve_owner(db, resource)
        if not user_id:
            return self._owner_unresolved(resource, _id_of(resource.get("id")))
        return await self._reconcile_resource(db, user_id, resource, event_created)

    async def _handle_subscription_deleted(
        self, db: AsyncSession, resource: Dict[str, Any], event_created: Optional[datetime]
    ) -> WebhookResult:
        if not _id_of(resource.get("id")):
            return self._missing_subscription_id(resource)
        user_id = await self._resolve_owner(db, resource)
        if not user_id:
            return self._owner_unresolved(resource, _id_of(resource.get("id")))
        return await self._reconcile_resource(
            db, user_id, resource, event_created, status_override="canceled"
        )

    async def _handle_invoice_paid(
        self, db: AsyncSession, invoice: Dict[str, Any], event_created: Optional[datetime]
    ) -> WebhookResult:
        customer_id = _id_of(invoice.get("customer"))
        subscription_id = _id_of(
            invoice.get("subscription") or get_path(invoice, "parent.subscription_details.subscription")
        )
        if not subscription_id:
            return WebhookResult(action="ignored", customer_id=customer_id, message="Invoice is not for a subscription")

        subscription = await subscription_crud.get_by_stripe_subscription_id(db, subscription_id, for_update=True)
        if subscription is None:
            return self._owner_unresolved(invoice, subscription_id)

        result = WebhookResult(
            action="usage_period_unchanged",
            user_id=subscription.user_id,
            customer_id=customer_id,
            subscription_id=subscription_id,
            plan_type=subscription.plan_type,
            status=subscription.status.value,
        )
        if subscription.status == SubscriptionStatus.CANCELED:
            result.action = "ignored_terminal"
            return result

        period_start = _as_datetime(get_path(invoice, "lines.data[0].period.start"))
        if period_start is None:
            logger.warning(f"Invoice {invoice.get('id')} for {subscription_id} has no line period, skipping rollover")
            return result

        if await credit_ledger.start_usage_period(db, subscription, period_start):
            result.action = "usage_period_reset"
        return result

    async def _handle_invoice_failed(
        self, db: AsyncSession, invoice: Dict[str, Any], event_created: Optional[datetime]
    ) -> WebhookResult:
        # Status moves to past_due through the customer.subscription.updated that follows
        customer_id = _id_of(invoice.get("customer"))
        subscription_id = _id_of(
            invoice.get("subscription") or get_path(invoice, "parent.subscription_details.subscription")
        )
        logger.warning(
            f"Payment failed for customer {customer_id} (subscription {subscription_id}, invoice {invoice.get('id')})"
        )
        return WebhookResult(action="payment_failed", customer_id=customer_id, subscription_id=subscription_id)


# Create singleton instance
webhook_service = WebhookService()
