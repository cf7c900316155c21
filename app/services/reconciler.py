import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import InvalidCancelStateError, NoActiveSubscriptionError
from app.crud.subscription import subscription_crud
from app.models.subscription import Subscription, SubscriptionStatus
from app.services.period_normalizer import extract_period, parse_iso
from app.services.plan_catalog import plan_catalog
from app.services.stripe_service import stripe_service
from app.utils.utils import utcnow

logger = logging.getLogger(__name__)

# Stripe subscription status -> local state
PROVIDER_STATUS_MAP = {
    "active": SubscriptionStatus.ACTIVE,
    "trialing": SubscriptionStatus.ACTIVE,
    "past_due": SubscriptionStatus.PAST_DUE,
    "unpaid": SubscriptionStatus.PAST_DUE,
    "paused": SubscriptionStatus.PAST_DUE,
    "canceled": SubscriptionStatus.CANCELED,
    "incomplete_expired": SubscriptionStatus.CANCELED,
    "incomplete": SubscriptionStatus.INCOMPLETE,
}

# Plan given to rows created before any purchase completes
PLACEHOLDER_PLAN = "free"


def map_provider_status(provider_status: Optional[str]) -> Optional[SubscriptionStatus]:
    """Local state for a Stripe status, or None when missing or unrecognised"""
    if not provider_status:
        return None
    return PROVIDER_STATUS_MAP.get(str(provider_status).lower())


def next_status(
    current: Optional[SubscriptionStatus], reported: Optional[SubscriptionStatus]
) -> Optional[SubscriptionStatus]:
    """Status to store given the current one and the provider's report.

    Returns the current status when the report is unknown or would move a row
    back to incomplete once it has left it.
    """
    if current is None:
        return reported or SubscriptionStatus.INCOMPLETE
    if reported is None:
        return current
    if reported == SubscriptionStatus.INCOMPLETE and current != SubscriptionStatus.INCOMPLETE:
        return current
    return reported


@dataclass
class ReconcileResult:
    # created | updated | unchanged | ignored_terminal | ignored_stale
    action: str
    subscription: Subscription
    changed_fields: List[str] = field(default_factory=list)


class StateReconciler:
    """Maps Stripe subscription snapshots onto local subscription rows.

    ``reconcile`` only flushes; the caller commits, so the state change and
    the processed-event record share one transaction. The user actions
    (cancel/reactivate) own their transaction and always call Stripe first.
    """

    async def reconcile(
        self,
        db: AsyncSession,
        *,
        user_id: str,
        customer_id: Optional[str],
        subscription_id: str,
        price_id: Optional[str],
        provider_status: Optional[str],
        period_start: Optional[str] = None,
        period_end: Optional[str] = None,
        cancel_at_period_end: Optional[bool] = None,
        plan_hint: Optional[str] = None,
        event_created: Optional[datetime] = None,
        canceled_at: Optional[datetime] = None,
    ) -> ReconcileResult:
        reported = map_provider_status(provider_status)
        if reported is None:
            logger.warning(f"Unrecognised Stripe status {provider_status!r} for subscription {subscription_id}")
        start = parse_iso(period_start)
        end = parse_iso(period_end)

        subscription = await subscription_crud.get_by_stripe_subscription_id(
            db, subscription_id, for_update=True
        )
        changes: Dict[str, Any] = {}
        if subscription is None:
            # Only a checkout placeholder may take on a new Stripe subscription,
            # and never one that is already over
            if reported != SubscriptionStatus.CANCELED:
                subscription = await subscription_crud.get_checkout_placeholder_for_user(
                    db, user_id, PLACEHOLDER_PLAN, for_update=True
                )
            if subscription is not None:
                logger.info(f"Binding Stripe subscription {subscription_id} to existing row {subscription.id}")
                changes["stripe_subscription_id"] = subscription_id
            else:
                new_status = next_status(None, reported)
                plan_key = plan_catalog.resolve_plan_key(price_id, plan_hint)
                subscription = await subscription_crud.create(
                    db,
                    obj_in={
                        "user_id": user_id,
                        "stripe_customer_id": customer_id,
                        "stripe_subscription_id": subscription_id,
                        "plan_type": plan_key,
                        "status": new_status,
                        "monthly_token_limit": plan_catalog.credits_for(plan_key),
                        "tokens_used": 0,
                        "current_period_start": start,
                        "current_period_end": end,
                        "cancel_at_period_end": bool(cancel_at_period_end) and new_status != SubscriptionStatus.CANCELED,
                        "canceled_at": (canceled_at or utcnow()) if new_status == SubscriptionStatus.CANCELED else None,
                        "usage_period_start": start,
                        "last_event_at": event_created,
                    },
                )
                logger.info(
                    f"Created subscription {subscription.id} for user {user_id}: "
                    f"{plan_key} ({new_status.value}) from {subscription_id}"
                )
                return ReconcileResult(action="created", subscription=subscription)
        elif subscription.user_id != user_id:
            logger.warning(
                f"Stripe subscription {subscription_id} belongs to user {subscription.user_id}, "
                f"ignoring owner {user_id} from event"
            )

        # Canceled is terminal for a given Stripe subscription id
        if subscription.status == SubscriptionStatus.CANCELED and reported != SubscriptionStatus.CANCELED:
            logger.info(
                f"Ignoring {provider_status} snapshot for canceled subscription {subscription_id}"
            )
            return ReconcileResult(action="ignored_terminal", subscription=subscription)

        if (
            event_created is not None
            and subscription.last_event_at is not None
            and event_created < subscription.last_event_at
            and reported != SubscriptionStatus.CANCELED
        ):
            logger.info(
                f"Ignoring stale event for subscription {subscription_id}: "
                f"created {event_created.isoformat()} before {subscription.last_event_at.isoformat()}"
            )
            return ReconcileResult(action="ignored_stale", subscription=subscription)

        if price_id or plan_hint:
            plan_key = plan_catalog.resolve_plan_key(price_id, plan_hint)
        else:
            # No price information at all: keep what we know
            plan_key = subscription.plan_type
        if subscription.plan_type != plan_key:
            changes["plan_type"] = plan_key
            changes["monthly_token_limit"] = plan_catalog.credits_for(plan_key)

        new_status = next_status(subscription.status, reported)
        if reported is not None and new_status != reported:
            logger.warning(
                f"Keeping {subscription.status.value} for subscription {subscription_id}, "
                f"not moving back to {reported.value}"
            )
        if subscription.status != new_status:
            changes["status"] = new_status

        if customer_id and subscription.stripe_customer_id != customer_id:
            changes["stripe_customer_id"] = customer_id
        if start is not None and subscription.current_period_start != start:
            changes["current_period_start"] = start
        if end is not None and subscription.current_period_end != end:
            changes["current_period_end"] = end
        if start is not None and subscription.usage_period_start is None:
            changes["usage_period_start"] = start

        if new_status == SubscriptionStatus.CANCELED:
            if subscription.canceled_at is None:
                changes["canceled_at"] = canceled_at or utcnow()
            if subscription.cancel_at_period_end:
                changes["cancel_at_period_end"] = False
        elif cancel_at_period_end is not None and subscription.cancel_at_period_end != bool(cancel_at_period_end):
            changes["cancel_at_period_end"] = bool(cancel_at_period_end)

        if event_created is not None and (
            subscription.last_event_at is None or event_created > subscription.last_event_at
        ):
            changes["last_event_at"] = event_created

        if not changes:
            return ReconcileResult(action="unchanged", subscription=subscription)

        subscription = await subscription_crud.update(db, db_obj=subscription, obj_in=changes)
        logger.info(
            f"Reconciled subscription {subscription.id} ({subscription_id}): {', '.join(sorted(changes))}"
        )
        return ReconcileResult(action="updated", subscription=subscription, changed_fields=sorted(changes))

    async def get_current_subscription(self, db: AsyncSession, user_id: str) -> Optional[Subscription]:
        return await subscription_crud.get_current_for_user(db, user_id)

    async def get_or_create_placeholder(self, db: AsyncSession, user_id: str, customer_id: str) -> Subscription:
        """Row that carries the Stripe customer until a purchase completes"""
        placeholder = await subscription_crud.get_placeholder_for_user(db, user_id, for_update=True)
        if placeholder is not None:
            if placeholder.stripe_customer_id != customer_id:
                placeholder = await subscription_crud.update(
                    db, db_obj=placeholder, obj_in={"stripe_customer_id": customer_id}
                )
            return placeholder
        placeholder = await subscription_crud.create(
            db,
            obj_in={
                "user_id": user_id,
                "stripe_customer_id": customer_id,
                "plan_type": PLACEHOLDER_PLAN,
                "status": SubscriptionStatus.INCOMPLETE,
                "monthly_token_limit": 0,
                "tokens_used": 0,
            },
        )
        logger.info(f"Created placeholder subscription {placeholder.id} for user {user_id}")
        return placeholder

    async def _get_cancelable(self, db: AsyncSession, user_id: str) -> Subscription:
        subscription = await subscription_crud.get_active_for_user(db, user_id)
        if subscription is None:
            current = await subscription_crud.get_current_for_user(db, user_id)
            raise NoActiveSubscriptionError(current.status.value if current else None)
        if not subscription.stripe_subscription_id:
            raise InvalidCancelStateError(
                "One-time credit packs do not renew and cannot be canceled",
                subscription.status.value,
                subscription.cancel_at_period_end,
            )
        return subscription

    async def request_cancel(self, db: AsyncSession, user_id: str, immediate: bool = False) -> Subscription:
        """Cancel now, or at the end of the current period.

        Stripe is called first; a provider failure raises before any local write.
        """
        subscription = await self._get_cancelable(db, user_id)
        if not immediate and subscription.cancel_at_period_end:
            raise InvalidCancelStateError(
                "Subscription is already scheduled to cancel",
                subscription.status.value,
                subscription.cancel_at_period_end,
            )
        stripe_subscription_id = subscription.stripe_subscription_id

        if immediate:
            provider_subscription = await stripe_service.cancel_subscription(stripe_subscription_id)
        else:
            provider_subscription = await stripe_service.set_cancel_at_period_end(stripe_subscription_id, True)

        # End the read transaction so the locked re-read sees current data
        await db.rollback()
        try:
            subscription = await subscription_crud.get_by_stripe_subscription_id(
                db, stripe_subscription_id, for_update=True
            )
            if subscription.status == SubscriptionStatus.CANCELED:
                await db.commit()
                return subscription

            changes: Dict[str, Any] = {}
            period_end = parse_iso(extract_period(provider_subscription).end)
            if period_end is not None and subscription.current_period_end != period_end:
                changes["current_period_end"] = period_end
            if immediate:
                changes.update(
                    status=SubscriptionStatus.CANCELED,
                    canceled_at=utcnow(),
                    cancel_at_period_end=False,
                )
            else:
                changes["cancel_at_period_end"] = True
            subscription = await subscription_crud.update(db, db_obj=subscription, obj_in=changes)
            await db.commit()
        except Exception:
            await db.rollback()
            raise

        logger.info(
            f"Subscription {stripe_subscription_id} for user {user_id} "
            f"{'canceled' if immediate else 'set to cancel at period end'}"
        )
        return subscription

    async def request_reactivate(self, db: AsyncSession, user_id: str) -> Subscription:
        """Undo a scheduled cancellation"""
        subscription = await self._get_cancelable(db, user_id)
        if not subscription.cancel_at_period_end:
            raise InvalidCancelStateError(
                "Subscription is not scheduled for cancellation",
                subscription.status.value,
                subscription.cancel_at_period_end,
            )
        stripe_subscription_id = subscription.stripe_subscription_id

        provider_subscription = await stripe_service.set_cancel_at_period_end(stripe_subscription_id, False)

        await db.rollback()
        try:
            subscription = await subscription_crud.get_by_stripe_subscription_id(
                db, stripe_subscription_id, for_update=True
            )
            if subscription.status == SubscriptionStatus.CANCELED:
                await db.commit()
                return subscription

            changes: Dict[str, Any] = {"cancel_at_period_end": False}
            period_end = parse_iso(extract_period(provider_subscription).end)
            if period_end is not None and subscription.current_period_end != period_end:
                changes["current_period_end"] = period_end
            subscription = await subscription_crud.update(db, db_obj=subscription, obj_in=changes)
            await db.commit()
        except Exception:
            await db.rollback()
            raise

        logger.info(f"Subscription {stripe_subscription_id} for user {user_id} reactivated")
        return subscription


# Create singleton instance
state_reconciler = StateReconciler()
