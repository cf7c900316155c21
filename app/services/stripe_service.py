import asyncio
import json
import logging
from functools import partial
from typing import Any, Callable, Dict, Optional

import stripe
from fastapi import status

from app.core.config import settings
from app.core.exceptions import ProviderError, SignatureInvalidError

logger = logging.getLogger(__name__)


def _to_plain(obj: Any) -> Dict[str, Any]:
    """StripeObject -> plain nested dict"""
    if obj is None:
        return {}
    if isinstance(obj, dict) and not isinstance(obj, stripe.StripeObject):
        return obj
    return json.loads(str(obj))


class StripeService:
    """Thin async wrapper over the synchronous Stripe SDK.

    Every call runs in a worker thread under ``stripe_timeout_seconds`` and
    either returns plain dicts or raises ProviderError, so callers never
    touch local state after a failed provider call.
    """

    def __init__(self):
        if settings.stripe_secret:
            stripe.api_key = settings.stripe_secret
        if settings.stripe_api_version:
            stripe.api_version = settings.stripe_api_version
        # Don't raise during initialization, missing secrets surface per call
        self.webhook_secret = settings.stripe_webhook_secret or None

    async def _call(self, description: str, fn: Callable, *args, **kwargs) -> Any:
        if not settings.stripe_secret:
            raise ProviderError("Stripe not configured", status_code=status.HTTP_503_SERVICE_UNAVAILABLE)
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(partial(fn, *args, **kwargs)),
                timeout=settings.stripe_timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.error(f"Stripe timeout: {description}")
            raise ProviderError(f"Stripe timeout: {description}", status_code=status.HTTP_504_GATEWAY_TIMEOUT)
        except stripe.InvalidRequestError as e:
            logger.warning(f"Stripe rejected {description}: {e.user_message or e}")
            if e.code == "resource_missing":
                raise ProviderError(f"Stripe resource not found: {description}", status_code=status.HTTP_404_NOT_FOUND)
            raise ProviderError(f"Stripe request failed: {e.user_message or e}")
        except stripe.StripeError as e:
            logger.error(f"Stripe error during {description}: {e.user_message or e}")
            raise ProviderError(f"Stripe request failed: {e.user_message or e}")

    def construct_event(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """Verify the signature over the exact request bytes, then parse"""
        if not self.webhook_secret:
            logger.error("Webhook received but STRIPE_WEBHOOK_SECRET is not configured")
            raise SignatureInvalidError("Webhook secret not configured")
        if not signature:
            raise SignatureInvalidError("Missing stripe-signature header")
        try:
            stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
        except stripe.SignatureVerificationError as e:
            logger.warning(f"Webhook signature verification failed: {e}")
            raise SignatureInvalidError()
        except ValueError:
            raise SignatureInvalidError("Invalid webhook payload")
        return json.loads(payload)

    async def retrieve_subscription(self, subscription_id: str) -> Dict[str, Any]:
        subscription = await self._call(
            f"retrieve subscription {subscription_id}",
            stripe.Subscription.retrieve,
            subscription_id,
        )
        return _to_plain(subscription)

    async def cancel_subscription(self, subscription_id: str) -> Dict[str, Any]:
        """End a subscription now"""
        subscription = await self._call(
            f"cancel subscription {subscription_id}",
            stripe.Subscription.cancel,
            subscription_id,
        )
        return _to_plain(subscription)

    async def set_cancel_at_period_end(self, subscription_id: str, cancel_at_period_end: bool) -> Dict[str, Any]:
        """Schedule (or unschedule) cancellation at the end of the current period"""
        subscription = await self._call(
            f"update subscription {subscription_id}",
            stripe.Subscription.modify,
            subscription_id,
            cancel_at_period_end=cancel_at_period_end,
        )
        return _to_plain(subscription)

    async def retrieve_customer(self, customer_id: str) -> Optional[Dict[str, Any]]:
        """Customer object, or None when Stripe no longer knows it"""
        try:
            customer = await self._call(f"retrieve customer {customer_id}", stripe.Customer.retrieve, customer_id)
        except ProviderError as e:
            if e.status_code == status.HTTP_404_NOT_FOUND:
                return None
            raise
        customer = _to_plain(customer)
        if customer.get("deleted"):
            return None
        return customer

    async def create_customer(self, user_id: str, email: Optional[str] = None) -> Dict[str, Any]:
        customer = await self._call(
            f"create customer for user {user_id}",
            stripe.Customer.create,
            email=email or None,
            metadata={"supabase_user_id": user_id},
        )
        customer = _to_plain(customer)
        logger.info(f"Created Stripe customer {customer.get('id')} for user {user_id}")
        return customer

    async def create_checkout_session(
        self,
        customer_id: str,
        price_id: str,
        mode: str,
        success_url: str,
        cancel_url: str,
        metadata: Dict[str, str],
    ) -> Dict[str, Any]:
        """Create a Stripe checkout session (mode 'payment' or 'subscription')"""
        params: Dict[str, Any] = {
            "customer": customer_id,
            "payment_method_types": ["card"],
            "line_items": [{"price": price_id, "quantity": 1}],
            "mode": mode,
            "success_url": success_url,
            "cancel_url": cancel_url,
            "allow_promotion_codes": True,
            "billing_address_collection": "auto",
            "client_reference_id": metadata.get("user_id"),
            "metadata": metadata,
        }
        if mode == "subscription":
            # Copied onto the subscription so later subscription events carry the owner
            params["subscription_data"] = {"metadata": metadata}
        session = await self._call(f"create checkout session for {customer_id}", stripe.checkout.Session.create, **params)
        return _to_plain(session)

    async def create_billing_portal_session(self, customer_id: str, return_url: str) -> Dict[str, Any]:
        """Create a billing portal session for customer to manage subscription"""
        session = await self._call(
            f"create billing portal session for {customer_id}",
            stripe.billing_portal.Session.create,
            customer=customer_id,
            return_url=return_url,
        )
        return _to_plain(session)

    async def get_user_id_from_customer(self, customer_id: str) -> Optional[str]:
        """Get Supabase user ID from Stripe customer metadata"""
        customer = await self.retrieve_customer(customer_id)
        if not customer:
            return None
        metadata = customer.get("metadata") or {}
        return metadata.get("supabase_user_id") or metadata.get("user_id")


# Create a singleton instance
stripe_service = StripeService()
