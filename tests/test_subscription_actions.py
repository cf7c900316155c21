"""
Tests for user-initiated cancel, reactivate and status.
"""
from datetime import datetime
from unittest.mock import AsyncMock, patch

from sqlalchemy import select

from app.core.exceptions import ProviderError
from app.models import Subscription, SubscriptionStatus
from app.services.stripe_service import stripe_service

CANCEL_URL = "/api/subscriptions/cancel"
REACTIVATE_URL = "/api/subscriptions/reactivate"
STATUS_URL = "/api/subscriptions/status"

PERIOD_END = 1702592000  # 2023-12-14T22:13:20Z


def provider_subscription(status="active", cancel_at_period_end=False):
    return {
        "id": "sub_test_1",
        "object": "subscription",
        "status": status,
        "cancel_at_period_end": cancel_at_period_end,
        "current_period_start": 1700000000,
        "current_period_end": PERIOD_END,
    }


async def _row(session_factory) -> Subscription:
    async with session_factory() as session:
        return (await session.execute(select(Subscription))).scalar_one()


async def test_cancel_without_subscription(client):
    with patch.object(stripe_service, "set_cancel_at_period_end", AsyncMock()) as provider:
        response = await client.post(CANCEL_URL, json={})

    assert response.status_code == 400
    assert response.json()["detail"]["subscription_status"] is None
    provider.assert_not_awaited()


async def test_cancel_reports_current_status_when_not_active(client, make_subscription):
    await make_subscription(status=SubscriptionStatus.PAST_DUE)

    response = await client.post(CANCEL_URL, json={})

    assert response.status_code == 400
    assert response.json()["detail"]["subscription_status"] == "past_due"


async def test_cancel_at_period_end(client, make_subscription, session_factory):
    await make_subscription()
    provider = AsyncMock(return_value=provider_subscription(cancel_at_period_end=True))

    with patch.object(stripe_service, "set_cancel_at_period_end", provider):
        response = await client.post(CANCEL_URL, json={"immediate": False})

    assert response.status_code == 200
    body = response.json()
    assert body["cancel_at_period_end"] is True
    assert body["current_period_end"] == "2023-12-14T22:13:20"
    provider.assert_awaited_once_with("sub_test_1", True)

    row = await _row(session_factory)
    assert row.status == SubscriptionStatus.ACTIVE
    assert row.cancel_at_period_end is True
    assert row.current_period_end == datetime(2023, 12, 14, 22, 13, 20)


async def test_cancel_immediately(client, make_subscription, session_factory):
    await make_subscription()
    provider = AsyncMock(return_value=provider_subscription(status="canceled"))

    with patch.object(stripe_service, "cancel_subscription", provider):
        response = await client.post(CANCEL_URL, json={"immediate": True})

    assert response.status_code == 200
    assert response.json()["message"] == "Subscription canceled"
    provider.assert_awaited_once_with("sub_test_1")

    row = await _row(session_factory)
    assert row.status == SubscriptionStatus.CANCELED
    assert row.canceled_at is not None
    assert row.cancel_at_period_end is False


async def test_cancel_already_scheduled_conflicts(client, make_subscription):
    await make_subscription(cancel_at_period_end=True)

    with patch.object(stripe_service, "set_cancel_at_period_end", AsyncMock()) as provider:
        response = await client.post(CANCEL_URL, json={})

    assert response.status_code == 409
    provider.assert_not_awaited()


async def test_provider_failure_leaves_local_state_alone(client, make_subscription, session_factory):
    await make_subscription()
    failing = AsyncMock(side_effect=ProviderError("Stripe request failed: api_error"))

    with patch.object(stripe_service, "set_cancel_at_period_end", failing):
        response = await client.post(CANCEL_URL, json={})

    assert response.status_code == 502
    row = await _row(session_factory)
    assert row.cancel_at_period_end is False
    assert row.status == SubscriptionStatus.ACTIVE


async def test_one_time_pack_cannot_be_canceled(client, make_subscription):
    await make_subscription(stripe_subscription_id=None, plan_type="starter", monthly_token_limit=25)

    response = await client.post(CANCEL_URL, json={})

    assert response.status_code == 409


async def test_reactivate_requires_scheduled_cancellation(client, make_subscription):
    await make_subscription()

    with patch.object(stripe_service, "set_cancel_at_period_end", AsyncMock()) as provider:
        response = await client.post(REACTIVATE_URL)

    assert response.status_code == 409
    provider.assert_not_awaited()


async def test_reactivate_clears_scheduled_cancellation(client, make_subscription, session_factory):
    await make_subscription(cancel_at_period_end=True)
    provider = AsyncMock(return_value=provider_subscription())

    with patch.object(stripe_service, "set_cancel_at_period_end", provider):
        response = await client.post(REACTIVATE_URL)

    assert response.status_code == 200
    body = response.json()
    assert body["message"] == "Subscription reactivated"
    assert body["subscription_id"] == "sub_test_1"
    assert body["status"] == "active"
    assert body["cancel_at_period_end"] is False
    provider.assert_awaited_once_with("sub_test_1", False)
    assert (await _row(session_factory)).cancel_at_period_end is False


async def test_status_without_subscription(client):
    response = await client.get(STATUS_URL)

    assert response.status_code == 200
    assert response.json() == {"success": True, "has_active_subscription": False, "subscription": None}


async def test_status_reports_local_row(client, make_subscription):
    await make_subscription(monthly_token_limit=50, tokens_used=12)

    response = await client.get(STATUS_URL)

    body = response.json()
    assert body["has_active_subscription"] is True
    assert body["subscription"]["plan_type"] == "proMonthly"
    assert body["subscription"]["tokens_remaining"] == 38
    assert body["subscription"]["status"] == "active"


async def test_billing_portal_requires_customer(client):
    response = await client.post("/api/subscriptions/billing-portal", json={})
    assert response.status_code == 404


async def test_billing_portal_for_stored_customer(client, make_subscription):
    await make_subscription()
    portal = AsyncMock(return_value={"url": "https://billing.stripe.com/p/session/test"})

    with patch.object(stripe_service, "create_billing_portal_session", portal):
        response = await client.post("/api/subscriptions/billing-portal", json={})

    assert response.status_code == 200
    assert response.json()["portal_url"] == "https://billing.stripe.com/p/session/test"
    portal.assert_awaited_once_with(customer_id="cus_test_1", return_url="http://localhost:3000/account")
