"""
Tests for Stripe event dispatch, deduplication and refills.
"""
from datetime import datetime
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import func, select

from app.core.exceptions import ProviderError
from app.models import StripeWebhook, Subscription, SubscriptionStatus
from app.services.stripe_service import stripe_service
from app.services.webhook_service import webhook_service
from factories import TEST_USER_ID, make_event, subscription_resource

FEB_1_2024 = 1706745600


def checkout_session(mode="payment", plan_type="starter", subscription=None, **overrides):
    session = {
        "id": "cs_test_1",
        "object": "checkout.session",
        "customer": "cus_test_1",
        "mode": mode,
        "subscription": subscription,
        "client_reference_id": TEST_USER_ID,
        "metadata": {"user_id": TEST_USER_ID, "plan_type": plan_type},
    }
    session.update(overrides)
    return session


def invoice(subscription_id="sub_test_1", period_start=FEB_1_2024, nested=False):
    obj = {
        "id": "in_test_1",
        "object": "invoice",
        "customer": "cus_test_1",
        "lines": {"data": [{"period": {"start": period_start, "end": period_start + 2592000}}]},
    }
    if nested:
        obj["parent"] = {"subscription_details": {"subscription": subscription_id}}
    else:
        obj["subscription"] = subscription_id
    return obj


async def _rows(session_factory):
    async with session_factory() as session:
        return (await session.execute(select(Subscription))).scalars().all()


async def _recorded_events(session_factory):
    async with session_factory() as session:
        return (await session.execute(select(StripeWebhook))).scalars().all()


async def test_subscription_created_creates_row_and_records_event(db, session_factory):
    event = make_event("customer.subscription.created", subscription_resource())

    result = await webhook_service.process_event(db, event)

    assert result.action == "subscription_created"
    assert result.user_id == TEST_USER_ID
    rows = await _rows(session_factory)
    assert len(rows) == 1
    assert rows[0].plan_type == "proMonthly"
    assert rows[0].last_event_at == datetime(2023, 11, 14, 22, 13, 20)

    recorded = await _recorded_events(session_factory)
    assert [(e.event_id, e.last_webhook_update) for e in recorded] == [("evt_test_1", "subscription_created")]
    assert recorded[0].subscription_plan == "proMonthly"


async def test_duplicate_event_does_not_refill_twice(db, session_factory, make_subscription):
    await make_subscription(monthly_token_limit=50, tokens_used=10)
    event = make_event("checkout.session.completed", checkout_session())

    first = await webhook_service.process_event(db, event)
    second = await webhook_service.process_event(db, event)

    assert first.action == "refill_applied"
    assert second.action == "duplicate"
    rows = await _rows(session_factory)
    assert rows[0].monthly_token_limit == 75
    assert rows[0].plan_type == "proMonthly"
    assert len(await _recorded_events(session_factory)) == 1


async def test_refill_without_subscription_creates_starter_row(db, session_factory):
    result = await webhook_service.process_event(db, make_event("checkout.session.completed", checkout_session()))

    assert result.action == "refill_created"
    rows = await _rows(session_factory)
    assert len(rows) == 1
    assert rows[0].plan_type == "starter"
    assert rows[0].status == SubscriptionStatus.ACTIVE
    assert rows[0].monthly_token_limit == 25
    assert rows[0].stripe_subscription_id is None


async def test_refill_promotes_checkout_placeholder(db, session_factory, make_subscription):
    placeholder = await make_subscription(
        stripe_subscription_id=None, plan_type="free", status=SubscriptionStatus.INCOMPLETE, monthly_token_limit=0
    )

    result = await webhook_service.process_event(db, make_event("checkout.session.completed", checkout_session()))

    assert result.action == "refill_applied"
    rows = await _rows(session_factory)
    assert len(rows) == 1
    assert rows[0].id == placeholder.id
    assert rows[0].plan_type == "starter"
    assert rows[0].status == SubscriptionStatus.ACTIVE
    assert rows[0].monthly_token_limit == 25


async def test_refill_after_cancellation_starts_new_row(db, session_factory, make_subscription):
    await make_subscription(status=SubscriptionStatus.CANCELED, tokens_used=50)

    result = await webhook_service.process_event(db, make_event("checkout.session.completed", checkout_session()))

    assert result.action == "refill_created"
    rows = {row.status: row for row in await _rows(session_factory)}
    assert rows[SubscriptionStatus.ACTIVE].monthly_token_limit == 25


async def test_checkout_then_plan_change_keeps_single_row(db, session_factory):
    retrieved = subscription_resource(price_id="price_pro_monthly", metadata={})
    with patch.object(stripe_service, "retrieve_subscription", AsyncMock(return_value=retrieved)) as retrieve:
        checkout = await webhook_service.process_event(
            db,
            make_event(
                "checkout.session.completed",
                checkout_session(mode="subscription", plan_type="proMonthly", subscription="sub_test_1"),
                event_id="evt_checkout",
            ),
        )
    retrieve.assert_awaited_once_with("sub_test_1")
    assert checkout.action == "subscription_created"

    updated = await webhook_service.process_event(
        db,
        make_event(
            "customer.subscription.updated",
            subscription_resource(price_id="price_pro_yearly"),
            event_id="evt_updated",
            created=1700000100,
        ),
    )

    assert updated.action == "subscription_updated"
    rows = await _rows(session_factory)
    assert len(rows) == 1
    assert rows[0].plan_type == "proYearly"
    assert rows[0].monthly_token_limit == 700


async def test_subscription_retrieval_failure_applies_nothing(db, session_factory):
    failing = AsyncMock(side_effect=ProviderError("Stripe timeout", status_code=504))
    event = make_event(
        "checkout.session.completed",
        checkout_session(mode="subscription", plan_type="proMonthly", subscription="sub_test_1"),
    )
    with patch.object(stripe_service, "retrieve_subscription", failing):
        with pytest.raises(ProviderError):
            await webhook_service.process_event(db, event)

    assert await _rows(session_factory) == []
    assert await _recorded_events(session_factory) == []


async def test_unknown_event_type_is_ignored(db, session_factory):
    result = await webhook_service.process_event(db, make_event("customer.tax_id.created", {"id": "txi_1"}))

    assert result.action == "ignored"
    assert await _recorded_events(session_factory) == []


async def test_owner_resolved_from_local_customer(db, session_factory, make_subscription):
    await make_subscription(stripe_subscription_id=None, status=SubscriptionStatus.INCOMPLETE, plan_type="free",
                            monthly_token_limit=0, stripe_customer_id="cus_known")
    resource = subscription_resource(customer="cus_known", metadata={})

    result = await webhook_service.process_event(db, make_event("customer.subscription.created", resource))

    assert result.user_id == TEST_USER_ID
    assert len(await _rows(session_factory)) == 1


async def test_owner_resolved_from_stripe_customer_metadata(db, session_factory):
    resource = subscription_resource(customer="cus_remote", metadata={})
    lookup = AsyncMock(return_value="user_remote")
    with patch.object(stripe_service, "get_user_id_from_customer", lookup):
        result = await webhook_service.process_event(db, make_event("customer.subscription.created", resource))

    lookup.assert_awaited_once_with("cus_remote")
    assert result.user_id == "user_remote"
    assert (await _rows(session_factory))[0].user_id == "user_remote"


async def test_unresolved_owner_is_dropped_and_recorded(db, session_factory):
    resource = subscription_resource(customer="cus_orphan", metadata={})
    with patch.object(stripe_service, "get_user_id_from_customer", AsyncMock(return_value=None)):
        result = await webhook_service.process_event(db, make_event("customer.subscription.updated", resource))

    assert result.action == "owner_unresolved"
    assert await _rows(session_factory) == []
    recorded = await _recorded_events(session_factory)
    assert recorded[0].last_webhook_update == "owner_unresolved"


async def test_checkout_without_user_is_unresolved(db, session_factory):
    session = checkout_session(metadata={}, client_reference_id=None)

    result = await webhook_service.process_event(db, make_event("checkout.session.completed", session))

    assert result.action == "owner_unresolved"
    assert await _rows(session_factory) == []


async def test_subscription_deleted_cancels(db, session_factory, make_subscription):
    await make_subscription(cancel_at_period_end=True)

    result = await webhook_service.process_event(
        db, make_event("customer.subscription.deleted", subscription_resource(status="canceled"))
    )

    assert result.action == "subscription_updated"
    row = (await _rows(session_factory))[0]
    assert row.status == SubscriptionStatus.CANCELED
    assert row.cancel_at_period_end is False
    assert row.canceled_at is not None


@pytest.mark.parametrize("nested", [False, True])
async def test_paid_invoice_rolls_usage_period_once(db, session_factory, make_subscription, nested):
    await make_subscription(tokens_used=30, usage_period_start=datetime(2024, 1, 1))

    first = await webhook_service.process_event(
        db, make_event("invoice.payment_succeeded", invoice(nested=nested), event_id="evt_inv_1")
    )
    assert first.action == "usage_period_reset"
    assert (await _rows(session_factory))[0].tokens_used == 0

    async with session_factory() as session:
        row = (await session.execute(select(Subscription))).scalar_one()
        row.tokens_used = 7
        await session.commit()

    # Same period delivered again under a different event id
    second = await webhook_service.process_event(
        db, make_event("invoice.payment_succeeded", invoice(nested=nested), event_id="evt_inv_2")
    )
    assert second.action == "usage_period_unchanged"
    assert (await _rows(session_factory))[0].tokens_used == 7


async def test_invoice_for_unknown_subscription_is_unresolved(db):
    result = await webhook_service.process_event(db, make_event("invoice.payment_succeeded", invoice("sub_missing")))
    assert result.action == "owner_unresolved"


async def test_payment_failed_is_logged_only(db, session_factory, make_subscription):
    await make_subscription()

    result = await webhook_service.process_event(db, make_event("invoice.payment_failed", invoice()))

    assert result.action == "payment_failed"
    assert (await _rows(session_factory))[0].status == SubscriptionStatus.ACTIVE
    async with session_factory() as session:
        count = (await session.execute(select(func.count()).select_from(StripeWebhook))).scalar()
    assert count == 1


async def test_deletion_of_unknown_subscription_leaves_credit_pack_alone(db, session_factory, make_subscription):
    pack = await make_subscription(stripe_subscription_id=None, plan_type="starter", monthly_token_limit=25)
    resource = subscription_resource(subscription_id="sub_stale_other", status="canceled")

    result = await webhook_service.process_event(db, make_event("customer.subscription.deleted", resource))

    assert result.action == "subscription_created"
    rows = {row.id: row for row in await _rows(session_factory)}
    assert rows[pack.id].status == SubscriptionStatus.ACTIVE
    assert rows[pack.id].plan_type == "starter"
    assert rows[pack.id].monthly_token_limit == 25
    assert rows[pack.id].stripe_subscription_id is None
    stale = next(row for row in rows.values() if row.id != pack.id)
    assert stale.stripe_subscription_id == "sub_stale_other"
    assert stale.status == SubscriptionStatus.CANCELED


async def test_new_subscription_does_not_take_over_credit_pack(db, session_factory, make_subscription):
    pack = await make_subscription(stripe_subscription_id=None, plan_type="starter", monthly_token_limit=25)

    result = await webhook_service.process_event(
        db, make_event("customer.subscription.created", subscription_resource(subscription_id="sub_fresh"))
    )

    assert result.action == "subscription_created"
    rows = {row.id: row for row in await _rows(session_factory)}
    assert len(rows) == 2
    assert rows[pack.id].plan_type == "starter"
    assert rows[pack.id].stripe_subscription_id is None


@pytest.mark.parametrize("event_type", ["customer.subscription.updated", "customer.subscription.deleted"])
async def test_subscription_payload_without_id_is_ignored(db, session_factory, make_subscription, event_type):
    await make_subscription(stripe_subscription_id=None, plan_type="starter", monthly_token_limit=25)
    await make_subscription(
        stripe_subscription_id=None, plan_type="free", status=SubscriptionStatus.INCOMPLETE, monthly_token_limit=0
    )
    resource = subscription_resource()
    del resource["id"]

    result = await webhook_service.process_event(db, make_event(event_type, resource))

    assert result.action == "ignored"
    statuses = sorted(row.status.value for row in await _rows(session_factory))
    assert statuses == ["active", "incomplete"]


async def test_retrieved_snapshot_without_id_is_ignored(db, session_factory):
    retrieved = subscription_resource(metadata={})
    del retrieved["id"]
    event = make_event(
        "checkout.session.completed",
        checkout_session(mode="subscription", plan_type="proMonthly", subscription="sub_test_1"),
    )

    with patch.object(stripe_service, "retrieve_subscription", AsyncMock(return_value=retrieved)):
        result = await webhook_service.process_event(db, event)

    assert result.action == "ignored"
    assert await _rows(session_factory) == []
