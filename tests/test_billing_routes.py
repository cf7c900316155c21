"""
Tests for the credit endpoints.
"""
from app.models import SubscriptionStatus

DEDUCT_URL = "/api/billing/deduct"


async def test_deduct_generation(client, make_subscription):
    await make_subscription(monthly_token_limit=10, tokens_used=0)

    response = await client.post(DEDUCT_URL, json={"operation_kind": "generation"})

    assert response.status_code == 200
    body = response.json()
    assert body["remaining_tokens"] == 9
    assert body["credits_deducted"] == 1
    assert body["message"] == "Deducted 1 credit(s)"


async def test_deduct_rejects_unknown_operation(client, make_subscription):
    await make_subscription()

    response = await client.post(DEDUCT_URL, json={"operation_kind": "upscale"})

    assert response.status_code == 422


async def test_insufficient_credits_returns_402(client, make_subscription):
    await make_subscription(monthly_token_limit=10, tokens_used=9)

    response = await client.post(DEDUCT_URL, json={"operation_kind": "improvement"})

    assert response.status_code == 402
    detail = response.json()["detail"]
    assert detail["remaining_tokens"] == 1
    assert detail["credits_needed"] == 3


async def test_credits_summary(client, make_subscription):
    await make_subscription(monthly_token_limit=50, tokens_used=10)

    response = await client.get("/api/billing/credits")

    body = response.json()
    assert body["plan_type"] == "proMonthly"
    assert body["subscription_status"] == "active"
    assert body["tokens_remaining"] == 40
    assert body["usage_percentage"] == 20.0


async def test_credits_summary_without_active_subscription(client, make_subscription):
    await make_subscription(status=SubscriptionStatus.CANCELED, monthly_token_limit=50, tokens_used=10)

    body = (await client.get("/api/billing/credits")).json()

    assert body["tokens_remaining"] == 0
    assert body["subscription_status"] == "canceled"


async def test_usage_history_lists_deductions(client, make_subscription):
    await make_subscription(monthly_token_limit=50)
    await client.post(DEDUCT_URL, json={"operation_kind": "generation"})
    await client.post(DEDUCT_URL, json={"operation_kind": "improvement"})

    response = await client.get("/api/billing/usage-history", params={"limit": 10})

    body = response.json()
    assert body["total_count"] == 2
    assert body["total_credits"] == 4
    assert sorted(r["amount"] for r in body["usage_records"]) == [1, 3]


async def test_usage_history_limit_is_bounded(client):
    response = await client.get("/api/billing/usage-history", params={"limit": 1000})
    assert response.status_code == 422


async def test_plans_hide_legacy_by_default(client):
    keys = [p["key"] for p in (await client.get("/api/billing/plans")).json()["plans"]]
    legacy_keys = [p["key"] for p in (await client.get("/api/billing/plans?include_legacy=true")).json()["plans"]]

    assert keys == ["starter", "proMonthly", "proYearly"]
    assert {"base", "pro", "proPlus"} <= set(legacy_keys)
