from decimal import Decimal

import pytest
from httpx import ASGITransport, AsyncClient

CUSTOMER = {"X-Customer-Id": "cust-1"}


async def _create_plans(client: AsyncClient) -> None:
    for code, price in (("basic", "199.00"), ("premium", "499.00")):
        response = await client.post(
            "/api/v1/subscriptions/admin/plans",
            json={"code": code, "name": code.title(), "priceAmount": price, "features": [f"{code}-support"]},
        )
        assert response.status_code == 201


@pytest.mark.asyncio
async def test_customer_subscription_lifecycle(app_with_db, event_backend) -> None:
    app, _ = app_with_db

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        await _create_plans(client)

        plans = await client.get("/api/v1/subscriptions/plans")
        assert [plan["code"] for plan in plans.json()] == ["basic", "premium"]
        assert Decimal(str(plans.json()[0]["priceAmount"])) == Decimal("199.00")

        created = await client.post("/api/v1/subscriptions", json={"plan": "basic"}, headers=CUSTOMER)
        assert created.status_code == 201
        subscription = created.json()
        assert subscription["status"] == "active"
        assert subscription["planCode"] == "basic"
        subscription_id = subscription["id"]

        listed = await client.get("/api/v1/subscriptions", headers=CUSTOMER)
        assert [item["id"] for item in listed.json()] == [subscription_id]

        cancelled = await client.post(
            f"/api/v1/subscriptions/{subscription_id}/cancel",
            json={"atPeriodEnd": True, "reason": "moving abroad"},
            headers=CUSTOMER,
        )
        assert cancelled.status_code == 200
        assert cancelled.json()["status"] == "active"
        assert cancelled.json()["cancelAtPeriodEnd"] is True

        reactivated = await client.post(f"/api/v1/subscriptions/{subscription_id}/reactivate", headers=CUSTOMER)
        assert reactivated.json()["cancelAtPeriodEnd"] is False

        changed = await client.post(
            f"/api/v1/subscriptions/{subscription_id}/change-plan",
            json={"plan": "premium", "immediate": False},
            headers=CUSTOMER,
        )
        assert changed.status_code == 200
        assert changed.json()["planCode"] == "basic"
        assert changed.json()["pendingPlanChange"]["effectiveDate"]

        history = await client.get(f"/api/v1/subscriptions/{subscription_id}/billing-history", headers=CUSTOMER)
        assert history.json() == []

        renewal = await client.post(f"/api/v1/subscriptions/admin/{subscription_id}/renew")
        assert renewal.json()["status"] == "not_due"

        batch = await client.post("/api/v1/subscriptions/admin/renewals/run")
        assert batch.json() == {"total": 0, "successful": 0, "failed": 0, "details": []}

    assert event_backend.names()[:2] == ["subscription.created", "subscription.cancelled"]


@pytest.mark.asyncio
async def test_subscriptions_are_scoped_to_their_customer(app_with_db) -> None:
    app, _ = app_with_db

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        await _create_plans(client)
        created = await client.post("/api/v1/subscriptions", json={"plan": "basic"}, headers=CUSTOMER)
        subscription_id = created.json()["id"]

        other = {"X-Customer-Id": "cust-2"}
        assert (await client.get(f"/api/v1/subscriptions/{subscription_id}", headers=other)).status_code == 404
        cancel = await client.post(
            f"/api/v1/subscriptions/{subscription_id}/cancel",
            json={"atPeriodEnd": False},
            headers=other,
        )
        assert cancel.status_code == 404

        admin_view = await client.get(f"/api/v1/subscriptions/admin/{subscription_id}")
        assert admin_view.json()["status"] == "active"

        anonymous = await client.get("/api/v1/subscriptions")
        assert anonymous.status_code == 401


@pytest.mark.asyncio
async def test_plan_and_subscription_errors_return_detail(app_with_db) -> None:
    app, _ = app_with_db

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        await _create_plans(client)

        duplicate = await client.post(
            "/api/v1/subscriptions/admin/plans",
            json={"code": "basic", "name": "Basic again", "priceAmount": "10"},
        )
        assert duplicate.status_code == 400
        assert "already exists" in duplicate.json()["detail"]

        unknown = await client.post("/api/v1/subscriptions", json={"plan": "platinum"}, headers=CUSTOMER)
        assert unknown.status_code == 404

        created = await client.post("/api/v1/subscriptions", json={"plan": "basic"}, headers=CUSTOMER)
        assert created.status_code == 201
        again = await client.post("/api/v1/subscriptions", json={"plan": "basic"}, headers=CUSTOMER)
        assert again.status_code == 400

        refused = await client.delete("/api/v1/subscriptions/admin/plans/basic")
        assert refused.status_code == 400

        retired = await client.delete("/api/v1/subscriptions/admin/plans/premium")
        assert retired.json()["isActive"] is False
        public_plans = await client.get("/api/v1/subscriptions/plans")
        assert [plan["code"] for plan in public_plans.json()] == ["basic"]

        subscription_id = created.json()["id"]
        await client.post(
            f"/api/v1/subscriptions/{subscription_id}/cancel",
            json={"atPeriodEnd": False},
            headers=CUSTOMER,
        )
        reactivate = await client.post(f"/api/v1/subscriptions/{subscription_id}/reactivate", headers=CUSTOMER)
        assert reactivate.status_code == 400
