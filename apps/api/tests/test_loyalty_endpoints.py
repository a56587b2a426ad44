from decimal import Decimal

import pytest
from httpx import ASGITransport, AsyncClient

from storefront_api.core.settings import settings

CUSTOMER = {"X-Customer-Id": "cust-1"}


@pytest.mark.asyncio
async def test_member_flow_from_enrollment_to_redemption(app_with_db, event_backend) -> None:
    app, _ = app_with_db

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        initialized = await client.post("/api/v1/loyalty/admin/initialize")
        assert initialized.status_code == 200
        assert initialized.json() == {"settings": 1, "tiers": 4, "rules": 4}

        enrolled = await client.post("/api/v1/loyalty/enroll", json={}, headers=CUSTOMER)
        assert enrolled.status_code == 200
        body = enrolled.json()
        assert body["created"] is True
        assert body["account"]["currentTier"] == "bronze"
        assert body["account"]["pointsBalance"] == 250

        again = await client.post("/api/v1/loyalty/enroll", json={}, headers=CUSTOMER)
        assert again.json()["created"] is False

        earned = await client.post(
            "/api/v1/loyalty/admin/orders/order-120/points",
            json={"customerId": "cust-1"},
        )
        assert earned.status_code == 200
        assert earned.json()["points"] == 1200
        assert earned.json()["tierChanged"] is True
        assert earned.json()["balance"] == 1450

        duplicate = await client.post(
            "/api/v1/loyalty/admin/orders/order-120/points",
            json={"customerId": "cust-1"},
        )
        assert duplicate.json()["applied"] is False

        redeemed = await client.post("/api/v1/loyalty/me/redemptions", json={"points": 500}, headers=CUSTOMER)
        assert redeemed.status_code == 201
        assert Decimal(str(redeemed.json()["value"])) == Decimal("5")
        assert redeemed.json()["balance"] == 950

        snapshot = await client.get("/api/v1/loyalty/me", headers=CUSTOMER)
        assert snapshot.status_code == 200
        payload = snapshot.json()
        assert payload["account"]["pointsBalance"] == 950
        assert payload["account"]["lifetimePointsEarned"] == 1450
        assert payload["tier"]["code"] == "silver"
        assert payload["nextTier"] == "gold"
        assert payload["pointsToNextTier"] == 3550
        assert len(payload["redemptions"]) == 1

        history = await client.get("/api/v1/loyalty/me/transactions", headers=CUSTOMER)
        assert [item["transactionType"] for item in history.json()] == ["redeem", "earn", "earn"]

        link = await client.get("/api/v1/loyalty/me/referral-link", headers=CUSTOMER)
        assert link.json()["referralLink"].endswith(f"/signup?ref={link.json()['referralCode']}")

    assert "loyalty.points.redeemed" in event_backend.names()


@pytest.mark.asyncio
async def test_redemption_errors_surface_as_json(app_with_db) -> None:
    app, _ = app_with_db

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        await client.post("/api/v1/loyalty/admin/initialize")
        await client.post("/api/v1/loyalty/enroll", json={}, headers=CUSTOMER)

        below_minimum = await client.post(
            "/api/v1/loyalty/me/redemptions", json={"points": 100}, headers=CUSTOMER
        )
        assert below_minimum.status_code == 422
        assert "minimum" in below_minimum.json()["detail"].lower()

        await client.post(
            "/api/v1/loyalty/admin/points/award",
            json={"customerId": "cust-1", "points": 400},
        )
        too_many = await client.post("/api/v1/loyalty/me/redemptions", json={"points": 5000}, headers=CUSTOMER)
        assert too_many.status_code == 409
        assert isinstance(too_many.json()["detail"], str)

        missing = await client.get("/api/v1/loyalty/me", headers={"X-Customer-Id": "cust-unknown"})
        assert missing.status_code == 404


@pytest.mark.asyncio
async def test_member_routes_require_customer_context(app_with_db) -> None:
    app, _ = app_with_db

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.get("/api/v1/loyalty/me")

    assert response.status_code == 401
    assert response.json()["detail"] == "Missing customer context"


@pytest.mark.asyncio
async def test_admin_routes_check_api_key_when_configured(app_with_db, monkeypatch) -> None:
    app, _ = app_with_db
    monkeypatch.setattr(settings, "admin_api_key", "s3cret")

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        rejected = await client.get("/api/v1/loyalty/admin/settings")
        accepted = await client.get("/api/v1/loyalty/admin/settings", headers={"X-API-Key": "s3cret"})

    assert rejected.status_code == 401
    assert accepted.status_code == 200
    assert accepted.json()["minimumRedemption"] == 500


@pytest.mark.asyncio
async def test_admin_manages_tiers_rules_and_settings(app_with_db) -> None:
    app, _ = app_with_db

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        await client.post("/api/v1/loyalty/admin/initialize")

        created = await client.post(
            "/api/v1/loyalty/admin/tiers",
            json={"code": "diamond", "name": "Diamond", "pointThreshold": 25000, "pointsMultiplier": "2.5"},
        )
        assert created.status_code == 201
        assert created.json()["pointsMultiplier"] == 2.5

        public_tiers = await client.get("/api/v1/loyalty/tiers")
        assert [tier["code"] for tier in public_tiers.json()] == ["bronze", "silver", "gold", "platinum", "diamond"]

        rule = await client.post(
            "/api/v1/loyalty/admin/rules",
            json={
                "name": "Launch week",
                "ruleType": "special_event",
                "calculationType": "fixed",
                "value": "300",
                "eventCode": "launch",
            },
        )
        assert rule.status_code == 201

        event = await client.post(
            "/api/v1/loyalty/admin/events",
            json={"customerId": "cust-1", "eventType": "special_event", "eventCode": "launch", "referenceId": "2026"},
        )
        assert event.status_code == 200
        assert event.json()["points"] == 300

        updated = await client.patch("/api/v1/loyalty/admin/settings", json={"minimumRedemption": 200})
        assert updated.json()["minimumRedemption"] == 200

        redeemed = await client.post("/api/v1/loyalty/me/redemptions", json={"points": 200}, headers=CUSTOMER)
        assert redeemed.status_code == 201
