import asyncio
from decimal import Decimal

import pytest
from sqlalchemy import func, select
from sqlalchemy.orm.exc import StaleDataError

from storefront_api.models.loyalty import (
    LoyaltyAccount,
    LoyaltyTier,
    LoyaltyTransaction,
    LoyaltyTransactionSource,
)
from storefront_api.services.loyalty import LoyaltyService
from storefront_api.services.subscriptions import SubscriptionService

AWARDS = [10, 25, 40, 55, 70, 85, 100, 115]
CORRECTIONS = [-20, -20, -20, -20]


async def _seed_bronze_tier(session) -> None:
    session.add(
        LoyaltyTier(code="bronze", name="Bronze", point_threshold=0, points_multiplier=Decimal("1"), benefits=[])
    )
    await session.commit()


async def _ledger_totals(session, customer_id: str) -> tuple[int, int, int]:
    account_id = select(LoyaltyAccount.id).where(LoyaltyAccount.customer_id == customer_id).scalar_subquery()
    total = await session.scalar(
        select(func.coalesce(func.sum(LoyaltyTransaction.points), 0)).where(LoyaltyTransaction.account_id == account_id)
    )
    earned = await session.scalar(
        select(func.coalesce(func.sum(LoyaltyTransaction.points), 0)).where(
            LoyaltyTransaction.account_id == account_id,
            LoyaltyTransaction.points > 0,
        )
    )
    count = await session.scalar(
        select(func.count(LoyaltyTransaction.id)).where(LoyaltyTransaction.account_id == account_id)
    )
    return int(total), int(earned), int(count)


@pytest.mark.asyncio
async def test_concurrent_writers_keep_balance_equal_to_ledger(file_session_factory, notifications) -> None:
    async with file_session_factory() as session:
        await _seed_bronze_tier(session)
        service = LoyaltyService(session, notification_service=notifications)
        await service.award_points("cust-1", points=1000, source=LoyaltyTransactionSource.SPECIAL_EVENT)

    async def _award(points: int) -> None:
        async with file_session_factory() as session:
            service = LoyaltyService(session, notification_service=notifications)
            await service.award_points("cust-1", points=points, source=LoyaltyTransactionSource.SPECIAL_EVENT)

    async def _correct(points: int) -> None:
        async with file_session_factory() as session:
            service = LoyaltyService(session, notification_service=notifications)
            await service.adjust_points("cust-1", points=points, reason="Duplicate order credit")

    await asyncio.gather(*[_award(points) for points in AWARDS], *[_correct(points) for points in CORRECTIONS])

    async with file_session_factory() as session:
        account = await LoyaltyService(session, notification_service=notifications).get_account("cust-1")
        total, earned, count = await _ledger_totals(session, "cust-1")

    assert count == 1 + len(AWARDS) + len(CORRECTIONS)
    assert total == 1000 + sum(AWARDS) + sum(CORRECTIONS)
    assert account.points_balance == total
    assert account.lifetime_points_earned == earned == 1000 + sum(AWARDS)


@pytest.mark.asyncio
async def test_racing_enrollments_create_one_account(file_session_factory, notifications) -> None:
    async with file_session_factory() as session:
        await _seed_bronze_tier(session)

    async def _enroll() -> bool:
        async with file_session_factory() as session:
            result = await LoyaltyService(session, notification_service=notifications).enroll("cust-race")
            return result.created

    created = await asyncio.gather(*(_enroll() for _ in range(4)))

    assert sorted(created) == [False, False, False, True]
    async with file_session_factory() as session:
        accounts = await session.scalar(
            select(func.count(LoyaltyAccount.id)).where(LoyaltyAccount.customer_id == "cust-race")
        )
    assert accounts == 1


@pytest.mark.asyncio
async def test_award_retries_after_concurrent_update(session_factory, notifications, monkeypatch) -> None:
    async with session_factory() as session:
        await _seed_bronze_tier(session)
        service = LoyaltyService(session, notification_service=notifications)
        await service.enroll("cust-1")

        original_lock = service.ledger.lock_account
        conflicts: list[str] = []

        async def _lock_then_conflict(customer_id: str):
            account = await original_lock(customer_id)
            if not conflicts:
                conflicts.append(customer_id)
                raise StaleDataError("loyalty_accounts row changed by another writer")
            return account

        monkeypatch.setattr(service.ledger, "lock_account", _lock_then_conflict)
        result = await service.award_points("cust-1", points=120, source=LoyaltyTransactionSource.SPECIAL_EVENT)

        assert conflicts == ["cust-1"]
        assert result.applied is True
        account = await service.get_account("cust-1")
        assert account.points_balance == 120
        assert await _ledger_totals(session, "cust-1") == (120, 120, 1)


@pytest.mark.asyncio
async def test_plan_change_retries_after_concurrent_update(
    session_factory, payment_gateway, notifications, monkeypatch
) -> None:
    async with session_factory() as session:
        service = SubscriptionService(session, payment_gateway=payment_gateway, notification_service=notifications)
        await service.create_plan(code="basic", name="Basic", price_amount=Decimal("199.00"))
        pro = await service.create_plan(code="pro", name="Pro", price_amount=Decimal("499.00"))
        pro_id = pro.id
        subscription = await service.subscribe("cust-1", "basic")
        subscription_id = subscription.id

        original_lock = service._lock
        conflicts: list[object] = []

        async def _lock_then_conflict(locked_id):
            locked = await original_lock(locked_id)
            if not conflicts:
                conflicts.append(locked_id)
                raise StaleDataError("subscriptions row changed by a renewal")
            return locked

        monkeypatch.setattr(service, "_lock", _lock_then_conflict)
        changed = await service.change_plan(subscription_id, "pro", immediate=False)

        assert conflicts == [subscription_id]
        assert changed.plan.code == "basic"
        assert changed.metadata_json["pendingPlanChange"]["planId"] == str(pro_id)
