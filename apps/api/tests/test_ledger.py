from datetime import timedelta
from uuid import uuid4

import pytest
from sqlalchemy import select

from storefront_api.core.clock import utcnow
from storefront_api.core.errors import InsufficientBalanceError, ValidationError
from storefront_api.models.loyalty import (
    LoyaltyAccount,
    LoyaltyPointExpiration,
    LoyaltyPointExpirationStatus,
    LoyaltyTransaction,
    LoyaltyTransactionSource,
    LoyaltyTransactionType,
)
from storefront_api.services.loyalty import LedgerEntry, LedgerStore


async def _create_account(session, customer_id: str = "cust-ledger") -> LoyaltyAccount:
    account = LoyaltyAccount(
        id=uuid4(),
        customer_id=customer_id,
        points_balance=0,
        lifetime_points_earned=0,
        referral_code=uuid4().hex[:8].upper(),
        is_active=True,
        enrolled_at=utcnow(),
    )
    session.add(account)
    await session.flush()
    return account


def _earn(points: int, *, reference_id: str | None = None, expires_in_days: int | None = None) -> LedgerEntry:
    return LedgerEntry(
        transaction_type=LoyaltyTransactionType.EARN,
        points=points,
        source=LoyaltyTransactionSource.PURCHASE,
        reference_id=reference_id,
        expiry_date=utcnow() + timedelta(days=expires_in_days) if expires_in_days else None,
        deduplicate=reference_id is not None,
    )


@pytest.mark.asyncio
async def test_append_updates_balance_and_schedules_expiry(session_factory) -> None:
    async with session_factory() as session:
        store = LedgerStore(session)
        account = await _create_account(session)

        result = await store.append_transaction(account, _earn(300, reference_id="order-1", expires_in_days=30))
        await session.commit()

        assert result.applied is True
        assert result.balance == 300
        assert result.transaction.balance_after == 300
        assert result.transaction.dedupe_key == "purchase:order-1"
        assert account.points_balance == 300
        assert account.lifetime_points_earned == 300

        expirations = (await session.execute(select(LoyaltyPointExpiration))).scalars().all()
        assert len(expirations) == 1
        assert expirations[0].points == 300
        assert expirations[0].status == LoyaltyPointExpirationStatus.SCHEDULED


@pytest.mark.asyncio
async def test_duplicate_reference_is_a_no_op(session_factory) -> None:
    async with session_factory() as session:
        store = LedgerStore(session)
        account = await _create_account(session)

        await store.append_transaction(account, _earn(120, reference_id="order-7"))
        duplicate = await store.append_transaction(account, _earn(120, reference_id="order-7"))
        await session.commit()

        assert duplicate.applied is False
        assert duplicate.balance == 120
        assert account.points_balance == 120
        rows = (await session.execute(select(LoyaltyTransaction))).scalars().all()
        assert len(rows) == 1


@pytest.mark.asyncio
async def test_debit_cannot_overdraw_balance(session_factory) -> None:
    async with session_factory() as session:
        store = LedgerStore(session)
        account = await _create_account(session)
        await store.append_transaction(account, _earn(100))

        with pytest.raises(InsufficientBalanceError) as excinfo:
            await store.append_transaction(
                account,
                LedgerEntry(
                    transaction_type=LoyaltyTransactionType.REDEEM,
                    points=101,
                    source=LoyaltyTransactionSource.REDEMPTION,
                ),
            )

        assert excinfo.value.available == 100
        assert account.points_balance == 100


@pytest.mark.asyncio
async def test_debits_consume_earliest_expiring_points_first(session_factory) -> None:
    async with session_factory() as session:
        store = LedgerStore(session)
        account = await _create_account(session)
        await store.append_transaction(account, _earn(200, expires_in_days=60))
        await store.append_transaction(account, _earn(100, expires_in_days=10))

        result = await store.append_transaction(
            account,
            LedgerEntry(
                transaction_type=LoyaltyTransactionType.REDEEM,
                points=150,
                source=LoyaltyTransactionSource.REDEMPTION,
            ),
        )
        await session.commit()

        assert result.transaction.points == -150
        assert result.balance == 150
        assert account.lifetime_points_earned == 300

        expirations = (
            await session.execute(select(LoyaltyPointExpiration).order_by(LoyaltyPointExpiration.expires_at.asc()))
        ).scalars().all()
        soonest, latest = expirations
        assert soonest.consumed_points == 100
        assert soonest.status == LoyaltyPointExpirationStatus.CONSUMED
        assert latest.consumed_points == 50
        assert latest.remaining_points == 150
        assert latest.status == LoyaltyPointExpirationStatus.SCHEDULED


@pytest.mark.asyncio
async def test_negative_adjustment_leaves_lifetime_points_alone(session_factory) -> None:
    async with session_factory() as session:
        store = LedgerStore(session)
        account = await _create_account(session)
        await store.append_transaction(account, _earn(500))

        result = await store.append_transaction(
            account,
            LedgerEntry(
                transaction_type=LoyaltyTransactionType.ADJUST,
                points=-200,
                source=LoyaltyTransactionSource.ADMIN_ADJUSTMENT,
                description="Goodwill reversal",
            ),
        )

        assert result.balance == 300
        assert account.lifetime_points_earned == 500


def test_zero_point_entries_are_rejected() -> None:
    entry = LedgerEntry(
        transaction_type=LoyaltyTransactionType.EARN,
        points=0,
        source=LoyaltyTransactionSource.PURCHASE,
    )
    with pytest.raises(ValidationError):
        entry.signed_points()


def test_dedupe_key_requires_reference_and_opt_in() -> None:
    assert _earn(10).dedupe_key is None
    assert _earn(10, reference_id="order-1").dedupe_key == "purchase:order-1"
    entry = LedgerEntry(
        transaction_type=LoyaltyTransactionType.EARN,
        points=10,
        source=LoyaltyTransactionSource.REVIEW,
        reference_id="review-1",
    )
    assert entry.dedupe_key is None
