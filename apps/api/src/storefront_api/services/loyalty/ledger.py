"""Append-only points ledger with atomic balance maintenance."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Sequence
from uuid import UUID, uuid4

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from storefront_api.core.clock import utcnow
from storefront_api.core.errors import InsufficientBalanceError, NotFoundError, ValidationError
from storefront_api.models.loyalty import (
    LoyaltyAccount,
    LoyaltyPointExpiration,
    LoyaltyPointExpirationStatus,
    LoyaltyTransaction,
    LoyaltyTransactionSource,
    LoyaltyTransactionType,
)

_DEBIT_TYPES = {LoyaltyTransactionType.REDEEM, LoyaltyTransactionType.EXPIRE}
_EARNING_TYPES = {LoyaltyTransactionType.EARN, LoyaltyTransactionType.BONUS}


@dataclass(slots=True)
class LedgerEntry:
    """A balance change to apply to one account."""

    transaction_type: LoyaltyTransactionType
    points: int
    source: LoyaltyTransactionSource
    reference_id: str | None = None
    description: str | None = None
    expiry_date: datetime | None = None
    deduplicate: bool = False
    metadata: dict[str, Any] | None = None

    @property
    def dedupe_key(self) -> str | None:
        if not self.deduplicate or not self.reference_id:
            return None
        return f"{self.source.value}:{self.reference_id}"

    def signed_points(self) -> int:
        points = int(self.points)
        if points == 0:
            raise ValidationError("Ledger transactions must move a non-zero number of points")
        if self.transaction_type in _DEBIT_TYPES:
            return -abs(points)
        if self.transaction_type in _EARNING_TYPES:
            return abs(points)
        return points


@dataclass(slots=True)
class AppendResult:
    transaction: LoyaltyTransaction
    balance: int
    applied: bool


class LedgerStore:
    """Reads and writes ledger rows for a session; callers own commit."""

    def __init__(self, db_session: AsyncSession) -> None:
        self._db = db_session

    async def find_account(self, customer_id: str) -> LoyaltyAccount | None:
        stmt = select(LoyaltyAccount).where(LoyaltyAccount.customer_id == customer_id)
        result = await self._db.execute(stmt)
        return result.scalar_one_or_none()

    async def lock_account(self, customer_id: str) -> LoyaltyAccount:
        """Load an account for mutation, taking a row lock where the engine supports one."""

        stmt = (
            select(LoyaltyAccount)
            .where(LoyaltyAccount.customer_id == customer_id)
            .with_for_update(of=LoyaltyAccount)
            .execution_options(populate_existing=True)
        )
        result = await self._db.execute(stmt)
        account = result.scalar_one_or_none()
        if account is None:
            raise NotFoundError(f"No loyalty account for customer {customer_id}")
        return account

    async def lock_account_by_id(self, account_id: UUID) -> LoyaltyAccount:
        stmt = (
            select(LoyaltyAccount)
            .where(LoyaltyAccount.id == account_id)
            .with_for_update(of=LoyaltyAccount)
            .execution_options(populate_existing=True)
        )
        result = await self._db.execute(stmt)
        account = result.scalar_one_or_none()
        if account is None:
            raise NotFoundError(f"Loyalty account {account_id} not found")
        return account

    async def append_transaction(
        self,
        account: LoyaltyAccount,
        entry: LedgerEntry,
        *,
        now: datetime | None = None,
    ) -> AppendResult:
        """Record ``entry`` and apply it to the account balance in the same unit of work."""

        now = now or utcnow()
        points = entry.signed_points()
        balance = int(account.points_balance or 0)
        lifetime = int(account.lifetime_points_earned or 0)

        dedupe_key = entry.dedupe_key
        if dedupe_key is not None:
            existing = await self._find_by_dedupe_key(account.id, dedupe_key)
            if existing is not None:
                return AppendResult(transaction=existing, balance=balance, applied=False)

        if points < 0 and abs(points) > balance:
            raise InsufficientBalanceError(abs(points), balance)

        balance += points
        if points > 0:
            lifetime += points

        expiry_date = entry.expiry_date if entry.transaction_type in _EARNING_TYPES else None
        transaction = LoyaltyTransaction(
            id=uuid4(),
            account_id=account.id,
            transaction_type=entry.transaction_type,
            source=entry.source,
            points=points,
            balance_after=balance,
            reference_id=entry.reference_id,
            dedupe_key=dedupe_key,
            description=entry.description,
            expiry_date=expiry_date,
            metadata_json=entry.metadata,
            occurred_at=now,
        )
        self._db.add(transaction)

        account.points_balance = balance
        account.lifetime_points_earned = lifetime

        if expiry_date is not None and points > 0:
            self._db.add(
                LoyaltyPointExpiration(
                    account_id=account.id,
                    source_transaction_id=transaction.id,
                    points=points,
                    consumed_points=0,
                    expired_points=0,
                    expires_at=expiry_date,
                    status=LoyaltyPointExpirationStatus.SCHEDULED,
                )
            )

        if points < 0 and entry.transaction_type != LoyaltyTransactionType.EXPIRE:
            await self._consume_expiring_points(account.id, abs(points), now=now)

        await self._db.flush()
        return AppendResult(transaction=transaction, balance=balance, applied=True)

    async def scheduled_expirations(
        self,
        account_id: UUID,
        *,
        due_before: datetime | None = None,
    ) -> Sequence[LoyaltyPointExpiration]:
        stmt = (
            select(LoyaltyPointExpiration)
            .where(
                LoyaltyPointExpiration.account_id == account_id,
                LoyaltyPointExpiration.status == LoyaltyPointExpirationStatus.SCHEDULED,
            )
            .order_by(LoyaltyPointExpiration.expires_at.asc(), LoyaltyPointExpiration.created_at.asc())
        )
        if due_before is not None:
            stmt = stmt.where(LoyaltyPointExpiration.expires_at < due_before)
        result = await self._db.execute(stmt)
        return result.scalars().all()

    async def list_transactions(
        self,
        account_id: UUID,
        *,
        limit: int = 50,
        offset: int = 0,
    ) -> Sequence[LoyaltyTransaction]:
        stmt = (
            select(LoyaltyTransaction)
            .where(LoyaltyTransaction.account_id == account_id)
            .order_by(LoyaltyTransaction.occurred_at.desc())
            .limit(limit)
            .offset(offset)
        )
        result = await self._db.execute(stmt)
        return result.scalars().all()

    async def _find_by_dedupe_key(self, account_id: UUID, dedupe_key: str) -> LoyaltyTransaction | None:
        stmt = select(LoyaltyTransaction).where(
            LoyaltyTransaction.account_id == account_id,
            LoyaltyTransaction.dedupe_key == dedupe_key,
        )
        result = await self._db.execute(stmt)
        return result.scalar_one_or_none()

    async def _consume_expiring_points(self, account_id: UUID, points: int, *, now: datetime) -> None:
        """Draw debits from the earliest-expiring outstanding earnings first."""

        remaining = points
        for expiration in await self.scheduled_expirations(account_id):
            if remaining <= 0:
                break
            available = expiration.remaining_points
            if available <= 0:
                continue
            take = min(available, remaining)
            expiration.consumed_points = int(expiration.consumed_points or 0) + take
            remaining -= take
            if expiration.remaining_points == 0:
                expiration.status = LoyaltyPointExpirationStatus.CONSUMED
                expiration.swept_at = now


__all__ = ["AppendResult", "LedgerEntry", "LedgerStore"]
