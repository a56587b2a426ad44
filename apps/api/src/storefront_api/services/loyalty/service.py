"""Loyalty account orchestration: enrollment, awards, redemptions, and expiry."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import ROUND_FLOOR, Decimal
from typing import Any, Awaitable, Callable, Sequence, TypeVar
from uuid import UUID, uuid4

from loguru import logger
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from storefront_api.core.clock import ensure_aware, utcnow
from storefront_api.core.errors import (
    InactiveAccountError,
    InsufficientBalanceError,
    NotFoundError,
    ProgramInactiveError,
    StorefrontError,
    ValidationError,
)
from storefront_api.core.settings import settings
from storefront_api.db.transactions import run_serialized
from storefront_api.domain.billing import quantize_money
from storefront_api.domain.points_rules import (
    LoyaltyEvent,
    PurchaseEvent,
    SignupEvent,
    calculate_points,
    select_rule,
)
from storefront_api.domain.tiers import TierProgress, is_promotion, resolve_tier, tier_progress
from storefront_api.models.loyalty import (
    LoyaltyAccount,
    LoyaltyPointExpiration,
    LoyaltyPointExpirationStatus,
    LoyaltyRedemption,
    LoyaltyRedemptionType,
    LoyaltyReferral,
    LoyaltyTier,
    LoyaltyTierHistory,
    LoyaltyTransaction,
    LoyaltyTransactionSource,
    LoyaltyTransactionType,
    PointsRule,
    PointsRuleType,
)
from storefront_api.observability.loyalty import get_loyalty_store
from storefront_api.services.notifications import NotificationService
from storefront_api.services.orders import OrderDirectory, build_order_directory

from .ledger import AppendResult, LedgerEntry, LedgerStore
from .program import DatabaseLoyaltySettingsProvider, LoyaltyProgramSettings, LoyaltySettingsProvider

T = TypeVar("T")


@dataclass(slots=True)
class EnrollmentResult:
    account: LoyaltyAccount
    created: bool
    reason: str | None = None


@dataclass(slots=True)
class AwardResult:
    """Outcome of an award; ``applied`` is False for zero-point or duplicate events."""

    account: LoyaltyAccount | None
    points: int
    applied: bool
    transaction: LoyaltyTransaction | None = None
    tier_changed: bool = False


@dataclass(slots=True)
class RedemptionResult:
    redemption: LoyaltyRedemption
    transaction: LoyaltyTransaction
    balance: int


@dataclass(slots=True)
class ExpiryFailure:
    account_id: str
    error: str


@dataclass(slots=True)
class ExpirySweepResult:
    processed_accounts: int = 0
    expired_points: int = 0
    failures: list[ExpiryFailure] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {
            "processed_accounts": self.processed_accounts,
            "expired_points": self.expired_points,
            "failures": [{"account_id": item.account_id, "error": item.error} for item in self.failures],
        }


@dataclass(slots=True)
class AccountSnapshot:
    account: LoyaltyAccount
    tier: LoyaltyTier | None
    progress: TierProgress | None
    recent_transactions: Sequence[LoyaltyTransaction]
    redemptions: Sequence[LoyaltyRedemption]
    referral_count: int
    expiring_points: Sequence[LoyaltyPointExpiration]


class LoyaltyService:
    """Coordinates ledger writes, tier recalculation, and domain events for loyalty accounts.

    Every public mutation reads the program settings first, runs inside
    :func:`run_serialized` so concurrent writers to one account retry instead
    of losing updates, and emits its events only after the commit succeeds.
    """

    def __init__(
        self,
        db_session: AsyncSession,
        *,
        settings_provider: LoyaltySettingsProvider | None = None,
        notification_service: NotificationService | None = None,
        order_directory: OrderDirectory | None = None,
        write_attempts: int | None = None,
    ) -> None:
        self._db = db_session
        self._ledger = LedgerStore(db_session)
        self._settings_provider = settings_provider or DatabaseLoyaltySettingsProvider(db_session)
        self._notifications = notification_service or NotificationService()
        self._orders = order_directory
        self._write_attempts = write_attempts or settings.loyalty_write_retry_attempts
        self._observability = get_loyalty_store()
        self._pending_events: list[tuple[str, dict[str, Any]]] = []

    @property
    def ledger(self) -> LedgerStore:
        return self._ledger

    async def get_program(self) -> LoyaltyProgramSettings:
        return await self._settings_provider.get_current()

    async def _active_program(self) -> LoyaltyProgramSettings:
        program = await self.get_program()
        if not program.is_active:
            raise ProgramInactiveError()
        return program

    # ------------------------------------------------------------------
    # Enrollment
    # ------------------------------------------------------------------

    async def enroll(self, customer_id: str, *, referred_by_code: str | None = None) -> EnrollmentResult:
        """Create the customer's account; a second call returns the existing one."""

        if not customer_id:
            raise ValidationError("customer_id is required")
        program = await self._active_program()

        existing = await self._ledger.find_account(customer_id)
        if existing is not None:
            logger.info("Loyalty enrollment skipped; already enrolled", customer_id=customer_id)
            return EnrollmentResult(account=existing, created=False, reason="already_enrolled")

        referrer_customer_id: str | None = None
        if referred_by_code and program.enable_referrals:
            referrer = await self._find_by_referral_code(referred_by_code)
            if referrer is None or referrer.customer_id == customer_id or not referrer.is_active:
                logger.warning(
                    "Ignoring unusable referral code at enrollment",
                    customer_id=customer_id,
                    referral_code=referred_by_code,
                )
            else:
                # Plain id: a rollback below expires every loaded account.
                referrer_customer_id = referrer.customer_id

        for attempt in range(1, settings.loyalty_referral_code_attempts + 1):
            self._pending_events = []
            try:
                account = await self._create_account(customer_id, program, referrer_customer_id=referrer_customer_id)
                await self._db.commit()
            except IntegrityError:
                await self._db.rollback()
                existing = await self._ledger.find_account(customer_id)
                if existing is not None:
                    logger.info("Concurrent loyalty enrollment resolved", customer_id=customer_id)
                    return EnrollmentResult(account=existing, created=False, reason="already_enrolled")
                logger.warning("Referral code collision during enrollment", customer_id=customer_id, attempt=attempt)
                continue
            except BaseException:
                await self._db.rollback()
                raise
            break
        else:
            raise StorefrontError(f"Could not allocate a referral code for customer {customer_id}")

        await self._emit_pending()
        logger.info(
            "Loyalty account enrolled",
            customer_id=customer_id,
            account_id=str(account.id),
            referred_by=referrer_customer_id,
        )

        if referrer_customer_id is not None:
            await self._pay_referral(referrer_customer_id, customer_id, program)
            await self._db.refresh(account)

        return EnrollmentResult(account=account, created=True)

    async def _create_account(
        self,
        customer_id: str,
        program: LoyaltyProgramSettings,
        *,
        referrer_customer_id: str | None,
    ) -> LoyaltyAccount:
        default_tier: LoyaltyTier | None = None
        if program.enable_tiers:
            default_tier = resolve_tier(0, await self._active_tiers())

        account = LoyaltyAccount(
            id=uuid4(),
            customer_id=customer_id,
            current_tier=default_tier,
            points_balance=0,
            lifetime_points_earned=0,
            referral_code=await self._generate_unique_referral_code(),
            referred_by_customer_id=referrer_customer_id,
            is_active=True,
            enrolled_at=utcnow(),
        )
        self._db.add(account)
        await self._db.flush()

        if default_tier is not None:
            self._db.add(
                LoyaltyTierHistory(
                    account_id=account.id,
                    tier_id=default_tier.id,
                    previous_tier_id=None,
                    lifetime_points=0,
                    achieved_at=account.enrolled_at,
                )
            )

        signup = SignupEvent(customer_id=customer_id)
        rule = select_rule(await self._rules(signup.rule_type), signup.rule_type, now=utcnow())
        if rule is not None:
            points = calculate_points(
                signup, rule, now=utcnow(), points_per_currency_unit=program.points_per_currency_unit
            )
            if points > 0:
                await self._apply_award(
                    account,
                    program,
                    LedgerEntry(
                        transaction_type=LoyaltyTransactionType.EARN,
                        points=points,
                        source=signup.source,
                        reference_id=signup.reference_id,
                        description="Signup bonus",
                        deduplicate=True,
                    ),
                )

        self._queue_event(
            "loyalty.account.enrolled",
            {"customer_id": customer_id, "account_id": str(account.id), "referral_code": account.referral_code},
        )
        return account

    async def _pay_referral(
        self,
        referrer_customer_id: str,
        referred_customer_id: str,
        program: LoyaltyProgramSettings,
    ) -> None:
        """Award both sides of a referral in independent, best-effort transactions."""

        async def _referrer_bonus() -> None:
            account = await self._ledger.lock_account(referrer_customer_id)
            self._db.add(
                LoyaltyReferral(
                    referrer_account_id=account.id,
                    referred_customer_id=referred_customer_id,
                    points_awarded=max(program.referrer_points, 0),
                    referred_at=utcnow(),
                )
            )
            if program.referrer_points > 0:
                await self._apply_award(
                    account,
                    program,
                    LedgerEntry(
                        transaction_type=LoyaltyTransactionType.EARN,
                        points=program.referrer_points,
                        source=LoyaltyTransactionSource.REFERRAL,
                        reference_id=f"referred:{referred_customer_id}",
                        description="Referral bonus",
                        deduplicate=True,
                    ),
                )
            else:
                await self._db.flush()

        async def _referred_bonus() -> None:
            account = await self._ledger.lock_account(referred_customer_id)
            await self._apply_award(
                account,
                program,
                LedgerEntry(
                    transaction_type=LoyaltyTransactionType.EARN,
                    points=program.referred_points,
                    source=LoyaltyTransactionSource.REFERRAL,
                    reference_id=f"referred-by:{referrer_customer_id}",
                    description="Welcome bonus for joining via referral",
                    deduplicate=True,
                ),
            )

        payouts: list[tuple[str, Callable[[], Awaitable[None]]]] = [("referrer", _referrer_bonus)]
        if program.referred_points > 0:
            payouts.append(("referred", _referred_bonus))

        for side, payout in payouts:
            try:
                await self._serialized(payout, label=f"loyalty.referral.{side}")
            except Exception as exc:  # noqa: BLE001
                self._observability.record_referral_event("payout_failed")
                logger.exception(
                    "Referral payout failed; enrollment kept",
                    side=side,
                    referrer=referrer_customer_id,
                    referred=referred_customer_id,
                    error=str(exc),
                )
                continue
            self._observability.record_referral_event(f"{side}_paid")
            await self._emit_pending()

    # ------------------------------------------------------------------
    # Awards and redemptions
    # ------------------------------------------------------------------

    async def award_points(
        self,
        customer_id: str,
        *,
        points: int,
        source: LoyaltyTransactionSource,
        transaction_type: LoyaltyTransactionType = LoyaltyTransactionType.EARN,
        reference_id: str | None = None,
        description: str | None = None,
        deduplicate: bool = False,
    ) -> AwardResult:
        if transaction_type not in (LoyaltyTransactionType.EARN, LoyaltyTransactionType.BONUS):
            raise ValidationError("Only earn and bonus transactions can be awarded")
        if points <= 0:
            raise ValidationError("Awarded points must be positive")

        program = await self._active_program()
        await self._ensure_account(customer_id, program)
        entry = LedgerEntry(
            transaction_type=transaction_type,
            points=points,
            source=source,
            reference_id=reference_id,
            description=description,
            deduplicate=deduplicate,
        )

        async def _award() -> AwardResult:
            account = await self._ledger.lock_account(customer_id)
            return await self._apply_award(account, program, entry)

        result = await self._serialized(_award, label="loyalty.award")
        await self._emit_pending()
        return result

    async def award_event_points(self, customer_id: str, event: LoyaltyEvent) -> AwardResult:
        """Award whatever the matching earn rule grants for ``event``."""

        program = await self._active_program()
        now = utcnow()
        rule = select_rule(
            await self._rules(event.rule_type),
            event.rule_type,
            now=now,
            event_code=getattr(event, "event_code", None),
        )
        if rule is None:
            logger.info("No active points rule for event", customer_id=customer_id, rule_type=event.rule_type.value)
            return AwardResult(account=None, points=0, applied=False)

        points = calculate_points(event, rule, now=now, points_per_currency_unit=program.points_per_currency_unit)
        if points <= 0:
            return AwardResult(account=None, points=0, applied=False)

        return await self.award_points(
            customer_id,
            points=points,
            source=event.source,
            reference_id=event.reference_id,
            description=rule.name,
            deduplicate=True,
        )

    async def process_order_points(self, order_id: str, customer_id: str) -> AwardResult:
        """Award purchase points for a completed order, at most once per order."""

        program = await self._active_program()
        orders = self._orders or build_order_directory()
        total = await orders.get_order_total(order_id, customer_id)
        event = PurchaseEvent(order_id=order_id, amount=total)

        now = utcnow()
        rule = select_rule(await self._rules(PointsRuleType.PURCHASE), PointsRuleType.PURCHASE, now=now)
        if rule is None:
            logger.info("No active purchase rule; order earns nothing", order_id=order_id)
            return AwardResult(account=None, points=0, applied=False)

        base_points = calculate_points(
            event, rule, now=now, points_per_currency_unit=program.points_per_currency_unit
        )
        if base_points <= 0:
            return AwardResult(account=None, points=0, applied=False)

        await self._ensure_account(customer_id, program)

        async def _award_order() -> AwardResult:
            account = await self._ledger.lock_account(customer_id)
            multiplier = Decimal("1")
            if program.enable_tiers and account.current_tier is not None:
                multiplier = Decimal(str(account.current_tier.points_multiplier or 1))
            points = int((Decimal(base_points) * multiplier).to_integral_value(rounding=ROUND_FLOOR))
            if points <= 0:
                return AwardResult(account=account, points=0, applied=False)
            return await self._apply_award(
                account,
                program,
                LedgerEntry(
                    transaction_type=LoyaltyTransactionType.EARN,
                    points=points,
                    source=LoyaltyTransactionSource.PURCHASE,
                    reference_id=order_id,
                    description=f"Points for order {order_id}",
                    deduplicate=True,
                    metadata={"order_total": str(total), "base_points": base_points, "multiplier": str(multiplier)},
                ),
            )

        result = await self._serialized(_award_order, label="loyalty.order_points")
        await self._emit_pending()
        return result

    async def redeem_points(
        self,
        customer_id: str,
        *,
        points: int,
        redemption_type: LoyaltyRedemptionType = LoyaltyRedemptionType.DISCOUNT,
        reference_id: str | None = None,
        description: str | None = None,
    ) -> RedemptionResult:
        program = await self._active_program()
        if points <= 0:
            raise ValidationError("Redeemed points must be positive")
        if points < program.minimum_redemption:
            raise ValidationError(f"Minimum redemption is {program.minimum_redemption} points")

        async def _redeem() -> RedemptionResult:
            account = await self._ledger.lock_account(customer_id)
            if not account.is_active:
                raise InactiveAccountError(customer_id)
            if int(account.points_balance or 0) < points:
                raise InsufficientBalanceError(points, int(account.points_balance or 0))

            now = utcnow()
            appended = await self._ledger.append_transaction(
                account,
                LedgerEntry(
                    transaction_type=LoyaltyTransactionType.REDEEM,
                    points=points,
                    source=LoyaltyTransactionSource.REDEMPTION,
                    reference_id=reference_id,
                    description=description or f"Redeemed {points} points",
                ),
                now=now,
            )
            redemption = LoyaltyRedemption(
                account_id=account.id,
                transaction_id=appended.transaction.id,
                redemption_type=redemption_type,
                points_redeemed=points,
                value=quantize_money(Decimal(points) * program.point_value),
                reference_id=reference_id,
                description=description or f"Redeemed {points} points",
                redeemed_at=now,
            )
            self._db.add(redemption)
            await self._db.flush()
            self._queue_event(
                "loyalty.points.redeemed",
                {
                    "customer_id": customer_id,
                    "points": points,
                    "value": str(redemption.value),
                    "balance": appended.balance,
                    "redemption_id": str(redemption.id),
                },
            )
            return RedemptionResult(redemption=redemption, transaction=appended.transaction, balance=appended.balance)

        result = await self._serialized(_redeem, label="loyalty.redeem")
        self._observability.record_redemption(points)
        await self._emit_pending()
        logger.info("Loyalty points redeemed", customer_id=customer_id, points=points, balance=result.balance)
        return result

    async def adjust_points(self, customer_id: str, *, points: int, reason: str) -> AwardResult:
        """Administrative correction; negative amounts cannot overdraw the balance."""

        if points == 0:
            raise ValidationError("Adjustment must be non-zero")
        if not reason:
            raise ValidationError("Adjustments require a reason")
        program = await self._active_program()

        async def _adjust() -> AwardResult:
            account = await self._ledger.lock_account(customer_id)
            appended = await self._ledger.append_transaction(
                account,
                LedgerEntry(
                    transaction_type=LoyaltyTransactionType.ADJUST,
                    points=points,
                    source=LoyaltyTransactionSource.ADMIN_ADJUSTMENT,
                    description=reason,
                ),
            )
            tier_changed = await self._recalculate_tier(account, program) if points > 0 else False
            self._queue_event(
                "loyalty.points.adjusted",
                {"customer_id": customer_id, "points": points, "balance": appended.balance, "reason": reason},
            )
            return AwardResult(
                account=account,
                points=points,
                applied=True,
                transaction=appended.transaction,
                tier_changed=tier_changed,
            )

        result = await self._serialized(_adjust, label="loyalty.adjust")
        await self._emit_pending()
        logger.info("Loyalty points adjusted", customer_id=customer_id, points=points, reason=reason)
        return result

    async def _apply_award(
        self,
        account: LoyaltyAccount,
        program: LoyaltyProgramSettings,
        entry: LedgerEntry,
    ) -> AwardResult:
        if not account.is_active:
            raise InactiveAccountError(account.customer_id)

        now = utcnow()
        if program.enable_point_expiry and program.points_expiry_days > 0:
            entry.expiry_date = now + timedelta(days=program.points_expiry_days)

        appended: AppendResult = await self._ledger.append_transaction(account, entry, now=now)
        if not appended.applied:
            self._observability.record_award(entry.source.value, 0, duplicate=True)
            logger.info(
                "Duplicate loyalty award ignored",
                customer_id=account.customer_id,
                source=entry.source.value,
                reference_id=entry.reference_id,
            )
            return AwardResult(account=account, points=0, applied=False, transaction=appended.transaction)

        tier_changed = await self._recalculate_tier(account, program)
        self._observability.record_award(entry.source.value, appended.transaction.points)
        self._queue_event(
            "loyalty.points.awarded",
            {
                "customer_id": account.customer_id,
                "points": appended.transaction.points,
                "source": entry.source.value,
                "reference_id": entry.reference_id,
                "balance": appended.balance,
            },
        )
        logger.info(
            "Loyalty points awarded",
            customer_id=account.customer_id,
            points=appended.transaction.points,
            source=entry.source.value,
            balance=appended.balance,
        )
        return AwardResult(
            account=account,
            points=appended.transaction.points,
            applied=True,
            transaction=appended.transaction,
            tier_changed=tier_changed,
        )

    async def _recalculate_tier(self, account: LoyaltyAccount, program: LoyaltyProgramSettings) -> bool:
        if not program.enable_tiers:
            return False

        resolved = resolve_tier(int(account.lifetime_points_earned or 0), await self._active_tiers())
        current = account.current_tier
        if not is_promotion(current, resolved):
            return False

        account.current_tier = resolved
        self._db.add(
            LoyaltyTierHistory(
                account_id=account.id,
                tier_id=resolved.id,
                previous_tier_id=current.id if current else None,
                lifetime_points=int(account.lifetime_points_earned or 0),
                achieved_at=utcnow(),
            )
        )
        await self._db.flush()
        self._observability.record_tier_change(resolved.code)
        self._queue_event(
            "loyalty.tier.changed",
            {
                "customer_id": account.customer_id,
                "previous_tier": current.code if current else None,
                "tier": resolved.code,
                "lifetime_points": int(account.lifetime_points_earned or 0),
            },
        )
        logger.info(
            "Loyalty tier upgraded",
            customer_id=account.customer_id,
            previous_tier=current.code if current else None,
            tier=resolved.code,
        )
        return True

    # ------------------------------------------------------------------
    # Expiry
    # ------------------------------------------------------------------

    async def clear_expired_points(self, now: datetime | None = None) -> ExpirySweepResult:
        """Expire outstanding points whose expiry date has passed, once per earning."""

        reference_time = ensure_aware(now) or utcnow()
        result = ExpirySweepResult()
        program = await self.get_program()
        if not program.enable_point_expiry:
            logger.info("Point expiry disabled; sweep skipped")
            return result

        stmt = (
            select(LoyaltyPointExpiration.account_id)
            .where(
                LoyaltyPointExpiration.status == LoyaltyPointExpirationStatus.SCHEDULED,
                LoyaltyPointExpiration.expires_at < reference_time,
            )
            .distinct()
        )
        account_ids = list((await self._db.execute(stmt)).scalars().all())

        for account_id in account_ids:
            try:
                expired = await self._serialized(
                    lambda account_id=account_id: self._expire_account(account_id, reference_time),
                    label="loyalty.expire",
                )
            except Exception as exc:  # noqa: BLE001
                logger.exception("Point expiry failed for account", account_id=str(account_id), error=str(exc))
                result.failures.append(ExpiryFailure(account_id=str(account_id), error=str(exc)))
                continue
            result.processed_accounts += 1
            result.expired_points += expired
            await self._emit_pending()

        self._observability.record_expiry_sweep(
            accounts=result.processed_accounts,
            points=result.expired_points,
            failures=len(result.failures),
        )
        logger.bind(summary=result.as_dict()).info("Loyalty expiry sweep completed")
        return result

    async def _expire_account(self, account_id: UUID, now: datetime) -> int:
        account = await self._ledger.lock_account_by_id(account_id)
        due = await self._ledger.scheduled_expirations(account_id, due_before=now)
        outstanding = sum(item.remaining_points for item in due)
        to_expire = min(outstanding, int(account.points_balance or 0))

        expire_transaction: LoyaltyTransaction | None = None
        if to_expire > 0:
            appended = await self._ledger.append_transaction(
                account,
                LedgerEntry(
                    transaction_type=LoyaltyTransactionType.EXPIRE,
                    points=to_expire,
                    source=LoyaltyTransactionSource.EXPIRATION,
                    description=f"Expired {to_expire} points",
                    metadata={"source_transaction_ids": [str(item.source_transaction_id) for item in due]},
                ),
                now=now,
            )
            expire_transaction = appended.transaction

        remaining = to_expire
        for item in due:
            take = min(item.remaining_points, remaining)
            item.expired_points = int(item.expired_points or 0) + take
            remaining -= take
            item.status = LoyaltyPointExpirationStatus.EXPIRED
            item.swept_at = now
            if expire_transaction is not None:
                item.expire_transaction_id = expire_transaction.id
        await self._db.flush()

        if to_expire > 0:
            self._queue_event(
                "loyalty.points.expired",
                {"customer_id": account.customer_id, "points": to_expire, "balance": account.points_balance},
            )
        return to_expire

    # ------------------------------------------------------------------
    # Account state
    # ------------------------------------------------------------------

    async def get_account(self, customer_id: str) -> LoyaltyAccount:
        account = await self._ledger.find_account(customer_id)
        if account is None:
            raise NotFoundError(f"No loyalty account for customer {customer_id}")
        return account

    async def set_account_active(self, customer_id: str, *, active: bool) -> LoyaltyAccount:
        async def _toggle() -> LoyaltyAccount:
            account = await self._ledger.lock_account(customer_id)
            if account.is_active != active:
                account.is_active = active
                await self._db.flush()
                self._queue_event(
                    "loyalty.account.reactivated" if active else "loyalty.account.deactivated",
                    {"customer_id": customer_id},
                )
            return account

        account = await self._serialized(_toggle, label="loyalty.account_status")
        await self._emit_pending()
        logger.info("Loyalty account status updated", customer_id=customer_id, is_active=active)
        return account

    async def deactivate_account(self, customer_id: str) -> LoyaltyAccount:
        return await self.set_account_active(customer_id, active=False)

    async def reactivate_account(self, customer_id: str) -> LoyaltyAccount:
        return await self.set_account_active(customer_id, active=True)

    async def list_transactions(self, customer_id: str, *, limit: int = 50, offset: int = 0) -> Sequence[LoyaltyTransaction]:
        account = await self.get_account(customer_id)
        return await self._ledger.list_transactions(account.id, limit=limit, offset=offset)

    async def get_account_snapshot(self, customer_id: str) -> AccountSnapshot:
        account = await self.get_account(customer_id)
        program = await self.get_program()

        progress: TierProgress | None = None
        tiers = await self._active_tiers()
        if program.enable_tiers and tiers:
            progress = tier_progress(int(account.lifetime_points_earned or 0), tiers)

        redemptions = (
            await self._db.execute(
                select(LoyaltyRedemption)
                .where(LoyaltyRedemption.account_id == account.id)
                .order_by(LoyaltyRedemption.redeemed_at.desc())
                .limit(10)
            )
        ).scalars().all()
        referral_count = len(
            (
                await self._db.execute(
                    select(LoyaltyReferral.id).where(LoyaltyReferral.referrer_account_id == account.id)
                )
            ).scalars().all()
        )
        expiring = [
            item for item in await self._ledger.scheduled_expirations(account.id) if item.remaining_points > 0
        ][:5]

        return AccountSnapshot(
            account=account,
            tier=account.current_tier,
            progress=progress,
            recent_transactions=await self._ledger.list_transactions(account.id, limit=10),
            redemptions=redemptions,
            referral_count=referral_count,
            expiring_points=expiring,
        )

    async def generate_referral_link(self, customer_id: str) -> str:
        account = await self.get_account(customer_id)
        base_url = settings.storefront_base_url.rstrip("/")
        return f"{base_url}/signup?ref={account.referral_code}"

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _ensure_account(self, customer_id: str, program: LoyaltyProgramSettings) -> None:
        if await self._ledger.find_account(customer_id) is not None:
            return
        if not program.auto_enroll:
            raise NotFoundError(f"Customer {customer_id} is not enrolled in the loyalty program")
        await self.enroll(customer_id)

    async def _active_tiers(self) -> list[LoyaltyTier]:
        stmt = select(LoyaltyTier).where(LoyaltyTier.is_active.is_(True)).order_by(LoyaltyTier.point_threshold.asc())
        return list((await self._db.execute(stmt)).scalars().all())

    async def _rules(self, rule_type: PointsRuleType) -> list[PointsRule]:
        stmt = (
            select(PointsRule)
            .where(PointsRule.rule_type == rule_type)
            .order_by(PointsRule.created_at.asc(), PointsRule.name.asc())
        )
        return list((await self._db.execute(stmt)).scalars().all())

    async def _find_by_referral_code(self, code: str) -> LoyaltyAccount | None:
        stmt = select(LoyaltyAccount).where(LoyaltyAccount.referral_code == code.strip().upper())
        return (await self._db.execute(stmt)).scalar_one_or_none()

    async def _generate_unique_referral_code(self) -> str:
        while True:
            code = uuid4().hex[:8].upper()
            stmt = select(LoyaltyAccount.id).where(LoyaltyAccount.referral_code == code)
            if (await self._db.execute(stmt)).scalar_one_or_none() is None:
                return code

    async def _serialized(self, operation: Callable[[], Awaitable[T]], *, label: str) -> T:
        async def _attempt() -> T:
            self._pending_events = []
            return await operation()

        return await run_serialized(self._db, _attempt, attempts=self._write_attempts, label=label)

    def _queue_event(self, name: str, payload: dict[str, Any]) -> None:
        self._pending_events.append((name, payload))

    async def _emit_pending(self) -> None:
        events, self._pending_events = self._pending_events, []
        for name, payload in events:
            await self._notifications.emit(name, payload)


__all__ = [
    "AccountSnapshot",
    "AwardResult",
    "EnrollmentResult",
    "ExpiryFailure",
    "ExpirySweepResult",
    "LoyaltyService",
    "RedemptionResult",
]
