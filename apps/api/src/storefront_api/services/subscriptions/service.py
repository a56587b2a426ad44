"""Subscription lifecycle: plans, subscribe, cancel, plan changes, and renewals."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Awaitable, Callable, Literal, Sequence, TypeVar
from uuid import UUID, uuid4

from loguru import logger
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from storefront_api.core.clock import ensure_aware, utcnow
from storefront_api.core.errors import BadRequestError, NotFoundError, PaymentFailedError
from storefront_api.core.settings import settings
from storefront_api.db.transactions import run_serialized
from storefront_api.domain.billing import advance_period, compute_proration, quantize_money, trial_end
from storefront_api.models.subscription import (
    BillingInterval,
    BillingRecordKind,
    BillingRecordStatus,
    Subscription,
    SubscriptionBillingRecord,
    SubscriptionPlan,
    SubscriptionStatus,
)
from storefront_api.observability.subscriptions import get_subscription_store
from storefront_api.services.notifications import NotificationService
from storefront_api.services.payments import PaymentGateway, build_payment_gateway

from .state_machine import LIVE_STATES, RENEWABLE_STATES, SubscriptionStateMachine

T = TypeVar("T")

RenewalStatus = Literal["renewed", "cancelled", "not_due", "not_renewable", "payment_failed"]

_PLAN_FIELDS = {
    "code",
    "name",
    "description",
    "price_amount",
    "price_currency",
    "billing_interval",
    "billing_frequency",
    "trial_days",
    "trial_enabled",
    "features",
    "is_active",
    "sort_order",
}


@dataclass(slots=True)
class RenewalOutcome:
    subscription_id: str
    status: RenewalStatus
    reason: str | None = None
    current_period_end: datetime | None = None

    @property
    def renewed(self) -> bool:
        return self.status == "renewed"

    def as_dict(self) -> dict[str, Any]:
        return {
            "subscription_id": self.subscription_id,
            "status": self.status,
            "reason": self.reason,
            "current_period_end": self.current_period_end.isoformat() if self.current_period_end else None,
        }


class SubscriptionService:
    """Manage the subscription state machine and its billing history.

    Mutations reload the subscription under a row lock and commit through
    :func:`run_serialized`, so a renewal and a customer-initiated change on
    the same subscription cannot interleave. Charges are confirmed with the
    payment collaborator before any period moves forward.
    """

    def __init__(
        self,
        db_session: AsyncSession,
        *,
        payment_gateway: PaymentGateway | None = None,
        notification_service: NotificationService | None = None,
        write_attempts: int | None = None,
        renewal_window: timedelta | None = None,
        max_failed_payments: int | None = None,
    ) -> None:
        self._db = db_session
        self._gateway = payment_gateway
        self._notifications = notification_service or NotificationService()
        self._write_attempts = write_attempts or settings.loyalty_write_retry_attempts
        self._renewal_window = renewal_window or timedelta(hours=settings.subscription_renewal_window_hours)
        self._max_failed_payments = max_failed_payments or settings.subscription_max_failed_payments
        self._observability = get_subscription_store()
        self._pending_events: list[tuple[str, dict[str, Any]]] = []

    @property
    def gateway(self) -> PaymentGateway:
        if self._gateway is None:
            self._gateway = build_payment_gateway()
        return self._gateway

    # ------------------------------------------------------------------
    # Plans
    # ------------------------------------------------------------------

    async def list_plans(self, *, include_inactive: bool = False) -> Sequence[SubscriptionPlan]:
        stmt = select(SubscriptionPlan).order_by(SubscriptionPlan.sort_order.asc(), SubscriptionPlan.price_amount.asc())
        if not include_inactive:
            stmt = stmt.where(SubscriptionPlan.is_active.is_(True))
        return (await self._db.execute(stmt)).scalars().all()

    async def get_plan(self, plan_ref: UUID | str) -> SubscriptionPlan:
        """Look a plan up by id or by code."""

        plan_id = _as_uuid(plan_ref)
        if plan_id is not None:
            plan = await self._db.get(SubscriptionPlan, plan_id)
        else:
            stmt = select(SubscriptionPlan).where(SubscriptionPlan.code == str(plan_ref))
            plan = (await self._db.execute(stmt)).scalar_one_or_none()
        if plan is None:
            raise NotFoundError(f"Subscription plan {plan_ref} not found")
        return plan

    async def create_plan(self, **values: Any) -> SubscriptionPlan:
        payload = {key: value for key, value in values.items() if key in _PLAN_FIELDS and value is not None}
        if not payload.get("code") or not payload.get("name") or payload.get("price_amount") is None:
            raise BadRequestError("Plans require a code, a name, and a price")
        payload.setdefault("price_currency", settings.default_currency)
        _validate_plan_values(payload)

        stmt = select(SubscriptionPlan.id).where(SubscriptionPlan.code == payload["code"])
        if (await self._db.execute(stmt)).scalar_one_or_none() is not None:
            raise BadRequestError(f"Plan with code {payload['code']} already exists")

        plan = SubscriptionPlan(**payload)
        self._db.add(plan)
        await self._db.commit()
        logger.info("Subscription plan created", plan=plan.code, price=str(plan.price_amount))
        return plan

    async def update_plan(self, plan_ref: UUID | str, **changes: Any) -> SubscriptionPlan:
        plan = await self.get_plan(plan_ref)
        payload = {key: value for key, value in changes.items() if key in _PLAN_FIELDS and value is not None}
        _validate_plan_values(payload)

        new_code = payload.get("code")
        if new_code and new_code != plan.code:
            if await self._count_subscriptions(plan.id) > 0:
                raise BadRequestError("Cannot change the code of a plan that has subscriptions")
            stmt = select(SubscriptionPlan.id).where(SubscriptionPlan.code == new_code)
            if (await self._db.execute(stmt)).scalar_one_or_none() is not None:
                raise BadRequestError(f"Plan with code {new_code} already exists")

        for key, value in payload.items():
            setattr(plan, key, value)
        await self._db.commit()
        logger.info("Subscription plan updated", plan=plan.code, fields=sorted(payload))
        return plan

    async def deactivate_plan(self, plan_ref: UUID | str) -> SubscriptionPlan:
        """Soft-delete a plan nobody is actively subscribed to."""

        plan = await self.get_plan(plan_ref)
        if await self._count_subscriptions(plan.id, statuses=LIVE_STATES | {SubscriptionStatus.PAST_DUE}) > 0:
            raise BadRequestError("Cannot deactivate a plan with active subscriptions")
        plan.is_active = False
        await self._db.commit()
        logger.info("Subscription plan deactivated", plan=plan.code)
        return plan

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    async def get_subscription(self, subscription_id: UUID) -> Subscription:
        subscription = await self._db.get(Subscription, subscription_id)
        if subscription is None:
            raise NotFoundError(f"Subscription {subscription_id} not found")
        return subscription

    async def list_customer_subscriptions(self, customer_id: str) -> Sequence[Subscription]:
        stmt = (
            select(Subscription)
            .where(Subscription.customer_id == customer_id)
            .order_by(Subscription.created_at.desc())
        )
        return (await self._db.execute(stmt)).scalars().all()

    async def billing_history(self, subscription_id: UUID) -> Sequence[SubscriptionBillingRecord]:
        await self.get_subscription(subscription_id)
        stmt = (
            select(SubscriptionBillingRecord)
            .where(SubscriptionBillingRecord.subscription_id == subscription_id)
            .order_by(SubscriptionBillingRecord.billed_at.asc())
        )
        return (await self._db.execute(stmt)).scalars().all()

    async def subscribe(
        self,
        customer_id: str,
        plan_ref: UUID | str,
        *,
        payment_method: str | None = None,
        now: datetime | None = None,
    ) -> Subscription:
        """Start a subscription in trial when the plan offers one, otherwise active."""

        if not customer_id:
            raise BadRequestError("customer_id is required")
        now = ensure_aware(now) or utcnow()
        plan = await self.get_plan(plan_ref)
        if not plan.is_active:
            raise BadRequestError(f"Plan {plan.code} is not available")

        stmt = select(Subscription.id).where(
            Subscription.customer_id == customer_id,
            Subscription.plan_id == plan.id,
            Subscription.status.in_(list(LIVE_STATES)),
        )
        if (await self._db.execute(stmt)).first() is not None:
            raise BadRequestError("Customer already has an active subscription to this plan")

        if plan.offers_trial:
            status = SubscriptionStatus.TRIAL
            period_end = trial_end(now, int(plan.trial_days))
        else:
            status = SubscriptionStatus.ACTIVE
            period_end = advance_period(now, plan.billing_interval, int(plan.billing_frequency))

        subscription = Subscription(
            id=uuid4(),
            customer_id=customer_id,
            plan=plan,
            status=status,
            start_date=now,
            current_period_start=now,
            current_period_end=period_end,
            cancel_at_period_end=False,
            payment_method=payment_method,
            failed_payment_attempts=0,
            metadata_json={},
        )
        self._db.add(subscription)
        await self._db.commit()

        self._observability.record_lifecycle("created")
        await self._notifications.emit(
            "subscription.created",
            {
                "subscription_id": str(subscription.id),
                "customer_id": customer_id,
                "plan": plan.code,
                "status": status.value,
                "current_period_end": period_end.isoformat(),
            },
        )
        logger.info(
            "Subscription created",
            subscription_id=str(subscription.id),
            customer_id=customer_id,
            plan=plan.code,
            status=status.value,
        )
        return subscription

    async def cancel(
        self,
        subscription_id: UUID,
        *,
        at_period_end: bool = False,
        reason: str | None = None,
        now: datetime | None = None,
    ) -> Subscription:
        now = ensure_aware(now) or utcnow()

        async def _cancel() -> Subscription:
            subscription = await self._lock(subscription_id)
            status = SubscriptionStatus(subscription.status)
            if status in (SubscriptionStatus.CANCELLED, SubscriptionStatus.EXPIRED):
                raise BadRequestError(f"Subscription is already {status.value}")

            subscription.cancellation_reason = reason
            subscription.cancellation_date = now
            if at_period_end:
                subscription.cancel_at_period_end = True
            else:
                SubscriptionStateMachine.transition(subscription, SubscriptionStatus.CANCELLED)
                subscription.cancel_at_period_end = False
                subscription.end_date = now
            await self._db.flush()
            self._queue_event(
                "subscription.cancelled",
                {
                    "subscription_id": str(subscription.id),
                    "customer_id": subscription.customer_id,
                    "immediate": not at_period_end,
                    "reason": reason,
                },
            )
            return subscription

        subscription = await self._serialized(_cancel, label="subscription.cancel")
        self._observability.record_lifecycle("cancel_at_period_end" if at_period_end else "cancelled")
        await self._emit_pending()
        logger.info(
            "Subscription cancellation recorded",
            subscription_id=str(subscription_id),
            at_period_end=at_period_end,
        )
        return subscription

    async def reactivate(self, subscription_id: UUID, *, now: datetime | None = None) -> Subscription:
        """Undo a cancellation that has not taken effect yet."""

        now = ensure_aware(now) or utcnow()

        async def _reactivate() -> Subscription:
            subscription = await self._lock(subscription_id)
            status = SubscriptionStatus(subscription.status)
            if status == SubscriptionStatus.CANCELLED:
                end_date = ensure_aware(subscription.end_date)
                if end_date is None or end_date < now:
                    raise BadRequestError("Subscription has already ended and cannot be reactivated")
                SubscriptionStateMachine.transition(subscription, SubscriptionStatus.ACTIVE)
                subscription.end_date = None
            elif status in LIVE_STATES and subscription.cancel_at_period_end:
                pass
            else:
                raise BadRequestError(f"Subscription in status {status.value} is not cancelled")

            subscription.cancel_at_period_end = False
            subscription.cancellation_reason = None
            subscription.cancellation_date = None
            await self._db.flush()
            self._queue_event(
                "subscription.reactivated",
                {"subscription_id": str(subscription.id), "customer_id": subscription.customer_id},
            )
            return subscription

        subscription = await self._serialized(_reactivate, label="subscription.reactivate")
        self._observability.record_lifecycle("reactivated")
        await self._emit_pending()
        logger.info("Subscription reactivated", subscription_id=str(subscription_id))
        return subscription

    async def change_plan(
        self,
        subscription_id: UUID,
        new_plan_ref: UUID | str,
        *,
        immediate: bool = True,
        prorate: bool = True,
        now: datetime | None = None,
    ) -> Subscription:
        """Switch plans now (fresh period, optional proration) or at the next renewal."""

        now = ensure_aware(now) or utcnow()
        requested = await self.get_plan(new_plan_ref)
        if not requested.is_active:
            raise BadRequestError(f"Plan {requested.code} is not available")
        # Plain values: a retry starts from a rolled-back session with every loaded row expired.
        new_plan_id, new_plan_code = requested.id, requested.code

        async def _change() -> Subscription:
            subscription = await self._lock(subscription_id)
            new_plan = await self._db.get(SubscriptionPlan, new_plan_id, populate_existing=True)
            if new_plan is None:
                raise NotFoundError(f"Subscription plan {new_plan_code} not found")
            status = SubscriptionStatus(subscription.status)
            if status not in LIVE_STATES:
                raise BadRequestError("Cannot change plan for inactive subscription")
            old_plan = subscription.plan
            if old_plan.id == new_plan.id:
                raise BadRequestError("Subscription is already on this plan")

            metadata = dict(subscription.metadata_json or {})
            if not immediate:
                metadata["pendingPlanChange"] = {
                    "planId": str(new_plan.id),
                    "effectiveDate": ensure_aware(subscription.current_period_end).isoformat(),
                    "requestedAt": now.isoformat(),
                }
                subscription.metadata_json = metadata
                await self._db.flush()
            else:
                await self._apply_immediate_change(subscription, old_plan, new_plan, prorate=prorate, now=now)
                metadata.pop("pendingPlanChange", None)
                subscription.metadata_json = metadata
                await self._db.flush()

            self._queue_event(
                "subscription.plan.changed",
                {
                    "subscription_id": str(subscription.id),
                    "customer_id": subscription.customer_id,
                    "old_plan": old_plan.code,
                    "new_plan": new_plan.code,
                    "immediate": immediate,
                },
            )
            return subscription

        subscription = await self._serialized(_change, label="subscription.change_plan")
        self._observability.record_lifecycle("plan_changed" if immediate else "plan_change_scheduled")
        await self._emit_pending()
        logger.info(
            "Subscription plan change recorded",
            subscription_id=str(subscription_id),
            new_plan=new_plan_code,
            immediate=immediate,
        )
        return subscription

    async def _apply_immediate_change(
        self,
        subscription: Subscription,
        old_plan: SubscriptionPlan,
        new_plan: SubscriptionPlan,
        *,
        prorate: bool,
        now: datetime,
    ) -> None:
        new_end = advance_period(now, new_plan.billing_interval, int(new_plan.billing_frequency))

        if prorate and subscription.status == SubscriptionStatus.ACTIVE:
            amount = compute_proration(
                old_price=Decimal(str(old_plan.price_amount)),
                new_price=Decimal(str(new_plan.price_amount)),
                period_start=ensure_aware(subscription.current_period_start),
                period_end=ensure_aware(subscription.current_period_end),
                now=now,
            )
            record_status = BillingRecordStatus.PENDING
            transaction_ref: str | None = None
            if amount > 0:
                charge = await self.gateway.charge(
                    subscription.customer_id,
                    amount,
                    new_plan.price_currency,
                    idempotency_key=f"{subscription.id}:proration:{now.isoformat()}",
                    payment_method=subscription.payment_method,
                )
                if not charge.success:
                    self._observability.record_lifecycle("proration_declined")
                    raise PaymentFailedError(charge.failure_reason)
                record_status = BillingRecordStatus.SUCCESS
                transaction_ref = charge.transaction_ref
            if amount != 0:
                self._db.add(
                    SubscriptionBillingRecord(
                        subscription_id=subscription.id,
                        plan_id=new_plan.id,
                        kind=BillingRecordKind.PRORATION,
                        amount=amount,
                        currency=new_plan.price_currency,
                        status=record_status,
                        period_start=now,
                        period_end=new_end,
                        transaction_ref=transaction_ref,
                        invoice_number=_invoice_number(now),
                        billed_at=now,
                    )
                )

        subscription.plan = new_plan
        subscription.current_period_start = now
        subscription.current_period_end = new_end

    # ------------------------------------------------------------------
    # Renewals
    # ------------------------------------------------------------------

    async def process_renewal(self, subscription_id: UUID, *, now: datetime | None = None) -> RenewalOutcome:
        """Advance one subscription to its next period if it is due.

        Payment declines are persisted as a failed billing record and move the
        subscription to past_due (or unpaid after repeated failures). A
        :class:`PaymentGatewayError` propagates with nothing persisted.
        """

        now = ensure_aware(now) or utcnow()

        async def _renew() -> RenewalOutcome:
            subscription = await self._lock(subscription_id)
            return await self._renew_locked(subscription, now)

        outcome = await self._serialized(_renew, label="subscription.renewal")
        self._observability.record_renewal(outcome.status)
        await self._emit_pending()
        logger.info(
            "Subscription renewal processed",
            subscription_id=str(subscription_id),
            outcome=outcome.status,
            reason=outcome.reason,
        )
        return outcome

    async def _renew_locked(self, subscription: Subscription, now: datetime) -> RenewalOutcome:
        sub_id = str(subscription.id)
        status = SubscriptionStatus(subscription.status)
        period_end = ensure_aware(subscription.current_period_end)

        if status not in RENEWABLE_STATES:
            return RenewalOutcome(sub_id, "not_renewable", f"status is {status.value}", period_end)
        if period_end - now > self._renewal_window:
            return RenewalOutcome(sub_id, "not_due", "period ends outside the renewal window", period_end)

        if subscription.cancel_at_period_end:
            SubscriptionStateMachine.transition(subscription, SubscriptionStatus.CANCELLED)
            subscription.end_date = period_end
            subscription.cancellation_date = subscription.cancellation_date or now
            await self._db.flush()
            self._queue_event(
                "subscription.cancelled",
                {
                    "subscription_id": sub_id,
                    "customer_id": subscription.customer_id,
                    "immediate": False,
                    "reason": subscription.cancellation_reason,
                },
            )
            return RenewalOutcome(sub_id, "cancelled", "cancel_at_period_end", period_end)

        new_start = period_end
        plan = subscription.plan
        metadata = dict(subscription.metadata_json or {})
        pending = metadata.get("pendingPlanChange")
        pending_due = False
        effective: datetime | None = None
        if isinstance(pending, dict):
            try:
                effective = ensure_aware(datetime.fromisoformat(str(pending.get("effectiveDate"))))
            except ValueError:
                logger.warning("Dropping pending plan change with a malformed date", subscription_id=sub_id)
                metadata.pop("pendingPlanChange", None)
        if effective is not None and effective <= new_start:
            pending_plan_id = _as_uuid(pending.get("planId"))
            pending_plan = await self._db.get(SubscriptionPlan, pending_plan_id) if pending_plan_id else None
            if pending_plan is None:
                logger.warning("Dropping pending change to a missing plan", subscription_id=sub_id)
                metadata.pop("pendingPlanChange", None)
            else:
                plan = pending_plan
                pending_due = True

        new_end = advance_period(new_start, plan.billing_interval, int(plan.billing_frequency))
        amount = quantize_money(plan.price_amount)
        transaction_ref: str | None = None
        if amount > 0:
            charge = await self.gateway.charge(
                subscription.customer_id,
                amount,
                plan.price_currency,
                idempotency_key=f"{sub_id}:renewal:{new_start.isoformat()}",
                payment_method=subscription.payment_method,
            )
            if not charge.success:
                return await self._record_failed_renewal(
                    subscription, plan, amount, new_start, new_end, charge.failure_reason, now, metadata
                )
            transaction_ref = charge.transaction_ref

        self._db.add(
            SubscriptionBillingRecord(
                subscription_id=subscription.id,
                plan_id=plan.id,
                kind=BillingRecordKind.RENEWAL,
                amount=amount,
                currency=plan.price_currency,
                status=BillingRecordStatus.SUCCESS,
                period_start=new_start,
                period_end=new_end,
                transaction_ref=transaction_ref,
                invoice_number=_invoice_number(now),
                billed_at=now,
            )
        )
        if pending_due:
            metadata.pop("pendingPlanChange", None)
        if SubscriptionStatus(subscription.status) != SubscriptionStatus.ACTIVE:
            SubscriptionStateMachine.transition(subscription, SubscriptionStatus.ACTIVE)
        subscription.plan = plan
        subscription.current_period_start = new_start
        subscription.current_period_end = new_end
        subscription.failed_payment_attempts = 0
        subscription.metadata_json = metadata
        await self._db.flush()

        self._queue_event(
            "subscription.renewed",
            {
                "subscription_id": sub_id,
                "customer_id": subscription.customer_id,
                "plan": plan.code,
                "amount": str(amount),
                "currency": plan.price_currency,
                "current_period_end": new_end.isoformat(),
            },
        )
        return RenewalOutcome(sub_id, "renewed", None, new_end)

    async def _record_failed_renewal(
        self,
        subscription: Subscription,
        plan: SubscriptionPlan,
        amount: Decimal,
        period_start: datetime,
        period_end: datetime,
        failure_reason: str | None,
        now: datetime,
        metadata: dict[str, Any],
    ) -> RenewalOutcome:
        sub_id = str(subscription.id)
        self._db.add(
            SubscriptionBillingRecord(
                subscription_id=subscription.id,
                plan_id=plan.id,
                kind=BillingRecordKind.RENEWAL,
                amount=amount,
                currency=plan.price_currency,
                status=BillingRecordStatus.FAILED,
                period_start=period_start,
                period_end=period_end,
                failure_reason=failure_reason,
                billed_at=now,
            )
        )
        attempts = int(subscription.failed_payment_attempts or 0) + 1
        subscription.failed_payment_attempts = attempts
        subscription.metadata_json = metadata
        target = (
            SubscriptionStatus.UNPAID if attempts >= self._max_failed_payments else SubscriptionStatus.PAST_DUE
        )
        if SubscriptionStatus(subscription.status) != target:
            SubscriptionStateMachine.transition(subscription, target)
        await self._db.flush()

        self._queue_event(
            "subscription.payment_failed",
            {
                "subscription_id": sub_id,
                "customer_id": subscription.customer_id,
                "attempts": attempts,
                "status": target.value,
                "reason": failure_reason,
            },
        )
        logger.warning(
            "Subscription renewal payment declined",
            subscription_id=sub_id,
            attempts=attempts,
            status=target.value,
            reason=failure_reason,
        )
        return RenewalOutcome(sub_id, "payment_failed", failure_reason, ensure_aware(subscription.current_period_end))

    async def expire_lapsed_subscriptions(self, *, now: datetime | None = None) -> int:
        """Move cancelled subscriptions whose end date has passed to expired."""

        now = ensure_aware(now) or utcnow()
        stmt = select(Subscription.id).where(
            Subscription.status == SubscriptionStatus.CANCELLED,
            Subscription.end_date.is_not(None),
            Subscription.end_date < now,
        )
        subscription_ids = list((await self._db.execute(stmt)).scalars().all())

        expired = failed = 0
        for subscription_id in subscription_ids:

            async def _expire(subscription_id: UUID = subscription_id) -> bool:
                subscription = await self._lock(subscription_id)
                if subscription.status != SubscriptionStatus.CANCELLED:
                    return False
                SubscriptionStateMachine.transition(subscription, SubscriptionStatus.EXPIRED)
                await self._db.flush()
                self._queue_event(
                    "subscription.expired",
                    {"subscription_id": str(subscription.id), "customer_id": subscription.customer_id},
                )
                return True

            try:
                changed = await self._serialized(_expire, label="subscription.expire")
            except Exception as exc:  # noqa: BLE001
                logger.exception("Subscription expiry failed", subscription_id=str(subscription_id), error=str(exc))
                self._observability.record_lifecycle("expiry_failed")
                failed += 1
                continue
            if changed:
                expired += 1
                self._observability.record_lifecycle("expired")
                await self._emit_pending()

        logger.info("Lapsed subscriptions expired", count=expired, failed=failed)
        return expired

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _lock(self, subscription_id: UUID) -> Subscription:
        stmt = (
            select(Subscription)
            .where(Subscription.id == subscription_id)
            .with_for_update(of=Subscription)
            .execution_options(populate_existing=True)
        )
        subscription = (await self._db.execute(stmt)).scalar_one_or_none()
        if subscription is None:
            raise NotFoundError(f"Subscription {subscription_id} not found")
        return subscription

    async def _count_subscriptions(
        self,
        plan_id: UUID,
        *,
        statuses: frozenset[SubscriptionStatus] | None = None,
    ) -> int:
        stmt = select(func.count(Subscription.id)).where(Subscription.plan_id == plan_id)
        if statuses is not None:
            stmt = stmt.where(Subscription.status.in_(list(statuses)))
        return int((await self._db.execute(stmt)).scalar_one())

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


def _as_uuid(value: object) -> UUID | None:
    if isinstance(value, UUID):
        return value
    try:
        return UUID(str(value))
    except (TypeError, ValueError):
        return None


def _invoice_number(now: datetime) -> str:
    return f"INV-{now:%Y%m%d}-{uuid4().hex[:8].upper()}"


def _validate_plan_values(values: dict[str, Any]) -> None:
    if "price_amount" in values:
        values["price_amount"] = quantize_money(values["price_amount"])
        if values["price_amount"] < 0:
            raise BadRequestError("Plan price cannot be negative")
    if "billing_interval" in values:
        try:
            values["billing_interval"] = BillingInterval(values["billing_interval"])
        except ValueError as exc:
            raise BadRequestError(f"Unknown billing interval {values['billing_interval']}") from exc
    if "billing_frequency" in values and int(values["billing_frequency"]) < 1:
        raise BadRequestError("Billing frequency must be at least 1")
    if "trial_days" in values and int(values["trial_days"]) < 0:
        raise BadRequestError("Trial days cannot be negative")


__all__ = ["RenewalOutcome", "RenewalStatus", "SubscriptionService"]
