from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from storefront_api.core.clock import ensure_aware
from storefront_api.core.errors import BadRequestError, PaymentFailedError, PaymentGatewayError
from storefront_api.models.subscription import (
    BillingInterval,
    BillingRecordKind,
    BillingRecordStatus,
    SubscriptionStatus,
)
from storefront_api.observability.subscriptions import get_subscription_store
from storefront_api.services.payments import StubPaymentGateway
from storefront_api.services.subscriptions import SubscriptionService

SUBSCRIBED_AT = datetime(2026, 10, 15, 12, 0, tzinfo=timezone.utc)
PERIOD_END = datetime(2026, 11, 15, 12, 0, tzinfo=timezone.utc)


async def _create_plan(
    service: SubscriptionService,
    code: str,
    price: str,
    *,
    interval: BillingInterval = BillingInterval.MONTH,
    frequency: int = 1,
    trial_days: int = 0,
):
    return await service.create_plan(
        code=code,
        name=code.title(),
        price_amount=Decimal(price),
        billing_interval=interval,
        billing_frequency=frequency,
        trial_days=trial_days,
        trial_enabled=trial_days > 0,
    )


@pytest.mark.asyncio
async def test_renewal_inside_window_charges_and_advances_period(
    session_factory, payment_gateway, notifications, event_backend
) -> None:
    async with session_factory() as session:
        service = SubscriptionService(session, payment_gateway=payment_gateway, notification_service=notifications)
        await _create_plan(service, "monthly", "499.00")
        subscription = await service.subscribe("cust-1", "monthly", now=SUBSCRIBED_AT)

        assert subscription.status == SubscriptionStatus.ACTIVE
        assert ensure_aware(subscription.current_period_end) == PERIOD_END
        assert payment_gateway.charges == []

        outcome = await service.process_renewal(subscription.id, now=PERIOD_END - timedelta(hours=2))

        assert outcome.renewed
        refreshed = await service.get_subscription(subscription.id)
        assert ensure_aware(refreshed.current_period_start) == PERIOD_END
        assert ensure_aware(refreshed.current_period_end) == datetime(2026, 12, 15, 12, 0, tzinfo=timezone.utc)
        assert refreshed.failed_payment_attempts == 0

        history = await service.billing_history(subscription.id)
        assert len(history) == 1
        assert history[0].status == BillingRecordStatus.SUCCESS
        assert history[0].kind == BillingRecordKind.RENEWAL
        assert history[0].amount == Decimal("499.00")
        assert history[0].invoice_number.startswith("INV-20261115-")

        assert len(payment_gateway.charges) == 1
        assert payment_gateway.charges[0]["idempotency_key"] == (
            f"{subscription.id}:renewal:{PERIOD_END.isoformat()}"
        )
        assert "subscription.renewed" in event_backend.names()

        # The new period is not due yet, so a repeat run does not bill twice.
        repeat = await service.process_renewal(subscription.id, now=PERIOD_END - timedelta(hours=2))
        assert repeat.status == "not_due"
        assert len(payment_gateway.charges) == 1


@pytest.mark.asyncio
async def test_renewal_outside_window_is_not_due(session_factory, payment_gateway, notifications) -> None:
    async with session_factory() as session:
        service = SubscriptionService(session, payment_gateway=payment_gateway, notification_service=notifications)
        await _create_plan(service, "monthly", "499.00")
        subscription = await service.subscribe("cust-1", "monthly", now=SUBSCRIBED_AT)

        outcome = await service.process_renewal(subscription.id, now=PERIOD_END - timedelta(days=3))

        assert outcome.status == "not_due"
        assert payment_gateway.charges == []


@pytest.mark.asyncio
async def test_cancel_at_period_end_cancels_instead_of_renewing(
    session_factory, payment_gateway, notifications
) -> None:
    async with session_factory() as session:
        service = SubscriptionService(session, payment_gateway=payment_gateway, notification_service=notifications)
        await _create_plan(service, "monthly", "499.00")
        subscription = await service.subscribe("cust-1", "monthly", now=SUBSCRIBED_AT)
        await service.cancel(
            subscription.id,
            at_period_end=True,
            reason="too expensive",
            now=SUBSCRIBED_AT + timedelta(days=3),
        )

        outcome = await service.process_renewal(subscription.id, now=PERIOD_END - timedelta(hours=2))

        assert outcome.status == "cancelled"
        refreshed = await service.get_subscription(subscription.id)
        assert refreshed.status == SubscriptionStatus.CANCELLED
        assert ensure_aware(refreshed.current_period_end) == PERIOD_END
        assert ensure_aware(refreshed.end_date) == PERIOD_END
        assert refreshed.cancellation_reason == "too expensive"
        assert await service.billing_history(subscription.id) == []
        assert payment_gateway.charges == []

        assert await service.expire_lapsed_subscriptions(now=PERIOD_END + timedelta(hours=1)) == 1
        assert (await service.get_subscription(subscription.id)).status == SubscriptionStatus.EXPIRED
        assert await service.expire_lapsed_subscriptions(now=PERIOD_END + timedelta(hours=2)) == 0


@pytest.mark.asyncio
async def test_expiry_sweep_continues_past_a_broken_subscription(
    session_factory, payment_gateway, notifications, monkeypatch
) -> None:
    async with session_factory() as session:
        service = SubscriptionService(session, payment_gateway=payment_gateway, notification_service=notifications)
        await _create_plan(service, "monthly", "499.00")
        broken = await service.subscribe("cust-broken", "monthly", now=SUBSCRIBED_AT)
        healthy = await service.subscribe("cust-healthy", "monthly", now=SUBSCRIBED_AT)
        broken_id, healthy_id = broken.id, healthy.id
        for subscription_id in (broken_id, healthy_id):
            await service.cancel(subscription_id, now=SUBSCRIBED_AT + timedelta(days=1))

        original_lock = service._lock

        async def _lock(subscription_id):
            if subscription_id == broken_id:
                raise RuntimeError("row could not be decoded")
            return await original_lock(subscription_id)

        monkeypatch.setattr(service, "_lock", _lock)

        assert await service.expire_lapsed_subscriptions(now=SUBSCRIBED_AT + timedelta(days=2)) == 1

        monkeypatch.undo()
        assert (await service.get_subscription(healthy_id)).status == SubscriptionStatus.EXPIRED
        assert (await service.get_subscription(broken_id)).status == SubscriptionStatus.CANCELLED

    lifecycle = get_subscription_store().snapshot().lifecycle
    assert lifecycle["expired"] == 1
    assert lifecycle["expiry_failed"] == 1


@pytest.mark.asyncio
async def test_trial_converts_to_active_on_first_renewal(session_factory, payment_gateway, notifications) -> None:
    async with session_factory() as session:
        service = SubscriptionService(session, payment_gateway=payment_gateway, notification_service=notifications)
        await _create_plan(service, "trial-monthly", "199.00", trial_days=14)
        subscription = await service.subscribe("cust-1", "trial-monthly", now=SUBSCRIBED_AT)

        trial_ends = SUBSCRIBED_AT + timedelta(days=14)
        assert subscription.status == SubscriptionStatus.TRIAL
        assert ensure_aware(subscription.current_period_end) == trial_ends

        outcome = await service.process_renewal(subscription.id, now=trial_ends - timedelta(hours=1))

        assert outcome.renewed
        refreshed = await service.get_subscription(subscription.id)
        assert refreshed.status == SubscriptionStatus.ACTIVE
        assert ensure_aware(refreshed.current_period_start) == trial_ends
        assert ensure_aware(refreshed.current_period_end) == datetime(2026, 11, 29, 12, 0, tzinfo=timezone.utc)
        assert payment_gateway.charges[0]["amount"] == Decimal("199.00")


@pytest.mark.asyncio
async def test_declined_trial_conversion_goes_straight_to_unpaid(session_factory, notifications) -> None:
    gateway = StubPaymentGateway(declined_customers={"cust-1"})

    async with session_factory() as session:
        service = SubscriptionService(
            session, payment_gateway=gateway, notification_service=notifications, max_failed_payments=1
        )
        await _create_plan(service, "trial-monthly", "199.00", trial_days=14)
        subscription = await service.subscribe("cust-1", "trial-monthly", now=SUBSCRIBED_AT)
        trial_ends = SUBSCRIBED_AT + timedelta(days=14)

        outcome = await service.process_renewal(subscription.id, now=trial_ends - timedelta(hours=1))

        assert outcome.status == "payment_failed"
        refreshed = await service.get_subscription(subscription.id)
        assert refreshed.status == SubscriptionStatus.UNPAID
        assert refreshed.failed_payment_attempts == 1
        assert ensure_aware(refreshed.current_period_end) == trial_ends

        history = await service.billing_history(subscription.id)
        assert [record.status for record in history] == [BillingRecordStatus.FAILED]
        assert history[0].amount == Decimal("199.00")


@pytest.mark.asyncio
async def test_repeated_declines_move_subscription_to_unpaid(
    session_factory, payment_gateway, notifications, event_backend
) -> None:
    payment_gateway.declined_customers.add("cust-1")
    renew_at = PERIOD_END - timedelta(hours=2)

    async with session_factory() as session:
        service = SubscriptionService(session, payment_gateway=payment_gateway, notification_service=notifications)
        await _create_plan(service, "monthly", "499.00")
        subscription = await service.subscribe("cust-1", "monthly", now=SUBSCRIBED_AT)

        for attempt in (1, 2):
            outcome = await service.process_renewal(subscription.id, now=renew_at)
            assert outcome.status == "payment_failed"
            refreshed = await service.get_subscription(subscription.id)
            assert refreshed.status == SubscriptionStatus.PAST_DUE
            assert refreshed.failed_payment_attempts == attempt
            assert ensure_aware(refreshed.current_period_end) == PERIOD_END

        outcome = await service.process_renewal(subscription.id, now=renew_at)
        assert outcome.status == "payment_failed"
        refreshed = await service.get_subscription(subscription.id)
        assert refreshed.status == SubscriptionStatus.UNPAID
        assert refreshed.failed_payment_attempts == 3

        assert (await service.process_renewal(subscription.id, now=renew_at)).status == "not_renewable"

        history = await service.billing_history(subscription.id)
        assert [record.status for record in history] == [BillingRecordStatus.FAILED] * 3
        assert history[0].failure_reason == "card_declined"
        assert event_backend.names().count("subscription.payment_failed") == 3


@pytest.mark.asyncio
async def test_past_due_subscription_recovers_on_successful_retry(
    session_factory, payment_gateway, notifications
) -> None:
    payment_gateway.declined_customers.add("cust-1")
    renew_at = PERIOD_END - timedelta(hours=2)

    async with session_factory() as session:
        service = SubscriptionService(session, payment_gateway=payment_gateway, notification_service=notifications)
        await _create_plan(service, "monthly", "499.00")
        subscription = await service.subscribe("cust-1", "monthly", now=SUBSCRIBED_AT)
        await service.process_renewal(subscription.id, now=renew_at)

        payment_gateway.declined_customers.clear()
        outcome = await service.process_renewal(subscription.id, now=renew_at + timedelta(hours=1))

        assert outcome.renewed
        refreshed = await service.get_subscription(subscription.id)
        assert refreshed.status == SubscriptionStatus.ACTIVE
        assert refreshed.failed_payment_attempts == 0
        assert ensure_aware(refreshed.current_period_start) == PERIOD_END


@pytest.mark.asyncio
async def test_gateway_error_leaves_subscription_untouched(session_factory, notifications) -> None:
    gateway = StubPaymentGateway(error=PaymentGatewayError("payments service timed out"))

    async with session_factory() as session:
        service = SubscriptionService(session, payment_gateway=gateway, notification_service=notifications)
        await _create_plan(service, "monthly", "499.00")
        subscription = await service.subscribe("cust-1", "monthly", now=SUBSCRIBED_AT)
        subscription_id = subscription.id

        with pytest.raises(PaymentGatewayError):
            await service.process_renewal(subscription_id, now=PERIOD_END - timedelta(hours=2))

    async with session_factory() as session:
        service = SubscriptionService(session, notification_service=notifications)
        stored = await service.get_subscription(subscription_id)
        assert stored.status == SubscriptionStatus.ACTIVE
        assert ensure_aware(stored.current_period_end) == PERIOD_END
        assert stored.failed_payment_attempts == 0
        assert await service.billing_history(subscription_id) == []


@pytest.mark.asyncio
async def test_deferred_plan_change_applies_at_renewal(session_factory, payment_gateway, notifications) -> None:
    async with session_factory() as session:
        service = SubscriptionService(session, payment_gateway=payment_gateway, notification_service=notifications)
        basic = await _create_plan(service, "basic", "100.00")
        premium = await _create_plan(service, "premium", "300.00")
        subscription = await service.subscribe("cust-1", "basic", now=SUBSCRIBED_AT)

        changed = await service.change_plan(
            subscription.id, "premium", immediate=False, now=SUBSCRIBED_AT + timedelta(days=5)
        )

        pending = changed.metadata_json["pendingPlanChange"]
        assert pending["planId"] == str(premium.id)
        assert pending["effectiveDate"] == PERIOD_END.isoformat()
        assert changed.plan_id == basic.id
        assert payment_gateway.charges == []

        outcome = await service.process_renewal(subscription.id, now=PERIOD_END - timedelta(hours=2))

        assert outcome.renewed
        refreshed = await service.get_subscription(subscription.id)
        assert refreshed.plan_id == premium.id
        assert "pendingPlanChange" not in refreshed.metadata_json
        assert payment_gateway.charges[0]["amount"] == Decimal("300.00")
        history = await service.billing_history(subscription.id)
        assert history[0].plan_id == premium.id


@pytest.mark.asyncio
async def test_malformed_pending_change_is_dropped_at_renewal(session_factory, payment_gateway, notifications) -> None:
    async with session_factory() as session:
        service = SubscriptionService(session, payment_gateway=payment_gateway, notification_service=notifications)
        basic = await _create_plan(service, "basic", "100.00")
        premium = await _create_plan(service, "premium", "300.00")
        subscription = await service.subscribe("cust-1", "basic", now=SUBSCRIBED_AT)
        subscription.metadata_json = {"pendingPlanChange": {"planId": str(premium.id), "effectiveDate": "next month"}}
        await session.commit()

        outcome = await service.process_renewal(subscription.id, now=PERIOD_END - timedelta(hours=2))

        assert outcome.renewed
        refreshed = await service.get_subscription(subscription.id)
        assert refreshed.plan_id == basic.id
        assert "pendingPlanChange" not in refreshed.metadata_json
        assert payment_gateway.charges[0]["amount"] == Decimal("100.00")


@pytest.mark.asyncio
async def test_immediate_upgrade_charges_prorated_difference(session_factory, payment_gateway, notifications) -> None:
    async with session_factory() as session:
        service = SubscriptionService(session, payment_gateway=payment_gateway, notification_service=notifications)
        await _create_plan(service, "basic-10d", "100.00", interval=BillingInterval.DAY, frequency=10)
        premium = await _create_plan(service, "premium-10d", "300.00", interval=BillingInterval.DAY, frequency=10)
        subscription = await service.subscribe("cust-1", "basic-10d", now=SUBSCRIBED_AT)

        halfway = SUBSCRIBED_AT + timedelta(days=5)
        changed = await service.change_plan(subscription.id, "premium-10d", now=halfway)

        assert changed.plan_id == premium.id
        assert ensure_aware(changed.current_period_start) == halfway
        assert ensure_aware(changed.current_period_end) == halfway + timedelta(days=10)

        assert len(payment_gateway.charges) == 1
        assert payment_gateway.charges[0]["amount"] == Decimal("250.00")
        assert ":proration:" in payment_gateway.charges[0]["idempotency_key"]

        history = await service.billing_history(subscription.id)
        assert len(history) == 1
        assert history[0].kind == BillingRecordKind.PRORATION
        assert history[0].status == BillingRecordStatus.SUCCESS
        assert history[0].amount == Decimal("250.00")


@pytest.mark.asyncio
async def test_immediate_downgrade_records_pending_credit(session_factory, payment_gateway, notifications) -> None:
    async with session_factory() as session:
        service = SubscriptionService(session, payment_gateway=payment_gateway, notification_service=notifications)
        await _create_plan(service, "basic-10d", "100.00", interval=BillingInterval.DAY, frequency=10)
        await _create_plan(service, "premium-10d", "300.00", interval=BillingInterval.DAY, frequency=10)
        subscription = await service.subscribe("cust-1", "premium-10d", now=SUBSCRIBED_AT)

        await service.change_plan(subscription.id, "basic-10d", now=SUBSCRIBED_AT + timedelta(days=5))

        assert payment_gateway.charges == []
        history = await service.billing_history(subscription.id)
        assert len(history) == 1
        assert history[0].status == BillingRecordStatus.PENDING
        assert history[0].amount == Decimal("-50.00")


@pytest.mark.asyncio
async def test_declined_proration_keeps_current_plan(session_factory, payment_gateway, notifications) -> None:
    payment_gateway.declined_customers.add("cust-1")

    async with session_factory() as session:
        service = SubscriptionService(session, payment_gateway=payment_gateway, notification_service=notifications)
        basic = await _create_plan(service, "basic-10d", "100.00", interval=BillingInterval.DAY, frequency=10)
        await _create_plan(service, "premium-10d", "300.00", interval=BillingInterval.DAY, frequency=10)
        subscription = await service.subscribe("cust-1", "basic-10d", now=SUBSCRIBED_AT)
        subscription_id = subscription.id
        basic_id = basic.id

        with pytest.raises(PaymentFailedError):
            await service.change_plan(subscription_id, "premium-10d", now=SUBSCRIBED_AT + timedelta(days=5))

    async with session_factory() as session:
        service = SubscriptionService(session, notification_service=notifications)
        stored = await service.get_subscription(subscription_id)
        assert stored.plan_id == basic_id
        assert ensure_aware(stored.current_period_start) == SUBSCRIBED_AT
        assert await service.billing_history(subscription_id) == []


@pytest.mark.asyncio
async def test_plan_change_guards(session_factory, payment_gateway, notifications) -> None:
    async with session_factory() as session:
        service = SubscriptionService(session, payment_gateway=payment_gateway, notification_service=notifications)
        await _create_plan(service, "basic", "100.00")
        await _create_plan(service, "premium", "300.00")
        subscription = await service.subscribe("cust-1", "basic", now=SUBSCRIBED_AT)
        subscription_id = subscription.id

        with pytest.raises(BadRequestError):
            await service.change_plan(subscription_id, "basic", now=SUBSCRIBED_AT + timedelta(days=1))

        await service.cancel(subscription_id, now=SUBSCRIBED_AT + timedelta(days=2))
        with pytest.raises(BadRequestError):
            await service.change_plan(subscription_id, "premium", now=SUBSCRIBED_AT + timedelta(days=3))


@pytest.mark.asyncio
async def test_reactivate_undoes_pending_cancellation(session_factory, payment_gateway, notifications) -> None:
    async with session_factory() as session:
        service = SubscriptionService(session, payment_gateway=payment_gateway, notification_service=notifications)
        await _create_plan(service, "monthly", "499.00")
        subscription = await service.subscribe("cust-1", "monthly", now=SUBSCRIBED_AT)

        await service.cancel(subscription.id, at_period_end=True, now=SUBSCRIBED_AT + timedelta(days=1))
        reactivated = await service.reactivate(subscription.id, now=SUBSCRIBED_AT + timedelta(days=2))

        assert reactivated.status == SubscriptionStatus.ACTIVE
        assert reactivated.cancel_at_period_end is False
        assert reactivated.cancellation_date is None

        outcome = await service.process_renewal(subscription.id, now=PERIOD_END - timedelta(hours=2))
        assert outcome.renewed


@pytest.mark.asyncio
async def test_reactivate_cancelled_subscription_before_its_end_date(
    session_factory, payment_gateway, notifications
) -> None:
    async with session_factory() as session:
        service = SubscriptionService(session, payment_gateway=payment_gateway, notification_service=notifications)
        await _create_plan(service, "monthly", "499.00")
        subscription = await service.subscribe("cust-1", "monthly", now=SUBSCRIBED_AT)
        await service.cancel(subscription.id, at_period_end=True, now=SUBSCRIBED_AT + timedelta(days=1))
        await service.process_renewal(subscription.id, now=PERIOD_END - timedelta(hours=2))

        reactivated = await service.reactivate(subscription.id, now=PERIOD_END - timedelta(hours=1))

        assert reactivated.status == SubscriptionStatus.ACTIVE
        assert reactivated.end_date is None


@pytest.mark.asyncio
async def test_ended_subscription_cannot_be_reactivated(session_factory, payment_gateway, notifications) -> None:
    cancelled_at = SUBSCRIBED_AT + timedelta(days=4)

    async with session_factory() as session:
        service = SubscriptionService(session, payment_gateway=payment_gateway, notification_service=notifications)
        await _create_plan(service, "monthly", "499.00")
        subscription = await service.subscribe("cust-1", "monthly", now=SUBSCRIBED_AT)
        subscription_id = subscription.id
        cancelled = await service.cancel(subscription_id, now=cancelled_at)
        assert cancelled.status == SubscriptionStatus.CANCELLED
        assert ensure_aware(cancelled.end_date) == cancelled_at

        with pytest.raises(BadRequestError):
            await service.reactivate(subscription_id, now=cancelled_at + timedelta(hours=1))
        with pytest.raises(BadRequestError):
            await service.cancel(subscription_id, now=cancelled_at + timedelta(hours=2))


@pytest.mark.asyncio
async def test_subscribe_rejects_duplicates_and_inactive_plans(
    session_factory, payment_gateway, notifications
) -> None:
    async with session_factory() as session:
        service = SubscriptionService(session, payment_gateway=payment_gateway, notification_service=notifications)
        await _create_plan(service, "monthly", "499.00")
        await _create_plan(service, "legacy", "99.00")
        await service.subscribe("cust-1", "monthly", now=SUBSCRIBED_AT)

        with pytest.raises(BadRequestError):
            await service.subscribe("cust-1", "monthly", now=SUBSCRIBED_AT)

        await service.deactivate_plan("legacy")
        with pytest.raises(BadRequestError):
            await service.subscribe("cust-2", "legacy", now=SUBSCRIBED_AT)


@pytest.mark.asyncio
async def test_plan_admin_guards(session_factory, notifications) -> None:
    async with session_factory() as session:
        service = SubscriptionService(session, notification_service=notifications)
        plan = await _create_plan(service, "monthly", "499.00")

        with pytest.raises(BadRequestError):
            await _create_plan(service, "monthly", "10.00")
        with pytest.raises(BadRequestError):
            await service.update_plan(plan.id, billing_frequency=0)

        updated = await service.update_plan("monthly", price_amount="549.5")
        assert updated.price_amount == Decimal("549.50")

        await service.subscribe("cust-1", "monthly", now=SUBSCRIBED_AT)
        with pytest.raises(BadRequestError):
            await service.deactivate_plan("monthly")
        with pytest.raises(BadRequestError):
            await service.update_plan("monthly", code="monthly-v2")

        plans = await service.list_plans()
        assert [item.code for item in plans] == ["monthly"]
