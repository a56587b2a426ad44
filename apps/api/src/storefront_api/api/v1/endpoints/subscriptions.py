"""API endpoints for subscription plans, customer subscriptions, and renewals."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field

from storefront_api.api.dependencies.customer import require_customer_id
from storefront_api.api.dependencies.security import require_admin_api_key
from storefront_api.api.dependencies.services import (
    get_notification_service,
    get_payment_gateway,
    get_subscription_service,
)
from storefront_api.db.session import async_session
from storefront_api.models.subscription import (
    BillingInterval,
    Subscription,
    SubscriptionBillingRecord,
    SubscriptionPlan,
)
from storefront_api.services.notifications import NotificationService
from storefront_api.services.payments import PaymentGateway
from storefront_api.services.subscriptions import SubscriptionService, process_all_due_renewals


router = APIRouter(prefix="/subscriptions", tags=["subscriptions"])
admin_router = APIRouter(
    prefix="/subscriptions/admin",
    tags=["subscriptions-admin"],
    dependencies=[Depends(require_admin_api_key)],
)


def get_renewal_session_factory():
    """Session factory handed to the renewal batch; tests point it at their engine."""

    return async_session


class PlanResponse(BaseModel):
    id: UUID
    code: str
    name: str
    description: Optional[str]
    priceAmount: Decimal
    priceCurrency: str
    billingInterval: str
    billingFrequency: int
    trialDays: int
    trialEnabled: bool
    features: list[Any]
    isActive: bool
    sortOrder: int

    @classmethod
    def from_model(cls, plan: SubscriptionPlan) -> "PlanResponse":
        return cls(
            id=plan.id,
            code=plan.code,
            name=plan.name,
            description=plan.description,
            priceAmount=Decimal(str(plan.price_amount)),
            priceCurrency=plan.price_currency,
            billingInterval=plan.billing_interval.value,
            billingFrequency=int(plan.billing_frequency),
            trialDays=int(plan.trial_days or 0),
            trialEnabled=bool(plan.trial_enabled),
            features=list(plan.features or []),
            isActive=bool(plan.is_active),
            sortOrder=int(plan.sort_order or 0),
        )


class PlanCreateRequest(BaseModel):
    code: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    priceAmount: Decimal = Field(..., ge=0)
    priceCurrency: Optional[str] = Field(None, min_length=3, max_length=3)
    billingInterval: BillingInterval = BillingInterval.MONTH
    billingFrequency: int = Field(1, ge=1)
    trialDays: int = Field(0, ge=0)
    trialEnabled: bool = False
    features: list[Any] = Field(default_factory=list)
    isActive: bool = True
    sortOrder: int = 0


class PlanUpdateRequest(BaseModel):
    code: Optional[str] = None
    name: Optional[str] = None
    description: Optional[str] = None
    priceAmount: Optional[Decimal] = Field(None, ge=0)
    priceCurrency: Optional[str] = Field(None, min_length=3, max_length=3)
    billingInterval: Optional[BillingInterval] = None
    billingFrequency: Optional[int] = Field(None, ge=1)
    trialDays: Optional[int] = Field(None, ge=0)
    trialEnabled: Optional[bool] = None
    features: Optional[list[Any]] = None
    isActive: Optional[bool] = None
    sortOrder: Optional[int] = None


class SubscriptionResponse(BaseModel):
    id: UUID
    customerId: str
    planId: UUID
    planCode: Optional[str]
    status: str
    startDate: datetime
    endDate: Optional[datetime]
    currentPeriodStart: datetime
    currentPeriodEnd: datetime
    cancelAtPeriodEnd: bool
    cancellationReason: Optional[str]
    failedPaymentAttempts: int
    pendingPlanChange: Optional[dict[str, Any]]

    @classmethod
    def from_model(cls, subscription: Subscription) -> "SubscriptionResponse":
        metadata = subscription.metadata_json or {}
        return cls(
            id=subscription.id,
            customerId=subscription.customer_id,
            planId=subscription.plan_id,
            planCode=subscription.plan.code if subscription.plan else None,
            status=subscription.status.value,
            startDate=subscription.start_date,
            endDate=subscription.end_date,
            currentPeriodStart=subscription.current_period_start,
            currentPeriodEnd=subscription.current_period_end,
            cancelAtPeriodEnd=bool(subscription.cancel_at_period_end),
            cancellationReason=subscription.cancellation_reason,
            failedPaymentAttempts=int(subscription.failed_payment_attempts or 0),
            pendingPlanChange=metadata.get("pendingPlanChange"),
        )


class BillingRecordResponse(BaseModel):
    id: UUID
    kind: str
    planId: UUID
    amount: Decimal
    currency: str
    status: str
    periodStart: datetime
    periodEnd: datetime
    transactionRef: Optional[str]
    invoiceNumber: Optional[str]
    failureReason: Optional[str]
    billedAt: datetime

    @classmethod
    def from_model(cls, record: SubscriptionBillingRecord) -> "BillingRecordResponse":
        return cls(
            id=record.id,
            kind=record.kind.value,
            planId=record.plan_id,
            amount=Decimal(str(record.amount)),
            currency=record.currency,
            status=record.status.value,
            periodStart=record.period_start,
            periodEnd=record.period_end,
            transactionRef=record.transaction_ref,
            invoiceNumber=record.invoice_number,
            failureReason=record.failure_reason,
            billedAt=record.billed_at,
        )


class SubscribeRequest(BaseModel):
    plan: str = Field(..., min_length=1, description="Plan id or code")
    paymentMethod: Optional[str] = None


class CancelRequest(BaseModel):
    atPeriodEnd: bool = Field(True, description="Keep access until the current period ends")
    reason: Optional[str] = None


class ChangePlanRequest(BaseModel):
    plan: str = Field(..., min_length=1, description="Plan id or code")
    immediate: bool = True
    prorate: bool = True


class RenewalResponse(BaseModel):
    subscriptionId: str
    status: str
    reason: Optional[str]
    currentPeriodEnd: Optional[datetime]


class RenewalBatchResponse(BaseModel):
    total: int
    successful: int
    failed: int
    details: List[dict[str, Any]]


def _plan_values(payload: PlanCreateRequest | PlanUpdateRequest) -> dict[str, Any]:
    return {
        "code": payload.code,
        "name": payload.name,
        "description": payload.description,
        "price_amount": payload.priceAmount,
        "price_currency": payload.priceCurrency,
        "billing_interval": payload.billingInterval,
        "billing_frequency": payload.billingFrequency,
        "trial_days": payload.trialDays,
        "trial_enabled": payload.trialEnabled,
        "features": payload.features,
        "is_active": payload.isActive,
        "sort_order": payload.sortOrder,
    }


async def _owned_subscription(
    service: SubscriptionService,
    subscription_id: UUID,
    customer_id: str,
) -> Subscription:
    subscription = await service.get_subscription(subscription_id)
    if subscription.customer_id != customer_id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Subscription not found")
    return subscription


# Customer routes


@router.get("/plans", response_model=List[PlanResponse])
async def list_plans(
    service: SubscriptionService = Depends(get_subscription_service),
) -> List[PlanResponse]:
    return [PlanResponse.from_model(plan) for plan in await service.list_plans()]


@router.get("/plans/{plan_ref}", response_model=PlanResponse)
async def get_plan(
    plan_ref: str,
    service: SubscriptionService = Depends(get_subscription_service),
) -> PlanResponse:
    return PlanResponse.from_model(await service.get_plan(plan_ref))


@router.post("", response_model=SubscriptionResponse, status_code=status.HTTP_201_CREATED)
async def subscribe(
    payload: SubscribeRequest,
    customer_id: str = Depends(require_customer_id),
    service: SubscriptionService = Depends(get_subscription_service),
) -> SubscriptionResponse:
    subscription = await service.subscribe(customer_id, payload.plan, payment_method=payload.paymentMethod)
    return SubscriptionResponse.from_model(subscription)


@router.get("", response_model=List[SubscriptionResponse])
async def list_my_subscriptions(
    customer_id: str = Depends(require_customer_id),
    service: SubscriptionService = Depends(get_subscription_service),
) -> List[SubscriptionResponse]:
    return [SubscriptionResponse.from_model(item) for item in await service.list_customer_subscriptions(customer_id)]


@router.get("/{subscription_id}", response_model=SubscriptionResponse)
async def get_my_subscription(
    subscription_id: UUID,
    customer_id: str = Depends(require_customer_id),
    service: SubscriptionService = Depends(get_subscription_service),
) -> SubscriptionResponse:
    return SubscriptionResponse.from_model(await _owned_subscription(service, subscription_id, customer_id))


@router.post("/{subscription_id}/cancel", response_model=SubscriptionResponse)
async def cancel_my_subscription(
    subscription_id: UUID,
    payload: CancelRequest,
    customer_id: str = Depends(require_customer_id),
    service: SubscriptionService = Depends(get_subscription_service),
) -> SubscriptionResponse:
    await _owned_subscription(service, subscription_id, customer_id)
    subscription = await service.cancel(subscription_id, at_period_end=payload.atPeriodEnd, reason=payload.reason)
    return SubscriptionResponse.from_model(subscription)


@router.post("/{subscription_id}/reactivate", response_model=SubscriptionResponse)
async def reactivate_my_subscription(
    subscription_id: UUID,
    customer_id: str = Depends(require_customer_id),
    service: SubscriptionService = Depends(get_subscription_service),
) -> SubscriptionResponse:
    await _owned_subscription(service, subscription_id, customer_id)
    return SubscriptionResponse.from_model(await service.reactivate(subscription_id))


@router.post("/{subscription_id}/change-plan", response_model=SubscriptionResponse)
async def change_my_plan(
    subscription_id: UUID,
    payload: ChangePlanRequest,
    customer_id: str = Depends(require_customer_id),
    service: SubscriptionService = Depends(get_subscription_service),
) -> SubscriptionResponse:
    await _owned_subscription(service, subscription_id, customer_id)
    subscription = await service.change_plan(
        subscription_id,
        payload.plan,
        immediate=payload.immediate,
        prorate=payload.prorate,
    )
    return SubscriptionResponse.from_model(subscription)


@router.get("/{subscription_id}/billing-history", response_model=List[BillingRecordResponse])
async def get_my_billing_history(
    subscription_id: UUID,
    customer_id: str = Depends(require_customer_id),
    service: SubscriptionService = Depends(get_subscription_service),
) -> List[BillingRecordResponse]:
    await _owned_subscription(service, subscription_id, customer_id)
    return [BillingRecordResponse.from_model(record) for record in await service.billing_history(subscription_id)]


# Admin routes


@admin_router.get("/plans", response_model=List[PlanResponse])
async def list_all_plans(
    include_inactive: bool = Query(True, alias="includeInactive"),
    service: SubscriptionService = Depends(get_subscription_service),
) -> List[PlanResponse]:
    plans = await service.list_plans(include_inactive=include_inactive)
    return [PlanResponse.from_model(plan) for plan in plans]


@admin_router.post("/plans", response_model=PlanResponse, status_code=status.HTTP_201_CREATED)
async def create_plan(
    payload: PlanCreateRequest,
    service: SubscriptionService = Depends(get_subscription_service),
) -> PlanResponse:
    return PlanResponse.from_model(await service.create_plan(**_plan_values(payload)))


@admin_router.patch("/plans/{plan_ref}", response_model=PlanResponse)
async def update_plan(
    plan_ref: str,
    payload: PlanUpdateRequest,
    service: SubscriptionService = Depends(get_subscription_service),
) -> PlanResponse:
    return PlanResponse.from_model(await service.update_plan(plan_ref, **_plan_values(payload)))


@admin_router.delete("/plans/{plan_ref}", response_model=PlanResponse)
async def deactivate_plan(
    plan_ref: str,
    service: SubscriptionService = Depends(get_subscription_service),
) -> PlanResponse:
    """Soft-delete a plan; refused while customers are still subscribed."""

    return PlanResponse.from_model(await service.deactivate_plan(plan_ref))


@admin_router.get("/{subscription_id}", response_model=SubscriptionResponse)
async def get_subscription(
    subscription_id: UUID,
    service: SubscriptionService = Depends(get_subscription_service),
) -> SubscriptionResponse:
    return SubscriptionResponse.from_model(await service.get_subscription(subscription_id))


@admin_router.post("/{subscription_id}/renew", response_model=RenewalResponse)
async def renew_subscription(
    subscription_id: UUID,
    service: SubscriptionService = Depends(get_subscription_service),
) -> RenewalResponse:
    outcome = await service.process_renewal(subscription_id)
    return RenewalResponse(
        subscriptionId=outcome.subscription_id,
        status=outcome.status,
        reason=outcome.reason,
        currentPeriodEnd=outcome.current_period_end,
    )


@admin_router.post("/renewals/run", response_model=RenewalBatchResponse)
async def run_renewal_batch(
    session_factory=Depends(get_renewal_session_factory),
    gateway: PaymentGateway | None = Depends(get_payment_gateway),
    notifications: NotificationService = Depends(get_notification_service),
) -> RenewalBatchResponse:
    """Renew every subscription due today, as the scheduled job would."""

    result = await process_all_due_renewals(
        session_factory,
        payment_gateway=gateway,
        notification_service=notifications,
    )
    return RenewalBatchResponse(**result.as_dict())


@admin_router.post("/expire-lapsed")
async def expire_lapsed_subscriptions(
    service: SubscriptionService = Depends(get_subscription_service),
) -> dict[str, int]:
    return {"expired": await service.expire_lapsed_subscriptions()}
