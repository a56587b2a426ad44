"""API endpoints for loyalty accounts, redemptions, and program administration."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, List, Literal, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field, model_validator

from storefront_api.api.dependencies.customer import require_customer_id
from storefront_api.api.dependencies.security import require_admin_api_key
from storefront_api.api.dependencies.services import get_loyalty_admin, get_loyalty_service
from storefront_api.core.clock import utcnow
from storefront_api.domain.points_rules import (
    BirthdayEvent,
    LoyaltyEvent,
    ReferralEvent,
    ReviewEvent,
    SignupEvent,
    SocialShareEvent,
    SpecialEvent,
)
from storefront_api.models.loyalty import (
    LoyaltyAccount,
    LoyaltyRedemptionType,
    LoyaltyTier,
    LoyaltyTransaction,
    LoyaltyTransactionSource,
    LoyaltyTransactionType,
    PointsCalculationType,
    PointsRule,
    PointsRuleType,
)
from storefront_api.services.loyalty import (
    AwardResult,
    LoyaltyProgramAdmin,
    LoyaltyProgramSettings,
    LoyaltyService,
)


router = APIRouter(prefix="/loyalty", tags=["loyalty"])
admin_router = APIRouter(
    prefix="/loyalty/admin",
    tags=["loyalty-admin"],
    dependencies=[Depends(require_admin_api_key)],
)


class LoyaltyTierResponse(BaseModel):
    id: UUID
    code: str
    name: str
    description: Optional[str]
    pointThreshold: int
    pointsMultiplier: float
    benefits: list[Any]
    isActive: bool
    displayOrder: int

    @classmethod
    def from_model(cls, tier: LoyaltyTier) -> "LoyaltyTierResponse":
        return cls(
            id=tier.id,
            code=tier.code,
            name=tier.name,
            description=tier.description,
            pointThreshold=int(tier.point_threshold or 0),
            pointsMultiplier=float(tier.points_multiplier or 1),
            benefits=list(tier.benefits or []),
            isActive=bool(tier.is_active),
            displayOrder=int(tier.display_order or 0),
        )


class LoyaltyAccountResponse(BaseModel):
    id: UUID
    customerId: str
    currentTier: Optional[str]
    pointsBalance: int
    lifetimePointsEarned: int
    referralCode: str
    referredByCustomerId: Optional[str]
    isActive: bool
    enrolledAt: datetime

    @classmethod
    def from_model(cls, account: LoyaltyAccount) -> "LoyaltyAccountResponse":
        return cls(
            id=account.id,
            customerId=account.customer_id,
            currentTier=account.current_tier.code if account.current_tier else None,
            pointsBalance=int(account.points_balance or 0),
            lifetimePointsEarned=int(account.lifetime_points_earned or 0),
            referralCode=account.referral_code,
            referredByCustomerId=account.referred_by_customer_id,
            isActive=bool(account.is_active),
            enrolledAt=account.enrolled_at,
        )


class LoyaltyTransactionResponse(BaseModel):
    id: UUID
    transactionType: str
    source: str
    points: int
    balanceAfter: int
    referenceId: Optional[str]
    description: Optional[str]
    expiryDate: Optional[datetime]
    occurredAt: datetime

    @classmethod
    def from_model(cls, transaction: LoyaltyTransaction) -> "LoyaltyTransactionResponse":
        return cls(
            id=transaction.id,
            transactionType=transaction.transaction_type.value,
            source=transaction.source.value,
            points=int(transaction.points),
            balanceAfter=int(transaction.balance_after),
            referenceId=transaction.reference_id,
            description=transaction.description,
            expiryDate=transaction.expiry_date,
            occurredAt=transaction.occurred_at,
        )


class EnrollmentRequest(BaseModel):
    referralCode: Optional[str] = Field(None, description="Referral code shared by an existing member")


class EnrollmentResponse(BaseModel):
    created: bool
    account: LoyaltyAccountResponse


class ExpiringPointsResponse(BaseModel):
    expiresAt: datetime
    remainingPoints: int


class RedemptionSummaryResponse(BaseModel):
    id: UUID
    redemptionType: str
    pointsRedeemed: int
    value: Decimal
    redeemedAt: datetime


class AccountSnapshotResponse(BaseModel):
    account: LoyaltyAccountResponse
    tier: Optional[LoyaltyTierResponse]
    nextTier: Optional[str]
    pointsToNextTier: Optional[int]
    progressPercent: float
    referralCount: int
    recentTransactions: List[LoyaltyTransactionResponse]
    redemptions: List[RedemptionSummaryResponse]
    expiringPoints: List[ExpiringPointsResponse]


class ReferralLinkResponse(BaseModel):
    referralCode: str
    referralLink: str


class RedemptionRequest(BaseModel):
    points: int = Field(..., gt=0, description="Points to redeem")
    redemptionType: LoyaltyRedemptionType = Field(LoyaltyRedemptionType.DISCOUNT)
    referenceId: Optional[str] = Field(None, description="Order or cart the redemption applies to")
    description: Optional[str] = None


class RedemptionResponse(BaseModel):
    id: UUID
    transactionId: UUID
    pointsRedeemed: int
    value: Decimal
    balance: int


class AwardRequest(BaseModel):
    customerId: str = Field(..., min_length=1)
    points: int = Field(..., gt=0)
    source: LoyaltyTransactionSource = LoyaltyTransactionSource.SPECIAL_EVENT
    transactionType: Literal["earn", "bonus"] = "earn"
    referenceId: Optional[str] = None
    description: Optional[str] = None


class AdjustmentRequest(BaseModel):
    customerId: str = Field(..., min_length=1)
    points: int = Field(..., description="Signed adjustment; negative values deduct points")
    reason: str = Field(..., min_length=1)

    @model_validator(mode="after")
    def validate_points(self) -> "AdjustmentRequest":
        if self.points == 0:
            raise ValueError("points must be non-zero")
        return self


class OrderPointsRequest(BaseModel):
    customerId: str = Field(..., min_length=1)


class LoyaltyEventRequest(BaseModel):
    customerId: str = Field(..., min_length=1)
    eventType: Literal["signup", "review", "referral", "social_share", "birthday", "special_event"]
    referenceId: Optional[str] = Field(None, description="Review id, share id, or referred customer id")
    eventCode: Optional[str] = Field(None, description="Campaign code for special events")
    year: Optional[int] = Field(None, description="Birthday year being rewarded")

    @model_validator(mode="after")
    def validate_event(self) -> "LoyaltyEventRequest":
        if self.eventType in ("review", "referral", "social_share", "special_event") and not self.referenceId:
            raise ValueError(f"referenceId is required for {self.eventType} events")
        if self.eventType == "special_event" and not self.eventCode:
            raise ValueError("eventCode is required for special events")
        return self

    def to_event(self) -> LoyaltyEvent:
        if self.eventType == "signup":
            return SignupEvent(customer_id=self.customerId)
        if self.eventType == "review":
            return ReviewEvent(review_id=str(self.referenceId))
        if self.eventType == "referral":
            return ReferralEvent(referred_customer_id=str(self.referenceId))
        if self.eventType == "social_share":
            return SocialShareEvent(share_id=str(self.referenceId))
        if self.eventType == "birthday":
            return BirthdayEvent(year=self.year or utcnow().year)
        return SpecialEvent(event_code=str(self.eventCode), occurrence_id=str(self.referenceId))


class AwardResponse(BaseModel):
    applied: bool
    points: int
    tierChanged: bool
    transactionId: Optional[UUID]
    balance: Optional[int]

    @classmethod
    def from_result(cls, result: AwardResult) -> "AwardResponse":
        return cls(
            applied=result.applied,
            points=result.points,
            tierChanged=result.tier_changed,
            transactionId=result.transaction.id if result.transaction else None,
            balance=int(result.account.points_balance) if result.account else None,
        )


class ExpirySweepResponse(BaseModel):
    processedAccounts: int
    expiredPoints: int
    failures: List[dict[str, str]]


class TierCreateRequest(BaseModel):
    code: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    pointThreshold: int = Field(0, ge=0)
    pointsMultiplier: Decimal = Field(Decimal("1"), ge=1)
    benefits: list[Any] = Field(default_factory=list)
    isActive: bool = True
    displayOrder: int = 0


class TierUpdateRequest(BaseModel):
    code: Optional[str] = None
    name: Optional[str] = None
    description: Optional[str] = None
    pointThreshold: Optional[int] = Field(None, ge=0)
    pointsMultiplier: Optional[Decimal] = Field(None, ge=1)
    benefits: Optional[list[Any]] = None
    isActive: Optional[bool] = None
    displayOrder: Optional[int] = None


class PointsRuleResponse(BaseModel):
    id: UUID
    name: str
    description: Optional[str]
    ruleType: str
    calculationType: str
    value: Decimal
    minimumAmount: Decimal
    maxPointsPerTransaction: Optional[int]
    eventCode: Optional[str]
    isActive: bool
    startDate: Optional[datetime]
    endDate: Optional[datetime]

    @classmethod
    def from_model(cls, rule: PointsRule) -> "PointsRuleResponse":
        return cls(
            id=rule.id,
            name=rule.name,
            description=rule.description,
            ruleType=rule.rule_type.value,
            calculationType=rule.calculation_type.value,
            value=Decimal(str(rule.value)),
            minimumAmount=Decimal(str(rule.minimum_amount or 0)),
            maxPointsPerTransaction=rule.max_points_per_transaction,
            eventCode=rule.event_code,
            isActive=bool(rule.is_active),
            startDate=rule.start_date,
            endDate=rule.end_date,
        )


class PointsRuleCreateRequest(BaseModel):
    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    ruleType: PointsRuleType
    calculationType: PointsCalculationType
    value: Decimal = Field(..., ge=0)
    minimumAmount: Decimal = Field(Decimal("0"), ge=0)
    maxPointsPerTransaction: Optional[int] = Field(None, gt=0)
    eventCode: Optional[str] = None
    isActive: bool = True
    startDate: Optional[datetime] = None
    endDate: Optional[datetime] = None

    @model_validator(mode="after")
    def validate_window(self) -> "PointsRuleCreateRequest":
        if self.startDate and self.endDate and self.endDate < self.startDate:
            raise ValueError("endDate must not precede startDate")
        return self


class PointsRuleUpdateRequest(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    calculationType: Optional[PointsCalculationType] = None
    value: Optional[Decimal] = Field(None, ge=0)
    minimumAmount: Optional[Decimal] = Field(None, ge=0)
    maxPointsPerTransaction: Optional[int] = Field(None, gt=0)
    eventCode: Optional[str] = None
    isActive: Optional[bool] = None
    startDate: Optional[datetime] = None
    endDate: Optional[datetime] = None


class LoyaltySettingsPayload(BaseModel):
    programName: Optional[str] = None
    isActive: Optional[bool] = None
    pointsPerCurrencyUnit: Optional[Decimal] = Field(None, ge=0)
    pointValue: Optional[Decimal] = Field(None, ge=0)
    minimumRedemption: Optional[int] = Field(None, ge=1)
    pointsExpiryDays: Optional[int] = Field(None, ge=0)
    autoEnroll: Optional[bool] = None
    enablePointExpiry: Optional[bool] = None
    enableTiers: Optional[bool] = None
    enableReferrals: Optional[bool] = None
    referrerPoints: Optional[int] = Field(None, ge=0)
    referredPoints: Optional[int] = Field(None, ge=0)

    @classmethod
    def from_program(cls, program: LoyaltyProgramSettings) -> "LoyaltySettingsPayload":
        return cls(
            programName=program.program_name,
            isActive=program.is_active,
            pointsPerCurrencyUnit=program.points_per_currency_unit,
            pointValue=program.point_value,
            minimumRedemption=program.minimum_redemption,
            pointsExpiryDays=program.points_expiry_days,
            autoEnroll=program.auto_enroll,
            enablePointExpiry=program.enable_point_expiry,
            enableTiers=program.enable_tiers,
            enableReferrals=program.enable_referrals,
            referrerPoints=program.referrer_points,
            referredPoints=program.referred_points,
        )

    def to_changes(self) -> dict[str, Any]:
        return {
            "program_name": self.programName,
            "is_active": self.isActive,
            "points_per_currency_unit": self.pointsPerCurrencyUnit,
            "point_value": self.pointValue,
            "minimum_redemption": self.minimumRedemption,
            "points_expiry_days": self.pointsExpiryDays,
            "auto_enroll": self.autoEnroll,
            "enable_point_expiry": self.enablePointExpiry,
            "enable_tiers": self.enableTiers,
            "enable_referrals": self.enableReferrals,
            "referrer_points": self.referrerPoints,
            "referred_points": self.referredPoints,
        }


def _tier_values(payload: TierCreateRequest | TierUpdateRequest) -> dict[str, Any]:
    return {
        "code": payload.code,
        "name": payload.name,
        "description": payload.description,
        "point_threshold": payload.pointThreshold,
        "points_multiplier": payload.pointsMultiplier,
        "benefits": payload.benefits,
        "is_active": payload.isActive,
        "display_order": payload.displayOrder,
    }


def _rule_values(payload: PointsRuleCreateRequest | PointsRuleUpdateRequest) -> dict[str, Any]:
    values = {
        "name": payload.name,
        "description": payload.description,
        "calculation_type": payload.calculationType,
        "value": payload.value,
        "minimum_amount": payload.minimumAmount,
        "max_points_per_transaction": payload.maxPointsPerTransaction,
        "event_code": payload.eventCode,
        "is_active": payload.isActive,
        "start_date": payload.startDate,
        "end_date": payload.endDate,
    }
    if isinstance(payload, PointsRuleCreateRequest):
        values["rule_type"] = payload.ruleType
    return values


# Member routes


@router.get("/tiers", response_model=List[LoyaltyTierResponse])
async def list_loyalty_tiers(
    admin: LoyaltyProgramAdmin = Depends(get_loyalty_admin),
) -> List[LoyaltyTierResponse]:
    """List active loyalty tiers in threshold order."""

    return [LoyaltyTierResponse.from_model(tier) for tier in await admin.list_tiers()]


@router.post("/enroll", response_model=EnrollmentResponse)
async def enroll_customer(
    payload: EnrollmentRequest,
    customer_id: str = Depends(require_customer_id),
    service: LoyaltyService = Depends(get_loyalty_service),
) -> EnrollmentResponse:
    result = await service.enroll(customer_id, referred_by_code=payload.referralCode)
    return EnrollmentResponse(created=result.created, account=LoyaltyAccountResponse.from_model(result.account))


@router.get("/me", response_model=AccountSnapshotResponse)
async def get_my_account(
    customer_id: str = Depends(require_customer_id),
    service: LoyaltyService = Depends(get_loyalty_service),
) -> AccountSnapshotResponse:
    """Account, tier progress, and recent activity for the calling customer."""

    snapshot = await service.get_account_snapshot(customer_id)
    progress = snapshot.progress
    return AccountSnapshotResponse(
        account=LoyaltyAccountResponse.from_model(snapshot.account),
        tier=LoyaltyTierResponse.from_model(snapshot.tier) if snapshot.tier else None,
        nextTier=progress.next_tier.code if progress and progress.next_tier else None,
        pointsToNextTier=progress.points_to_next_tier if progress else None,
        progressPercent=float(progress.progress_percent) if progress else 0.0,
        referralCount=snapshot.referral_count,
        recentTransactions=[LoyaltyTransactionResponse.from_model(item) for item in snapshot.recent_transactions],
        redemptions=[
            RedemptionSummaryResponse(
                id=item.id,
                redemptionType=item.redemption_type.value,
                pointsRedeemed=int(item.points_redeemed),
                value=Decimal(str(item.value)),
                redeemedAt=item.redeemed_at,
            )
            for item in snapshot.redemptions
        ],
        expiringPoints=[
            ExpiringPointsResponse(expiresAt=item.expires_at, remainingPoints=item.remaining_points)
            for item in snapshot.expiring_points
        ],
    )


@router.get("/me/transactions", response_model=List[LoyaltyTransactionResponse])
async def list_my_transactions(
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    customer_id: str = Depends(require_customer_id),
    service: LoyaltyService = Depends(get_loyalty_service),
) -> List[LoyaltyTransactionResponse]:
    transactions = await service.list_transactions(customer_id, limit=limit, offset=offset)
    return [LoyaltyTransactionResponse.from_model(item) for item in transactions]


@router.get("/me/referral-link", response_model=ReferralLinkResponse)
async def get_my_referral_link(
    customer_id: str = Depends(require_customer_id),
    service: LoyaltyService = Depends(get_loyalty_service),
) -> ReferralLinkResponse:
    account = await service.get_account(customer_id)
    link = await service.generate_referral_link(customer_id)
    return ReferralLinkResponse(referralCode=account.referral_code, referralLink=link)


@router.post("/me/redemptions", response_model=RedemptionResponse, status_code=status.HTTP_201_CREATED)
async def redeem_my_points(
    payload: RedemptionRequest,
    customer_id: str = Depends(require_customer_id),
    service: LoyaltyService = Depends(get_loyalty_service),
) -> RedemptionResponse:
    result = await service.redeem_points(
        customer_id,
        points=payload.points,
        redemption_type=payload.redemptionType,
        reference_id=payload.referenceId,
        description=payload.description,
    )
    return RedemptionResponse(
        id=result.redemption.id,
        transactionId=result.transaction.id,
        pointsRedeemed=int(result.redemption.points_redeemed),
        value=Decimal(str(result.redemption.value)),
        balance=result.balance,
    )


# Admin routes


@admin_router.post("/initialize")
async def initialize_program(
    admin: LoyaltyProgramAdmin = Depends(get_loyalty_admin),
) -> dict[str, int]:
    """Seed default settings, tiers, and earn rules where missing."""

    return await admin.initialize_program()


@admin_router.get("/settings", response_model=LoyaltySettingsPayload)
async def get_program_settings(
    admin: LoyaltyProgramAdmin = Depends(get_loyalty_admin),
) -> LoyaltySettingsPayload:
    return LoyaltySettingsPayload.from_program(await admin.get_settings())


@admin_router.patch("/settings", response_model=LoyaltySettingsPayload)
async def update_program_settings(
    payload: LoyaltySettingsPayload,
    admin: LoyaltyProgramAdmin = Depends(get_loyalty_admin),
) -> LoyaltySettingsPayload:
    updated = await admin.update_settings(**payload.to_changes())
    return LoyaltySettingsPayload.from_program(updated)


@admin_router.get("/tiers", response_model=List[LoyaltyTierResponse])
async def list_all_tiers(
    include_inactive: bool = Query(True, alias="includeInactive"),
    admin: LoyaltyProgramAdmin = Depends(get_loyalty_admin),
) -> List[LoyaltyTierResponse]:
    tiers = await admin.list_tiers(include_inactive=include_inactive)
    return [LoyaltyTierResponse.from_model(tier) for tier in tiers]


@admin_router.post("/tiers", response_model=LoyaltyTierResponse, status_code=status.HTTP_201_CREATED)
async def create_tier(
    payload: TierCreateRequest,
    admin: LoyaltyProgramAdmin = Depends(get_loyalty_admin),
) -> LoyaltyTierResponse:
    return LoyaltyTierResponse.from_model(await admin.create_tier(**_tier_values(payload)))


@admin_router.patch("/tiers/{tier_id}", response_model=LoyaltyTierResponse)
async def update_tier(
    tier_id: UUID,
    payload: TierUpdateRequest,
    admin: LoyaltyProgramAdmin = Depends(get_loyalty_admin),
) -> LoyaltyTierResponse:
    return LoyaltyTierResponse.from_model(await admin.update_tier(tier_id, **_tier_values(payload)))


@admin_router.get("/rules", response_model=List[PointsRuleResponse])
async def list_rules(
    rule_type: Optional[PointsRuleType] = Query(None, alias="ruleType"),
    admin: LoyaltyProgramAdmin = Depends(get_loyalty_admin),
) -> List[PointsRuleResponse]:
    return [PointsRuleResponse.from_model(rule) for rule in await admin.list_rules(rule_type=rule_type)]


@admin_router.post("/rules", response_model=PointsRuleResponse, status_code=status.HTTP_201_CREATED)
async def create_rule(
    payload: PointsRuleCreateRequest,
    admin: LoyaltyProgramAdmin = Depends(get_loyalty_admin),
) -> PointsRuleResponse:
    return PointsRuleResponse.from_model(await admin.create_rule(**_rule_values(payload)))


@admin_router.patch("/rules/{rule_id}", response_model=PointsRuleResponse)
async def update_rule(
    rule_id: UUID,
    payload: PointsRuleUpdateRequest,
    admin: LoyaltyProgramAdmin = Depends(get_loyalty_admin),
) -> PointsRuleResponse:
    return PointsRuleResponse.from_model(await admin.update_rule(rule_id, **_rule_values(payload)))


@admin_router.post("/points/award", response_model=AwardResponse)
async def award_points(
    payload: AwardRequest,
    service: LoyaltyService = Depends(get_loyalty_service),
) -> AwardResponse:
    result = await service.award_points(
        payload.customerId,
        points=payload.points,
        source=payload.source,
        transaction_type=LoyaltyTransactionType(payload.transactionType),
        reference_id=payload.referenceId,
        description=payload.description,
        deduplicate=payload.referenceId is not None,
    )
    return AwardResponse.from_result(result)


@admin_router.post("/points/adjust", response_model=AwardResponse)
async def adjust_points(
    payload: AdjustmentRequest,
    service: LoyaltyService = Depends(get_loyalty_service),
) -> AwardResponse:
    result = await service.adjust_points(payload.customerId, points=payload.points, reason=payload.reason)
    return AwardResponse.from_result(result)


@admin_router.post("/events", response_model=AwardResponse)
async def record_loyalty_event(
    payload: LoyaltyEventRequest,
    service: LoyaltyService = Depends(get_loyalty_service),
) -> AwardResponse:
    """Award the points the matching earn rule grants for an engagement event."""

    result = await service.award_event_points(payload.customerId, payload.to_event())
    return AwardResponse.from_result(result)


@admin_router.post("/orders/{order_id}/points", response_model=AwardResponse)
async def process_order_points(
    order_id: str,
    payload: OrderPointsRequest,
    service: LoyaltyService = Depends(get_loyalty_service),
) -> AwardResponse:
    result = await service.process_order_points(order_id, payload.customerId)
    return AwardResponse.from_result(result)


@admin_router.post("/expire", response_model=ExpirySweepResponse)
async def clear_expired_points(
    service: LoyaltyService = Depends(get_loyalty_service),
) -> ExpirySweepResponse:
    result = await service.clear_expired_points()
    return ExpirySweepResponse(
        processedAccounts=result.processed_accounts,
        expiredPoints=result.expired_points,
        failures=[{"accountId": item.account_id, "error": item.error} for item in result.failures],
    )


@admin_router.get("/accounts/{customer_id}", response_model=LoyaltyAccountResponse)
async def get_account(
    customer_id: str,
    service: LoyaltyService = Depends(get_loyalty_service),
) -> LoyaltyAccountResponse:
    return LoyaltyAccountResponse.from_model(await service.get_account(customer_id))


@admin_router.get("/accounts/{customer_id}/transactions", response_model=List[LoyaltyTransactionResponse])
async def list_account_transactions(
    customer_id: str,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    service: LoyaltyService = Depends(get_loyalty_service),
) -> List[LoyaltyTransactionResponse]:
    transactions = await service.list_transactions(customer_id, limit=limit, offset=offset)
    return [LoyaltyTransactionResponse.from_model(item) for item in transactions]


@admin_router.post("/accounts/{customer_id}/deactivate", response_model=LoyaltyAccountResponse)
async def deactivate_account(
    customer_id: str,
    service: LoyaltyService = Depends(get_loyalty_service),
) -> LoyaltyAccountResponse:
    return LoyaltyAccountResponse.from_model(await service.deactivate_account(customer_id))


@admin_router.post("/accounts/{customer_id}/reactivate", response_model=LoyaltyAccountResponse)
async def reactivate_account(
    customer_id: str,
    service: LoyaltyService = Depends(get_loyalty_service),
) -> LoyaltyAccountResponse:
    return LoyaltyAccountResponse.from_model(await service.reactivate_account(customer_id))
