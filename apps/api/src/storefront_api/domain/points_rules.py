"""Points earn rules and the loyalty events they are evaluated against."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_FLOOR, Decimal
from typing import ClassVar, Iterable, Protocol, Union

from storefront_api.core.clock import ensure_aware
from storefront_api.core.errors import ValidationError
from storefront_api.models.loyalty import (
    LoyaltyTransactionSource,
    PointsCalculationType,
    PointsRuleType,
)


class RuleLike(Protocol):
    rule_type: PointsRuleType
    calculation_type: PointsCalculationType
    value: Decimal
    minimum_amount: Decimal
    max_points_per_transaction: int | None
    event_code: str | None
    is_active: bool
    start_date: datetime | None
    end_date: datetime | None


def _to_decimal(value: object) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


@dataclass(frozen=True, slots=True)
class PurchaseEvent:
    order_id: str
    amount: Decimal

    rule_type: ClassVar[PointsRuleType] = PointsRuleType.PURCHASE
    source: ClassVar[LoyaltyTransactionSource] = LoyaltyTransactionSource.PURCHASE

    def __post_init__(self) -> None:
        if not self.order_id:
            raise ValidationError("Purchase events require an order id")
        amount = _to_decimal(self.amount)
        if amount < 0:
            raise ValidationError("Order amount cannot be negative")
        object.__setattr__(self, "amount", amount)

    @property
    def reference_id(self) -> str:
        return self.order_id


@dataclass(frozen=True, slots=True)
class SignupEvent:
    customer_id: str

    rule_type: ClassVar[PointsRuleType] = PointsRuleType.SIGNUP
    source: ClassVar[LoyaltyTransactionSource] = LoyaltyTransactionSource.SIGNUP
    amount: ClassVar[Decimal] = Decimal("0")

    @property
    def reference_id(self) -> str:
        return f"signup:{self.customer_id}"


@dataclass(frozen=True, slots=True)
class ReviewEvent:
    review_id: str

    rule_type: ClassVar[PointsRuleType] = PointsRuleType.REVIEW
    source: ClassVar[LoyaltyTransactionSource] = LoyaltyTransactionSource.REVIEW
    amount: ClassVar[Decimal] = Decimal("0")

    def __post_init__(self) -> None:
        if not self.review_id:
            raise ValidationError("Review events require a review id")

    @property
    def reference_id(self) -> str:
        return self.review_id


@dataclass(frozen=True, slots=True)
class ReferralEvent:
    referred_customer_id: str

    rule_type: ClassVar[PointsRuleType] = PointsRuleType.REFERRAL
    source: ClassVar[LoyaltyTransactionSource] = LoyaltyTransactionSource.REFERRAL
    amount: ClassVar[Decimal] = Decimal("0")

    @property
    def reference_id(self) -> str:
        return f"referral:{self.referred_customer_id}"


@dataclass(frozen=True, slots=True)
class SocialShareEvent:
    share_id: str

    rule_type: ClassVar[PointsRuleType] = PointsRuleType.SOCIAL_SHARE
    source: ClassVar[LoyaltyTransactionSource] = LoyaltyTransactionSource.SOCIAL_SHARE
    amount: ClassVar[Decimal] = Decimal("0")

    @property
    def reference_id(self) -> str:
        return self.share_id


@dataclass(frozen=True, slots=True)
class BirthdayEvent:
    year: int

    rule_type: ClassVar[PointsRuleType] = PointsRuleType.BIRTHDAY
    source: ClassVar[LoyaltyTransactionSource] = LoyaltyTransactionSource.BIRTHDAY
    amount: ClassVar[Decimal] = Decimal("0")

    @property
    def reference_id(self) -> str:
        return f"birthday:{self.year}"


@dataclass(frozen=True, slots=True)
class SpecialEvent:
    event_code: str
    occurrence_id: str

    rule_type: ClassVar[PointsRuleType] = PointsRuleType.SPECIAL_EVENT
    source: ClassVar[LoyaltyTransactionSource] = LoyaltyTransactionSource.SPECIAL_EVENT
    amount: ClassVar[Decimal] = Decimal("0")

    def __post_init__(self) -> None:
        if not self.event_code:
            raise ValidationError("Special events require an event code")

    @property
    def reference_id(self) -> str:
        return f"{self.event_code}:{self.occurrence_id}"


LoyaltyEvent = Union[
    PurchaseEvent,
    SignupEvent,
    ReviewEvent,
    ReferralEvent,
    SocialShareEvent,
    BirthdayEvent,
    SpecialEvent,
]


def rule_is_live(rule: RuleLike, now: datetime) -> bool:
    if not rule.is_active:
        return False
    start = ensure_aware(rule.start_date)
    end = ensure_aware(rule.end_date)
    if start is not None and now < start:
        return False
    if end is not None and now > end:
        return False
    return True


def select_rule(
    rules: Iterable[RuleLike],
    rule_type: PointsRuleType,
    *,
    now: datetime,
    event_code: str | None = None,
) -> RuleLike | None:
    """First live rule of ``rule_type`` in iteration order.

    Rules are not prioritised; callers pass them in creation order, so the
    oldest live rule wins when several overlap.
    """

    for rule in rules:
        if rule.rule_type != rule_type:
            continue
        if rule_type == PointsRuleType.SPECIAL_EVENT and rule.event_code and rule.event_code != event_code:
            continue
        if rule_is_live(rule, now):
            return rule
    return None


def calculate_points(
    event: LoyaltyEvent,
    rule: RuleLike,
    *,
    now: datetime,
    points_per_currency_unit: Decimal | int = 1,
) -> int:
    """Points an event earns under ``rule``; 0 means no transaction should be written."""

    if not rule_is_live(rule, now):
        return 0

    amount = _to_decimal(event.amount)
    if amount < _to_decimal(rule.minimum_amount or 0):
        return 0

    value = _to_decimal(rule.value)
    calculation = PointsCalculationType(rule.calculation_type)
    if calculation == PointsCalculationType.FIXED:
        points = value
    elif calculation == PointsCalculationType.PERCENTAGE:
        # value is points per currency unit, not a percentage of the amount
        points = amount * value
    else:
        points = amount * _to_decimal(points_per_currency_unit) * value

    result = int(points.to_integral_value(rounding=ROUND_FLOOR))
    if rule.max_points_per_transaction:
        result = min(result, int(rule.max_points_per_transaction))
    return max(result, 0)


__all__ = [
    "BirthdayEvent",
    "LoyaltyEvent",
    "PurchaseEvent",
    "ReferralEvent",
    "ReviewEvent",
    "SignupEvent",
    "SocialShareEvent",
    "SpecialEvent",
    "calculate_points",
    "rule_is_live",
    "select_rule",
]
