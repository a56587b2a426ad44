"""Loyalty ledger, tier, and program configuration models."""

from __future__ import annotations

from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum as SqlEnum,
    ForeignKey,
    Integer,
    JSON,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from storefront_api.db.base import Base


class LoyaltyTransactionType(str, Enum):
    """Ledger transaction kinds."""

    EARN = "earn"
    REDEEM = "redeem"
    EXPIRE = "expire"
    ADJUST = "adjust"
    BONUS = "bonus"


class LoyaltyTransactionSource(str, Enum):
    """Origin of a ledger transaction."""

    PURCHASE = "purchase"
    SIGNUP = "signup"
    REVIEW = "review"
    REFERRAL = "referral"
    SOCIAL_SHARE = "social_share"
    BIRTHDAY = "birthday"
    SPECIAL_EVENT = "special_event"
    REDEMPTION = "redemption"
    EXPIRATION = "expiration"
    ADMIN_ADJUSTMENT = "admin_adjustment"
    TIER_BONUS = "tier_bonus"


class PointsRuleType(str, Enum):
    PURCHASE = "purchase"
    SIGNUP = "signup"
    REVIEW = "review"
    REFERRAL = "referral"
    SOCIAL_SHARE = "social_share"
    BIRTHDAY = "birthday"
    SPECIAL_EVENT = "special_event"


class PointsCalculationType(str, Enum):
    FIXED = "fixed"
    PERCENTAGE = "percentage"
    MULTIPLIER = "multiplier"


class LoyaltyRedemptionType(str, Enum):
    DISCOUNT = "discount"
    PRODUCT = "product"
    GIFT_CARD = "gift_card"
    FREE_SHIPPING = "free_shipping"
    CUSTOM = "custom"


class LoyaltyPointExpirationStatus(str, Enum):
    """State of an earn transaction's expiry tracking row."""

    SCHEDULED = "scheduled"
    EXPIRED = "expired"
    CONSUMED = "consumed"


class LoyaltyTier(Base):
    """Membership level unlocked by lifetime points."""

    __tablename__ = "loyalty_tiers"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    code = Column(String, nullable=False, unique=True, index=True)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    point_threshold = Column(Integer, nullable=False, default=0)
    points_multiplier = Column(Numeric(6, 2), nullable=False, default=1, server_default="1")
    benefits = Column(JSON, nullable=False, default=list)
    is_active = Column(Boolean, nullable=False, default=True, server_default="true")
    display_order = Column(Integer, nullable=False, default=0, server_default="0")
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)


class PointsRule(Base):
    """Earn rule evaluated against loyalty events."""

    __tablename__ = "loyalty_points_rules"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    rule_type = Column(SqlEnum(PointsRuleType, name="loyalty_points_rule_type"), nullable=False, index=True)
    calculation_type = Column(
        SqlEnum(PointsCalculationType, name="loyalty_points_calculation_type"),
        nullable=False,
        default=PointsCalculationType.FIXED,
    )
    value = Column(Numeric(12, 4), nullable=False)
    minimum_amount = Column(Numeric(12, 2), nullable=False, default=0, server_default="0")
    max_points_per_transaction = Column(Integer, nullable=True)
    event_code = Column(String, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True, server_default="true")
    start_date = Column(DateTime(timezone=True), nullable=True)
    end_date = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)


class LoyaltyAccount(Base):
    """One loyalty account per customer; soft-deactivated, never deleted."""

    __tablename__ = "loyalty_accounts"
    __table_args__ = (
        UniqueConstraint("customer_id", name="uq_loyalty_accounts_customer_id"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    customer_id = Column(String, nullable=False, index=True)
    current_tier_id = Column(UUID(as_uuid=True), ForeignKey("loyalty_tiers.id"), nullable=True)
    points_balance = Column(Integer, nullable=False, default=0, server_default="0")
    lifetime_points_earned = Column(Integer, nullable=False, default=0, server_default="0")
    referral_code = Column(String, nullable=False, unique=True)
    referred_by_customer_id = Column(String, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True, server_default="true")
    enrolled_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    version_id = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    __mapper_args__ = {"version_id_col": version_id}

    current_tier = relationship("LoyaltyTier", lazy="selectin")


class LoyaltyTransaction(Base):
    """Immutable ledger record of a points balance change."""

    __tablename__ = "loyalty_transactions"
    __table_args__ = (
        UniqueConstraint("account_id", "dedupe_key", name="uq_loyalty_transactions_dedupe"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    account_id = Column(
        UUID(as_uuid=True), ForeignKey("loyalty_accounts.id", ondelete="CASCADE"), nullable=False, index=True
    )
    transaction_type = Column(SqlEnum(LoyaltyTransactionType, name="loyalty_transaction_type"), nullable=False)
    source = Column(SqlEnum(LoyaltyTransactionSource, name="loyalty_transaction_source"), nullable=False)
    points = Column(Integer, nullable=False)
    balance_after = Column(Integer, nullable=False)
    reference_id = Column(String, nullable=True)
    dedupe_key = Column(String, nullable=True)
    description = Column(String, nullable=True)
    expiry_date = Column(DateTime(timezone=True), nullable=True)
    metadata_json = Column("metadata", JSON, nullable=True)
    occurred_at = Column(DateTime(timezone=True), nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class LoyaltyPointExpiration(Base):
    """Outstanding points of one earn/bonus transaction awaiting expiry."""

    __tablename__ = "loyalty_point_expirations"
    __table_args__ = (
        UniqueConstraint("source_transaction_id", name="uq_loyalty_point_expirations_source"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    account_id = Column(
        UUID(as_uuid=True), ForeignKey("loyalty_accounts.id", ondelete="CASCADE"), nullable=False, index=True
    )
    source_transaction_id = Column(
        UUID(as_uuid=True), ForeignKey("loyalty_transactions.id", ondelete="CASCADE"), nullable=False
    )
    points = Column(Integer, nullable=False)
    consumed_points = Column(Integer, nullable=False, default=0, server_default="0")
    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)
    status = Column(
        SqlEnum(LoyaltyPointExpirationStatus, name="loyalty_point_expiration_status"),
        nullable=False,
        default=LoyaltyPointExpirationStatus.SCHEDULED,
        server_default=LoyaltyPointExpirationStatus.SCHEDULED.value,
        index=True,
    )
    expired_points = Column(Integer, nullable=False, default=0, server_default="0")
    expire_transaction_id = Column(UUID(as_uuid=True), ForeignKey("loyalty_transactions.id"), nullable=True)
    swept_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    @property
    def remaining_points(self) -> int:
        return max(int(self.points or 0) - int(self.consumed_points or 0) - int(self.expired_points or 0), 0)


class LoyaltyTierHistory(Base):
    """Append-only record of tier promotions."""

    __tablename__ = "loyalty_tier_history"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    account_id = Column(
        UUID(as_uuid=True), ForeignKey("loyalty_accounts.id", ondelete="CASCADE"), nullable=False, index=True
    )
    tier_id = Column(UUID(as_uuid=True), ForeignKey("loyalty_tiers.id"), nullable=False)
    previous_tier_id = Column(UUID(as_uuid=True), ForeignKey("loyalty_tiers.id"), nullable=True)
    lifetime_points = Column(Integer, nullable=False)
    achieved_at = Column(DateTime(timezone=True), nullable=False)


class LoyaltyRedemption(Base):
    """Monetary redemption written alongside its ledger debit."""

    __tablename__ = "loyalty_redemptions"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    account_id = Column(
        UUID(as_uuid=True), ForeignKey("loyalty_accounts.id", ondelete="CASCADE"), nullable=False, index=True
    )
    transaction_id = Column(UUID(as_uuid=True), ForeignKey("loyalty_transactions.id"), nullable=False)
    redemption_type = Column(SqlEnum(LoyaltyRedemptionType, name="loyalty_redemption_type"), nullable=False)
    points_redeemed = Column(Integer, nullable=False)
    value = Column(Numeric(12, 2), nullable=False)
    reference_id = Column(String, nullable=True)
    description = Column(String, nullable=True)
    redeemed_at = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class LoyaltyReferral(Base):
    """Referrer -> referred edge, stored once on the referrer's account."""

    __tablename__ = "loyalty_referrals"
    __table_args__ = (
        UniqueConstraint("referred_customer_id", name="uq_loyalty_referrals_referred_customer"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    referrer_account_id = Column(
        UUID(as_uuid=True), ForeignKey("loyalty_accounts.id", ondelete="CASCADE"), nullable=False, index=True
    )
    referred_customer_id = Column(String, nullable=False)
    points_awarded = Column(Integer, nullable=False, default=0, server_default="0")
    referred_at = Column(DateTime(timezone=True), nullable=False)


class LoyaltySettingsRecord(Base):
    """Singleton row holding the program configuration."""

    __tablename__ = "loyalty_settings"

    id = Column(Integer, primary_key=True, default=1)
    program_name = Column(String, nullable=False, default="Loyalty Rewards")
    is_active = Column(Boolean, nullable=False, default=True)
    points_per_currency_unit = Column(Numeric(12, 4), nullable=False, default=10)
    point_value = Column(Numeric(12, 4), nullable=False, default=0.01)
    minimum_redemption = Column(Integer, nullable=False, default=500)
    points_expiry_days = Column(Integer, nullable=False, default=365)
    auto_enroll = Column(Boolean, nullable=False, default=True)
    enable_point_expiry = Column(Boolean, nullable=False, default=True)
    enable_tiers = Column(Boolean, nullable=False, default=True)
    enable_referrals = Column(Boolean, nullable=False, default=True)
    referrer_points = Column(Integer, nullable=False, default=500)
    referred_points = Column(Integer, nullable=False, default=250)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)


__all__ = [
    "LoyaltyAccount",
    "LoyaltyPointExpiration",
    "LoyaltyPointExpirationStatus",
    "LoyaltyRedemption",
    "LoyaltyRedemptionType",
    "LoyaltyReferral",
    "LoyaltySettingsRecord",
    "LoyaltyTier",
    "LoyaltyTierHistory",
    "LoyaltyTransaction",
    "LoyaltyTransactionSource",
    "LoyaltyTransactionType",
    "PointsCalculationType",
    "PointsRule",
    "PointsRuleType",
]
