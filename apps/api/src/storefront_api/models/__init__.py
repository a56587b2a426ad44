"""SQLAlchemy models package."""

from .loyalty import (  # noqa: F401
    LoyaltyAccount,
    LoyaltyPointExpiration,
    LoyaltyPointExpirationStatus,
    LoyaltyRedemption,
    LoyaltyRedemptionType,
    LoyaltyReferral,
    LoyaltySettingsRecord,
    LoyaltyTier,
    LoyaltyTierHistory,
    LoyaltyTransaction,
    LoyaltyTransactionSource,
    LoyaltyTransactionType,
    PointsCalculationType,
    PointsRule,
    PointsRuleType,
)
from .subscription import (  # noqa: F401
    BillingInterval,
    BillingRecordKind,
    BillingRecordStatus,
    Subscription,
    SubscriptionBillingRecord,
    SubscriptionPlan,
    SubscriptionStatus,
)
