from .admin import DEFAULT_RULES, DEFAULT_TIERS, LoyaltyProgramAdmin
from .ledger import AppendResult, LedgerEntry, LedgerStore
from .program import (
    DatabaseLoyaltySettingsProvider,
    LoyaltyProgramSettings,
    LoyaltySettingsProvider,
    StaticLoyaltySettingsProvider,
)
from .service import (
    AccountSnapshot,
    AwardResult,
    EnrollmentResult,
    ExpiryFailure,
    ExpirySweepResult,
    LoyaltyService,
    RedemptionResult,
)

__all__ = [
    "AccountSnapshot",
    "AppendResult",
    "AwardResult",
    "DEFAULT_RULES",
    "DEFAULT_TIERS",
    "DatabaseLoyaltySettingsProvider",
    "EnrollmentResult",
    "ExpiryFailure",
    "ExpirySweepResult",
    "LedgerEntry",
    "LedgerStore",
    "LoyaltyProgramAdmin",
    "LoyaltyProgramSettings",
    "LoyaltyService",
    "LoyaltySettingsProvider",
    "RedemptionResult",
    "StaticLoyaltySettingsProvider",
]
