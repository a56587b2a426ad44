"""Loyalty program configuration read at the start of each operation."""

from __future__ import annotations

from dataclasses import asdict, dataclass, replace
from decimal import Decimal
from typing import Any, Protocol

from sqlalchemy.ext.asyncio import AsyncSession

from storefront_api.models.loyalty import LoyaltySettingsRecord

SETTINGS_ROW_ID = 1


@dataclass(frozen=True, slots=True)
class LoyaltyProgramSettings:
    program_name: str = "Loyalty Rewards"
    is_active: bool = True
    points_per_currency_unit: Decimal = Decimal("10")
    point_value: Decimal = Decimal("0.01")
    minimum_redemption: int = 500
    points_expiry_days: int = 365
    auto_enroll: bool = True
    enable_point_expiry: bool = True
    enable_tiers: bool = True
    enable_referrals: bool = True
    referrer_points: int = 500
    referred_points: int = 250

    @classmethod
    def from_record(cls, record: LoyaltySettingsRecord) -> "LoyaltyProgramSettings":
        return cls(
            program_name=record.program_name,
            is_active=bool(record.is_active),
            points_per_currency_unit=Decimal(str(record.points_per_currency_unit)),
            point_value=Decimal(str(record.point_value)),
            minimum_redemption=int(record.minimum_redemption),
            points_expiry_days=int(record.points_expiry_days),
            auto_enroll=bool(record.auto_enroll),
            enable_point_expiry=bool(record.enable_point_expiry),
            enable_tiers=bool(record.enable_tiers),
            enable_referrals=bool(record.enable_referrals),
            referrer_points=int(record.referrer_points),
            referred_points=int(record.referred_points),
        )

    def with_updates(self, **changes: Any) -> "LoyaltyProgramSettings":
        return replace(self, **changes)

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


class LoyaltySettingsProvider(Protocol):
    async def get_current(self) -> LoyaltyProgramSettings:
        ...

    async def save(self, program: LoyaltyProgramSettings) -> LoyaltyProgramSettings:
        ...


class DatabaseLoyaltySettingsProvider:
    """Reads the singleton settings row; defaults apply until one is saved."""

    def __init__(self, db_session: AsyncSession) -> None:
        self._db = db_session

    async def get_current(self) -> LoyaltyProgramSettings:
        record = await self._db.get(LoyaltySettingsRecord, SETTINGS_ROW_ID, populate_existing=True)
        if record is None:
            return LoyaltyProgramSettings()
        return LoyaltyProgramSettings.from_record(record)

    async def save(self, program: LoyaltyProgramSettings) -> LoyaltyProgramSettings:
        record = await self._db.get(LoyaltySettingsRecord, SETTINGS_ROW_ID)
        if record is None:
            record = LoyaltySettingsRecord(id=SETTINGS_ROW_ID)
            self._db.add(record)
        for key, value in program.as_dict().items():
            setattr(record, key, value)
        await self._db.flush()
        return program


class StaticLoyaltySettingsProvider:
    """Fixed settings, for tests and scripts."""

    def __init__(self, program: LoyaltyProgramSettings | None = None) -> None:
        self.program = program or LoyaltyProgramSettings()

    async def get_current(self) -> LoyaltyProgramSettings:
        return self.program

    async def save(self, program: LoyaltyProgramSettings) -> LoyaltyProgramSettings:
        self.program = program
        return program


__all__ = [
    "DatabaseLoyaltySettingsProvider",
    "LoyaltyProgramSettings",
    "LoyaltySettingsProvider",
    "StaticLoyaltySettingsProvider",
]
