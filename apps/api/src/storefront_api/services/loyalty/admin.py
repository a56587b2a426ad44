"""Administration of tiers, earn rules, and program settings."""

from __future__ import annotations

from dataclasses import fields
from decimal import Decimal
from typing import Any, Sequence
from uuid import UUID

from loguru import logger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from storefront_api.core.errors import BadRequestError, NotFoundError
from storefront_api.models.loyalty import (
    LoyaltySettingsRecord,
    LoyaltyTier,
    PointsCalculationType,
    PointsRule,
    PointsRuleType,
)

from .program import (
    SETTINGS_ROW_ID,
    DatabaseLoyaltySettingsProvider,
    LoyaltyProgramSettings,
    LoyaltySettingsProvider,
)

DEFAULT_TIERS: tuple[dict[str, Any], ...] = (
    {
        "code": "bronze",
        "name": "Bronze",
        "point_threshold": 0,
        "points_multiplier": Decimal("1"),
        "benefits": [{"type": "points_multiplier", "value": 1, "description": "Standard points earning"}],
        "display_order": 1,
    },
    {
        "code": "silver",
        "name": "Silver",
        "point_threshold": 1000,
        "points_multiplier": Decimal("1.25"),
        "benefits": [
            {"type": "points_multiplier", "value": 1.25, "description": "25% bonus points on purchases"},
            {"type": "free_shipping", "value": 500, "description": "Free shipping on orders above 500"},
        ],
        "display_order": 2,
    },
    {
        "code": "gold",
        "name": "Gold",
        "point_threshold": 5000,
        "points_multiplier": Decimal("1.5"),
        "benefits": [
            {"type": "points_multiplier", "value": 1.5, "description": "50% bonus points on purchases"},
            {"type": "free_shipping", "value": 0, "description": "Free shipping on all orders"},
            {"type": "birthday_bonus", "value": 500, "description": "500 bonus points on your birthday"},
        ],
        "display_order": 3,
    },
    {
        "code": "platinum",
        "name": "Platinum",
        "point_threshold": 10000,
        "points_multiplier": Decimal("2"),
        "benefits": [
            {"type": "points_multiplier", "value": 2, "description": "Double points on purchases"},
            {"type": "free_shipping", "value": 0, "description": "Free express shipping on all orders"},
            {"type": "exclusive_access", "value": True, "description": "Early access to sales"},
        ],
        "display_order": 4,
    },
)

DEFAULT_RULES: tuple[dict[str, Any], ...] = (
    {
        "name": "Purchase points",
        "description": "Points for every unit spent",
        "rule_type": PointsRuleType.PURCHASE,
        "calculation_type": PointsCalculationType.PERCENTAGE,
        "value": Decimal("10"),
    },
    {
        "name": "Signup bonus",
        "description": "Welcome points for joining",
        "rule_type": PointsRuleType.SIGNUP,
        "calculation_type": PointsCalculationType.FIXED,
        "value": Decimal("250"),
    },
    {
        "name": "Product review",
        "description": "Points for reviewing a purchased product",
        "rule_type": PointsRuleType.REVIEW,
        "calculation_type": PointsCalculationType.FIXED,
        "value": Decimal("50"),
    },
    {
        "name": "Referral",
        "description": "Points for referring a friend",
        "rule_type": PointsRuleType.REFERRAL,
        "calculation_type": PointsCalculationType.FIXED,
        "value": Decimal("500"),
    },
)

_TIER_FIELDS = {
    "code",
    "name",
    "description",
    "point_threshold",
    "points_multiplier",
    "benefits",
    "is_active",
    "display_order",
}
_RULE_FIELDS = {
    "name",
    "description",
    "rule_type",
    "calculation_type",
    "value",
    "minimum_amount",
    "max_points_per_transaction",
    "event_code",
    "is_active",
    "start_date",
    "end_date",
}
_SETTINGS_FIELDS = {item.name for item in fields(LoyaltyProgramSettings)}


class LoyaltyProgramAdmin:
    """CRUD for program configuration; each write commits on success."""

    def __init__(
        self,
        db_session: AsyncSession,
        *,
        settings_provider: LoyaltySettingsProvider | None = None,
    ) -> None:
        self._db = db_session
        self._settings_provider = settings_provider or DatabaseLoyaltySettingsProvider(db_session)

    # Tiers

    async def list_tiers(self, *, include_inactive: bool = False) -> Sequence[LoyaltyTier]:
        stmt = select(LoyaltyTier).order_by(LoyaltyTier.point_threshold.asc(), LoyaltyTier.display_order.asc())
        if not include_inactive:
            stmt = stmt.where(LoyaltyTier.is_active.is_(True))
        return (await self._db.execute(stmt)).scalars().all()

    async def get_tier(self, tier_id: UUID) -> LoyaltyTier:
        tier = await self._db.get(LoyaltyTier, tier_id)
        if tier is None:
            raise NotFoundError(f"Loyalty tier {tier_id} not found")
        return tier

    async def create_tier(self, **values: Any) -> LoyaltyTier:
        payload = _pick(values, _TIER_FIELDS)
        payload.setdefault("point_threshold", 0)
        payload.setdefault("is_active", True)
        if not payload.get("code") or not payload.get("name"):
            raise BadRequestError("Tiers require a code and a name")
        _validate_tier_values(payload)
        tier = LoyaltyTier(**payload)
        await self._check_tier_set(tier)
        self._db.add(tier)
        await self._db.commit()
        logger.info("Loyalty tier created", tier=tier.code, threshold=tier.point_threshold)
        return tier

    async def update_tier(self, tier_id: UUID, **changes: Any) -> LoyaltyTier:
        tier = await self.get_tier(tier_id)
        payload = _pick(changes, _TIER_FIELDS)
        _validate_tier_values(payload)
        for key, value in payload.items():
            setattr(tier, key, value)
        try:
            await self._check_tier_set(tier)
        except BadRequestError:
            await self._db.rollback()
            raise
        await self._db.commit()
        logger.info("Loyalty tier updated", tier=tier.code, fields=sorted(payload))
        return tier

    async def _check_tier_set(self, candidate: LoyaltyTier) -> None:
        with self._db.no_autoflush:
            others = [
                tier
                for tier in (await self._db.execute(select(LoyaltyTier))).scalars().all()
                if tier is not candidate and tier.id != candidate.id
            ]
        if any(tier.code == candidate.code for tier in others):
            raise BadRequestError(f"Tier code {candidate.code} already exists")

        active = [tier for tier in others if tier.is_active]
        if candidate.is_active is not False:
            if any(int(tier.point_threshold) == int(candidate.point_threshold) for tier in active):
                raise BadRequestError(f"An active tier already uses threshold {candidate.point_threshold}")
            active.append(candidate)

        if active and not any(int(tier.point_threshold) == 0 for tier in active):
            raise BadRequestError("An active tier with a point threshold of 0 must remain")

    # Rules

    async def list_rules(self, *, rule_type: PointsRuleType | None = None) -> Sequence[PointsRule]:
        stmt = select(PointsRule).order_by(PointsRule.created_at.asc(), PointsRule.name.asc())
        if rule_type is not None:
            stmt = stmt.where(PointsRule.rule_type == rule_type)
        return (await self._db.execute(stmt)).scalars().all()

    async def get_rule(self, rule_id: UUID) -> PointsRule:
        rule = await self._db.get(PointsRule, rule_id)
        if rule is None:
            raise NotFoundError(f"Points rule {rule_id} not found")
        return rule

    async def create_rule(self, **values: Any) -> PointsRule:
        payload = _pick(values, _RULE_FIELDS)
        _validate_rule_values(payload)
        rule = PointsRule(**payload)
        self._db.add(rule)
        await self._db.commit()
        logger.info("Points rule created", rule=rule.name, rule_type=rule.rule_type.value)
        return rule

    async def update_rule(self, rule_id: UUID, **changes: Any) -> PointsRule:
        rule = await self.get_rule(rule_id)
        payload = _pick(changes, _RULE_FIELDS)
        _validate_rule_values(payload)
        for key, value in payload.items():
            setattr(rule, key, value)
        if rule.start_date and rule.end_date and rule.end_date < rule.start_date:
            await self._db.rollback()
            raise BadRequestError("Rule end date must not precede its start date")
        await self._db.commit()
        logger.info("Points rule updated", rule=rule.name, fields=sorted(payload))
        return rule

    # Settings

    async def get_settings(self) -> LoyaltyProgramSettings:
        return await self._settings_provider.get_current()

    async def update_settings(self, **changes: Any) -> LoyaltyProgramSettings:
        unknown = set(changes) - _SETTINGS_FIELDS
        if unknown:
            raise BadRequestError(f"Unknown loyalty settings: {', '.join(sorted(unknown))}")
        updates = {key: value for key, value in changes.items() if value is not None}
        for key in ("points_per_currency_unit", "point_value"):
            if key in updates:
                updates[key] = Decimal(str(updates[key]))
        current = await self._settings_provider.get_current()
        updated = current.with_updates(**updates)
        _validate_settings(updated)
        await self._settings_provider.save(updated)
        await self._db.commit()
        logger.info("Loyalty settings updated", fields=sorted(changes))
        return updated

    async def initialize_program(self) -> dict[str, int]:
        """Seed default settings, tiers, and rules where none exist yet."""

        summary = {"settings": 0, "tiers": 0, "rules": 0}
        if await self._db.get(LoyaltySettingsRecord, SETTINGS_ROW_ID) is None:
            await self._settings_provider.save(LoyaltyProgramSettings())
            summary["settings"] = 1

        if not (await self._db.execute(select(LoyaltyTier.id).limit(1))).first():
            for definition in DEFAULT_TIERS:
                self._db.add(LoyaltyTier(**definition))
                summary["tiers"] += 1

        existing_types = set((await self._db.execute(select(PointsRule.rule_type))).scalars().all())
        for definition in DEFAULT_RULES:
            if definition["rule_type"] not in existing_types:
                self._db.add(PointsRule(**definition))
                summary["rules"] += 1

        await self._db.commit()
        logger.bind(summary=summary).info("Loyalty program initialised")
        return summary


def _pick(values: dict[str, Any], allowed: set[str]) -> dict[str, Any]:
    return {key: value for key, value in values.items() if key in allowed and value is not None}


def _validate_tier_values(values: dict[str, Any]) -> None:
    if "point_threshold" in values and int(values["point_threshold"]) < 0:
        raise BadRequestError("Tier point threshold cannot be negative")
    if "points_multiplier" in values and Decimal(str(values["points_multiplier"])) < 1:
        raise BadRequestError("Tier points multiplier must be at least 1")


def _validate_rule_values(values: dict[str, Any]) -> None:
    if "value" in values and Decimal(str(values["value"])) < 0:
        raise BadRequestError("Rule value cannot be negative")
    if "minimum_amount" in values and Decimal(str(values["minimum_amount"])) < 0:
        raise BadRequestError("Rule minimum amount cannot be negative")
    if values.get("max_points_per_transaction") is not None and int(values["max_points_per_transaction"]) < 1:
        raise BadRequestError("Rule cap must be at least 1 point")
    start, end = values.get("start_date"), values.get("end_date")
    if start and end and end < start:
        raise BadRequestError("Rule end date must not precede its start date")


def _validate_settings(program: LoyaltyProgramSettings) -> None:
    if program.points_per_currency_unit < 0 or program.point_value < 0:
        raise BadRequestError("Point rates cannot be negative")
    if program.minimum_redemption < 1:
        raise BadRequestError("Minimum redemption must be at least 1 point")
    if program.points_expiry_days < 0:
        raise BadRequestError("Points expiry days cannot be negative")
    if program.referrer_points < 0 or program.referred_points < 0:
        raise BadRequestError("Referral points cannot be negative")


__all__ = ["DEFAULT_RULES", "DEFAULT_TIERS", "LoyaltyProgramAdmin"]
