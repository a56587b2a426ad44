"""Tier resolution for loyalty accounts."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol, Sequence, TypeVar

from storefront_api.core.errors import TierConfigurationError


class TierLike(Protocol):
    point_threshold: int
    is_active: bool


TierT = TypeVar("TierT", bound=TierLike)


@dataclass(slots=True)
class TierProgress:
    """Where an account sits between its tier and the next one."""

    next_tier: object | None
    points_to_next_tier: int
    progress_percent: float


def _active_sorted(tiers: Sequence[TierT]) -> list[TierT]:
    return sorted((tier for tier in tiers if tier.is_active), key=lambda tier: int(tier.point_threshold))


def validate_tiers(tiers: Sequence[TierT]) -> list[TierT]:
    """Return active tiers ascending by threshold, or raise if the set is unusable."""

    ordered = _active_sorted(tiers)
    if not ordered or int(ordered[0].point_threshold) != 0:
        raise TierConfigurationError("An active tier with a point threshold of 0 is required")
    thresholds = [int(tier.point_threshold) for tier in ordered]
    if len(set(thresholds)) != len(thresholds):
        raise TierConfigurationError("Active tier thresholds must be unique")
    return ordered


def resolve_tier(lifetime_points: int, tiers: Sequence[TierT]) -> TierT:
    """Highest active tier whose threshold is covered by ``lifetime_points``."""

    ordered = validate_tiers(tiers)
    resolved = ordered[0]
    for tier in ordered:
        if int(tier.point_threshold) <= lifetime_points:
            resolved = tier
        else:
            break
    return resolved


def next_tier(lifetime_points: int, tiers: Sequence[TierT]) -> TierT | None:
    for tier in _active_sorted(tiers):
        if int(tier.point_threshold) > lifetime_points:
            return tier
    return None


def tier_progress(lifetime_points: int, tiers: Sequence[TierT]) -> TierProgress:
    current = resolve_tier(lifetime_points, tiers)
    upcoming = next_tier(lifetime_points, tiers)
    if upcoming is None:
        return TierProgress(next_tier=None, points_to_next_tier=0, progress_percent=100.0)

    floor = int(current.point_threshold)
    span = int(upcoming.point_threshold) - floor
    earned = lifetime_points - floor
    percent = round(min(max(earned / span, 0.0), 1.0) * 100, 2) if span > 0 else 100.0
    return TierProgress(
        next_tier=upcoming,
        points_to_next_tier=int(upcoming.point_threshold) - lifetime_points,
        progress_percent=percent,
    )


def is_promotion(current: TierLike | None, resolved: TierLike) -> bool:
    """Tiers only move upward automatically."""

    if current is None:
        return True
    return int(resolved.point_threshold) > int(current.point_threshold)


__all__ = [
    "TierProgress",
    "is_promotion",
    "next_tier",
    "resolve_tier",
    "tier_progress",
    "validate_tiers",
]
