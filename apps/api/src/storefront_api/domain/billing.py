"""Billing cycle arithmetic for subscriptions."""

from __future__ import annotations

from datetime import datetime, time, timedelta
from decimal import ROUND_HALF_UP, Decimal
from zoneinfo import ZoneInfo

from dateutil.relativedelta import relativedelta

from storefront_api.core.errors import ValidationError
from storefront_api.models.subscription import BillingInterval

_CENT = Decimal("0.01")


def quantize_money(amount: Decimal | int | float | str) -> Decimal:
    return Decimal(str(amount)).quantize(_CENT, rounding=ROUND_HALF_UP)


def advance_period(start: datetime, interval: BillingInterval | str, frequency: int) -> datetime:
    """Move ``start`` forward by ``frequency`` billing units.

    Month and year steps clamp to the last day of shorter months
    (Jan 31 + 1 month is Feb 28/29) rather than rolling into the next month.
    """

    if frequency < 1:
        raise ValidationError("Billing frequency must be at least 1")

    unit = BillingInterval(interval)
    if unit == BillingInterval.DAY:
        return start + timedelta(days=frequency)
    if unit == BillingInterval.WEEK:
        return start + timedelta(days=7 * frequency)
    if unit == BillingInterval.MONTH:
        return start + relativedelta(months=frequency)
    return start + relativedelta(years=frequency)


def trial_end(start: datetime, trial_days: int) -> datetime:
    return start + timedelta(days=trial_days)


def compute_proration(
    *,
    old_price: Decimal,
    new_price: Decimal,
    period_start: datetime,
    period_end: datetime,
    now: datetime,
) -> Decimal:
    """Amount owed when switching plans at ``now`` and starting a fresh period.

    The customer pays the new plan's full price less a credit for the unused
    share of the old period. A negative result is a credit owed to them.
    """

    total_seconds = (period_end - period_start).total_seconds()
    if total_seconds <= 0:
        unused_fraction = Decimal("0")
    else:
        remaining = min(max((period_end - now).total_seconds(), 0.0), total_seconds)
        unused_fraction = Decimal(str(remaining)) / Decimal(str(total_seconds))

    credit = Decimal(str(old_price)) * unused_fraction
    return quantize_money(Decimal(str(new_price)) - credit)


def end_of_day(now: datetime, timezone_name: str = "UTC") -> datetime:
    """Last instant of ``now``'s calendar day in the billing timezone."""

    zone = ZoneInfo(timezone_name)
    local = now.astimezone(zone)
    next_midnight = datetime.combine(local.date() + timedelta(days=1), time.min, tzinfo=zone)
    return next_midnight - timedelta(microseconds=1)


__all__ = ["advance_period", "compute_proration", "end_of_day", "quantize_money", "trial_end"]
