from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from threading import Lock
from typing import Dict


@dataclass
class LoyaltySnapshot:
    awards: Dict[str, int]
    points: Dict[str, int]
    redemptions: Dict[str, int]
    referrals: Dict[str, int]
    tiers: Dict[str, int]
    expiry: Dict[str, int]

    def as_dict(self) -> Dict[str, object]:
        return {
            "awards": dict(self.awards),
            "points": dict(self.points),
            "redemptions": dict(self.redemptions),
            "referrals": dict(self.referrals),
            "tiers": dict(self.tiers),
            "expiry": dict(self.expiry),
        }


class LoyaltyObservabilityStore:
    """Collect loyalty ledger telemetry for dashboards and alerting."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._awards: Dict[str, int] = defaultdict(int)
        self._points: Dict[str, int] = defaultdict(int)
        self._redemptions: Dict[str, int] = defaultdict(int)
        self._referrals: Dict[str, int] = defaultdict(int)
        self._tiers: Dict[str, int] = defaultdict(int)
        self._expiry: Dict[str, int] = defaultdict(int)

    def record_award(self, source: str, points: int, *, duplicate: bool = False) -> None:
        with self._lock:
            if duplicate:
                self._awards["duplicates"] += 1
                return
            self._awards[source] += 1
            self._points["awarded"] += points

    def record_redemption(self, points: int) -> None:
        with self._lock:
            self._redemptions["total"] += 1
            self._points["redeemed"] += points

    def record_referral_event(self, event: str) -> None:
        with self._lock:
            self._referrals[event] += 1

    def record_tier_change(self, tier_code: str) -> None:
        with self._lock:
            self._tiers[tier_code] += 1

    def record_expiry_sweep(self, *, accounts: int, points: int, failures: int) -> None:
        with self._lock:
            self._expiry["runs"] += 1
            self._expiry["accounts"] += accounts
            self._expiry["failures"] += failures
            self._points["expired"] += points

    def snapshot(self) -> LoyaltySnapshot:
        with self._lock:
            return LoyaltySnapshot(
                awards=dict(self._awards),
                points=dict(self._points),
                redemptions=dict(self._redemptions),
                referrals=dict(self._referrals),
                tiers=dict(self._tiers),
                expiry=dict(self._expiry),
            )

    def reset(self) -> None:
        with self._lock:
            self._awards.clear()
            self._points.clear()
            self._redemptions.clear()
            self._referrals.clear()
            self._tiers.clear()
            self._expiry.clear()


_STORE = LoyaltyObservabilityStore()


def get_loyalty_store() -> LoyaltyObservabilityStore:
    return _STORE


__all__ = ["get_loyalty_store", "LoyaltyObservabilityStore", "LoyaltySnapshot"]
