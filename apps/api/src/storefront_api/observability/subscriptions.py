"""Counters for subscription lifecycle and renewal outcomes."""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from threading import Lock
from typing import Dict

from storefront_api.core.clock import utcnow


@dataclass
class SubscriptionSnapshot:
    renewals: Dict[str, int]
    lifecycle: Dict[str, int]
    batches: Dict[str, int]
    last_batch_at: datetime | None

    def as_dict(self) -> Dict[str, object]:
        return {
            "renewals": dict(self.renewals),
            "lifecycle": dict(self.lifecycle),
            "batches": dict(self.batches),
            "last_batch_at": self.last_batch_at.isoformat() if self.last_batch_at else None,
        }


class SubscriptionObservabilityStore:
    def __init__(self) -> None:
        self._lock = Lock()
        self._renewals: Dict[str, int] = defaultdict(int)
        self._lifecycle: Dict[str, int] = defaultdict(int)
        self._batches: Dict[str, int] = defaultdict(int)
        self._last_batch_at: datetime | None = None

    def record_renewal(self, outcome: str) -> None:
        with self._lock:
            self._renewals[outcome] += 1

    def record_lifecycle(self, event: str) -> None:
        with self._lock:
            self._lifecycle[event] += 1

    def record_batch(self, *, total: int, successful: int, failed: int) -> None:
        with self._lock:
            self._batches["runs"] += 1
            self._batches["processed"] += total
            self._batches["successful"] += successful
            self._batches["failed"] += failed
            self._last_batch_at = utcnow()

    def snapshot(self) -> SubscriptionSnapshot:
        with self._lock:
            return SubscriptionSnapshot(
                renewals=dict(self._renewals),
                lifecycle=dict(self._lifecycle),
                batches=dict(self._batches),
                last_batch_at=self._last_batch_at,
            )

    def reset(self) -> None:
        with self._lock:
            self._renewals.clear()
            self._lifecycle.clear()
            self._batches.clear()
            self._last_batch_at = None


_STORE = SubscriptionObservabilityStore()


def get_subscription_store() -> SubscriptionObservabilityStore:
    return _STORE


__all__ = ["SubscriptionObservabilityStore", "SubscriptionSnapshot", "get_subscription_store"]
