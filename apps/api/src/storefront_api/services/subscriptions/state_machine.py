"""Allowed subscription status transitions."""

from __future__ import annotations

from storefront_api.core.errors import InvalidSubscriptionTransitionError
from storefront_api.models.subscription import Subscription, SubscriptionStatus

TERMINAL_STATES = frozenset({SubscriptionStatus.EXPIRED})
RENEWABLE_STATES = frozenset({SubscriptionStatus.TRIAL, SubscriptionStatus.ACTIVE, SubscriptionStatus.PAST_DUE})
LIVE_STATES = frozenset({SubscriptionStatus.TRIAL, SubscriptionStatus.ACTIVE})


class SubscriptionStateMachine:
    """Guards status changes against the subscription lifecycle."""

    _ALLOWED_TRANSITIONS: dict[SubscriptionStatus, set[SubscriptionStatus]] = {
        SubscriptionStatus.TRIAL: {
            SubscriptionStatus.ACTIVE,
            SubscriptionStatus.PAST_DUE,
            SubscriptionStatus.UNPAID,
            SubscriptionStatus.PAUSED,
            SubscriptionStatus.CANCELLED,
        },
        SubscriptionStatus.ACTIVE: {
            SubscriptionStatus.PAST_DUE,
            # a decline that exhausts max_failed_payments skips past_due
            SubscriptionStatus.UNPAID,
            SubscriptionStatus.PAUSED,
            SubscriptionStatus.CANCELLED,
        },
        SubscriptionStatus.PAST_DUE: {
            SubscriptionStatus.ACTIVE,
            SubscriptionStatus.UNPAID,
            SubscriptionStatus.CANCELLED,
        },
        SubscriptionStatus.UNPAID: {
            SubscriptionStatus.ACTIVE,
            SubscriptionStatus.CANCELLED,
        },
        SubscriptionStatus.PAUSED: {
            SubscriptionStatus.ACTIVE,
            SubscriptionStatus.CANCELLED,
        },
        # cancelled subscriptions may be reactivated until their end date
        SubscriptionStatus.CANCELLED: {
            SubscriptionStatus.ACTIVE,
            SubscriptionStatus.EXPIRED,
        },
        SubscriptionStatus.EXPIRED: set(),
    }

    @classmethod
    def can_transition(cls, current: SubscriptionStatus, target: SubscriptionStatus) -> bool:
        return target in cls._ALLOWED_TRANSITIONS.get(current, set())

    @classmethod
    def transition(cls, subscription: Subscription, target: SubscriptionStatus) -> SubscriptionStatus:
        """Move ``subscription`` to ``target`` and return the previous status."""

        current = SubscriptionStatus(subscription.status)
        if not cls.can_transition(current, target):
            raise InvalidSubscriptionTransitionError(current.value, target.value)
        subscription.status = target
        return current


__all__ = ["LIVE_STATES", "RENEWABLE_STATES", "SubscriptionStateMachine", "TERMINAL_STATES"]
