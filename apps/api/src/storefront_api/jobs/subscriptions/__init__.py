"""Subscription job exports."""

from .renewals import run_subscription_expiry, run_subscription_renewals  # noqa: F401

__all__ = ["run_subscription_expiry", "run_subscription_renewals"]
