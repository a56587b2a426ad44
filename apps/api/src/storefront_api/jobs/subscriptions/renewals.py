"""Jobs that renew due subscriptions and close out lapsed ones."""

# meta: job: subscription-renewals

from __future__ import annotations

from typing import Any, Dict

from loguru import logger

from storefront_api.db.session import SessionFactory, open_session
from storefront_api.services.subscriptions import SubscriptionService, process_all_due_renewals


async def run_subscription_renewals(
    *,
    session_factory: SessionFactory,
    concurrency: int | None = None,
) -> Dict[str, Any]:
    """Renew every subscription whose period ends today."""

    result = await process_all_due_renewals(session_factory, concurrency=concurrency)
    summary = {"total": result.total, "successful": result.successful, "failed": result.failed}
    logger.bind(summary=summary).info("Subscription renewal job completed")
    return summary


async def run_subscription_expiry(*, session_factory: SessionFactory) -> Dict[str, Any]:
    """Mark cancelled subscriptions past their end date as expired."""

    session = await open_session(session_factory)
    async with session as managed_session:
        expired = await SubscriptionService(managed_session).expire_lapsed_subscriptions()

    summary = {"expired": expired}
    logger.bind(summary=summary).info("Subscription expiry job completed")
    return summary


__all__ = ["run_subscription_expiry", "run_subscription_renewals"]
