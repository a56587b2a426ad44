"""Renewal sweep across all subscriptions due today."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List
from uuid import UUID

from loguru import logger
from sqlalchemy import select

from storefront_api.core.clock import ensure_aware, utcnow
from storefront_api.core.settings import settings
from storefront_api.db.session import SessionFactory, open_session
from storefront_api.domain.billing import end_of_day
from storefront_api.models.subscription import Subscription
from storefront_api.observability.subscriptions import get_subscription_store
from storefront_api.services.notifications import NotificationService
from storefront_api.services.payments import PaymentGateway

from .service import SubscriptionService
from .state_machine import RENEWABLE_STATES


@dataclass
class RenewalBatchResult:
    total: int = 0
    successful: int = 0
    failed: int = 0
    details: List[Dict[str, Any]] = field(default_factory=list)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "successful": self.successful,
            "failed": self.failed,
            "details": list(self.details),
        }


async def find_due_subscription_ids(session_factory: SessionFactory, *, now: datetime) -> list[UUID]:
    """Renewable subscriptions whose period ends before the end of today."""

    cutoff = end_of_day(now, settings.billing_timezone).astimezone(timezone.utc)
    session = await open_session(session_factory)
    async with session as managed_session:
        stmt = (
            select(Subscription.id)
            .where(
                Subscription.status.in_(list(RENEWABLE_STATES)),
                Subscription.current_period_end <= cutoff,
            )
            .order_by(Subscription.current_period_end.asc())
        )
        return list((await managed_session.execute(stmt)).scalars().all())


async def process_all_due_renewals(
    session_factory: SessionFactory,
    *,
    now: datetime | None = None,
    concurrency: int | None = None,
    payment_gateway: PaymentGateway | None = None,
    notification_service: NotificationService | None = None,
) -> RenewalBatchResult:
    """Renew every due subscription, each in its own session.

    One subscription failing (declined card, gateway outage, lock conflict)
    is recorded in the result and does not stop the rest of the batch.
    """

    now = ensure_aware(now) or utcnow()
    subscription_ids = await find_due_subscription_ids(session_factory, now=now)
    semaphore = asyncio.Semaphore(concurrency or settings.subscription_renewal_concurrency)
    result = RenewalBatchResult(total=len(subscription_ids))

    async def _renew_one(subscription_id: UUID) -> Dict[str, Any]:
        async with semaphore:
            session = await open_session(session_factory)
            async with session as managed_session:
                service = SubscriptionService(
                    managed_session,
                    payment_gateway=payment_gateway,
                    notification_service=notification_service,
                )
                try:
                    outcome = await service.process_renewal(subscription_id, now=now)
                except Exception as exc:  # noqa: BLE001
                    logger.exception(
                        "Subscription renewal failed", subscription_id=str(subscription_id), error=str(exc)
                    )
                    get_subscription_store().record_renewal("error")
                    return {"subscription_id": str(subscription_id), "status": "error", "reason": str(exc)}
                return outcome.as_dict()

    details = await asyncio.gather(*(_renew_one(subscription_id) for subscription_id in subscription_ids))
    for detail in details:
        if detail["status"] in ("error", "payment_failed"):
            result.failed += 1
        else:
            result.successful += 1
        result.details.append(detail)

    get_subscription_store().record_batch(
        total=result.total,
        successful=result.successful,
        failed=result.failed,
    )
    logger.bind(summary={"total": result.total, "successful": result.successful, "failed": result.failed}).info(
        "Subscription renewal batch completed"
    )
    return result


__all__ = ["RenewalBatchResult", "find_due_subscription_ids", "process_all_due_renewals"]
