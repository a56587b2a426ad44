"""Observability snapshots for loyalty, subscriptions, and scheduled jobs."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from storefront_api.api.dependencies.security import require_admin_api_key
from storefront_api.observability.loyalty import get_loyalty_store
from storefront_api.observability.scheduler import get_scheduler_store
from storefront_api.observability.subscriptions import get_subscription_store


router = APIRouter(
    prefix="/observability",
    tags=["Observability"],
    dependencies=[Depends(require_admin_api_key)],
)


@router.get("/loyalty", summary="Loyalty ledger counters")
async def get_loyalty_snapshot() -> dict[str, object]:
    return get_loyalty_store().snapshot().as_dict()


@router.get("/subscriptions", summary="Subscription lifecycle and renewal counters")
async def get_subscription_snapshot() -> dict[str, object]:
    return get_subscription_store().snapshot().as_dict()


@router.get("/scheduler", summary="Scheduled job metrics")
async def get_scheduler_snapshot() -> dict[str, object]:
    return get_scheduler_store().snapshot().as_dict()
