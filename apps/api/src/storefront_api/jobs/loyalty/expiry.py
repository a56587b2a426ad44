"""Job that sweeps loyalty points past their expiry date."""

# meta: job: loyalty-points-expiry

from __future__ import annotations

from typing import Any, Dict

from loguru import logger

from storefront_api.db.session import SessionFactory, open_session
from storefront_api.services.loyalty import LoyaltyService


async def run_points_expiry(*, session_factory: SessionFactory) -> Dict[str, Any]:
    """Expire outstanding points whose expiry date has passed."""

    session = await open_session(session_factory)
    async with session as managed_session:
        service = LoyaltyService(managed_session)
        result = await service.clear_expired_points()

    summary = result.as_dict()
    logger.bind(summary=summary).info("Loyalty points expiry sweep completed")
    return summary


__all__ = ["run_points_expiry"]
