from fastapi import APIRouter

from .endpoints import (
    health,
    loyalty,
    observability,
    subscriptions,
)

router = APIRouter()
router.include_router(health.router, tags=["Health"])
router.include_router(loyalty.router)
router.include_router(loyalty.admin_router)
router.include_router(subscriptions.router)
router.include_router(subscriptions.admin_router)
router.include_router(observability.router)
