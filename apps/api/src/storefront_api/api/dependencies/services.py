"""Collaborator wiring for route handlers; tests swap these via ``dependency_overrides``."""

from __future__ import annotations

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from storefront_api.db.session import get_session
from storefront_api.services.loyalty import LoyaltyProgramAdmin, LoyaltyService
from storefront_api.services.notifications import NotificationService
from storefront_api.services.orders import OrderDirectory, build_order_directory
from storefront_api.services.payments import PaymentGateway
from storefront_api.services.subscriptions import SubscriptionService


def get_notification_service() -> NotificationService:
    return NotificationService()


def get_payment_gateway() -> PaymentGateway | None:
    """None defers building the configured gateway until the first charge."""

    return None


def get_order_directory() -> OrderDirectory:
    return build_order_directory()


def get_loyalty_service(
    db: AsyncSession = Depends(get_session),
    notifications: NotificationService = Depends(get_notification_service),
    orders: OrderDirectory = Depends(get_order_directory),
) -> LoyaltyService:
    return LoyaltyService(db, notification_service=notifications, order_directory=orders)


def get_loyalty_admin(db: AsyncSession = Depends(get_session)) -> LoyaltyProgramAdmin:
    return LoyaltyProgramAdmin(db)


def get_subscription_service(
    db: AsyncSession = Depends(get_session),
    notifications: NotificationService = Depends(get_notification_service),
    gateway: PaymentGateway | None = Depends(get_payment_gateway),
) -> SubscriptionService:
    return SubscriptionService(db, payment_gateway=gateway, notification_service=notifications)
