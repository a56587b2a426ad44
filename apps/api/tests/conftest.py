import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

import storefront_api.models  # noqa: F401
from storefront_api.api.dependencies.services import (
    get_notification_service,
    get_order_directory,
    get_payment_gateway,
)
from storefront_api.api.v1.endpoints.subscriptions import get_renewal_session_factory
from storefront_api.app import create_app
from storefront_api.db.base import Base
from storefront_api.db.session import build_engine, get_session
from storefront_api.observability.loyalty import get_loyalty_store
from storefront_api.observability.scheduler import get_scheduler_store
from storefront_api.observability.subscriptions import get_subscription_store
from storefront_api.services.notifications import InMemoryEventBackend, NotificationService
from storefront_api.services.orders import StaticOrderDirectory
from storefront_api.services.payments import StubPaymentGateway


@pytest.fixture(autouse=True)
def reset_observability_stores():
    get_loyalty_store().reset()
    get_subscription_store().reset()
    get_scheduler_store().reset()
    yield


@pytest_asyncio.fixture
async def session_factory():
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", future=True)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

    try:
        yield factory
    finally:
        await engine.dispose()


@pytest_asyncio.fixture
async def file_session_factory(tmp_path):
    """Sessions on a SQLite file, so concurrent sessions hold separate connections."""

    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'storefront.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    try:
        yield async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)
    finally:
        await engine.dispose()


@pytest.fixture
def event_backend() -> InMemoryEventBackend:
    return InMemoryEventBackend()


@pytest.fixture
def notifications(event_backend: InMemoryEventBackend) -> NotificationService:
    return NotificationService(backend=event_backend)


@pytest.fixture
def payment_gateway() -> StubPaymentGateway:
    return StubPaymentGateway()


@pytest.fixture
def order_directory() -> StaticOrderDirectory:
    return StaticOrderDirectory({"order-120": "120.00", "order-45": "45.50"})


@pytest_asyncio.fixture
async def app_with_db(session_factory, notifications, payment_gateway, order_directory):
    app = create_app()

    async def override_get_session():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_session] = override_get_session
    app.dependency_overrides[get_renewal_session_factory] = lambda: session_factory
    app.dependency_overrides[get_notification_service] = lambda: notifications
    app.dependency_overrides[get_payment_gateway] = lambda: payment_gateway
    app.dependency_overrides[get_order_directory] = lambda: order_directory

    try:
        yield app, session_factory
    finally:
        app.dependency_overrides.clear()
