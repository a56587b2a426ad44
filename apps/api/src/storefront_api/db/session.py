"""Async engine, session factory, and helpers for job-owned sessions."""

from __future__ import annotations

from typing import AsyncIterator, Awaitable, Callable

from sqlalchemy import event
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from storefront_api.core.settings import settings

SessionFactory = Callable[[], AsyncSession] | Callable[[], Awaitable[AsyncSession]]


def build_engine(url: str, *, echo: bool = False) -> AsyncEngine:
    """Create the async engine; file-backed SQLite gets database-level write locking.

    SQLite ignores ``SELECT ... FOR UPDATE``, so each transaction opens with
    ``BEGIN IMMEDIATE`` instead: concurrent writers queue on the database lock
    rather than interleaving read-modify-write cycles on the same account.
    """

    async_engine = create_async_engine(url, echo=echo, future=True)
    parsed = make_url(url)
    if parsed.get_backend_name() == "sqlite" and parsed.database not in (None, "", ":memory:"):

        @event.listens_for(async_engine.sync_engine, "connect")
        def _disable_driver_begin(dbapi_connection, connection_record) -> None:
            dbapi_connection.isolation_level = None

        @event.listens_for(async_engine.sync_engine, "begin")
        def _begin_immediate(connection) -> None:
            connection.exec_driver_sql("BEGIN IMMEDIATE")

    return async_engine


engine = build_engine(settings.database_url, echo=settings.database_echo)

async_session = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


async def get_session() -> AsyncIterator[AsyncSession]:
    async with async_session() as session:
        yield session


async def open_session(session_factory: SessionFactory) -> AsyncSession:
    """Resolve a factory that may return a session or an awaitable of one."""

    maybe_session = session_factory()
    if isinstance(maybe_session, AsyncSession):
        return maybe_session
    return await maybe_session


__all__ = ["SessionFactory", "async_session", "build_engine", "engine", "get_session", "open_session"]
