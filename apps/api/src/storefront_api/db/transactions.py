"""Transaction helpers enforcing single-writer semantics per aggregate."""

from __future__ import annotations

from typing import Awaitable, Callable, TypeVar

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

T = TypeVar("T")


async def run_serialized(
    session: AsyncSession,
    operation: Callable[[], Awaitable[T]],
    *,
    attempts: int = 3,
    label: str = "operation",
) -> T:
    """Run ``operation`` and commit, retrying on optimistic-lock conflicts.

    ``operation`` must reload whatever rows it mutates on every call: a
    retry starts from a rolled-back session, so objects loaded by a previous
    attempt are expired.
    """

    attempts = max(attempts, 1)
    for attempt in range(1, attempts + 1):
        try:
            result = await operation()
            await session.commit()
            return result
        except StaleDataError:
            await session.rollback()
            if attempt >= attempts:
                logger.error("Concurrent update retries exhausted", operation=label, attempts=attempt)
                raise
            logger.warning("Concurrent update detected, retrying", operation=label, attempt=attempt + 1)
        except BaseException:
            await session.rollback()
            raise
    raise RuntimeError("unreachable")  # pragma: no cover


__all__ = ["run_serialized"]
