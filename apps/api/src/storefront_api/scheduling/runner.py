"""APScheduler runtime for the recurring maintenance jobs."""

from __future__ import annotations

import asyncio
import inspect
import random
import time
from importlib import import_module
from pathlib import Path
from typing import Any, Awaitable, Callable

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from loguru import logger
from zoneinfo import ZoneInfo

from storefront_api.db.session import SessionFactory
from storefront_api.observability.scheduler import get_scheduler_store

from .config import JobDefinition, ScheduleConfig, load_job_definitions

JobCallable = Callable[..., Awaitable[Any]]


def resolve_task(task: str) -> JobCallable:
    """Import ``package.module.function`` and check it is a coroutine function."""

    module_name, _, attr = task.rpartition(".")
    if not module_name:
        raise ValueError(f"Invalid task path: {task}")
    func = getattr(import_module(module_name), attr, None)
    if func is None:
        raise AttributeError(f"Task {task} not found")
    if not inspect.iscoroutinefunction(func):
        raise TypeError(f"Task {task} must be an async function")
    return func


def backoff_delay(job: JobDefinition, failed_attempt: int) -> float:
    """Exponential delay before the next attempt, capped and jittered per job."""

    delay = job.base_backoff_seconds * (job.backoff_multiplier ** (failed_attempt - 1))
    if job.max_backoff_seconds:
        delay = min(delay, job.max_backoff_seconds)
    if job.jitter_seconds:
        delay += random.uniform(0, job.jitter_seconds)
    return max(delay, 0.0)


class JobScheduler:
    """Owns the AsyncIOScheduler built from ``schedules.toml``."""

    def __init__(self, *, session_factory: SessionFactory, config_path: Path) -> None:
        self._session_factory = session_factory
        self._config_path = config_path
        self._config: ScheduleConfig | None = None
        self._scheduler: AsyncIOScheduler | None = None
        self._is_running = False
        self._observability = get_scheduler_store()

    @property
    def is_running(self) -> bool:
        return self._is_running

    def start(self) -> None:
        config = load_job_definitions(self._config_path)
        tz = ZoneInfo(config.timezone)
        scheduler = AsyncIOScheduler(timezone=tz)

        for job in config.jobs:
            scheduler.add_job(
                self._wrap_callable(self._resolve_callable(job), job),
                trigger=CronTrigger.from_crontab(job.cron, timezone=tz),
                id=job.id,
                replace_existing=True,
                # One run at a time; a slow renewal batch must not overlap the next tick.
                max_instances=1,
                coalesce=True,
            )
            logger.info("Registered scheduled job", job_id=job.id, task=job.task, cron=job.cron)

        scheduler.start()
        self._config, self._scheduler, self._is_running = config, scheduler, True
        logger.info("Job scheduler started", jobs=len(config.jobs), timezone=config.timezone)

    async def stop(self) -> None:
        if self._scheduler is None:
            return
        outcome = self._scheduler.shutdown(wait=False)
        if inspect.isawaitable(outcome):
            await outcome
        self._scheduler = None
        self._is_running = False
        logger.info("Job scheduler stopped")

    def _resolve_callable(self, job: JobDefinition) -> JobCallable:
        return resolve_task(job.task)

    def _wrap_callable(self, func: JobCallable, job: JobDefinition) -> Callable[[], Awaitable[Any]]:
        async def _scheduled_run() -> Any:
            return await self._run_with_retries(func, job)

        return _scheduled_run

    async def _run_with_retries(self, func: JobCallable, job: JobDefinition) -> Any:
        store = self._observability
        store.record_dispatch(job.id, job.task)
        started_at = time.perf_counter()

        attempt = 0
        while True:
            attempt += 1
            try:
                summary = await func(session_factory=self._session_factory, **job.kwargs)
                break
            except Exception as exc:  # noqa: BLE001
                store.record_attempt_failure(job.id, job.task, error=str(exc))
                if attempt >= job.max_attempts:
                    store.record_run_failure(job.id, job.task, runtime_seconds=time.perf_counter() - started_at)
                    logger.exception("Scheduled job gave up", job_id=job.id, attempts=attempt)
                    return None
                delay = backoff_delay(job, attempt)
                store.record_retry(job.id, job.task)
                logger.warning("Retrying scheduled job", job_id=job.id, next_attempt=attempt + 1, delay_seconds=delay)
                if delay:
                    await asyncio.sleep(delay)

        elapsed = time.perf_counter() - started_at
        store.record_success(
            job.id,
            job.task,
            runtime_seconds=elapsed,
            summary=summary if isinstance(summary, dict) else None,
        )
        logger.info("Scheduled job finished", job_id=job.id, attempts=attempt, runtime_seconds=round(elapsed, 3))
        return summary

    def _next_run_at(self, job_id: str) -> str | None:
        if self._scheduler is None:
            return None
        scheduled = self._scheduler.get_job(job_id)
        if scheduled is None or scheduled.next_run_time is None:
            return None
        return scheduled.next_run_time.isoformat()

    def health(self) -> dict[str, object]:
        snapshot = self._observability.snapshot()
        configured = self._config.jobs if self._config else []
        jobs = []
        for job in configured:
            metrics = snapshot.jobs.get(job.id)
            jobs.append(
                {
                    "id": job.id,
                    "task": job.task,
                    "cron": job.cron,
                    "max_attempts": job.max_attempts,
                    "next_run_at": self._next_run_at(job.id),
                    "metrics": metrics.as_dict() if metrics else None,
                }
            )
        return {
            "running": self._is_running,
            "configured_jobs": len(configured),
            "totals": snapshot.totals,
            "jobs": jobs,
        }


__all__ = ["JobScheduler", "backoff_delay", "resolve_task"]
