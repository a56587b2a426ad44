from pathlib import Path

import pytest

from storefront_api.observability.scheduler import get_scheduler_store
from storefront_api.scheduling.config import JobDefinition, ScheduleConfig, load_job_definitions
from storefront_api.scheduling.runner import JobScheduler, backoff_delay

SCHEDULE_PATH = Path(__file__).resolve().parents[1] / "config" / "schedules.toml"


def _job(job_id: str, *, max_attempts: int = 1) -> JobDefinition:
    return JobDefinition(
        id=job_id,
        task=f"tests.{job_id}",
        cron="* * * * *",
        kwargs={},
        max_attempts=max_attempts,
        base_backoff_seconds=0.0,
        backoff_multiplier=1.0,
        max_backoff_seconds=0.0,
        jitter_seconds=0.0,
    )


@pytest.mark.asyncio
async def test_scheduler_retries_and_records_metrics(tmp_path: Path) -> None:
    store = get_scheduler_store()
    scheduler = JobScheduler(session_factory=lambda: None, config_path=tmp_path / "noop.toml")

    attempts = 0

    async def flaky_job(*, session_factory) -> dict[str, int]:
        nonlocal attempts
        attempts += 1
        if attempts < 2:
            raise RuntimeError("boom")
        return {"expired_points": 40}

    job = _job("job-alpha", max_attempts=3)
    summary = await scheduler._wrap_callable(flaky_job, job)()

    assert summary == {"expired_points": 40}
    snapshot = store.snapshot()
    assert snapshot.totals["runs"] == 1
    assert snapshot.totals["success"] == 1
    assert snapshot.totals["attempt_failures"] == 1
    assert snapshot.totals["retries"] == 1
    job_snapshot = snapshot.jobs[job.id]
    assert job_snapshot.last_success_at is not None
    assert job_snapshot.last_error is None
    assert job_snapshot.last_summary == {"expired_points": 40}
    assert attempts == 2


@pytest.mark.asyncio
async def test_scheduler_records_final_failure(tmp_path: Path) -> None:
    store = get_scheduler_store()
    scheduler = JobScheduler(session_factory=lambda: None, config_path=tmp_path / "noop.toml")

    async def failing_job(*, session_factory) -> None:
        raise RuntimeError("boom")

    job = _job("job-failure", max_attempts=2)
    assert await scheduler._wrap_callable(failing_job, job)() is None

    snapshot = store.snapshot()
    assert snapshot.totals["run_failures"] == 1
    job_snapshot = snapshot.jobs[job.id]
    assert job_snapshot.consecutive_failures == 2
    assert job_snapshot.last_error == "boom"
    assert job_snapshot.last_error_at is not None


@pytest.mark.asyncio
async def test_scheduler_passes_session_factory_and_kwargs(tmp_path: Path) -> None:
    sentinel = object()
    scheduler = JobScheduler(session_factory=lambda: sentinel, config_path=tmp_path / "noop.toml")
    received = {}

    async def job_func(*, session_factory, concurrency: int) -> None:
        received["session"] = session_factory()
        received["concurrency"] = concurrency

    job = _job("job-kwargs")
    job.kwargs = {"concurrency": 4}
    await scheduler._wrap_callable(job_func, job)()

    assert received == {"session": sentinel, "concurrency": 4}


@pytest.mark.asyncio
async def test_scheduler_health_snapshot(tmp_path: Path) -> None:
    scheduler = JobScheduler(session_factory=lambda: None, config_path=tmp_path / "noop.toml")

    async def successful_job(*, session_factory) -> None:
        return None

    job = _job("job-health")
    await scheduler._wrap_callable(successful_job, job)()

    scheduler._config = ScheduleConfig(timezone="UTC", jobs=[job])
    scheduler._is_running = True

    health = scheduler.health()
    assert health["running"] is True
    assert health["configured_jobs"] == 1
    assert health["totals"]["runs"] == 1
    assert health["jobs"][0]["metrics"]["runs"] == 1
    assert health["jobs"][0]["metrics"]["last_success_at"] is not None


@pytest.mark.asyncio
async def test_scheduler_tracks_consecutive_failures_and_resets(tmp_path: Path) -> None:
    store = get_scheduler_store()
    scheduler = JobScheduler(session_factory=lambda: None, config_path=tmp_path / "noop.toml")

    run_count = 0

    async def sometimes_failing_job(*, session_factory) -> None:
        nonlocal run_count
        run_count += 1
        if run_count < 3:
            raise RuntimeError("boom")

    job = _job("job-consecutive")
    runner = scheduler._wrap_callable(sometimes_failing_job, job)

    await runner()
    await runner()

    snapshot = store.snapshot()
    job_snapshot = snapshot.jobs[job.id]
    assert snapshot.totals["runs"] == 2
    assert snapshot.totals["run_failures"] == 2
    assert job_snapshot.consecutive_failures == 2
    assert job_snapshot.last_error == "boom"
    assert job_snapshot.last_success_at is None

    await runner()

    snapshot = store.snapshot()
    job_snapshot = snapshot.jobs[job.id]
    assert snapshot.totals["runs"] == 3
    assert snapshot.totals["run_failures"] == 2
    assert snapshot.totals["success"] == 1
    assert job_snapshot.consecutive_failures == 0
    assert job_snapshot.last_error is None
    assert job_snapshot.last_success_at is not None


def test_load_job_definitions_parses_retry_fields(tmp_path: Path) -> None:
    config_path = tmp_path / "schedules.toml"
    config_path.write_text(
        """
        timezone = "Asia/Kolkata"

        [jobs.sample]
        task = "module.task"
        cron = "*/5 * * * *"
        max_attempts = 5
        base_backoff_seconds = 2
        backoff_multiplier = 3
        max_backoff_seconds = 30
        jitter_seconds = 1.5
        kwargs = { concurrency = 2 }

        [jobs.paused]
        task = "module.other"
        cron = "0 * * * *"
        enabled = false
        """
    )

    config = load_job_definitions(config_path)
    assert config.timezone == "Asia/Kolkata"
    assert [job.id for job in config.jobs] == ["sample"]
    job = config.jobs[0]
    assert job.max_attempts == 5
    assert job.base_backoff_seconds == 2.0
    assert job.backoff_multiplier == 3.0
    assert job.max_backoff_seconds == 30.0
    assert job.jitter_seconds == 1.5
    assert job.kwargs == {"concurrency": 2}


def test_load_job_definitions_rejects_incomplete_jobs(tmp_path: Path) -> None:
    config_path = tmp_path / "schedules.toml"
    config_path.write_text(
        """
        [jobs.broken]
        cron = "0 * * * *"
        """
    )

    with pytest.raises(ValueError):
        load_job_definitions(config_path)

    with pytest.raises(FileNotFoundError):
        load_job_definitions(tmp_path / "missing.toml")


def test_bundled_schedule_resolves_to_async_jobs() -> None:
    config = load_job_definitions(SCHEDULE_PATH)
    scheduler = JobScheduler(session_factory=lambda: None, config_path=SCHEDULE_PATH)

    assert {job.id for job in config.jobs} == {
        "loyalty_points_expiry",
        "subscription_renewals",
        "subscription_expiry",
    }
    for job in config.jobs:
        assert callable(scheduler._resolve_callable(job))


def test_resolve_callable_rejects_sync_tasks(tmp_path: Path) -> None:
    scheduler = JobScheduler(session_factory=lambda: None, config_path=tmp_path / "noop.toml")

    with pytest.raises(TypeError):
        scheduler._resolve_callable(JobDefinition(id="sync", task="os.path.join", cron="* * * * *"))
    with pytest.raises(ValueError):
        scheduler._resolve_callable(JobDefinition(id="bare", task="join", cron="* * * * *"))


def test_backoff_delay_grows_and_caps() -> None:
    job = JobDefinition(
        id="backoff",
        task="tests.backoff",
        cron="* * * * *",
        base_backoff_seconds=2.0,
        backoff_multiplier=3.0,
        max_backoff_seconds=10.0,
        jitter_seconds=0.0,
    )

    assert backoff_delay(job, 1) == 2.0
    assert backoff_delay(job, 2) == 6.0
    assert backoff_delay(job, 3) == 10.0
