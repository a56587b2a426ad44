"""Per-job metrics for the recurring job scheduler."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from threading import Lock
from typing import Dict

from storefront_api.core.clock import utcnow


@dataclass
class JobRunState:
    job_id: str
    task: str
    runs: int = 0
    success: int = 0
    run_failures: int = 0
    attempt_failures: int = 0
    retries: int = 0
    consecutive_failures: int = 0
    total_runtime_seconds: float = 0.0
    last_started_at: datetime | None = None
    last_success_at: datetime | None = None
    last_error_at: datetime | None = None
    last_error: str | None = None
    last_summary: Dict[str, object] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, object]:
        payload = asdict(self)
        for key in ("last_started_at", "last_success_at", "last_error_at"):
            value = payload[key]
            payload[key] = value.isoformat() if value else None
        return payload


@dataclass
class SchedulerSnapshot:
    totals: Dict[str, int]
    jobs: Dict[str, JobRunState]

    def as_dict(self) -> Dict[str, object]:
        return {
            "totals": self.totals,
            "jobs": {job_id: state.as_dict() for job_id, state in self.jobs.items()},
        }


class SchedulerObservabilityStore:
    """Tracks dispatches, retries, and outcomes of scheduled jobs."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._jobs: Dict[str, JobRunState] = {}

    def reset(self) -> None:
        with self._lock:
            self._jobs.clear()

    def _state(self, job_id: str, task: str) -> JobRunState:
        state = self._jobs.get(job_id)
        if state is None:
            state = self._jobs[job_id] = JobRunState(job_id=job_id, task=task)
        return state

    def record_dispatch(self, job_id: str, task: str) -> None:
        with self._lock:
            state = self._state(job_id, task)
            state.runs += 1
            state.last_started_at = utcnow()

    def record_attempt_failure(self, job_id: str, task: str, *, error: str) -> None:
        with self._lock:
            state = self._state(job_id, task)
            state.attempt_failures += 1
            state.consecutive_failures += 1
            state.last_error = error
            state.last_error_at = utcnow()

    def record_retry(self, job_id: str, task: str) -> None:
        with self._lock:
            self._state(job_id, task).retries += 1

    def record_success(
        self,
        job_id: str,
        task: str,
        *,
        runtime_seconds: float,
        summary: Dict[str, object] | None = None,
    ) -> None:
        with self._lock:
            state = self._state(job_id, task)
            state.success += 1
            state.total_runtime_seconds += runtime_seconds
            state.consecutive_failures = 0
            state.last_success_at = utcnow()
            state.last_error = None
            state.last_summary = dict(summary or {})

    def record_run_failure(self, job_id: str, task: str, *, runtime_seconds: float) -> None:
        with self._lock:
            state = self._state(job_id, task)
            state.run_failures += 1
            state.total_runtime_seconds += runtime_seconds

    def snapshot(self) -> SchedulerSnapshot:
        with self._lock:
            jobs = {job_id: JobRunState(**asdict(state)) for job_id, state in self._jobs.items()}
        totals = {
            "runs": sum(state.runs for state in jobs.values()),
            "success": sum(state.success for state in jobs.values()),
            "run_failures": sum(state.run_failures for state in jobs.values()),
            "attempt_failures": sum(state.attempt_failures for state in jobs.values()),
            "retries": sum(state.retries for state in jobs.values()),
        }
        return SchedulerSnapshot(totals=totals, jobs=jobs)


_SCHEDULER_STORE = SchedulerObservabilityStore()


def get_scheduler_store() -> SchedulerObservabilityStore:
    return _SCHEDULER_STORE


__all__ = ["JobRunState", "SchedulerObservabilityStore", "SchedulerSnapshot", "get_scheduler_store"]
