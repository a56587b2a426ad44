"""Load recurring job definitions from the TOML schedule."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import tomllib


@dataclass(slots=True)
class JobDefinition:
    id: str
    task: str
    cron: str
    kwargs: dict[str, Any] = field(default_factory=dict)
    max_attempts: int = 1
    base_backoff_seconds: float = 5.0
    backoff_multiplier: float = 2.0
    max_backoff_seconds: float = 60.0
    jitter_seconds: float = 1.0
    enabled: bool = True


@dataclass(slots=True)
class ScheduleConfig:
    timezone: str
    jobs: list[JobDefinition]


def _parse_job(key: str, payload: dict[str, Any]) -> JobDefinition:
    task = payload.get("task")
    cron = payload.get("cron")
    if not isinstance(task, str) or not task.strip():
        raise ValueError(f"Job {key} is missing a task path")
    if not isinstance(cron, str) or not cron.strip():
        raise ValueError(f"Job {key} is missing a cron expression")

    kwargs = payload.get("kwargs", {})
    if not isinstance(kwargs, dict):
        raise ValueError(f"Job {key} kwargs must be a table")

    return JobDefinition(
        id=str(payload.get("id") or key),
        task=task.strip(),
        cron=cron.strip(),
        kwargs=kwargs,
        max_attempts=max(int(payload.get("max_attempts", 1) or 1), 1),
        base_backoff_seconds=max(float(payload.get("base_backoff_seconds", 5.0) or 0), 0.0),
        backoff_multiplier=max(float(payload.get("backoff_multiplier", 2.0) or 1), 1.0),
        max_backoff_seconds=max(float(payload.get("max_backoff_seconds", 60.0) or 0), 0.0),
        jitter_seconds=max(float(payload.get("jitter_seconds", 1.0) or 0), 0.0),
        enabled=bool(payload.get("enabled", True)),
    )


def load_job_definitions(config_path: Path) -> ScheduleConfig:
    """Parse ``config_path``; disabled jobs are dropped, malformed ones rejected."""

    if not config_path.exists():
        raise FileNotFoundError(f"Schedule config not found: {config_path}")

    data = tomllib.loads(config_path.read_text())
    entries = data.get("jobs", {})
    if not isinstance(entries, dict):
        raise ValueError("Schedule [jobs] must be a table of job tables")

    jobs = [
        job
        for job in (_parse_job(key, payload) for key, payload in entries.items() if isinstance(payload, dict))
        if job.enabled
    ]
    return ScheduleConfig(timezone=str(data.get("timezone", "UTC")), jobs=jobs)


__all__ = ["JobDefinition", "ScheduleConfig", "load_job_definitions"]
