from __future__ import annotations

from typing import Any, Dict, Literal

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from storefront_api.core.settings import settings
from storefront_api.db.session import get_session

router = APIRouter()

OverallStatus = Literal["ready", "degraded", "error"]


class ComponentStatus(BaseModel):
    status: Literal["ready", "starting", "disabled", "error", "degraded"]
    detail: str | None = Field(default=None, description="Why the component is not ready")
    last_error_at: str | None = Field(default=None, description="Most recent job failure, ISO 8601")
    last_success_at: str | None = Field(default=None, description="Most recent job success, ISO 8601")


class ReadinessPayload(BaseModel):
    status: OverallStatus
    components: Dict[str, ComponentStatus]


@router.get("/healthz", summary="Liveness check")
async def service_health() -> dict[str, str]:
    return {"status": "ok"}


async def _database_status(session: AsyncSession) -> ComponentStatus:
    try:
        await session.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        return ComponentStatus(status="error", detail=str(exc))
    return ComponentStatus(status="ready")


def _latest(jobs: list[dict[str, Any]], key: str) -> str | None:
    stamps = [job["metrics"][key] for job in jobs if job.get("metrics") and job["metrics"].get(key)]
    return max(stamps) if stamps else None


def _scheduler_status(scheduler: Any) -> ComponentStatus:
    if not settings.job_scheduler_enabled or scheduler is None:
        return ComponentStatus(status="disabled", detail="Job scheduler disabled via settings")

    health = scheduler.health()
    jobs = list(health.get("jobs", []))
    timestamps = {"last_error_at": _latest(jobs, "last_error_at"), "last_success_at": _latest(jobs, "last_success_at")}
    if not health.get("running"):
        return ComponentStatus(status="starting", detail="Job scheduler not running", **timestamps)

    failing = sorted(job["id"] for job in jobs if job.get("metrics") and job["metrics"].get("consecutive_failures"))
    if failing:
        return ComponentStatus(status="degraded", detail=f"Failing jobs: {', '.join(failing)}", **timestamps)
    return ComponentStatus(status="ready", **timestamps)


@router.get("/readyz", summary="Readiness check", response_model=ReadinessPayload)
async def service_readiness(
    request: Request,
    session: AsyncSession = Depends(get_session),
) -> ReadinessPayload:
    components = {
        "database": await _database_status(session),
        "job_scheduler": _scheduler_status(getattr(request.app.state, "job_scheduler", None)),
    }

    status: OverallStatus = "ready"
    if components["database"].status == "error":
        status = "error"
    elif components["job_scheduler"].status in {"starting", "degraded"}:
        status = "degraded"
    return ReadinessPayload(status=status, components=components)
