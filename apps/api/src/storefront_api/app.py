from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from loguru import logger

from storefront_api.core.errors import StorefrontError
from storefront_api.core.settings import settings
from storefront_api.db.session import async_session
from .api.routes import api_router
from .core.logging import configure_logging
from .scheduling import JobScheduler


APP_VERSION = "0.1.0"


def _session_factory():
    return async_session()


@asynccontextmanager
async def lifespan(app: FastAPI):
    schedule_path = Path(settings.job_schedule_path)
    if not schedule_path.is_absolute():
        schedule_path = Path(__file__).resolve().parent.parent.parent / schedule_path
    job_scheduler = JobScheduler(
        session_factory=_session_factory,
        config_path=schedule_path,
    )
    app.state.job_scheduler = job_scheduler

    scheduler_enabled = settings.job_scheduler_enabled
    if scheduler_enabled:
        job_scheduler.start()
        logger.info("Job scheduler enabled", config_path=str(schedule_path))
    else:
        logger.info(
            "Job scheduler disabled",
            reason="job_scheduler_enabled is false",
        )

    try:
        yield
    finally:
        if scheduler_enabled and job_scheduler.is_running:
            await job_scheduler.stop()


async def _handle_storefront_error(request: Request, exc: StorefrontError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("Request failed", path=request.url.path, error=exc.message, status_code=exc.status_code)
    else:
        logger.info("Request rejected", path=request.url.path, error=exc.message, status_code=exc.status_code)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


def create_app() -> FastAPI:
    """Application factory for the storefront loyalty and billing API."""
    configure_logging(
        service_name="storefront-api",
        environment=settings.environment,
        version=APP_VERSION,
    )

    app = FastAPI(
        title="Storefront Loyalty & Billing API",
        version=APP_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    if settings.cors_allowed_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=settings.cors_allowed_origins,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    app.add_exception_handler(StorefrontError, _handle_storefront_error)
    app.include_router(api_router)

    return app
