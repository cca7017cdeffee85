from contextlib import asynccontextmanager
from pathlib import Path

import httpx
from fastapi import FastAPI
from loguru import logger

from stockloyal_api.core.settings import settings
from stockloyal_api.db.session import async_session
from .api.errors import install_error_handlers
from .api.routes import api_router
from .core.logging import configure_logging
from .observability.tracing import configure_tracing
from .scheduling import PipelineJobScheduler
from .services.market import MarketCalendar


APP_VERSION = "0.1.0"


def _session_factory():
    return async_session()


def _schedule_path() -> Path:
    schedule_path = Path(settings.pipeline_job_schedule_path)
    if not schedule_path.is_absolute():
        schedule_path = Path(__file__).resolve().parent.parent.parent / schedule_path
    return schedule_path


@asynccontextmanager
async def lifespan(app: FastAPI):
    http_client = httpx.AsyncClient(timeout=settings.broker_dispatch_timeout_seconds)
    schedule_path = _schedule_path()
    job_scheduler = PipelineJobScheduler(
        session_factory=_session_factory,
        config_path=schedule_path,
    )

    app.state.http_client = http_client
    app.state.market_calendar = MarketCalendar(http_client=http_client)
    app.state.pipeline_job_scheduler = job_scheduler

    scheduler_enabled = settings.pipeline_job_scheduler_enabled
    if scheduler_enabled:
        try:
            job_scheduler.start()
        except FileNotFoundError as exc:
            logger.exception("Pipeline job scheduler failed to start", error=str(exc))
        else:
            logger.info(
                "Pipeline job scheduler enabled",
                schedule_path=str(schedule_path),
            )
    else:
        logger.info(
            "Pipeline job scheduler disabled",
            reason="pipeline_job_scheduler_enabled is false",
        )

    try:
        yield
    finally:
        if scheduler_enabled and job_scheduler.is_running:
            await job_scheduler.stop()
        await http_client.aclose()


def create_app() -> FastAPI:
    """Application factory for the StockLoyal order pipeline service."""
    configure_logging(
        service_name="stockloyal-api",
        environment=settings.environment,
        version=APP_VERSION,
    )

    app = FastAPI(
        title="StockLoyal Order Pipeline API",
        version=APP_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    configure_tracing(
        app,
        service_name="stockloyal-api",
        service_version=APP_VERSION,
        environment=settings.environment,
    )

    install_error_handlers(app)
    app.include_router(api_router)

    @app.get("/healthz", tags=["Health"])
    async def health_check() -> dict[str, object]:
        return {
            "success": True,
            "status": "ok",
            "environment": settings.environment,
            "version": APP_VERSION,
        }

    return app
