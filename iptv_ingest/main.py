"""
IPTV Ingestion Service

FastAPI application entry point. The lifespan builds the ingestion
context and the scheduler; the HTTP surface is the admin jobs API.

Exit codes of ``run()``: 0 on clean shutdown, 1 on a fatal boot error
(invalid configuration, unreachable document store).
"""

import asyncio
import sys
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .config import Settings, get_settings
from .core.exceptions import ConfigInvalid, StoreUnavailable, register_exception_handlers
from .core.logging import get_logger, setup_logging
from .jobs import build_job_handlers
from .models.jobs import JobsConfig
from .routers import jobs_router
from .services.context import IngestionContext
from .services.disk_cache import CachePolicy
from .services.scheduler import SchedulerService
from .services.store import create_document_store

SERVICE_NAME = "IPTV Ingestion Service"
VERSION = "1.0.0"

logger = get_logger(__name__)


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan events."""
        logger.info("app_startup", environment=settings.environment, debug=settings.debug)

        jobs_config = JobsConfig.from_file(settings.jobs_config_path)
        store = create_document_store(settings)
        await store.ping()

        ctx = IngestionContext.create(settings, store)
        scheduler = SchedulerService(jobs_config, build_job_handlers(ctx), ctx.job_history)
        await scheduler.start(schedule=not settings.disable_scheduler)
        if settings.disable_scheduler:
            logger.info("scheduler_disabled_manual_mode")

        app.state.ctx = ctx
        app.state.scheduler = scheduler

        yield

        # Running jobs are canceled and recorded as failed ("canceled")
        await scheduler.stop()
        await ctx.aclose()
        logger.info("app_shutdown")

    app = FastAPI(
        title=SERVICE_NAME,
        description="Provider ingestion, catalog reconciliation and live TV guide sync",
        version=VERSION,
        lifespan=lifespan,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
    )

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if settings.debug else [],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_exception_handlers(app)
    app.include_router(jobs_router)

    @app.get("/")
    async def root():
        """Root endpoint with API info."""
        return {
            "service": SERVICE_NAME,
            "version": VERSION,
            "status": "running",
            "docs": "/docs" if settings.debug else "disabled",
            "scheduler": "manual" if settings.disable_scheduler else "enabled",
        }

    @app.get("/health")
    async def health():
        """Health check for load balancers."""
        return {"status": "healthy"}

    return app


async def preflight(settings: Settings):
    """
    Validate both config files and reach the store before serving.

    Raises ConfigInvalid or StoreUnavailable.
    """
    JobsConfig.from_file(settings.jobs_config_path)
    CachePolicy.from_file(settings.cache_policy_path)
    store = create_document_store(settings)
    try:
        await store.ping()
    finally:
        await store.close()


def run() -> int:
    """Console entry point."""
    settings = get_settings()
    setup_logging()

    try:
        asyncio.run(preflight(settings))
    except (ConfigInvalid, StoreUnavailable) as e:
        logger.error("boot_failed", error=e.message)
        return 1

    server = uvicorn.Server(
        uvicorn.Config(create_app(settings), host=settings.host, port=settings.port, log_config=None)
    )
    server.run()
    # A lifespan that failed to start leaves the server unstarted
    return 0 if server.started else 1


if __name__ == "__main__":
    sys.exit(run())
