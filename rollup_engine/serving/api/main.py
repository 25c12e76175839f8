"""
FastAPI Application

Builds the report API. The rollup runtime (store connection, upstream
source, pipeline, store, scheduler, report service) lives in app.state for
the lifetime of the application.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.gzip import GZipMiddleware
import structlog

from rollup_engine.config import Settings, get_settings
from rollup_engine.config.logging import configure_logging
from rollup_engine.runtime import open_runtime
from rollup_engine.serving.api.middleware import RequestLoggingMiddleware
from rollup_engine.serving.api.routes import health_router, operations_router, reports_router

logger = structlog.get_logger(__name__)


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """
    Create and configure the report API.

    Args:
        settings: Settings override, the cached settings otherwise

    Returns:
        Configured FastAPI app instance
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(settings.monitoring.log_level)
        logger.info("Starting rollup report API", environment=settings.app_env)

        async with open_runtime(settings) as runtime:
            app.state.report_service = runtime.reports

            scheduler_task = None
            if settings.scheduler.enabled:
                scheduler_task = asyncio.create_task(runtime.scheduler.run_forever())

            yield

            logger.info("Shutting down...")
            if scheduler_task is not None:
                runtime.scheduler.stop()
                await scheduler_task
            app.state.report_service = None

    app = FastAPI(
        title="Financial Rollup API",
        description="Pre-computed revenue, refund and customer spend reports",
        version=settings.version,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )
    app.state.settings = settings

    app.add_middleware(GZipMiddleware, minimum_size=1000)
    app.add_middleware(RequestLoggingMiddleware)

    app.include_router(health_router, prefix="/api/v1", tags=["Health"])
    app.include_router(reports_router, prefix="/api/v1/reports", tags=["Reports"])
    app.include_router(operations_router, prefix="/api/v1/operations", tags=["Operations"])

    @app.get("/api/v1/info")
    async def api_info():
        """API information endpoint."""
        return {
            "name": settings.app_name,
            "version": settings.version,
            "environment": settings.app_env,
            "documentation": "/docs",
        }

    return app
