"""
Runtime Wiring

Builds the rollup components from settings: rollup store engine, upstream
source, pipeline, store, scheduler and report service. Shared by the API
process and the orchestration flows.
"""

from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncEngine

from rollup_engine.config import Settings, get_settings
from rollup_engine.database.connection import (
    close_database,
    create_engine_for,
    create_schema,
    create_session_factory,
    init_database,
)
from rollup_engine.engine.pipeline import RollupPipeline
from rollup_engine.scheduler.refresh import RefreshScheduler
from rollup_engine.serving.reports import ReportService
from rollup_engine.sources.sql import SqlUpstreamSource
from rollup_engine.store.rollup_store import RollupStore

logger = structlog.get_logger(__name__)


@dataclass
class RollupRuntime:
    """Wired components of a running rollup engine"""
    engine: AsyncEngine
    source: SqlUpstreamSource
    pipeline: RollupPipeline
    store: RollupStore
    scheduler: RefreshScheduler
    reports: ReportService


@asynccontextmanager
async def open_runtime(settings: Optional[Settings] = None) -> AsyncIterator[RollupRuntime]:
    """
    Connect to the configured stores and build every component.

    Example:
        async with open_runtime() as runtime:
            await runtime.scheduler.run_pending()
    """
    settings = settings or get_settings()

    engine = await init_database(settings.database.url)
    source_engine: Optional[AsyncEngine] = None
    try:
        await create_schema(engine)

        if settings.database.upstream_url != settings.database.url:
            source_engine = create_engine_for(settings.database.upstream_url, echo=settings.database.echo)
            source = SqlUpstreamSource(create_session_factory(source_engine))
        else:
            source = SqlUpstreamSource(create_session_factory(engine))

        pipeline = RollupPipeline(
            source,
            top_n=settings.reporting.top_n,
            strict_integrity=settings.reporting.strict_integrity,
        )
        store = RollupStore(create_session_factory(engine), pipeline)
        scheduler = RefreshScheduler(store, settings=settings.scheduler)
        reports = ReportService(store, scheduler, settings=settings.reporting)

        logger.info(
            "Rollup runtime ready",
            separate_upstream=source_engine is not None,
            period_kinds=settings.scheduler.period_kinds,
        )
        yield RollupRuntime(
            engine=engine,
            source=source,
            pipeline=pipeline,
            store=store,
            scheduler=scheduler,
            reports=reports,
        )
    finally:
        if source_engine is not None:
            await source_engine.dispose()
        await close_database()
