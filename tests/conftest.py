"""
Test Suite Configuration
"""
from datetime import datetime
from typing import AsyncGenerator

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from rollup_engine.config import Settings
from rollup_engine.config.settings import DatabaseSettings, SchedulerSettings
from rollup_engine.data.generators import Dataset, sample_dataset
from rollup_engine.database.connection import create_engine_for, create_schema, create_session_factory
from rollup_engine.engine.pipeline import RollupPipeline
from rollup_engine.scheduler.refresh import RefreshScheduler
from rollup_engine.serving.reports import ReportService
from rollup_engine.sources.frames import FrameSource
from rollup_engine.store.rollup_store import RollupStore
from tests.factories import RecordingSleep

# Well after the sample data: February and March 2024 are complete
FIXED_NOW = datetime(2024, 4, 15, 12, 0)


@pytest.fixture
def test_settings(tmp_path) -> Settings:
    """Create test settings"""
    return Settings(
        app_env="testing",
        debug=True,
        database=DatabaseSettings(url=f"sqlite+aiosqlite:///{tmp_path / 'rollups.db'}"),
        scheduler=SchedulerSettings(enabled=False, retry_backoff_seconds=1.0, max_retries=3),
    )


@pytest.fixture
def fixed_now() -> datetime:
    return FIXED_NOW


@pytest.fixture
def sample() -> Dataset:
    return sample_dataset()


@pytest.fixture
def sample_source(sample) -> FrameSource:
    return sample.to_source()


@pytest.fixture
async def session_factory(test_settings) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """Session factory over a fresh SQLite file with all tables created"""
    engine = create_engine_for(test_settings.database.url)
    await create_schema(engine)
    yield create_session_factory(engine)
    await engine.dispose()


@pytest.fixture
def pipeline(sample_source) -> RollupPipeline:
    return RollupPipeline(sample_source)


@pytest.fixture
def store(session_factory, pipeline) -> RollupStore:
    return RollupStore(session_factory, pipeline, clock=lambda: FIXED_NOW)


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def scheduler(store, test_settings, recording_sleep) -> RefreshScheduler:
    return RefreshScheduler(
        store,
        settings=test_settings.scheduler,
        clock=lambda: FIXED_NOW,
        sleep=recording_sleep,
    )


@pytest.fixture
def report_service(store, scheduler, test_settings) -> ReportService:
    return ReportService(store, scheduler, settings=test_settings.reporting, clock=lambda: FIXED_NOW)
