import os
from collections.abc import AsyncGenerator
from datetime import datetime
from typing import Any
from uuid import UUID

import pytest
from sqlalchemy import update

from orchestrator.config.settings import Settings
from orchestrator.core.registries import JobRegistry
from orchestrator.infra.database import Base, Database
from orchestrator.jobs.admission import AdmissionController
from orchestrator.jobs.breaker import BreakerRegistry
from orchestrator.jobs.chainer import JobChainer
from orchestrator.jobs.dispatcher import Dispatcher
from orchestrator.jobs.models import Job
from orchestrator.jobs.quota import QuotaCompensator, UsageLedger
from orchestrator.jobs.reaper import StuckJobReaper
from orchestrator.jobs.retry import RetryScheduler
from orchestrator.jobs.schemas import JobCreate
from orchestrator.jobs.store import JobStore
from orchestrator.jobs.worker import JobWorker


def _uses_postgres() -> bool:
    database_url = os.getenv("DATABASE_URL")
    return bool(database_url and "postgresql" in database_url)


@pytest.fixture
def database_url(tmp_path) -> str:
    """PostgreSQL from DATABASE_URL in CI, a throwaway SQLite file otherwise."""
    if _uses_postgres():
        return os.environ["DATABASE_URL"]
    return f"sqlite+aiosqlite:///{tmp_path / 'test.db'}"


@pytest.fixture
def settings(database_url) -> Settings:
    """Settings with small, test-friendly limits."""
    return Settings(
        environment="test",
        debug=False,
        database_url=database_url,
        poll_interval_ms=10,
        max_worker_concurrency=2,
        max_running_jobs_per_user=3,
        job_retry_base_ms=500,
        job_retry_max_ms=5000,
        job_max_attempts=5,
        job_max_runtime_ms=5_000,
        running_job_timeout_ms=60_000,
        external_call_timeout_ms=1_000,
        external_call_retries=0,
        external_call_base_delay_ms=0,
        external_call_max_delay_ms=0,
    )


@pytest.fixture
async def database(settings) -> AsyncGenerator[Database, None]:
    """Create a test database with fresh tables."""
    db = Database(settings)
    if _uses_postgres():
        async with db.engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)
    await db.create_all()

    yield db

    if _uses_postgres():
        async with db.engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)
    await db.close()


@pytest.fixture
def store(database) -> JobStore:
    return JobStore(database.SessionLocal)


@pytest.fixture
def ledger(database) -> UsageLedger:
    return UsageLedger(database.SessionLocal)


@pytest.fixture
def compensator(store, ledger) -> QuotaCompensator:
    return QuotaCompensator(store, ledger)


@pytest.fixture
def scheduler(store, settings, compensator) -> RetryScheduler:
    return RetryScheduler(store, settings, quota=compensator)


@pytest.fixture
def breakers() -> BreakerRegistry:
    return BreakerRegistry()


@pytest.fixture
def registry() -> JobRegistry:
    """A private registry so tests never touch the global one."""
    return JobRegistry()


@pytest.fixture
def chainer(store) -> JobChainer:
    return JobChainer(store)


@pytest.fixture
def dispatcher(registry, store, scheduler, settings, breakers, chainer) -> Dispatcher:
    return Dispatcher(registry, store, scheduler, settings, breakers, chainer=chainer)


@pytest.fixture
def worker(settings, store, dispatcher) -> JobWorker:
    return JobWorker(
        settings,
        store,
        dispatcher,
        StuckJobReaper(store, settings),
        AdmissionController(store, settings),
        worker_id="test-worker",
    )


@pytest.fixture
def create_job(store):
    """Factory fixture creating a job and returning its row."""

    async def _create(job_type: str = "echo", owner_id: str = "user-1", **kwargs: Any) -> Job:
        job, _ = await store.create_job(
            JobCreate(type=job_type, owner_id=owner_id, **kwargs)
        )
        return job

    return _create


@pytest.fixture
def set_job_columns(database):
    """Write columns directly, bypassing the store's guards."""

    async def _set(job_id: UUID, **values: Any) -> None:
        async with database.SessionLocal() as session:
            await session.execute(update(Job).where(Job.id == job_id).values(**values))
            await session.commit()

    return _set


@pytest.fixture
def past():
    """Build a timezone-aware timestamp a given number of seconds ago."""
    from datetime import timedelta

    from orchestrator.jobs.models import utcnow

    def _past(seconds: float) -> datetime:
        return utcnow() - timedelta(seconds=seconds)

    return _past
