"""
Poll-loop job worker.

Each worker process runs its own loop; workers coordinate only through the
job table (atomic claim, lease-guarded writes), never in memory.
"""

import asyncio
import os
import socket
from uuid import UUID

from orchestrator.config.logging import bind_worker_context, get_logger
from orchestrator.config.settings import Settings
from orchestrator.core.registries import JobRegistry, job_registry
from orchestrator.infra.database import Database, get_database
from orchestrator.jobs.admission import AdmissionController
from orchestrator.jobs.breaker import breaker_registry
from orchestrator.jobs.chainer import JobChainer
from orchestrator.jobs.dispatcher import Dispatcher
from orchestrator.jobs.models import ClaimedJob
from orchestrator.jobs.quota import QuotaCompensator, UsageLedger
from orchestrator.jobs.reaper import StuckJobReaper
from orchestrator.jobs.retry import RetryScheduler
from orchestrator.jobs.store import JobStore

logger = get_logger(__name__)


def default_worker_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}"


class JobWorker:
    """
    Claims due jobs and runs them.

    One tick: reset stuck jobs, list due candidates, admit and claim up to
    ``max_worker_concurrency`` of them, then run the claimed jobs
    concurrently and wait for all of them.
    """

    def __init__(
        self,
        settings: Settings,
        store: JobStore,
        dispatcher: Dispatcher,
        reaper: StuckJobReaper,
        admission: AdmissionController,
        worker_id: str | None = None,
    ):
        self.settings = settings
        self.store = store
        self.dispatcher = dispatcher
        self.reaper = reaper
        self.admission = admission
        self.worker_id = worker_id or default_worker_id()
        self.running = False

    async def tick(self) -> int:
        """Run one poll iteration and return the number of jobs executed."""
        try:
            await self.reaper.reap()
        except Exception:
            logger.exception("Error in stuck job recovery", worker_id=self.worker_id)

        claimed = await self._claim_admitted()
        if not claimed:
            return 0

        results = await asyncio.gather(
            *(self.dispatcher.dispatch(job) for job in claimed), return_exceptions=True
        )
        for job, outcome in zip(claimed, results):
            if isinstance(outcome, BaseException):
                logger.error(
                    "Job execution crashed",
                    job_id=str(job.id),
                    type=job.type,
                    error=repr(outcome),
                )
        return len(claimed)

    async def _claim_admitted(self) -> list[ClaimedJob]:
        """
        Claim due jobs until the tick budget is used or none are left.

        Candidates are listed in pages; owners found at their running limit
        are excluded from later pages so their backlog cannot hide other
        owners' jobs.
        """
        budget = self.admission.begin_tick()
        claimed: list[ClaimedJob] = []
        seen: set[UUID] = set()
        batch_size = self.settings.claim_batch_size

        while budget.has_capacity:
            candidates = await self.store.list_due(
                limit=batch_size, exclude_owner_ids=set(budget.saturated_owners)
            )
            fresh = [
                (job_id, owner_id) for job_id, owner_id in candidates if job_id not in seen
            ]
            if not fresh:
                break

            for job_id, owner_id in fresh:
                seen.add(job_id)
                if not budget.has_capacity:
                    break
                if not await budget.owner_has_room(owner_id):
                    continue

                job = await self.store.claim_next(self.worker_id, job_id=job_id)
                if job is None:
                    # Taken by another worker or no longer due
                    continue

                budget.record_start()
                claimed.append(job)

            if len(candidates) < batch_size:
                break

        return claimed

    async def run(self) -> None:
        """Poll until stopped; with ``run_once`` exit after the first idle tick."""
        if self.running:
            raise RuntimeError("Worker is already running")

        self.running = True
        bind_worker_context(self.worker_id)
        logger.info(
            "Starting job worker",
            worker_id=self.worker_id,
            poll_interval_ms=self.settings.poll_interval_ms,
            concurrency=self.settings.max_worker_concurrency,
            run_once=self.settings.run_once,
            mode=self.settings.runtime_mode.value,
        )

        try:
            while self.running:
                try:
                    executed = await self.tick()
                except Exception:
                    logger.exception("Error in worker loop", worker_id=self.worker_id)
                    executed = 0
                    if self.settings.run_once:
                        break

                if executed:
                    continue
                if self.settings.run_once:
                    break
                await asyncio.sleep(self.settings.poll_interval_ms / 1000)
        finally:
            self.running = False
            logger.info("Job worker stopped", worker_id=self.worker_id)

    def stop(self) -> None:
        """Ask the loop to exit after the current tick."""
        logger.info("Stopping job worker", worker_id=self.worker_id)
        self.running = False


def build_worker(
    settings: Settings,
    database: Database | None = None,
    registry: JobRegistry | None = None,
    worker_id: str | None = None,
) -> JobWorker:
    """Wire a worker from settings, using the global database by default."""
    from orchestrator.jobs.registry_init import CHAIN_RULES, register_job_handlers

    database = database or get_database(settings)
    if registry is None:
        registry = job_registry
    if registry is job_registry:
        register_job_handlers(settings)

    store = JobStore(database.SessionLocal)
    compensator = QuotaCompensator(store, UsageLedger(database.SessionLocal))
    scheduler = RetryScheduler(store, settings, quota=compensator)
    dispatcher = Dispatcher(
        registry,
        store,
        scheduler,
        settings,
        breaker_registry,
        chainer=JobChainer(store, CHAIN_RULES),
    )
    return JobWorker(
        settings,
        store,
        dispatcher,
        StuckJobReaper(store, settings),
        AdmissionController(store, settings),
        worker_id=worker_id,
    )
