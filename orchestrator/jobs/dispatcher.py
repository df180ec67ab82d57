"""
Routes claimed jobs to their registered handlers.
"""

from orchestrator.config.logging import bind_job_context, get_logger, unbind_job_context
from orchestrator.config.settings import Settings
from orchestrator.core.exceptions import PermanentJobError
from orchestrator.core.registries import JobRegistry
from orchestrator.jobs.breaker import BreakerRegistry
from orchestrator.jobs.chainer import JobChainer
from orchestrator.jobs.context import JobContext, run_with_max_runtime
from orchestrator.jobs.models import ClaimedJob
from orchestrator.jobs.retry import RetryScheduler
from orchestrator.jobs.store import JobStore

logger = get_logger(__name__)

NOT_IMPLEMENTED_ERROR = "Not implemented"
NO_OUTCOME_ERROR = "Handler returned without completing the job"


class Dispatcher:
    """Runs one claimed job through its handler and records the outcome."""

    def __init__(
        self,
        registry: JobRegistry,
        store: JobStore,
        scheduler: RetryScheduler,
        settings: Settings,
        breakers: BreakerRegistry,
        chainer: JobChainer | None = None,
    ):
        self.registry = registry
        self.store = store
        self.scheduler = scheduler
        self.settings = settings
        self.breakers = breakers
        self.chainer = chainer

    def make_context(self, job: ClaimedJob) -> JobContext:
        return JobContext(job, self.store, self.scheduler, self.settings, self.breakers)

    async def dispatch(self, job: ClaimedJob) -> JobContext:
        """
        Execute the handler for ``job``.

        A handler that raises is failed with the raised error; one that
        returns without reporting an outcome is failed terminally. Unknown
        job types fail with "Not implemented".
        """
        bind_job_context(
            str(job.id), job.type, owner_id=job.owner_id, attempts=job.meta.attempts
        )
        try:
            return await self._dispatch(job)
        finally:
            unbind_job_context()

    async def _dispatch(self, job: ClaimedJob) -> JobContext:
        ctx = self.make_context(job)

        if not self.registry.has(job.type):
            logger.error("No handler registered for job type", type=job.type)
            ctx.failure = await self.scheduler.fail_terminal(
                job, NOT_IMPLEMENTED_ERROR
            )
            return ctx

        handler = self.registry.get(job.type)
        logger.info("Processing job started")

        try:
            await run_with_max_runtime(
                lambda: handler.handle(job, ctx),
                self.settings.job_max_runtime_ms,
                label=job.type,
            )
        except Exception as e:
            if ctx.finished:
                logger.warning(
                    "Handler raised after reporting its outcome", error=str(e)
                )
            else:
                logger.warning("Handler raised", error=str(e), error_type=type(e).__name__)
                await ctx.fail(e)
        else:
            if not ctx.finished:
                await ctx.fail(PermanentJobError(NO_OUTCOME_ERROR))

        if ctx.completed and self.chainer is not None:
            await self.chainer.chain(job, ctx.result)

        return ctx
