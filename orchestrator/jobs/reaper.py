"""
Stuck-job recovery.
"""

from datetime import timedelta
from typing import Callable
from uuid import UUID

from orchestrator.config.logging import get_logger
from orchestrator.config.settings import Settings
from orchestrator.jobs.models import now_ms, utcnow
from orchestrator.jobs.store import JobStore

logger = get_logger(__name__)


class StuckJobReaper:
    """
    Resets RUNNING jobs that stopped making progress.

    A job whose row has not been updated within ``running_job_timeout_ms`` is
    treated as crashed or hung and returned to PENDING with one more attempt
    counted. Handlers must therefore be safe to run again.
    """

    def __init__(
        self,
        store: JobStore,
        settings: Settings,
        clock: Callable[[], int] = now_ms,
    ):
        self.store = store
        self.settings = settings
        self.clock = clock

    async def reap(self) -> list[UUID]:
        """Reset stuck jobs and return their ids."""
        timeout_ms = self.settings.running_job_timeout_ms
        cutoff = utcnow() - timedelta(milliseconds=timeout_ms)

        reset_ids = await self.store.reset_stuck(
            cutoff,
            at_ms=self.clock(),
            limit=self.settings.reaper_batch_size,
        )
        if reset_ids:
            logger.warning(
                "Recovered stuck jobs",
                stuck_job_count=len(reset_ids),
                job_ids=[str(job_id) for job_id in reset_ids],
                timeout_ms=timeout_ms,
            )
        return reset_ids
